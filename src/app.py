# src/app.py
"""
Order fulfilment engine.

:class:`OrderingApp` is the narrow interface a front end (the CLI, a web
layer, a test) calls into.  Creating an order validates the customer and
basket, then, inside one database transaction, decrements stock line by
line with the atomic conditional update, prices every line from the live
catalog, writes the order and its lines and stamps the customer's
``last_order_at``.  Any failure rolls the whole transaction back.

Cancelling moves the order to Cancelled with a compare-and-set and
restores stock in the same transaction, so stock comes back exactly once
no matter how often cancellation is requested.
"""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import contextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

import pricing
from customers import CustomerDirectory
from dao import (
    Customer,
    CustomerDAO,
    Order,
    OrderDAO,
    Product,
    ProductDAO,
    SQLITE_MAX_INT,
    is_count,
    utc_now,
)
from errors import (
    CustomerNotFoundError,
    DuplicateError,
    EmptyBasketError,
    InsufficientStockError,
    InternalError,
    InUseError,
    InvalidTransitionError,
    NotFoundError,
    OrderingError,
    OrderNotFoundError,
    ProductNotFoundError,
    ValidationError,
)
from metrics import (
    ORDER_CREATE_DURATION_SECONDS,
    ORDER_ERRORS_TOTAL,
    ORDER_STATUS_TRANSITIONS_TOTAL,
    ORDERS_CANCELLED_TOTAL,
    ORDERS_CREATED_TOTAL,
    STOCK_UNITS_RESTORED_TOTAL,
)
from order_status import OrderStatus, check_transition

logger = logging.getLogger(__name__)

# Metric label per error class; first match wins, so subclasses come first.
_ERROR_TYPES: Tuple[Tuple[type, str], ...] = (
    (EmptyBasketError, "empty_basket"),
    (ValidationError, "validation"),
    (CustomerNotFoundError, "customer_not_found"),
    (ProductNotFoundError, "product_not_found"),
    (OrderNotFoundError, "order_not_found"),
    (NotFoundError, "not_found"),
    (InsufficientStockError, "insufficient_stock"),
    (DuplicateError, "duplicate"),
    (InvalidTransitionError, "invalid_transition"),
    (InUseError, "in_use"),
    (InternalError, "internal"),
)


def _error_type(exc: OrderingError) -> str:
    for cls, label in _ERROR_TYPES:
        if isinstance(exc, cls):
            return label
    return "other"


@dataclass(frozen=True)
class BasketLine:
    """One requested ``(product, quantity)`` pair, unpriced."""

    product_id: int
    quantity: int


def _as_basket_line(entry: object, position: int) -> BasketLine:
    if isinstance(entry, BasketLine):
        product_id, quantity = entry.product_id, entry.quantity
    elif isinstance(entry, Mapping):
        # Any price sent along with the line is ignored.
        if "product_id" not in entry or "quantity" not in entry:
            raise ValidationError(f"Basket line {position} needs product_id and quantity")
        product_id, quantity = entry["product_id"], entry["quantity"]
    elif isinstance(entry, (tuple, list)) and len(entry) >= 2:
        product_id, quantity = entry[0], entry[1]
    else:
        raise ValidationError(f"Basket line {position} is not a (product_id, quantity) pair")

    errors = []
    if not is_count(product_id):
        errors.append(f"Basket line {position}: product id must be a positive integer within range")
    if not is_count(quantity):
        errors.append(f"Basket line {position}: quantity must be a positive integer within range")
    if errors:
        raise ValidationError(errors)
    return BasketLine(product_id=product_id, quantity=quantity)


def normalize_basket(basket: Iterable[object] | None) -> List[BasketLine]:
    """Validate a caller basket and merge repeated products.

    Lines keep the position of the first occurrence of each product.

    Raises:
        EmptyBasketError: If the basket has no lines.
        ValidationError: If a line is malformed.
    """
    entries = list(basket or [])
    if not entries:
        raise EmptyBasketError()
    merged: Dict[int, int] = {}
    for position, entry in enumerate(entries, start=1):
        line = _as_basket_line(entry, position)
        quantity = merged.get(line.product_id, 0) + line.quantity
        if quantity > SQLITE_MAX_INT:
            raise ValidationError(f"Basket quantity for product {line.product_id} is out of range")
        merged[line.product_id] = quantity
    return [BasketLine(product_id=pid, quantity=qty) for pid, qty in merged.items()]


class Basket:
    """Caller-side shopping basket.

    Stock checks made while the basket is built are advisory only; the
    engine re-checks atomically when the order is committed, and
    :meth:`estimated_total` is for display, never charged.
    """

    def __init__(self, catalog: ProductDAO) -> None:
        self._catalog = catalog
        # Insertion order is basket order
        self._lines: Dict[int, int] = {}

    def add(self, product_id: int, qty: int = 1) -> Tuple[bool, str]:
        if not is_count(qty):
            return False, "Quantity must be positive."
        if not is_count(product_id):
            return False, "Product not found."
        p = self._catalog.get_active(product_id)
        if not p:
            return False, "Product not found."
        wanted = self._lines.get(product_id, 0) + qty
        if not self._catalog.check_stock(product_id, wanted):
            return False, f"Only {p.stock} in stock for {p.name}"
        self._lines[product_id] = wanted
        return True, f"Added {qty} x {p.name} to basket"

    def set_quantity(self, product_id: int, qty: int) -> Tuple[bool, str]:
        if product_id not in self._lines:
            return False, "Product is not in the basket."
        if not is_count(qty):
            return False, "Quantity must be positive."
        p = self._catalog.get_active(product_id)
        if not p:
            return False, "Product not found."
        if not self._catalog.check_stock(product_id, qty):
            return False, f"Only {p.stock} in stock for {p.name}"
        self._lines[product_id] = qty
        return True, f"{p.name} quantity set to {qty}"

    def remove(self, product_id: int) -> None:
        self._lines.pop(product_id, None)

    def clear(self) -> None:
        self._lines.clear()

    def lines(self) -> List[BasketLine]:
        return [BasketLine(pid, qty) for pid, qty in self._lines.items()]

    def is_empty(self) -> bool:
        return not self._lines

    def item_count(self) -> int:
        return sum(self._lines.values())

    def estimated_total(self) -> Decimal:
        """Total at current catalog prices; products gone inactive count as zero."""
        lines = []
        for pid, qty in self._lines.items():
            p = self._catalog.get_active(pid)
            if p:
                lines.append(pricing.price_line(pid, qty, p.unit_price))
        return pricing.order_total(lines)


class OrderingApp:
    """
    Business logic for the ordering core: customers, catalog lookups and
    the order lifecycle.  One instance can be shared by many threads; each
    thread talks to the database over its own connection.
    """

    def __init__(self) -> None:
        self.product_dao = ProductDAO()
        self.customer_dao = CustomerDAO()
        self.order_dao = OrderDAO()
        self.customers = CustomerDirectory(self.customer_dao)

    @contextmanager
    def _operation(self, operation: str, **context: object) -> Iterator[None]:
        """Log and count failures of one engine operation.

        Storage errors are wrapped in :class:`InternalError` and integers too
        large for the database in :class:`ValidationError`; by the time they
        reach this point the transaction has been rolled back.
        """
        try:
            yield
        except OrderingError as exc:
            ORDER_ERRORS_TOTAL.inc(operation=operation, type=_error_type(exc))
            logger.warning(
                f"{operation} failed: {exc}",
                extra={**context, "extra": {"operation": operation, "error": type(exc).__name__}},
            )
            raise
        except sqlite3.Error as exc:
            ORDER_ERRORS_TOTAL.inc(operation=operation, type="internal")
            logger.exception(
                f"{operation} failed on storage error",
                extra={**context, "extra": {"operation": operation}},
            )
            raise InternalError(f"{operation} failed: {exc}") from exc
        except OverflowError as exc:
            # An integer too wide for an SQLite INTEGER column
            ORDER_ERRORS_TOTAL.inc(operation=operation, type="validation")
            logger.warning(
                f"{operation} failed: {exc}",
                extra={**context, "extra": {"operation": operation, "error": "OverflowError"}},
            )
            raise ValidationError(f"{operation}: value out of range") from exc

    # ---- Customers ----

    def register_customer(
        self,
        external_id: str,
        name: str,
        email: str | None = None,
        phone: str | None = None,
        address: str | None = None,
    ) -> Customer:
        """Look the customer up by identification, creating or updating them."""
        with self._operation("register_customer"):
            return self.customers.register(external_id, name, email=email, phone=phone, address=address)

    def find_customer(self, external_id: str) -> Optional[Customer]:
        with self._operation("find_customer"):
            return self.customers.find_by_external_id(external_id)

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        with self._operation("get_customer"):
            return self.customers.get(customer_id)

    def delete_customer(self, customer_id: int) -> None:
        with self._operation("delete_customer", customer_id=customer_id):
            if not self.customer_dao.delete_customer(customer_id):
                raise CustomerNotFoundError(customer_id)

    # ---- Product catalogue ----

    def list_active_products(self) -> List[Product]:
        with self._operation("list_products"):
            return self.product_dao.list_active()

    def list_catalog(self) -> List[Product]:
        """Every product, inactive ones included, in id order."""
        with self._operation("list_catalog"):
            return self.product_dao.list_products()

    def search_products(self, term: str | None) -> List[Product]:
        with self._operation("search_products"):
            return self.product_dao.search_by_name(term)

    def check_stock(self, product_id: int, quantity: int) -> bool:
        with self._operation("check_stock", product_id=product_id):
            return self.product_dao.check_stock(product_id, quantity)

    def add_product(
        self, name: str, unit_price: object, stock: int, description: str | None = None
    ) -> Product:
        with self._operation("add_product"):
            product_id = self.product_dao.add_product(name, unit_price, stock, description=description)
            logger.info("Product added", extra={"product_id": product_id, "extra": {"name": name}})
            return self.product_dao.get_product(product_id)

    def update_price(self, product_id: int, unit_price: object) -> None:
        """Change a catalog price; orders already placed keep their snapshot."""
        with self._operation("update_price", product_id=product_id):
            if not self.product_dao.update_price(product_id, unit_price):
                raise ProductNotFoundError(product_id)

    def restock(self, product_id: int, quantity: int) -> None:
        with self._operation("restock", product_id=product_id):
            if not self.product_dao.increment_stock(product_id, quantity):
                raise ProductNotFoundError(product_id)

    def deactivate_product(self, product_id: int) -> None:
        with self._operation("deactivate_product", product_id=product_id):
            if not self.product_dao.set_active(product_id, False):
                raise ProductNotFoundError(product_id)

    def delete_product(self, product_id: int) -> None:
        with self._operation("delete_product", product_id=product_id):
            if not self.product_dao.delete_product(product_id):
                raise ProductNotFoundError(product_id)

    def new_basket(self) -> Basket:
        return Basket(self.product_dao)

    # ---- Orders ----

    def create_order(self, customer_id: int, basket: Iterable[object], notes: str | None = None) -> Order:
        """Commit an order for ``basket`` or raise without changing anything.

        Lines are processed in basket order and the first product that
        cannot be satisfied aborts the whole order.

        Raises:
            CustomerNotFoundError: Unknown customer.
            EmptyBasketError: No lines.
            ValidationError: Malformed line.
            ProductNotFoundError: Unknown or inactive product.
            InsufficientStockError: Not enough stock at commit time.
            InternalError: Storage failure, including lock timeouts.
        """
        start_time = time.perf_counter()
        try:
            with self._operation("create_order", customer_id=customer_id):
                customer = self.customers.get(customer_id)
                if customer is None:
                    raise CustomerNotFoundError(customer_id)
                lines = normalize_basket(basket)
                notes = (notes or "").strip() or None

                with self.order_dao.transaction():
                    priced: List[pricing.PricedLine] = []
                    for line in lines:
                        product = self.product_dao.get_active(line.product_id)
                        if product is None:
                            raise ProductNotFoundError(line.product_id)
                        if not self.product_dao.try_decrement_stock(product.id, line.quantity):
                            available = self.product_dao.available_stock(product.id) or 0
                            raise InsufficientStockError(product.id, product.name, line.quantity, available)
                        # Price read inside the write transaction: the price charged
                        # is the price in effect at commit.
                        priced.append(pricing.price_line(product.id, line.quantity, product.unit_price))
                    total = pricing.order_total(priced)
                    placed_at = utc_now()
                    order_id = self.order_dao.insert_order(customer.id, placed_at, total, priced, notes=notes)
                    self.customer_dao.touch_last_order(customer.id, placed_at)

                order = self.order_dao.get_order(order_id)
        finally:
            ORDER_CREATE_DURATION_SECONDS.observe(time.perf_counter() - start_time)

        ORDERS_CREATED_TOTAL.inc()
        logger.info(
            "Order created",
            extra={
                "order_id": order.id,
                "customer_id": customer_id,
                "extra": {"total": str(order.total), "lines": len(order.items)},
            },
        )
        return order

    def cancel_order(self, order_id: int) -> bool:
        """Cancel an order and put its stock back.

        Cancelling an already cancelled order succeeds without touching
        stock.

        Raises:
            OrderNotFoundError: Unknown order.
            InvalidTransitionError: The order is Completed.
        """
        restored = 0
        with self._operation("cancel_order", order_id=order_id):
            with self.order_dao.transaction():
                current = self.order_dao.get_status(order_id)
                if current is None:
                    raise OrderNotFoundError(order_id)
                if not check_transition(order_id, current, OrderStatus.CANCELLED):
                    logger.info("Order already cancelled", extra={"order_id": order_id})
                    return True
                # The status flip is what makes the restore below happen once.
                if not self.order_dao.compare_and_set_status(order_id, current, OrderStatus.CANCELLED):
                    raise InvalidTransitionError(order_id, current.value, OrderStatus.CANCELLED.value)
                for item in self.order_dao.get_items(order_id):
                    if not self.product_dao.increment_stock(item.product_id, item.quantity):
                        raise ProductNotFoundError(item.product_id)
                    restored += item.quantity

        ORDERS_CANCELLED_TOTAL.inc()
        STOCK_UNITS_RESTORED_TOTAL.inc(restored)
        ORDER_STATUS_TRANSITIONS_TOTAL.inc(from_status=current.value, to_status=OrderStatus.CANCELLED.value)
        logger.info(
            "Order cancelled",
            extra={"order_id": order_id, "extra": {"previous_status": current.value, "units_restored": restored}},
        )
        return True

    def update_status(self, order_id: int, status: OrderStatus | str) -> bool:
        """Move an order forward, or cancel it.

        Returns True when the order ends up in ``status`` (including when it
        already was there).

        Raises:
            ValidationError: Unknown status name.
            OrderNotFoundError: Unknown order.
            InvalidTransitionError: Backward move, move out of a terminal
                state, or another writer changed the status first.
        """
        with self._operation("update_status", order_id=order_id):
            requested = OrderStatus.parse(status)
        if requested == OrderStatus.CANCELLED:
            return self.cancel_order(order_id)

        with self._operation("update_status", order_id=order_id):
            with self.order_dao.transaction():
                current = self.order_dao.get_status(order_id)
                if current is None:
                    raise OrderNotFoundError(order_id)
                if not check_transition(order_id, current, requested):
                    return True
                if not self.order_dao.compare_and_set_status(order_id, current, requested):
                    raise InvalidTransitionError(order_id, current.value, requested.value)

        ORDER_STATUS_TRANSITIONS_TOTAL.inc(from_status=current.value, to_status=requested.value)
        logger.info(
            "Order status updated",
            extra={"order_id": order_id, "extra": {"from": current.value, "to": requested.value}},
        )
        return True

    def get_order(self, order_id: int) -> Optional[Order]:
        with self._operation("get_order", order_id=order_id):
            order = self.order_dao.get_order(order_id)
        if order is None:
            logger.warning("Order not found", extra={"order_id": order_id})
        return order

    def get_orders_by_customer(self, customer_id: int) -> List[Order]:
        """Orders of ``customer_id``, newest first; empty for unknown customers."""
        with self._operation("get_orders_by_customer", customer_id=customer_id):
            orders = self.order_dao.list_by_customer(customer_id)
        logger.debug(
            f"Found {len(orders)} orders",
            extra={"customer_id": customer_id},
        )
        return orders
