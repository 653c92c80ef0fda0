"""
Command-line front end for the ordering application.

This script wires :class:`app.OrderingApp` into an interactive CLI loop.
Ordering stays locked until the customer has watched the advertisement;
the gate lives here only, the engine never knows about it.  Engine errors
are printed and the loop carries on.
"""

import sys
import time
from enum import Enum
from typing import Callable, List, Optional

from app import Basket, OrderingApp
from config import Settings, load_settings
from dao import Customer, Order, Product
from errors import OrderingError
from logging_config import configure_logging
from metrics import generate_metrics_text
from order_status import OrderStatus
from pricing import format_money


class GateState(Enum):
    LOCKED = "Locked"
    UNLOCKED = "Unlocked"


class AccessGate:
    """Two-state gate in front of the ordering screens.

    The gate opens once an advertisement has played to the end.  Listeners
    registered with :meth:`on_unlock` are called at that moment.
    """

    def __init__(self, ad_seconds: int = 5) -> None:
        self.ad_seconds = ad_seconds
        self.state = GateState.LOCKED
        self._listeners: List[Callable[[], None]] = []

    @property
    def is_unlocked(self) -> bool:
        return self.state is GateState.UNLOCKED

    def on_unlock(self, listener: Callable[[], None]) -> None:
        self._listeners.append(listener)

    def advertisement_finished(self) -> None:
        if self.is_unlocked:
            return
        self.state = GateState.UNLOCKED
        for listener in self._listeners:
            listener()

    def play_advertisement(
        self,
        sleep: Callable[[float], None] = time.sleep,
        tick: Optional[Callable[[int], None]] = None,
    ) -> None:
        """Count down ``ad_seconds`` then unlock."""
        for remaining in range(self.ad_seconds, 0, -1):
            if tick:
                tick(remaining)
            sleep(1)
        self.advertisement_finished()

    def lock(self) -> None:
        self.state = GateState.LOCKED


def format_receipt(order: Order, customer: Optional[Customer] = None) -> str:
    lines = [f"Order ID: {order.id}", f"Placed: {order.placed_at}", f"Status: {order.status.value}"]
    if customer:
        lines.append(f"Customer: {customer.name} ({customer.external_id})")
    lines.append("Items:")
    for item in order.items:
        name = item.product_name or f"Product {item.product_id}"
        lines.append(
            f"  {name} x {item.quantity} @ {format_money(item.unit_price_at_order)} = {format_money(item.subtotal)}"
        )
    if order.notes:
        lines.append(f"Notes: {order.notes}")
    lines.append(f"Total: {format_money(order.total)}")
    return "\n".join(lines)


def format_product_line(product: Product) -> str:
    line = f"{product.id}. {product.name} - {format_money(product.unit_price)} (Stock: {product.stock})"
    return line if product.active else line + " [inactive]"


def format_order_line(order: Order) -> str:
    return f"#{order.id}  {order.placed_at}  {order.status.value:<10}  {order.item_count} items  {format_money(order.total)}"


def _read_int(prompt: str) -> Optional[int]:
    try:
        return int(input(prompt))
    except ValueError:
        print("Please enter a valid number.")
        return None


def interactive_cli(settings: Optional[Settings] = None) -> None:
    """Provide a simple command-line interface to the ordering core."""
    settings = settings or load_settings()
    app = OrderingApp()
    gate = AccessGate(settings.ad_seconds)
    gate.on_unlock(lambda: print("Thanks for watching! Ordering is now available."))
    basket: Basket = app.new_basket()
    customer: Optional[Customer] = None

    def print_menu() -> None:
        print("\n-- Point of Sale --")
        print(f"Ordering: {gate.state.value}")
        if customer:
            print(f"Customer: {customer.name} ({customer.external_id})")
        print("1. Watch advertisement")
        print("2. Identify customer")
        print("3. List / search products")
        print("4. Add product to basket")
        print("5. View basket")
        print("6. Confirm order")
        print("7. My orders")
        print("8. Cancel order")
        print("9. Update order status")
        print("c. Full catalogue")
        print("m. Show metrics")
        print("0. Exit")

    while True:
        print_menu()
        choice = input("Select an option: ").strip().lower()
        try:
            if choice == "1":
                gate.play_advertisement(tick=lambda s: print(f"Advertisement... {s}s"))
            elif choice == "0":
                print("Exiting application.")
                break
            elif choice == "m":
                print(generate_metrics_text().decode("utf-8"))
            elif not gate.is_unlocked:
                print("Please watch the advertisement first.")
            elif choice == "2":
                external_id = input("Identification: ").strip()
                found = app.find_customer(external_id)
                if found:
                    print(f"Welcome back, {found.name}!")
                    customer = found
                    continue
                print("New customer, please register.")
                name = input("Full name: ").strip()
                email = input("Email (optional): ").strip() or None
                phone = input("Phone (optional): ").strip() or None
                address = input("Address (optional): ").strip() or None
                customer = app.register_customer(external_id, name, email=email, phone=phone, address=address)
                print(f"Registered {customer.name}.")
            elif choice == "3":
                term = input("Search (blank for all): ").strip()
                products = app.search_products(term)
                if not products:
                    print("No products available.")
                for p in products:
                    print(format_product_line(p))
            elif choice == "c":
                for p in app.list_catalog():
                    print(format_product_line(p))
            elif choice == "4":
                pid = _read_int("Enter Product ID: ")
                qty = _read_int("Enter quantity: ")
                if pid is None or qty is None:
                    continue
                ok, msg = basket.add(pid, qty)
                print(msg)
            elif choice == "5":
                if basket.is_empty():
                    print("Basket is empty.")
                    continue
                for line in basket.lines():
                    print(f"Product {line.product_id} x {line.quantity}")
                print(f"{basket.item_count()} items, about {format_money(basket.estimated_total())}")
            elif choice == "6":
                if customer is None:
                    print("Please identify the customer first.")
                    continue
                notes = input("Notes (optional): ").strip() or None
                order = app.create_order(customer.id, basket.lines(), notes=notes)
                basket.clear()
                print("\nOrder placed! Receipt:")
                print(format_receipt(order, customer))
            elif choice == "7":
                if customer is None:
                    print("Please identify the customer first.")
                    continue
                orders = app.get_orders_by_customer(customer.id)
                if not orders:
                    print("No orders yet.")
                for order in orders:
                    print(format_order_line(order))
            elif choice == "8":
                order_id = _read_int("Order ID: ")
                if order_id is not None and app.cancel_order(order_id):
                    print(f"Order {order_id} cancelled.")
            elif choice == "9":
                order_id = _read_int("Order ID: ")
                if order_id is None:
                    continue
                names = ", ".join(s.value for s in OrderStatus)
                status = input(f"New status ({names}): ")
                app.update_status(order_id, status)
                print(f"Order {order_id} is now {OrderStatus.parse(status).value}.")
            else:
                print("Invalid option. Please try again.")
        except OrderingError as exc:
            print(f"Error: {exc}")


def main() -> None:
    settings = load_settings()
    configure_logging(settings.log_dir, settings.log_level_value)
    try:
        interactive_cli(settings)
    except KeyboardInterrupt:
        print("\nInterrupted by user. Exiting.")
        sys.exit(0)


if __name__ == "__main__":
    main()
