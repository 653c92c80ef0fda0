"""
Data access layer for the ordering core.

SQLite through the standard library, one connection per thread.  Every
connection runs in autocommit mode; multi-statement work is grouped with
:func:`transaction`, which opens ``BEGIN IMMEDIATE`` so concurrent writers
queue on the database write lock (bounded by ``busy_timeout``) instead of
failing on a lock upgrade half way through an order.

Stock is only ever changed by single conditional ``UPDATE`` statements
whose affected-row count tells the caller whether the change applied.
"""

from __future__ import annotations

import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterator, List, Optional, Sequence

from config import current_settings
from errors import InternalError, InUseError, ValidationError
from order_status import OrderStatus
from pricing import PricedLine, to_money

logger = logging.getLogger(__name__)

_thread_local = threading.local()

# SQLite INTEGER is a signed 64-bit value.
SQLITE_MAX_INT = 2**63 - 1

# ------------------------------------------------------------------------------
# Utility helpers
# ------------------------------------------------------------------------------
def _ensure_parent_dir(path: str) -> None:
    parent = os.path.dirname(os.path.abspath(path))
    if parent and not os.path.exists(parent):
        os.makedirs(parent, exist_ok=True)


def utc_now() -> str:
    # Fixed width so timestamps sort lexicographically.
    return datetime.now(timezone.utc).isoformat(timespec="microseconds")


def is_count(value: object) -> bool:
    """True for an int (not a bool) between 1 and :data:`SQLITE_MAX_INT`."""
    return isinstance(value, int) and not isinstance(value, bool) and 0 < value <= SQLITE_MAX_INT


def _escape_like(term: str) -> str:
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


# ------------------------------------------------------------------------------
# Connection management
# ------------------------------------------------------------------------------
def _new_connection(db_path: str, busy_timeout_ms: int) -> sqlite3.Connection:
    """Open a connection configured for concurrent writers.

    ``isolation_level=None`` disables the sqlite3 module's implicit
    transactions; :func:`transaction` issues BEGIN/COMMIT itself.  The busy
    timeout makes a writer wait for the lock instead of failing at once,
    and WAL lets readers proceed while a write transaction is open.

    Raises:
        sqlite3.OperationalError: If the database cannot be opened.
    """
    _ensure_parent_dir(db_path)
    try:
        conn = sqlite3.connect(
            db_path,
            check_same_thread=False,
            timeout=busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON;")
        conn.execute(f"PRAGMA busy_timeout = {int(busy_timeout_ms)};")
        try:
            conn.execute("PRAGMA journal_mode = WAL;")
        except sqlite3.OperationalError:
            # Unsupported filesystem; rollback journal still works
            pass
        return conn
    except sqlite3.OperationalError as e:
        logger.error(f"DB open failed for {db_path}: {e}")
        raise


def get_request_connection() -> sqlite3.Connection:
    """Return this thread's connection, reopening it if the DB path changed.

    Raises:
        InternalError: If the settings cannot be resolved.
    """
    try:
        settings = current_settings()
    except ValueError as exc:
        raise InternalError(f"Invalid settings: {exc}") from exc
    conn = getattr(_thread_local, "conn", None)
    if conn is not None and getattr(_thread_local, "path", None) == settings.db_path:
        return conn
    if conn is not None:
        conn.close()
    conn = _new_connection(settings.db_path, settings.busy_timeout_ms)
    _thread_local.conn = conn
    _thread_local.path = settings.db_path
    return conn


def close_request_connection() -> None:
    """Close this thread's connection, if any."""
    conn = getattr(_thread_local, "conn", None)
    if conn is not None:
        conn.close()
    _thread_local.conn = None
    _thread_local.path = None


@contextmanager
def transaction(conn: sqlite3.Connection) -> Iterator[sqlite3.Connection]:
    """All-or-nothing block on ``conn``.

    Nested use joins the enclosing transaction, so DAO methods can be
    called on their own or composed into a larger unit of work.
    """
    if conn.in_transaction:
        yield conn
        return
    conn.execute("BEGIN IMMEDIATE;")
    try:
        yield conn
        conn.execute("COMMIT;")
    except BaseException:
        if conn.in_transaction:
            conn.execute("ROLLBACK;")
        raise


# ------------------------------------------------------------------------------
# Domain models
# ------------------------------------------------------------------------------

@dataclass
class Product:
    id: int
    name: str
    unit_price: Decimal
    stock: int
    active: bool = True
    description: str | None = None
    created_at: str | None = None


@dataclass
class Customer:
    id: int | None
    external_id: str
    name: str
    email: str | None = None
    phone: str | None = None
    address: str | None = None
    created_at: str | None = None
    last_order_at: str | None = None


@dataclass
class LineItem:
    id: int
    order_id: int
    product_id: int
    quantity: int
    unit_price_at_order: Decimal
    subtotal: Decimal
    # Joined from Product for display; not part of the snapshot.
    product_name: str | None = None


@dataclass
class Order:
    id: int
    customer_id: int
    placed_at: str
    total: Decimal
    status: OrderStatus
    notes: str | None = None
    items: List[LineItem] = field(default_factory=list)

    @property
    def item_count(self) -> int:
        return sum(item.quantity for item in self.items)


_PRODUCT_COLUMNS = "id, name, unit_price, stock, active, description, created_at"
_CUSTOMER_COLUMNS = "id, external_id, name, email, phone, address, created_at, last_order_at"
_ORDER_COLUMNS = "id, customer_id, placed_at, total, status, notes"


def _product_from_row(row: sqlite3.Row) -> Product:
    return Product(
        id=row["id"],
        name=row["name"],
        unit_price=Decimal(row["unit_price"]),
        stock=row["stock"],
        active=bool(row["active"]),
        description=row["description"],
        created_at=row["created_at"],
    )


def _customer_from_row(row: sqlite3.Row) -> Customer:
    return Customer(*row)


def _order_from_row(row: sqlite3.Row) -> Order:
    return Order(
        id=row["id"],
        customer_id=row["customer_id"],
        placed_at=row["placed_at"],
        total=Decimal(row["total"]),
        status=OrderStatus(row["status"]),
        notes=row["notes"],
    )


def _line_item_from_row(row: sqlite3.Row) -> LineItem:
    return LineItem(
        id=row["id"],
        order_id=row["order_id"],
        product_id=row["product_id"],
        quantity=row["quantity"],
        unit_price_at_order=Decimal(row["unit_price_at_order"]),
        subtotal=Decimal(row["subtotal"]),
        product_name=row["product_name"],
    )


# ------------------------------------------------------------------------------
# Base DAO
# ------------------------------------------------------------------------------

class BaseDAO:
    """
    Base class for all DAOs.

    A DAO either uses the connection it was given or, by default, the
    calling thread's connection, so one DAO instance can be shared across
    threads.  Tables are created on construction.
    """

    def __init__(self, conn: Optional[sqlite3.Connection] = None) -> None:
        self._conn_explicit = conn
        with transaction(self._conn()):
            self.create_table()

    def _conn(self) -> sqlite3.Connection:
        return self._conn_explicit if self._conn_explicit is not None else get_request_connection()

    def transaction(self):
        """Open (or join) a transaction on this DAO's connection."""
        return transaction(self._conn())

    def create_table(self) -> None:
        """Default no-op; subclasses create their tables with IF NOT EXISTS."""
        return


# ------------------------------------------------------------------------------
# Product DAO (catalog store)
# ------------------------------------------------------------------------------

class ProductDAO(BaseDAO):
    """DAO for Product records and the stock primitive."""

    def create_table(self) -> None:
        self._conn().execute(
            """
            CREATE TABLE IF NOT EXISTS Product (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                description TEXT,
                unit_price TEXT NOT NULL,
                stock INTEGER NOT NULL CHECK (stock >= 0),
                active INTEGER NOT NULL DEFAULT 1,
                created_at TEXT NOT NULL
            );
            """
        )

    def add_product(
        self,
        name: str,
        unit_price: object,
        stock: int,
        description: str | None = None,
        active: bool = True,
    ) -> int:
        errors = []
        name = (name or "").strip()
        if not name:
            errors.append("Product name is required")
        elif len(name) > 255:
            errors.append("Product name cannot be longer than 255 characters")
        if isinstance(stock, bool) or not isinstance(stock, int) or not 0 <= stock <= SQLITE_MAX_INT:
            errors.append("Stock must be a non-negative integer within range")
        if errors:
            raise ValidationError(errors)
        price = to_money(unit_price, "unit price")
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "INSERT INTO Product (name, description, unit_price, stock, active, created_at)"
                " VALUES (?, ?, ?, ?, ?, ?);",
                (name, description, str(price), stock, 1 if active else 0, utc_now()),
            )
        return cur.lastrowid

    def get_product(self, product_id: int) -> Optional[Product]:
        """Return the product whether or not it is active."""
        row = self._conn().execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM Product WHERE id = ?;", (product_id,)
        ).fetchone()
        return _product_from_row(row) if row else None

    def get_active(self, product_id: int) -> Optional[Product]:
        row = self._conn().execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM Product WHERE id = ? AND active = 1;", (product_id,)
        ).fetchone()
        return _product_from_row(row) if row else None

    def list_products(self) -> List[Product]:
        rows = self._conn().execute(f"SELECT {_PRODUCT_COLUMNS} FROM Product ORDER BY id;").fetchall()
        return [_product_from_row(r) for r in rows]

    def list_active(self) -> List[Product]:
        rows = self._conn().execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM Product WHERE active = 1 ORDER BY name, id;"
        ).fetchall()
        return [_product_from_row(r) for r in rows]

    def search_by_name(self, term: str | None) -> List[Product]:
        """Case-insensitive substring search over active products.

        A blank term returns every active product.
        """
        term = (term or "").strip()
        if not term:
            return self.list_active()
        rows = self._conn().execute(
            f"SELECT {_PRODUCT_COLUMNS} FROM Product"
            " WHERE active = 1 AND name LIKE ? ESCAPE '\\' ORDER BY name, id;",
            (f"%{_escape_like(term)}%",),
        ).fetchall()
        return [_product_from_row(r) for r in rows]

    def check_stock(self, product_id: int, qty: int) -> bool:
        """True iff the product is active and has at least ``qty`` in stock.

        Advisory only: the answer may be stale by the time an order
        commits.  :meth:`try_decrement_stock` is the authoritative check.
        """
        if qty > SQLITE_MAX_INT:
            return False
        row = self._conn().execute(
            "SELECT 1 FROM Product WHERE id = ? AND active = 1 AND stock >= ?;",
            (product_id, qty),
        ).fetchone()
        return row is not None

    def available_stock(self, product_id: int) -> Optional[int]:
        row = self._conn().execute("SELECT stock FROM Product WHERE id = ?;", (product_id,)).fetchone()
        return row["stock"] if row else None

    def try_decrement_stock(self, product_id: int, qty: int) -> bool:
        """
        Atomically decrease the stock of an active product by ``qty`` only if
        enough inventory is available.  Returns True if the stock was
        decremented, False if the product is missing, inactive or short.

        The availability check and the write are one statement, so two
        concurrent callers can never both take the last units.
        """
        if not is_count(qty):
            raise ValidationError("Quantity to decrement must be a positive integer within range")
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "UPDATE Product SET stock = stock - ? WHERE id = ? AND active = 1 AND stock >= ?;",
                (qty, product_id, qty),
            )
        return cur.rowcount > 0

    def increment_stock(self, product_id: int, qty: int) -> bool:
        """Return ``qty`` units to stock.

        Not idempotent: calling it twice adds the units twice.  Used to
        restore stock for cancelled orders and to receive deliveries.

        Returns:
            True if the product exists and was updated, False otherwise.
        """
        if not is_count(qty):
            raise ValidationError("Quantity to increment must be a positive integer within range")
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "UPDATE Product SET stock = stock + ? WHERE id = ?;",
                (qty, product_id),
            )
        return cur.rowcount > 0

    def update_price(self, product_id: int, unit_price: object) -> bool:
        """Change the catalog price.  Existing line items keep their snapshot."""
        price = to_money(unit_price, "unit price")
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "UPDATE Product SET unit_price = ? WHERE id = ?;", (str(price), product_id)
            )
        return cur.rowcount > 0

    def set_active(self, product_id: int, active: bool) -> bool:
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "UPDATE Product SET active = ? WHERE id = ?;", (1 if active else 0, product_id)
            )
        return cur.rowcount > 0

    def delete_product(self, product_id: int) -> bool:
        """Delete a product that no order line references.

        Raises:
            InUseError: If any line item references the product; deactivate
                it with :meth:`set_active` instead.
        """
        conn = self._conn()
        with transaction(conn):
            in_use = conn.execute(
                "SELECT COUNT(*) FROM LineItem WHERE product_id = ?;", (product_id,)
            ).fetchone()[0]
            if in_use:
                raise InUseError("product", product_id, f"{in_use} order line(s)")
            cur = conn.execute("DELETE FROM Product WHERE id = ?;", (product_id,))
        return cur.rowcount > 0


# ------------------------------------------------------------------------------
# Customer DAO
# ------------------------------------------------------------------------------

class CustomerDAO(BaseDAO):
    """DAO for Customer records.  ``external_id`` is unique."""

    def create_table(self) -> None:
        self._conn().execute(
            """
            CREATE TABLE IF NOT EXISTS Customer (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                external_id TEXT NOT NULL UNIQUE,
                name TEXT NOT NULL,
                email TEXT,
                phone TEXT,
                address TEXT,
                created_at TEXT NOT NULL,
                last_order_at TEXT
            );
            """
        )

    def get_customer(self, customer_id: int) -> Optional[Customer]:
        row = self._conn().execute(
            f"SELECT {_CUSTOMER_COLUMNS} FROM Customer WHERE id = ?;", (customer_id,)
        ).fetchone()
        return _customer_from_row(row) if row else None

    def find_by_external_id(self, external_id: str) -> Optional[Customer]:
        row = self._conn().execute(
            f"SELECT {_CUSTOMER_COLUMNS} FROM Customer WHERE external_id = ?;", (external_id,)
        ).fetchone()
        return _customer_from_row(row) if row else None

    def search_by_name(self, term: str) -> List[Customer]:
        rows = self._conn().execute(
            f"SELECT {_CUSTOMER_COLUMNS} FROM Customer WHERE name LIKE ? ESCAPE '\\' ORDER BY name, id;",
            (f"%{_escape_like(term)}%",),
        ).fetchall()
        return [_customer_from_row(r) for r in rows]

    def insert_customer(self, customer: Customer) -> int:
        """Insert ``customer`` and return its new id.

        Raises:
            sqlite3.IntegrityError: If ``external_id`` is already taken.
        """
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "INSERT INTO Customer (external_id, name, email, phone, address, created_at, last_order_at)"
                " VALUES (?, ?, ?, ?, ?, ?, ?);",
                (
                    customer.external_id,
                    customer.name,
                    customer.email,
                    customer.phone,
                    customer.address,
                    customer.created_at or utc_now(),
                    customer.last_order_at,
                ),
            )
        return cur.lastrowid

    def update_customer(self, customer: Customer) -> bool:
        """Overwrite the contact fields and ``external_id`` of an existing customer."""
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "UPDATE Customer SET external_id = ?, name = ?, email = ?, phone = ?, address = ?"
                " WHERE id = ?;",
                (
                    customer.external_id,
                    customer.name,
                    customer.email,
                    customer.phone,
                    customer.address,
                    customer.id,
                ),
            )
        return cur.rowcount > 0

    def touch_last_order(self, customer_id: int, placed_at: str) -> bool:
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "UPDATE Customer SET last_order_at = ? WHERE id = ?;", (placed_at, customer_id)
            )
        return cur.rowcount > 0

    def delete_customer(self, customer_id: int) -> bool:
        """Delete a customer with no orders.

        Raises:
            InUseError: If any order belongs to the customer.
        """
        conn = self._conn()
        with transaction(conn):
            in_use = conn.execute(
                "SELECT COUNT(*) FROM SalesOrder WHERE customer_id = ?;", (customer_id,)
            ).fetchone()[0]
            if in_use:
                raise InUseError("customer", customer_id, f"{in_use} order(s)")
            cur = conn.execute("DELETE FROM Customer WHERE id = ?;", (customer_id,))
        return cur.rowcount > 0


# ------------------------------------------------------------------------------
# Order DAO (order ledger)
# ------------------------------------------------------------------------------

class OrderDAO(BaseDAO):
    """DAO for the SalesOrder and LineItem tables."""

    def create_table(self) -> None:
        conn = self._conn()
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS SalesOrder (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                customer_id INTEGER NOT NULL,
                placed_at TEXT NOT NULL,
                total TEXT NOT NULL,
                status TEXT NOT NULL DEFAULT 'Pending'
                    CHECK (status IN ('Pending', 'Processing', 'Completed', 'Cancelled')),
                notes TEXT,
                FOREIGN KEY (customer_id) REFERENCES Customer(id) ON DELETE RESTRICT
            );
            """
        )
        conn.execute(
            """
            CREATE TABLE IF NOT EXISTS LineItem (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_id INTEGER NOT NULL,
                product_id INTEGER NOT NULL,
                quantity INTEGER NOT NULL CHECK (quantity > 0),
                unit_price_at_order TEXT NOT NULL,
                subtotal TEXT NOT NULL,
                FOREIGN KEY (order_id) REFERENCES SalesOrder(id) ON DELETE CASCADE,
                FOREIGN KEY (product_id) REFERENCES Product(id) ON DELETE RESTRICT
            );
            """
        )
        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_salesorder_customer ON SalesOrder (customer_id, placed_at);"
        )
        conn.execute("CREATE INDEX IF NOT EXISTS idx_lineitem_order ON LineItem (order_id);")
        conn.execute("CREATE INDEX IF NOT EXISTS idx_lineitem_product ON LineItem (product_id);")

    def insert_order(
        self,
        customer_id: int,
        placed_at: str,
        total: Decimal,
        lines: Sequence[PricedLine],
        notes: str | None = None,
        status: OrderStatus = OrderStatus.PENDING,
    ) -> int:
        """Insert an order and its line items; returns the order id.

        Subtotals are recomputed from quantity and unit price here rather
        than trusted from ``lines``.
        """
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "INSERT INTO SalesOrder (customer_id, placed_at, total, status, notes)"
                " VALUES (?, ?, ?, ?, ?);",
                (customer_id, placed_at, str(total), status.value, notes),
            )
            order_id = cur.lastrowid
            conn.executemany(
                "INSERT INTO LineItem (order_id, product_id, quantity, unit_price_at_order, subtotal)"
                " VALUES (?, ?, ?, ?, ?);",
                [
                    (order_id, ln.product_id, ln.quantity, str(ln.unit_price), str(ln.unit_price * ln.quantity))
                    for ln in lines
                ],
            )
        return order_id

    def get_items(self, order_id: int) -> List[LineItem]:
        rows = self._conn().execute(
            "SELECT li.id, li.order_id, li.product_id, li.quantity, li.unit_price_at_order,"
            " li.subtotal, p.name AS product_name"
            " FROM LineItem li LEFT JOIN Product p ON p.id = li.product_id"
            " WHERE li.order_id = ? ORDER BY li.id;",
            (order_id,),
        ).fetchall()
        return [_line_item_from_row(r) for r in rows]

    def get_order(self, order_id: int) -> Optional[Order]:
        """Return the order with its line items in basket order, or None."""
        row = self._conn().execute(
            f"SELECT {_ORDER_COLUMNS} FROM SalesOrder WHERE id = ?;", (order_id,)
        ).fetchone()
        if not row:
            return None
        order = _order_from_row(row)
        order.items = self.get_items(order.id)
        return order

    def get_status(self, order_id: int) -> Optional[OrderStatus]:
        row = self._conn().execute("SELECT status FROM SalesOrder WHERE id = ?;", (order_id,)).fetchone()
        return OrderStatus(row["status"]) if row else None

    def _with_items(self, rows: Sequence[sqlite3.Row]) -> List[Order]:
        orders = [_order_from_row(r) for r in rows]
        for order in orders:
            order.items = self.get_items(order.id)
        return orders

    def list_by_customer(self, customer_id: int) -> List[Order]:
        """All orders of a customer, most recent first."""
        rows = self._conn().execute(
            f"SELECT {_ORDER_COLUMNS} FROM SalesOrder WHERE customer_id = ?"
            " ORDER BY placed_at DESC, id DESC;",
            (customer_id,),
        ).fetchall()
        return self._with_items(rows)

    def list_orders(self, status: OrderStatus | None = None) -> List[Order]:
        conn = self._conn()
        if status is not None:
            rows = conn.execute(
                f"SELECT {_ORDER_COLUMNS} FROM SalesOrder WHERE status = ? ORDER BY id;",
                (status.value,),
            ).fetchall()
        else:
            rows = conn.execute(f"SELECT {_ORDER_COLUMNS} FROM SalesOrder ORDER BY id;").fetchall()
        return self._with_items(rows)

    def compare_and_set_status(self, order_id: int, expected: OrderStatus, new: OrderStatus) -> bool:
        """Set ``new`` only if the stored status is still ``expected``.

        Returns False when another writer changed the status first (or the
        order does not exist).  Only the status column is touched.
        """
        conn = self._conn()
        with transaction(conn):
            cur = conn.execute(
                "UPDATE SalesOrder SET status = ? WHERE id = ? AND status = ?;",
                (new.value, order_id, expected.value),
            )
        return cur.rowcount > 0

    def delete_order(self, order_id: int) -> bool:
        """Delete an order together with its line items.

        Does not touch stock; callers only purge orders that are final.
        """
        conn = self._conn()
        with transaction(conn):
            conn.execute("DELETE FROM LineItem WHERE order_id = ?;", (order_id,))
            cur = conn.execute("DELETE FROM SalesOrder WHERE id = ?;", (order_id,))
        return cur.rowcount > 0
