import support  # noqa: F401  (sets up sys.path)

import sqlite3
import unittest
from dataclasses import replace
from decimal import Decimal

from dao import (
    Customer,
    CustomerDAO,
    OrderDAO,
    ProductDAO,
    SQLITE_MAX_INT,
    get_request_connection,
    transaction,
    utc_now,
)
from errors import InUseError, ValidationError
from order_status import OrderStatus
from pricing import price_line
from support import drop_db, fresh_db


class TestDatabaseIntegration(unittest.TestCase):
    """
    Integration tests at the DAO level: tables, FK integrity, stock primitive,
    order ledger and status compare-and-set.
    """

    def setUp(self):
        self.db_path = fresh_db()
        # Instantiate DAOs (auto-creates tables)
        self.product_dao = ProductDAO()
        self.customer_dao = CustomerDAO()
        self.order_dao = OrderDAO()
        self.conn = get_request_connection()

        self.cid = self.customer_dao.insert_customer(Customer(id=None, external_id="ID-001", name="Ana"))
        self.p1 = self.product_dao.add_product("Apple", "0.50", 10)
        self.p2 = self.product_dao.add_product("Banana", 1.25, 4)

    def tearDown(self):
        drop_db(self.db_path)

    def _insert_order(self, *lines):
        priced = [price_line(pid, qty, self.product_dao.get_product(pid).unit_price) for pid, qty in lines]
        total = sum((ln.subtotal for ln in priced), Decimal("0.00"))
        return self.order_dao.insert_order(self.cid, utc_now(), total, priced)

    def test_tables_exist(self):
        tables = {r[0] for r in self.conn.execute("SELECT name FROM sqlite_master WHERE type='table';")}
        for name in ("Product", "Customer", "SalesOrder", "LineItem"):
            self.assertIn(name, tables)

    def test_product_roundtrip_keeps_decimal_price(self):
        p = self.product_dao.get_product(self.p2)
        self.assertEqual(p.unit_price, Decimal("1.25"))
        self.assertEqual(p.stock, 4)
        self.assertTrue(p.active)
        stored = self.conn.execute("SELECT unit_price FROM Product WHERE id = ?;", (self.p2,)).fetchone()[0]
        self.assertEqual(stored, "1.25")

    def test_add_product_validation(self):
        with self.assertRaises(ValidationError) as ctx:
            self.product_dao.add_product("  ", "1.00", -1)
        self.assertEqual(len(ctx.exception.errors), 2)
        with self.assertRaises(ValidationError):
            self.product_dao.add_product("Pear", "1.001", 1)

    def test_try_decrement_stock(self):
        self.assertTrue(self.product_dao.try_decrement_stock(self.p2, 4))
        self.assertEqual(self.product_dao.available_stock(self.p2), 0)
        self.assertFalse(self.product_dao.try_decrement_stock(self.p2, 1))
        self.assertEqual(self.product_dao.available_stock(self.p2), 0)
        self.assertFalse(self.product_dao.try_decrement_stock(9999, 1))
        with self.assertRaises(ValidationError):
            self.product_dao.try_decrement_stock(self.p1, 0)

    def test_inactive_product_cannot_be_decremented(self):
        self.assertTrue(self.product_dao.set_active(self.p1, False))
        self.assertIsNone(self.product_dao.get_active(self.p1))
        self.assertFalse(self.product_dao.check_stock(self.p1, 1))
        self.assertFalse(self.product_dao.try_decrement_stock(self.p1, 1))
        self.assertEqual(self.product_dao.available_stock(self.p1), 10)

    def test_increment_stock(self):
        self.assertTrue(self.product_dao.increment_stock(self.p1, 5))
        self.assertEqual(self.product_dao.available_stock(self.p1), 15)
        self.assertFalse(self.product_dao.increment_stock(9999, 5))
        with self.assertRaises(ValidationError):
            self.product_dao.increment_stock(self.p1, SQLITE_MAX_INT + 1)
        with self.assertRaises(ValidationError):
            self.product_dao.try_decrement_stock(self.p1, SQLITE_MAX_INT + 1)
        self.assertFalse(self.product_dao.check_stock(self.p1, SQLITE_MAX_INT + 1))

    def test_stock_check_constraint(self):
        with self.assertRaises(sqlite3.IntegrityError):
            self.conn.execute("UPDATE Product SET stock = -1 WHERE id = ?;", (self.p1,))

    def test_list_products_includes_inactive(self):
        self.product_dao.set_active(self.p1, False)
        self.assertEqual([p.id for p in self.product_dao.list_products()], [self.p1, self.p2])
        self.assertEqual([p.id for p in self.product_dao.list_active()], [self.p2])

    def test_search_by_name(self):
        self.product_dao.add_product("100% Juice", "2.00", 3)
        self.assertEqual([p.name for p in self.product_dao.search_by_name("an")], ["Banana"])
        self.assertEqual([p.name for p in self.product_dao.search_by_name("%")], ["100% Juice"])
        self.assertEqual(len(self.product_dao.search_by_name("")), 3)
        self.product_dao.set_active(self.p2, False)
        self.assertEqual(self.product_dao.search_by_name("banana"), [])

    def test_insert_order_and_read_back(self):
        oid = self._insert_order((self.p1, 3), (self.p2, 2))
        order = self.order_dao.get_order(oid)
        self.assertEqual(order.status, OrderStatus.PENDING)
        self.assertEqual(order.total, Decimal("4.00"))
        self.assertEqual([i.product_id for i in order.items], [self.p1, self.p2])
        self.assertEqual(order.items[0].subtotal, Decimal("1.50"))
        self.assertEqual(order.items[1].product_name, "Banana")
        self.assertEqual(order.item_count, 5)

    def test_line_subtotal_is_recomputed(self):
        forged = replace(price_line(self.p1, 2, Decimal("0.50")), subtotal=Decimal("99.00"))
        oid = self.order_dao.insert_order(self.cid, utc_now(), Decimal("1.00"), [forged])
        self.assertEqual(self.order_dao.get_items(oid)[0].subtotal, Decimal("1.00"))

    def test_compare_and_set_status(self):
        oid = self._insert_order((self.p1, 1))
        self.assertTrue(self.order_dao.compare_and_set_status(oid, OrderStatus.PENDING, OrderStatus.PROCESSING))
        self.assertFalse(self.order_dao.compare_and_set_status(oid, OrderStatus.PENDING, OrderStatus.CANCELLED))
        self.assertEqual(self.order_dao.get_status(oid), OrderStatus.PROCESSING)
        self.assertIsNone(self.order_dao.get_status(9999))

    def test_list_by_customer_newest_first(self):
        first = self._insert_order((self.p1, 1))
        second = self._insert_order((self.p2, 1))
        self.assertEqual([o.id for o in self.order_dao.list_by_customer(self.cid)], [second, first])
        self.assertEqual(self.order_dao.list_by_customer(9999), [])
        self.order_dao.compare_and_set_status(first, OrderStatus.PENDING, OrderStatus.CANCELLED)
        self.assertEqual([o.id for o in self.order_dao.list_orders(OrderStatus.CANCELLED)], [first])

    def test_delete_order_removes_line_items(self):
        oid = self._insert_order((self.p1, 1), (self.p2, 1))
        self.assertTrue(self.order_dao.delete_order(oid))
        self.assertIsNone(self.order_dao.get_order(oid))
        count = self.conn.execute("SELECT COUNT(*) FROM LineItem WHERE order_id = ?;", (oid,)).fetchone()[0]
        self.assertEqual(count, 0)

    def test_referenced_rows_cannot_be_deleted(self):
        self._insert_order((self.p1, 1))
        with self.assertRaises(InUseError):
            self.product_dao.delete_product(self.p1)
        with self.assertRaises(InUseError):
            self.customer_dao.delete_customer(self.cid)
        self.assertIsNotNone(self.product_dao.get_product(self.p1))
        # Unreferenced product can go
        self.assertTrue(self.product_dao.delete_product(self.p2))

    def test_order_requires_existing_customer(self):
        line = price_line(self.p1, 1, Decimal("0.50"))
        with self.assertRaises(sqlite3.IntegrityError):
            self.order_dao.insert_order(9999, utc_now(), Decimal("0.50"), [line])
        self.assertEqual(self.order_dao.list_orders(), [])

    def test_transaction_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            with transaction(self.conn):
                self.product_dao.try_decrement_stock(self.p1, 4)
                self._insert_order((self.p1, 4))
                raise RuntimeError("boom")
        self.assertEqual(self.product_dao.available_stock(self.p1), 10)
        self.assertEqual(self.order_dao.list_orders(), [])
        self.assertFalse(self.conn.in_transaction)

    def test_customer_external_id_is_unique(self):
        with self.assertRaises(sqlite3.IntegrityError):
            self.customer_dao.insert_customer(Customer(id=None, external_id="ID-001", name="Other"))
        self.assertIsNotNone(self.customer_dao.find_by_external_id("ID-001"))


if __name__ == "__main__":
    unittest.main()
