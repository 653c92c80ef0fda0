import support  # noqa: F401  (sets up sys.path)

import unittest
from decimal import Decimal

from app import BasketLine, OrderingApp
from cli import AccessGate, GateState, format_order_line, format_product_line, format_receipt
from support import drop_db, fresh_db


class TestAccessGate(unittest.TestCase):

    def test_starts_locked_and_unlocks_after_countdown(self):
        gate = AccessGate(ad_seconds=3)
        self.assertIs(gate.state, GateState.LOCKED)
        sleeps, ticks, unlocked = [], [], []
        gate.on_unlock(lambda: unlocked.append(True))
        gate.play_advertisement(sleep=sleeps.append, tick=ticks.append)
        self.assertTrue(gate.is_unlocked)
        self.assertEqual(ticks, [3, 2, 1])
        self.assertEqual(sleeps, [1, 1, 1])
        self.assertEqual(unlocked, [True])

    def test_listeners_fire_once(self):
        gate = AccessGate(ad_seconds=0)
        calls = []
        gate.on_unlock(lambda: calls.append(1))
        gate.advertisement_finished()
        gate.advertisement_finished()
        self.assertEqual(calls, [1])
        gate.lock()
        self.assertFalse(gate.is_unlocked)


class TestBasketAndReceipt(unittest.TestCase):

    def setUp(self):
        self.db_path = fresh_db()
        self.app = OrderingApp()
        self.customer = self.app.register_customer("ID-CLI", "Carla")
        self.tea = self.app.add_product("Tea", "1.20", 3)
        self.cake = self.app.add_product("Cake", "4.00", 1)
        self.basket = self.app.new_basket()

    def tearDown(self):
        drop_db(self.db_path)

    def test_basket_validation(self):
        ok, msg = self.basket.add(9999, 1)
        self.assertFalse(ok)
        self.assertIn("not found", msg.lower())

        ok, msg = self.basket.add(self.tea.id, 0)
        self.assertFalse(ok)
        self.assertIn("quantity", msg.lower())

        ok, msg = self.basket.add(self.tea.id, 999)
        self.assertFalse(ok)
        self.assertIn("stock", msg.lower())

        self.assertFalse(self.basket.add(self.tea.id, 2**64)[0])
        self.assertFalse(self.basket.add(2**64, 1)[0])
        self.assertTrue(self.basket.is_empty())

    def test_basket_accumulates_and_estimates(self):
        self.assertTrue(self.basket.add(self.tea.id, 2)[0])
        self.assertTrue(self.basket.add(self.cake.id)[0])
        # 3 of 3 teas is fine, a fourth is not
        self.assertTrue(self.basket.add(self.tea.id, 1)[0])
        self.assertFalse(self.basket.add(self.tea.id, 1)[0])
        self.assertEqual(self.basket.lines(), [BasketLine(self.tea.id, 3), BasketLine(self.cake.id, 1)])
        self.assertEqual(self.basket.item_count(), 4)
        self.assertEqual(self.basket.estimated_total(), Decimal("7.60"))

        self.assertTrue(self.basket.set_quantity(self.tea.id, 1)[0])
        self.assertFalse(self.basket.set_quantity(9999, 1)[0])
        self.basket.remove(self.cake.id)
        self.assertEqual(self.basket.lines(), [BasketLine(self.tea.id, 1)])
        self.basket.clear()
        self.assertTrue(self.basket.is_empty())

    def test_product_line_marks_inactive_products(self):
        self.assertEqual(format_product_line(self.tea), f"{self.tea.id}. Tea - $1.20 (Stock: 3)")
        self.app.deactivate_product(self.cake.id)
        retired = [p for p in self.app.list_catalog() if p.id == self.cake.id][0]
        self.assertTrue(format_product_line(retired).endswith("[inactive]"))

    def test_basket_feeds_create_order_and_receipt(self):
        self.basket.add(self.tea.id, 2)
        self.basket.add(self.cake.id, 1)
        order = self.app.create_order(self.customer.id, self.basket.lines(), notes="to go")
        receipt = format_receipt(order, self.customer)
        self.assertIn(f"Order ID: {order.id}", receipt)
        self.assertIn("Customer: Carla (ID-CLI)", receipt)
        self.assertIn("Tea x 2 @ $1.20 = $2.40", receipt)
        self.assertIn("Notes: to go", receipt)
        self.assertIn("Total: $6.40", receipt)
        line = format_order_line(order)
        self.assertIn("Pending", line)
        self.assertIn("3 items", line)


if __name__ == "__main__":
    unittest.main()
