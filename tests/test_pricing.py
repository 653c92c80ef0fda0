import support  # noqa: F401  (sets up sys.path)

import unittest
from decimal import Decimal

from errors import ValidationError
from pricing import PricedLine, format_money, order_total, price_line, to_money


class TestMoney(unittest.TestCase):

    def test_to_money_accepts_numbers_and_strings(self):
        self.assertEqual(to_money(10), Decimal("10.00"))
        self.assertEqual(to_money("4.5"), Decimal("4.50"))
        self.assertEqual(to_money(Decimal("0")), Decimal("0.00"))
        # repr keeps the float as typed
        self.assertEqual(to_money(9.99), Decimal("9.99"))

    def test_to_money_rejects_bad_values(self):
        for bad in (-1, "-0.01", "1.005", "abc", None, True, float("nan"), float("inf"), "1e1000"):
            with self.subTest(value=bad):
                with self.assertRaises(ValidationError):
                    to_money(bad)

    def test_error_names_the_field(self):
        with self.assertRaises(ValidationError) as ctx:
            to_money(-3, "unit price")
        self.assertIn("unit price", str(ctx.exception))


class TestPricing(unittest.TestCase):

    def test_price_line_multiplies_exactly(self):
        line = price_line(7, 3, Decimal("0.10"))
        self.assertEqual(line.subtotal, Decimal("0.30"))
        self.assertEqual(line.unit_price, Decimal("0.10"))
        self.assertEqual((line.product_id, line.quantity), (7, 3))

    def test_price_line_rejects_non_positive_quantity(self):
        for qty in (0, -2, 1.5, True):
            with self.subTest(qty=qty):
                with self.assertRaises(ValidationError):
                    price_line(1, qty, Decimal("1.00"))

    def test_free_product_prices_to_zero(self):
        self.assertEqual(price_line(1, 4, Decimal("0")).subtotal, Decimal("0.00"))

    def test_order_total_sums_subtotals(self):
        lines = [price_line(1, 3, Decimal("10.00")), price_line(2, 2, Decimal("0.35"))]
        self.assertEqual(order_total(lines), Decimal("30.70"))
        self.assertEqual(order_total([]), Decimal("0.00"))

    def test_values_beyond_decimal_precision_are_rejected(self):
        with self.assertRaises(ValidationError):
            price_line(1, 10**7, Decimal("99999999999999999999.99"))
        big = PricedLine(1, 1, Decimal("99999999999999999999999999.99"), Decimal("99999999999999999999999999.99"))
        with self.assertRaises(ValidationError):
            order_total([big, big])

    def test_format_money(self):
        self.assertEqual(format_money(Decimal("1234.5")), "$1,234.50")
        self.assertEqual(format_money(Decimal("0")), "$0.00")


if __name__ == "__main__":
    unittest.main()
