import unittest
from decimal import Decimal

from backend.time_cost import calculate_time_cost, format_time_cost


class TimeCostTests(unittest.TestCase):
    def test_divides_amount_by_wage(self) -> None:
        self.assertEqual(calculate_time_cost(100, 25), Decimal("4"))

    def test_missing_wage_costs_nothing(self) -> None:
        self.assertEqual(calculate_time_cost(100, 0), Decimal("0"))
        self.assertEqual(calculate_time_cost(Decimal("100"), Decimal("-5")), Decimal("0"))

    def test_rejects_non_finite_amount(self) -> None:
        with self.assertRaises(ValueError):
            calculate_time_cost(float("inf"), 25)


class FormatTimeCostTests(unittest.TestCase):
    def test_under_a_minute(self) -> None:
        self.assertEqual(format_time_cost(0.001), "less than a minute")

    def test_rounds_up_to_one_minute(self) -> None:
        self.assertEqual(format_time_cost(0.0166), "1 minute")

    def test_minutes(self) -> None:
        self.assertEqual(format_time_cost(0.75), "45 minutes")

    def test_hours_and_minutes(self) -> None:
        self.assertEqual(format_time_cost(1.5), "1h 30m")

    def test_whole_hours(self) -> None:
        self.assertEqual(format_time_cost(2), "2 hours")
        self.assertEqual(format_time_cost(Decimal("1")), "1 hour")

    def test_days_and_hours(self) -> None:
        self.assertEqual(format_time_cost(25), "1d 1h")

    def test_whole_days(self) -> None:
        self.assertEqual(format_time_cost(48), "2 days")

    def test_no_sixty_minute_carry(self) -> None:
        self.assertEqual(format_time_cost(Decimal("1.999")), "2 hours")
        self.assertEqual(format_time_cost(Decimal("23.999")), "1 day")


if __name__ == "__main__":
    unittest.main()
