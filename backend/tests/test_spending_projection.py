import unittest
from decimal import Decimal

from backend.spending_projection import (
    OPPORTUNITY_COSTS,
    build_projection,
    get_opportunity_cost,
    project_spending,
    project_spending_with_growth,
)


class ProjectionTests(unittest.TestCase):
    def test_linear_projection(self) -> None:
        self.assertEqual(project_spending(Decimal("12.50"), 12), Decimal("150.00"))
        self.assertEqual(project_spending(Decimal("12.50"), 0), Decimal("0"))

    def test_zero_growth_matches_linear(self) -> None:
        self.assertEqual(
            project_spending_with_growth(Decimal("40"), 24, 0),
            project_spending(Decimal("40"), 24),
        )

    def test_growth_is_never_below_linear(self) -> None:
        for months in (1, 12, 60, 120):
            with self.subTest(months=months):
                self.assertGreaterEqual(
                    project_spending_with_growth(Decimal("100"), months),
                    project_spending(Decimal("100"), months),
                )

    def test_single_month_growth_equals_contribution(self) -> None:
        for amount in ("1", "3", "7", "9.99", "12.5", "100"):
            for rate in ("0.07", "0.1"):
                with self.subTest(amount=amount, rate=rate):
                    self.assertEqual(
                        project_spending_with_growth(Decimal(amount), 1, Decimal(rate)),
                        Decimal(amount),
                    )

    def test_growth_never_below_linear_across_amounts(self) -> None:
        for amount in ("1", "9.99", "12.5"):
            for months in (2, 5, 36):
                with self.subTest(amount=amount, months=months):
                    self.assertGreaterEqual(
                        project_spending_with_growth(Decimal(amount), months, Decimal("0.1")),
                        project_spending(Decimal(amount), months),
                    )

    def test_full_loss_rate_keeps_only_last_contribution(self) -> None:
        self.assertEqual(project_spending_with_growth(Decimal("10"), 0, Decimal("-12")), Decimal("0"))
        self.assertEqual(project_spending_with_growth(Decimal("10"), 3, Decimal("-12")), Decimal("10"))

    def test_growth_compounds_monthly(self) -> None:
        value = project_spending_with_growth(Decimal("100"), 12, Decimal("0.12"))

        # 1% a month for a year: 100 * (1.01^12 - 1) / 0.01
        self.assertAlmostEqual(float(value), 1268.25, places=2)

    def test_negative_months_rejected(self) -> None:
        with self.assertRaises(ValueError):
            project_spending(Decimal("10"), -1)
        with self.assertRaises(ValueError):
            project_spending_with_growth(Decimal("10"), -1)


class OpportunityCostTests(unittest.TestCase):
    def test_table_is_sorted_ascending(self) -> None:
        amounts = [item.reference_amount for item in OPPORTUNITY_COSTS]

        self.assertEqual(amounts, sorted(amounts))

    def test_picks_highest_threshold_reached(self) -> None:
        self.assertEqual(get_opportunity_cost(12), "2 Cup of coffees")
        self.assertEqual(get_opportunity_cost(Decimal("1000")), "1 New iPhone")
        self.assertEqual(get_opportunity_cost(Decimal("120000")), "2 Down payment on houses")

    def test_single_item_is_not_pluralized(self) -> None:
        self.assertEqual(get_opportunity_cost(5), "1 Cup of coffee")

    def test_below_every_threshold(self) -> None:
        self.assertIsNone(get_opportunity_cost(3))

    def test_build_projection(self) -> None:
        projection = build_projection(Decimal("100"))

        self.assertEqual(projection.yearly, Decimal("1200"))
        self.assertEqual(projection.five_year, Decimal("6000"))
        self.assertGreater(projection.five_year_with_growth, Decimal("7100"))
        self.assertLess(projection.five_year_with_growth, Decimal("7200"))
        self.assertEqual(projection.opportunity_cost, "2 Vacations")


if __name__ == "__main__":
    unittest.main()
