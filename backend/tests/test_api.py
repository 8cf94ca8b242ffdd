import itertools
import json
import os
import tempfile
import unittest
from datetime import datetime
from decimal import Decimal
from unittest.mock import patch

_db_dir = tempfile.mkdtemp()
os.environ["DATABASE_URL"] = f"sqlite:///{os.path.join(_db_dir, 'api-test.db')}"

from fastapi import HTTPException  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import update  # noqa: E402

from backend import main  # noqa: E402
from backend.insights import InsightProviderUnavailable  # noqa: E402
from backend.tier_limits import UsageDecision  # noqa: E402

_emails = itertools.count(1)


class FakeInsightProvider:
    def __init__(self, reply: str = "", error: Exception | None = None) -> None:
        self.reply = reply
        self.error = error

    def complete(self, prompt: str) -> str:
        if self.error is not None:
            raise self.error
        return self.reply


class ApiTests(unittest.TestCase):
    @classmethod
    def setUpClass(cls) -> None:
        main.metadata.create_all(main.engine)
        cls.client = TestClient(main.app)

    def signup(self) -> tuple[dict, str]:
        email = f"user{next(_emails)}@example.com"
        response = self.client.post(
            "/auth/signup",
            json={"email": email, "password": "secret", "name": "Sam"},
        )
        self.assertEqual(response.status_code, 201)
        return {"x-user-id": str(response.json()["id"])}, email

    def create_habit(self, headers: dict, name: str = "Coffee", category: str = "coffee") -> dict:
        response = self.client.post(
            "/habits",
            json={"name": name, "category": category},
            headers=headers,
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def create_entry(self, headers: dict, habit_id: int, amount: str = "4.50") -> dict:
        response = self.client.post(
            "/entries",
            json={
                "habit_id": habit_id,
                "amount": amount,
                "date": datetime.now().isoformat(),
            },
            headers=headers,
        )
        self.assertEqual(response.status_code, 201)
        return response.json()

    def set_user_columns(self, headers: dict, **values) -> None:
        with main.engine.begin() as conn:
            conn.execute(
                update(main.users)
                .where(main.users.c.id == int(headers["x-user-id"]))
                .values(**values)
            )

    def insight_reply(self) -> str:
        return json.dumps(
            [{"type": "suggestion", "title": "Brew at home", "content": "Save on coffee."}]
        )

    def test_health(self) -> None:
        response = self.client.get("/health")

        self.assertEqual(response.json(), {"status": "ok"})

    def test_duplicate_signup_conflicts(self) -> None:
        _, email = self.signup()

        response = self.client.post("/auth/signup", json={"email": email, "password": "x"})

        self.assertEqual(response.status_code, 409)

    def test_login_checks_password(self) -> None:
        _, email = self.signup()

        ok = self.client.post("/auth/login", json={"email": email, "password": "secret"})
        bad = self.client.post("/auth/login", json={"email": email, "password": "wrong"})

        self.assertEqual(ok.status_code, 200)
        self.assertEqual(bad.status_code, 401)

    def test_missing_identity_is_unauthorized(self) -> None:
        response = self.client.get("/habits")

        self.assertEqual(response.status_code, 401)

    def test_profile_update_validates_wage(self) -> None:
        headers, _ = self.signup()

        bad = self.client.patch("/users/me", json={"hourly_wage": "0"}, headers=headers)
        ok = self.client.patch(
            "/users/me",
            json={"hourly_wage": "30", "currency": "eur"},
            headers=headers,
        )

        self.assertEqual(bad.status_code, 400)
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(Decimal(ok.json()["hourly_wage"]), Decimal("30"))
        self.assertEqual(ok.json()["currency"], "EUR")
        self.assertEqual(ok.json()["subscription_tier"], "free")

    def test_free_tier_habit_limit(self) -> None:
        headers, _ = self.signup()
        for index in range(5):
            self.create_habit(headers, name=f"Habit {index}")

        response = self.client.post(
            "/habits",
            json={"name": "One too many", "category": "food"},
            headers=headers,
        )

        self.assertEqual(response.status_code, 403)
        self.assertIn("Upgrade to Pro", response.json()["detail"])

    def test_invalid_habit_category(self) -> None:
        headers, _ = self.signup()

        response = self.client.post(
            "/habits",
            json={"name": "Snacks", "category": "candy"},
            headers=headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_entry_requires_owned_habit(self) -> None:
        owner_headers, _ = self.signup()
        other_headers, _ = self.signup()
        habit = self.create_habit(owner_headers)

        response = self.client.post(
            "/entries",
            json={"habit_id": habit["id"], "amount": "3", "date": datetime.now().isoformat()},
            headers=other_headers,
        )

        self.assertEqual(response.status_code, 404)

    def test_entry_validation_errors_are_bad_requests(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)

        zero = self.client.post(
            "/entries",
            json={"habit_id": habit["id"], "amount": "0", "date": datetime.now().isoformat()},
            headers=headers,
        )
        missing = self.client.post("/entries", json={"habit_id": habit["id"]}, headers=headers)

        self.assertEqual(zero.status_code, 400)
        self.assertEqual(missing.status_code, 400)
        self.assertEqual(missing.json()["detail"], "Invalid input.")
        self.assertTrue(missing.json()["errors"])

    def test_entry_counter_is_tracked(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        self.create_entry(headers, habit["id"])
        self.create_entry(headers, habit["id"])

        profile = self.client.get("/users/me", headers=headers).json()

        self.assertEqual(profile["entries_this_month"], 2)

    def test_entry_update_and_delete(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        entry = self.create_entry(headers, habit["id"])

        updated = self.client.patch(
            f"/entries/{entry['id']}", json={"amount": "6.25"}, headers=headers
        )
        deleted = self.client.delete(f"/entries/{entry['id']}", headers=headers)
        missing = self.client.delete(f"/entries/{entry['id']}", headers=headers)

        self.assertEqual(Decimal(updated.json()["amount"]), Decimal("6.25"))
        self.assertEqual(deleted.json(), {"status": "deleted"})
        self.assertEqual(missing.status_code, 404)

    def test_entry_limit_refuses_at_monthly_cap(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        self.set_user_columns(headers, entries_this_month=100, entries_reset_at=datetime.now())

        response = self.client.post(
            "/entries",
            json={"habit_id": habit["id"], "amount": "3", "date": datetime.now().isoformat()},
            headers=headers,
        )
        profile = self.client.get("/users/me", headers=headers).json()

        self.assertEqual(response.status_code, 403)
        self.assertIn("Upgrade to Pro", response.json()["detail"])
        self.assertEqual(profile["entries_this_month"], 100)

    def test_entry_amount_above_column_range_rejected(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)

        response = self.client.post(
            "/entries",
            json={
                "habit_id": habit["id"],
                "amount": "100000000",
                "date": datetime.now().isoformat(),
            },
            headers=headers,
        )

        self.assertEqual(response.status_code, 400)

    def test_insight_limit_refuses_at_monthly_cap(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        self.create_entry(headers, habit["id"])
        self.set_user_columns(headers, ai_insights_used=10, ai_insights_reset_at=datetime.now())
        provider = FakeInsightProvider(reply=self.insight_reply())

        with patch.object(main, "INSIGHT_PROVIDER", provider):
            response = self.client.post("/insights", headers=headers)
        profile = self.client.get("/users/me", headers=headers).json()

        self.assertEqual(response.status_code, 403)
        self.assertIn("Upgrade to Pro", response.json()["detail"])
        self.assertEqual(profile["ai_insights_used"], 10)

    def test_insight_counter_resets_in_new_month(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        self.create_entry(headers, habit["id"])
        self.set_user_columns(headers, ai_insights_used=10, ai_insights_reset_at=datetime(2000, 1, 1))
        provider = FakeInsightProvider(reply=self.insight_reply())

        with patch.object(main, "INSIGHT_PROVIDER", provider):
            response = self.client.post("/insights", headers=headers)
        profile = self.client.get("/users/me", headers=headers).json()

        self.assertEqual(response.status_code, 201)
        self.assertEqual(profile["ai_insights_used"], 1)

    def test_stale_usage_claim_conflicts(self) -> None:
        headers, _ = self.signup()
        user_id = int(headers["x-user-id"])
        now = datetime.now()
        self.set_user_columns(headers, ai_insights_used=3, ai_insights_reset_at=now)

        with main.engine.begin() as conn:
            stale_row = dict(main.fetch_user(conn, user_id), ai_insights_used=2)
            with self.assertRaises(HTTPException) as caught:
                main.claim_monthly_usage(
                    conn,
                    stale_row,
                    "ai_insights_used",
                    "ai_insights_reset_at",
                    UsageDecision(allowed=True, used=3, reset_at=now),
                )
        profile = self.client.get("/users/me", headers=headers).json()

        self.assertEqual(caught.exception.status_code, 409)
        self.assertEqual(profile["ai_insights_used"], 3)


    def test_dashboard_aggregates_entries(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        self.create_entry(headers, habit["id"], amount="4.50")
        self.create_entry(headers, habit["id"], amount="5.50")

        response = self.client.get("/dashboard", headers=headers)

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(body["totals"]["yearly"]), Decimal("10"))
        self.assertEqual(body["trend"], {"value": 100, "direction": "up"})
        self.assertEqual(len(body["chart_data"]), 30)
        self.assertEqual(body["category_data"][0]["name"], "Coffee")
        self.assertEqual(Decimal(body["user"]["hourly_wage"]), Decimal("25"))
        self.assertEqual(body["habit_count"], 1)
        self.assertEqual(body["entry_count"], 2)
        self.assertEqual(body["recent_entries"][0]["habit_name"], "Coffee")

    def test_goal_progress(self) -> None:
        headers, _ = self.signup()
        created = self.client.post(
            "/goals",
            json={"name": "Less takeout", "type": "reduction", "target_amount": "200"},
            headers=headers,
        )
        goal_id = created.json()["id"]

        updated = self.client.patch(
            f"/goals/{goal_id}", json={"current_amount": "50"}, headers=headers
        )
        cancelled = self.client.patch(
            f"/goals/{goal_id}", json={"status": "cancelled"}, headers=headers
        )
        listed = self.client.get("/goals", headers=headers)

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["progress_percent"], 0)
        self.assertEqual(updated.json()["progress_percent"], 25)
        self.assertEqual(cancelled.json()["status"], "cancelled")
        self.assertEqual(listed.json(), [])

    def test_friend_request_flow(self) -> None:
        alice, _ = self.signup()
        bob, bob_email = self.signup()

        created = self.client.post("/friends", json={"email": bob_email}, headers=alice)
        friendship_id = created.json()["id"]
        duplicate = self.client.post("/friends", json={"email": bob_email}, headers=alice)
        self_accept = self.client.patch(
            f"/friends/{friendship_id}", json={"status": "accepted"}, headers=alice
        )
        accepted = self.client.patch(
            f"/friends/{friendship_id}", json={"status": "accepted"}, headers=bob
        )
        listed = self.client.get("/friends", headers=alice).json()

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["status"], "pending")
        self.assertEqual(duplicate.status_code, 400)
        self.assertEqual(self_accept.status_code, 403)
        self.assertEqual(accepted.json()["status"], "accepted")
        self.assertTrue(listed[0]["is_requester"])
        self.assertEqual(listed[0]["friend"]["email"], bob_email)

    def test_cannot_befriend_yourself(self) -> None:
        headers, email = self.signup()

        response = self.client.post("/friends", json={"email": email}, headers=headers)

        self.assertEqual(response.status_code, 400)

    def test_insights_require_spending_data(self) -> None:
        headers, _ = self.signup()
        self.create_habit(headers)

        response = self.client.post("/insights", headers=headers)

        self.assertEqual(response.status_code, 400)

    def test_generates_and_lists_insights(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        self.create_entry(headers, habit["id"])
        reply = json.dumps(
            [{"type": "suggestion", "title": "Brew at home", "content": "Save on coffee."}]
        )

        with patch.object(main, "INSIGHT_PROVIDER", FakeInsightProvider(reply=reply)):
            created = self.client.post("/insights", headers=headers)
        listed = self.client.get("/insights", headers=headers)
        insight_id = listed.json()[0]["id"]
        feedback = self.client.post(
            f"/insights/{insight_id}/feedback", json={"is_helpful": True}, headers=headers
        )
        profile = self.client.get("/users/me", headers=headers).json()

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()[0]["title"], "Brew at home")
        self.assertEqual(len(listed.json()), 1)
        self.assertEqual(feedback.json(), {"status": "ok"})
        self.assertEqual(profile["ai_insights_used"], 1)

    def test_upstream_failure_is_server_error(self) -> None:
        headers, _ = self.signup()
        habit = self.create_habit(headers)
        self.create_entry(headers, habit["id"])
        provider = FakeInsightProvider(error=InsightProviderUnavailable("down"))

        with patch.object(main, "INSIGHT_PROVIDER", provider):
            with self.assertLogs("backend.main", level="ERROR"):
                response = self.client.post("/insights", headers=headers)
        profile = self.client.get("/users/me", headers=headers).json()

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["detail"], "Failed to generate insights.")
        self.assertEqual(profile["ai_insights_used"], 0)

    def test_projection_endpoint(self) -> None:
        headers, _ = self.signup()

        response = self.client.get(
            "/projections",
            params={"monthly_amount": "100", "months": 12},
            headers=headers,
        )

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(Decimal(body["linear_total"]), Decimal("1200"))
        self.assertGreater(Decimal(body["growth_total"]), Decimal("1200"))
        self.assertEqual(body["opportunity_cost"], "1 New iPhone")
        self.assertEqual(body["time_cost"]["formatted"], "2 days")

    def test_projection_rejects_out_of_range_inputs(self) -> None:
        headers, _ = self.signup()

        total_loss = self.client.get(
            "/projections",
            params={"monthly_amount": "10", "months": 0, "annual_return": "-12"},
            headers=headers,
        )
        huge = self.client.get(
            "/projections",
            params={"monthly_amount": "1e27", "months": 60},
            headers=headers,
        )

        self.assertEqual(total_loss.status_code, 400)
        self.assertEqual(huge.status_code, 400)

    def test_projection_at_range_limits(self) -> None:
        headers, _ = self.signup()

        response = self.client.get(
            "/projections",
            params={"monthly_amount": "99999999.99", "months": 600, "annual_return": "1"},
            headers=headers,
        )

        self.assertEqual(response.status_code, 200)
        self.assertGreater(
            Decimal(response.json()["growth_total"]), Decimal(response.json()["linear_total"])
        )


if __name__ == "__main__":
    unittest.main()
