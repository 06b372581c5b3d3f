from decimal import Decimal

from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from billing import settlement
from common import errors
from menu.models import MenuItem
from shifts import services
from shifts.models import CashMovement, Shift


class ShiftLedgerTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.cashier = self.user_model.objects.create_user(username="shift-cashier", password="pass1234", role="cashier")
        self.other_cashier = self.user_model.objects.create_user(
            username="shift-cashier-2", password="pass1234", role="cashier"
        )
        self.supervisor = self.user_model.objects.create_user(
            username="shift-supervisor", password="pass1234", role="supervisor"
        )
        self.package = MenuItem.objects.create(name="Paket Keluarga", category="paket", price=Decimal("75000.00"))

    def open_via_api(self, amount="500000"):
        self.client.force_authenticate(user=self.cashier)
        return self.client.post("/api/v1/shifts/open/", {"initial_cash": amount}, format="json")

    def sell(self, shift, method="cash"):
        return settlement.settle(
            settlement.CartContext(
                items=[{"menu_item": self.package.id, "quantity": 1}],
                customer_name="Walk-in",
            ),
            settlement.Tender(method=method, amount_tendered=Decimal("75000") if method == "cash" else None),
            cashier=self.cashier,
            shift=shift,
        )

    def test_scenario_close_reports_shortage(self):
        opened = self.open_via_api()
        self.assertEqual(opened.status_code, 201)
        shift = Shift.objects.get(id=opened.json()["id"])
        self.sell(shift)

        response = self.client.post(f"/api/v1/shifts/{shift.id}/close/", {"final_cash": "574000"}, format="json")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(Decimal(payload["shift"]["system_cash"]), Decimal("575000"))
        self.assertEqual(Decimal(payload["shift"]["cash_difference"]), Decimal("-1000"))
        self.assertEqual(payload["shift"]["status"], "closed")
        self.assertEqual(payload["payments_by_method"]["cash"]["count"], 1)

    def test_expected_cash_reconciles_all_movements(self):
        shift = services.open_shift(self.cashier, Decimal("200000"))
        self.sell(shift)
        self.sell(shift, method="ewallet")
        services.post_cash_movement(
            shift, movement_type="in", amount=Decimal("50000"), description="change top-up", category="deposit", actor=self.cashier
        )
        services.record_expense(shift, amount=Decimal("30000"), description="ice", expense_category="supplies", actor=self.cashier)

        shift.refresh_from_db()
        self.assertEqual(services.expected_cash(shift), Decimal("295000.00"))
        self.assertEqual(shift.non_cash_revenue, Decimal("75000.00"))
        self.assertEqual(shift.total_orders, 2)

        closed = services.close_shift(shift.id, Decimal("300000"), closed_by=self.cashier)
        self.assertEqual(closed.system_cash, Decimal("295000.00"))
        self.assertEqual(closed.cash_difference, Decimal("5000.00"))
        self.assertEqual(closed.closed_by, self.cashier)

    def test_quiet_shift_expects_opening_float(self):
        shift = services.open_shift(self.cashier, Decimal("250000"))

        closed = services.close_shift(shift.id, Decimal("250000"), closed_by=self.cashier)

        self.assertEqual(closed.system_cash, closed.initial_cash)
        self.assertEqual(closed.cash_difference, Decimal("0.00"))
        self.assertIsNotNone(closed.ended_at)

    def test_negative_float_is_rejected(self):
        with self.assertRaises(errors.ValidationError):
            services.open_shift(self.cashier, Decimal("-1"))

    def test_second_open_shift_conflicts(self):
        self.open_via_api()

        response = self.open_via_api()

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")

    def test_current_shift_includes_expected_cash(self):
        self.client.force_authenticate(user=self.cashier)
        missing = self.client.get("/api/v1/shifts/current/")
        self.open_via_api("100000")

        current = self.client.get("/api/v1/shifts/current/")

        self.assertEqual(missing.status_code, 404)
        self.assertEqual(current.status_code, 200)
        self.assertEqual(Decimal(current.json()["expected_cash"]), Decimal("100000"))

    def test_movement_amount_must_be_positive(self):
        shift_id = self.open_via_api().json()["id"]

        response = self.client.post(
            f"/api/v1/shifts/{shift_id}/movements/",
            {"type": "in", "amount": "0", "description": "nothing"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(CashMovement.objects.exists())

    def test_cash_out_past_drawer_balance_warns(self):
        shift_id = self.open_via_api("10000").json()["id"]

        response = self.client.post(
            f"/api/v1/shifts/{shift_id}/movements/",
            {"type": "out", "amount": "25000", "description": "supplier refund"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(Decimal(response.json()["expected_cash"]), Decimal("-15000"))
        self.assertIsNotNone(response.json()["warning"])

    def test_closed_shift_is_read_only(self):
        shift = services.open_shift(self.cashier, Decimal("100000"))
        services.close_shift(shift.id, Decimal("100000"), closed_by=self.cashier)
        shift.refresh_from_db()

        with self.assertRaises(errors.InvariantError):
            services.post_cash_movement(shift, movement_type="in", amount=Decimal("1000"), description="late", actor=self.cashier)
        with self.assertRaises(errors.ConflictError):
            services.close_shift(shift.id, Decimal("100000"), closed_by=self.cashier)
        with self.assertRaises(errors.ValidationError):
            self.sell(shift)

    def test_expense_endpoint_records_category(self):
        shift_id = self.open_via_api().json()["id"]

        response = self.client.post(
            f"/api/v1/shifts/{shift_id}/expenses/",
            {"amount": "12000", "description": "gas refill", "expense_category": "operational"},
            format="json",
        )
        report = self.client.get(f"/api/v1/shifts/{shift_id}/report/")

        self.assertEqual(response.status_code, 201)
        movement = response.json()["movement"]
        self.assertEqual((movement["type"], movement["category"]), ("out", "expense"))
        self.assertEqual(Decimal(report.json()["cash_out_total"]), Decimal("12000"))
        self.assertEqual(report.json()["movements_by_category"][0]["category"], "expense")

    def test_cash_movements_are_append_only(self):
        shift = services.open_shift(self.cashier, Decimal("100000"))
        movement = services.post_cash_movement(
            shift, movement_type="in", amount=Decimal("5000"), description="coins", actor=self.cashier
        ).movement

        movement.amount = Decimal("1")
        with self.assertRaises(errors.InvariantError):
            movement.save()
        with self.assertRaises(errors.InvariantError):
            movement.delete()
        with self.assertRaises(errors.InvariantError):
            CashMovement.objects.filter(shift=shift).update(amount=Decimal("1"))

    def test_only_owner_or_supervisor_closes_shift(self):
        shift = services.open_shift(self.cashier, Decimal("100000"))

        self.client.force_authenticate(user=self.other_cashier)
        hidden = self.client.post(f"/api/v1/shifts/{shift.id}/close/", {"final_cash": "100000"}, format="json")
        with self.assertRaises(errors.AuthorizationError):
            services.close_shift(shift.id, Decimal("100000"), closed_by=self.other_cashier)

        self.client.force_authenticate(user=self.supervisor)
        closed = self.client.post(f"/api/v1/shifts/{shift.id}/close/", {"final_cash": "100000"}, format="json")

        self.assertEqual(hidden.status_code, 403)
        self.assertEqual(closed.status_code, 200)
        self.assertEqual(closed.json()["shift"]["closed_by"], str(self.supervisor.id))
