from decimal import Decimal

from django.contrib.auth import get_user_model
from django.db.models import Sum
from django.test import TestCase
from rest_framework.test import APIClient

from billing import approvals, services, settlement, splits
from billing.models import ApprovalRequest, Bill, DeletionLogEntry, Payment, SplitAllocation, SplitSession
from common import errors
from core.services import AuthorizerCredentials
from menu.models import MenuItem
from shifts.services import open_shift


class BillingTestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()

        self.cashier = self.user_model.objects.create_user(username="bill-cashier", password="pass1234", role="cashier")
        self.supervisor = self.user_model.objects.create_user(
            username="bill-supervisor", password="pass1234", role="supervisor"
        )
        self.supervisor.set_approval_pin("1234")
        self.supervisor.save(update_fields=["approval_pin"])

        self.nasi = MenuItem.objects.create(name="Nasi Goreng", category="makanan", price=Decimal("20000.00"))
        self.teh = MenuItem.objects.create(name="Es Teh", category="minuman", price=Decimal("5000.00"))
        self.sold_out = MenuItem.objects.create(name="Ayam Bakar", price=Decimal("27000.00"), is_available=False)

        self.shift = open_shift(self.cashier, Decimal("500000"))

    def make_bill(self, *items, table="T1", discount=0):
        return services.create_open_bill(
            customer_name="Budi",
            table_number=table,
            items=[{"menu_item": item.id, "quantity": qty} for item, qty in items],
            cashier=self.cashier,
            discount=discount,
        )

    def pay_part(self, bill, part, method="cash", tendered=None, key=None):
        return settlement.settle(
            settlement.SplitPartContext(bill_id=bill.id, part_id=part.id),
            settlement.Tender(method=method, amount_tendered=tendered, idempotency_key=key),
            cashier=self.cashier,
            shift=self.shift,
        )


class BillStoreTests(BillingTestCase):
    def test_create_open_bill_snapshots_menu_price(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/bills/",
            {
                "customer_name": "Budi",
                "table_number": "T1",
                "items": [{"menu_item": str(self.nasi.id), "quantity": 2, "unit_price": "1.00"}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(payload["status"], "open")
        self.assertEqual(payload["payment_status"], "unpaid")
        self.assertEqual(Decimal(payload["lines"][0]["unit_price"]), Decimal("20000"))
        self.assertEqual(Decimal(payload["total"]), Decimal("40000"))

    def test_create_rejects_empty_cart_and_bad_quantity(self):
        self.client.force_authenticate(user=self.cashier)

        empty = self.client.post("/api/v1/bills/", {"customer_name": "Budi", "items": []}, format="json")
        zero = self.client.post(
            "/api/v1/bills/",
            {"customer_name": "Budi", "items": [{"menu_item": str(self.nasi.id), "quantity": 0}]},
            format="json",
        )
        sold_out = self.client.post(
            "/api/v1/bills/",
            {"customer_name": "Budi", "items": [{"menu_item": str(self.sold_out.id), "quantity": 1}]},
            format="json",
        )

        for response in (empty, zero, sold_out):
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["code"], "validation_error")
        self.assertFalse(Bill.objects.exists())

    def test_occupied_table_is_a_conflict(self):
        self.make_bill((self.nasi, 1), table="T1")
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/bills/",
            {"customer_name": "Sari", "table_number": "T1", "items": [{"menu_item": str(self.teh.id), "quantity": 1}]},
            format="json",
        )

        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()["code"], "conflict")
        self.assertEqual(response.json()["errors"]["table_number"], "T1")

    def test_bills_without_table_do_not_conflict(self):
        self.make_bill((self.nasi, 1), table="")
        self.make_bill((self.teh, 1), table="")

        self.assertEqual(Bill.objects.filter(table_number="").count(), 2)

    def test_smart_open_bill_create_then_replace(self):
        self.client.force_authenticate(user=self.cashier)
        body = {
            "customer_name": "Budi",
            "table_number": "T7",
            "items": [{"menu_item": str(self.nasi.id), "quantity": 1}],
            "mode": "create",
        }

        created = self.client.post("/api/v1/bills/open-bill-smart/", body, format="json")
        duplicate = self.client.post("/api/v1/bills/open-bill-smart/", body, format="json")
        replaced = self.client.post(
            "/api/v1/bills/open-bill-smart/",
            {**body, "mode": "replace", "items": [{"menu_item": str(self.teh.id), "quantity": 3}]},
            format="json",
        )

        self.assertEqual(created.status_code, 201)
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(replaced.status_code, 200)
        self.assertEqual(replaced.json()["id"], created.json()["id"])
        self.assertEqual([line["name"] for line in replaced.json()["lines"]], ["Es Teh"])
        self.assertEqual(Decimal(replaced.json()["total"]), Decimal("15000"))
        self.assertEqual(replaced.json()["version"], 2)

    def test_replace_with_stale_version_is_rejected(self):
        bill = self.make_bill((self.nasi, 1), table="T2")
        services.add_items(bill.id, [{"menu_item": self.teh.id, "quantity": 1}])

        with self.assertRaises(errors.ConflictError):
            services.merge_or_replace_open_bill(
                table_number="T2",
                items=[{"menu_item": self.teh.id, "quantity": 2}],
                mode="replace",
                customer_name="Budi",
                cashier=self.cashier,
                expected_version=1,
            )

        bill.refresh_from_db()
        self.assertEqual(bill.version, 2)
        self.assertEqual(bill.lines.count(), 2)

    def test_add_items_merges_matching_line(self):
        bill = self.make_bill((self.nasi, 2))
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            f"/api/v1/bills/{bill.id}/items/",
            {"items": [{"menu_item": str(self.nasi.id), "quantity": 1}, {"menu_item": str(self.teh.id), "quantity": 2}]},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        lines = response.json()["lines"]
        self.assertEqual([(line["name"], line["quantity"]) for line in lines], [("Nasi Goreng", 3), ("Es Teh", 2)])
        self.assertEqual(Decimal(response.json()["total"]), Decimal("70000"))

    def test_discount_is_clamped_to_subtotal(self):
        bill = self.make_bill((self.teh, 1), discount=Decimal("8000"))

        self.assertEqual(bill.discount, Decimal("5000.00"))
        self.assertEqual(bill.total, Decimal("0.00"))

    def test_submit_is_idempotent(self):
        bill = self.make_bill((self.nasi, 1))
        self.client.force_authenticate(user=self.cashier)

        first = self.client.post(f"/api/v1/bills/{bill.id}/submit/")
        second = self.client.post(f"/api/v1/bills/{bill.id}/submit/")

        self.assertEqual(first.status_code, 200)
        self.assertEqual(second.status_code, 200)
        self.assertEqual(second.json()["status"], "submitted")

    def test_cancel_requires_supervisor_and_frees_table(self):
        bill = self.make_bill((self.nasi, 1), table="T3")

        self.client.force_authenticate(user=self.cashier)
        denied = self.client.post(f"/api/v1/bills/{bill.id}/cancel/", {"reason": "walked out"}, format="json")
        self.client.force_authenticate(user=self.supervisor)
        cancelled = self.client.post(f"/api/v1/bills/{bill.id}/cancel/", {"reason": "walked out"}, format="json")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["status"], "cancelled")
        self.make_bill((self.teh, 1), table="T3")

    def test_settled_bill_cannot_be_cancelled(self):
        bill = self.make_bill((self.nasi, 1))
        settlement.settle(
            settlement.WholeBillContext(bill_id=bill.id),
            settlement.Tender(method="ewallet"),
            cashier=self.cashier,
            shift=self.shift,
        )

        with self.assertRaises(errors.InvariantError):
            services.cancel(bill.id, reason="mistake", actor=self.supervisor)

    def test_list_open_bills_filters_by_table(self):
        open_bill = self.make_bill((self.nasi, 1), table="T4")
        self.make_bill((self.nasi, 1), table="T5")
        closed = self.make_bill((self.teh, 1), table="T6")
        services.cancel(closed.id, reason="test", actor=self.supervisor)
        self.client.force_authenticate(user=self.cashier)

        all_open = self.client.get("/api/v1/bills/")
        by_table = self.client.get("/api/v1/bills/", {"table": "T4"})

        self.assertEqual(all_open.status_code, 200)
        self.assertEqual(sorted(all_open.json().keys()), ["count", "next", "previous", "results"])
        self.assertEqual(all_open.json()["count"], 2)
        self.assertEqual([row["id"] for row in by_table.json()["results"]], [str(open_bill.id)])

    def test_failed_payment_freezes_items_until_retried(self):
        bill = self.make_bill((self.nasi, 1))
        self.client.force_authenticate(user=self.cashier)

        failed = self.client.post(f"/api/v1/bills/{bill.id}/payment-failed/", {"reason": "QRIS timeout"}, format="json")
        add = self.client.post(
            f"/api/v1/bills/{bill.id}/items/", {"items": [{"menu_item": str(self.teh.id), "quantity": 1}]}, format="json"
        )
        retried = self.client.post(
            "/api/v1/settlements/", {"mode": "whole_bill", "bill": str(bill.id), "method": "ewallet"}, format="json"
        )

        self.assertEqual(failed.json()["payment_status"], "failed")
        self.assertEqual(add.status_code, 422)
        self.assertEqual(retried.status_code, 201)
        self.assertEqual(retried.json()["bill"]["payment_status"], "paid")
        self.assertEqual(retried.json()["bill"]["failure_reason"], "")


class ApprovalGatewayTests(BillingTestCase):
    def setUp(self):
        super().setUp()
        self.bill = self.make_bill((self.nasi, 2), (self.teh, 1))

    def request_void(self, index=1, user=None):
        self.client.force_authenticate(user=user or self.cashier)
        return self.client.post(
            "/api/v1/approvals/",
            {"bill": str(self.bill.id), "item_index": index, "reason": "customer changed order"},
            format="json",
        )

    def test_approved_request_removes_item_and_logs_deletion(self):
        request_id = self.request_void().json()["id"]
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(f"/api/v1/approvals/{request_id}/approve/", {"pin": "1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "approved")
        self.bill.refresh_from_db()
        self.assertEqual(self.bill.lines.count(), 1)
        self.assertEqual(self.bill.total, Decimal("40000.00"))
        entry = DeletionLogEntry.objects.get(bill=self.bill)
        self.assertEqual(entry.item_name, "Es Teh")
        self.assertEqual(entry.requester, self.cashier)
        self.assertEqual(entry.authorizer, self.supervisor)

        logs = self.client.get("/api/v1/deletion-logs/")
        self.assertEqual(logs.json()["count"], 1)

    def test_rejected_request_leaves_bill_unchanged(self):
        request_id = self.request_void(index=0).json()["id"]
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(f"/api/v1/approvals/{request_id}/reject/", {"pin": "1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "rejected")
        self.bill.refresh_from_db()
        self.assertEqual(self.bill.lines.count(), 2)
        self.assertEqual(self.bill.total, Decimal("45000.00"))
        self.assertFalse(DeletionLogEntry.objects.exists())

    def test_second_pending_request_for_same_item_conflicts(self):
        first = self.request_void()
        second = self.request_void()

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 409)
        self.assertEqual(second.json()["errors"]["approval"], first.json()["id"])

    def test_last_item_cannot_be_voided(self):
        self.bill = self.make_bill((self.nasi, 1), table="T9")

        response = self.request_void(index=0)

        self.assertEqual(response.status_code, 422)
        self.assertEqual(response.json()["code"], "invariant_violation")

    def test_out_of_range_index_is_rejected(self):
        response = self.request_void(index=5)

        self.assertEqual(response.status_code, 400)

    def test_requester_cannot_approve_own_request(self):
        request_id = self.request_void(user=self.supervisor).json()["id"]

        response = self.client.post(f"/api/v1/approvals/{request_id}/approve/", {"pin": "1234"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "authorization_failed")
        self.assertEqual(ApprovalRequest.objects.get(id=request_id).status, "pending")

    def test_wrong_pin_keeps_request_pending(self):
        request_id = self.request_void().json()["id"]
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(f"/api/v1/approvals/{request_id}/approve/", {"pin": "0000"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(ApprovalRequest.objects.get(id=request_id).status, "pending")
        self.assertEqual(self.bill.lines.count(), 2)

    def test_cashier_cannot_resolve(self):
        request_id = self.request_void().json()["id"]

        response = self.client.post(f"/api/v1/approvals/{request_id}/approve/", {"pin": "1234"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")

    def test_resolving_twice_conflicts(self):
        request_id = self.request_void().json()["id"]
        self.client.force_authenticate(user=self.supervisor)

        self.client.post(f"/api/v1/approvals/{request_id}/reject/", {"pin": "1234"}, format="json")
        again = self.client.post(f"/api/v1/approvals/{request_id}/approve/", {"pin": "1234"}, format="json")

        self.assertEqual(again.status_code, 409)

    def test_stale_snapshot_is_rejected_on_approval(self):
        request = approvals.request_cancellation(self.bill.id, 0, requester=self.cashier, reason="wrong dish")
        services.add_items(self.bill.id, [{"menu_item": self.nasi.id, "quantity": 1}])

        with self.assertRaises(errors.ConflictError):
            approvals.resolve(request.id, AuthorizerCredentials(user=self.supervisor, pin="1234"), "approved")

        request.refresh_from_db()
        self.assertEqual(request.status, "rejected")
        self.assertEqual(request.resolution_note, approvals.STALE_ITEM_NOTE)
        self.assertEqual(self.bill.lines.count(), 2)
        self.assertFalse(DeletionLogEntry.objects.exists())

    def test_remove_line_item_requires_approved_request(self):
        pending = approvals.request_cancellation(self.bill.id, 1, requester=self.cashier, reason="wrong dish")

        with self.assertRaises(errors.AuthorizationError):
            services.remove_line_item(self.bill.id, 1, approval=None)
        with self.assertRaises(errors.AuthorizationError):
            services.remove_line_item(self.bill.id, 1, approval=pending)
        with self.assertRaises(errors.AuthorizationError):
            services.remove_line_item(self.bill.id, 0, approval=pending)

        self.assertEqual(self.bill.lines.count(), 2)

    def test_pending_list_filters_by_bill(self):
        approvals.request_cancellation(self.bill.id, 1, requester=self.cashier, reason="wrong dish")
        other = self.make_bill((self.nasi, 1), (self.teh, 1), table="T8")
        approvals.request_cancellation(other.id, 0, requester=self.cashier, reason="wrong dish")
        self.client.force_authenticate(user=self.cashier)

        response = self.client.get("/api/v1/approvals/", {"bill": str(self.bill.id)})

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["count"], 1)

    def test_deletion_log_is_append_only(self):
        request = approvals.request_cancellation(self.bill.id, 1, requester=self.cashier, reason="wrong dish")
        approvals.resolve(request.id, AuthorizerCredentials(user=self.supervisor, pin="1234"), "approved")
        entry = DeletionLogEntry.objects.get()

        entry.reason = "edited"
        with self.assertRaises(errors.InvariantError):
            entry.save()
        with self.assertRaises(errors.InvariantError):
            DeletionLogEntry.objects.all().delete()
        with self.assertRaises(errors.InvariantError):
            DeletionLogEntry.objects.update(reason="edited")

    def test_cancelling_bill_rejects_pending_requests(self):
        request = approvals.request_cancellation(self.bill.id, 1, requester=self.cashier, reason="wrong dish")

        services.cancel(self.bill.id, reason="walked out", actor=self.supervisor)

        request.refresh_from_db()
        self.assertEqual(request.status, "rejected")


class SplitSessionTests(BillingTestCase):
    def assert_allocation_conserved(self, bill):
        for line in bill.lines.all():
            allocated = SplitAllocation.objects.filter(line=line).aggregate(total=Sum("quantity"))["total"] or 0
            self.assertLessEqual(allocated, line.quantity)

    def test_scenario_paid_part_consumes_quantity(self):
        bill = self.make_bill((self.nasi, 3))
        line = bill.lines.get()
        session = splits.open_session(bill.id, actor=self.cashier)
        part_one, part_two = session.parts.all()

        splits.allocate(part_one.id, line.id, 2)
        self.pay_part(bill, part_one, tendered=Decimal("40000"))

        with self.assertRaises(errors.CapacityError) as ctx:
            splits.allocate(part_two.id, line.id, 2)
        self.assertEqual(ctx.exception.details["remaining"], 1)
        self.assert_allocation_conserved(bill)

    def test_allocate_sets_quantity_and_recomputes_remaining(self):
        bill = self.make_bill((self.nasi, 3))
        line = bill.lines.get()
        session = splits.open_session(bill.id, actor=self.cashier)
        part_one, part_two = session.parts.all()

        splits.allocate(part_one.id, line.id, 3)
        with self.assertRaises(errors.CapacityError) as ctx:
            splits.allocate(part_two.id, line.id, 1)
        self.assertEqual(ctx.exception.details["remaining"], 0)

        splits.allocate(part_one.id, line.id, 1)
        splits.allocate(part_two.id, line.id, 2)
        splits.allocate(part_one.id, line.id, 0)

        self.assertFalse(SplitAllocation.objects.filter(part=part_one).exists())
        self.assertEqual(splits.unallocated_quantities(session), {str(line.id): 1})
        self.assert_allocation_conserved(bill)

    def test_allocate_via_api_reports_remaining(self):
        bill = self.make_bill((self.nasi, 2))
        line = bill.lines.get()
        self.client.force_authenticate(user=self.cashier)

        opened = self.client.post(f"/api/v1/bills/{bill.id}/split/", {"parts": 2}, format="json")
        parts = opened.json()["parts"]
        ok = self.client.post(
            f"/api/v1/split-parts/{parts[0]['id']}/allocate/", {"line": str(line.id), "quantity": 2}, format="json"
        )
        over = self.client.post(
            f"/api/v1/split-parts/{parts[1]['id']}/allocate/", {"line": str(line.id), "quantity": 1}, format="json"
        )

        self.assertEqual(opened.status_code, 201)
        self.assertEqual(len(parts), 2)
        self.assertEqual(ok.status_code, 200)
        self.assertEqual(ok.json()["unallocated"], {})
        self.assertEqual(over.status_code, 409)
        self.assertEqual(over.json()["code"], "capacity_exceeded")
        self.assertEqual(over.json()["errors"]["remaining"], 0)

    def test_second_session_conflicts(self):
        bill = self.make_bill((self.nasi, 2))
        splits.open_session(bill.id, actor=self.cashier)

        with self.assertRaises(errors.ConflictError):
            splits.open_session(bill.id, actor=self.cashier)

    def test_parts_cannot_drop_below_two(self):
        bill = self.make_bill((self.nasi, 2))
        session = splits.open_session(bill.id, actor=self.cashier)
        first = session.parts.first()

        with self.assertRaises(errors.InvariantError):
            splits.remove_part(first.id)

        extra = splits.add_part(bill.id, assignee_name="Sari")
        self.assertEqual(extra.sequence, 3)
        splits.remove_part(extra.id)
        self.assertEqual(session.parts.count(), 2)

    def test_last_unpaid_part_stays_while_items_remain(self):
        bill = self.make_bill((self.nasi, 3))
        line = bill.lines.get()
        session = splits.open_session(bill.id, actor=self.cashier, parts=3)
        first, second, third = session.parts.all()
        splits.allocate(first.id, line.id, 1)
        self.pay_part(bill, first, method="ewallet")
        splits.allocate(second.id, line.id, 1)
        self.pay_part(bill, second, method="ewallet")

        with self.assertRaises(errors.InvariantError) as ctx:
            splits.remove_part(third.id)
        self.assertEqual(ctx.exception.details["unallocated"], {str(line.id): 1})

        splits.allocate(third.id, line.id, 1)
        result = self.pay_part(bill, third, method="ewallet")

        self.assertTrue(result.split_completed)
        bill.refresh_from_db()
        self.assertEqual(bill.status, "settled")

    def test_paid_part_is_frozen(self):
        bill = self.make_bill((self.nasi, 2))
        line = bill.lines.get()
        session = splits.open_session(bill.id, actor=self.cashier)
        splits.add_part(bill.id)
        part = session.parts.first()
        splits.allocate(part.id, line.id, 1)
        self.pay_part(bill, part, method="ewallet")

        with self.assertRaises(errors.InvariantError):
            splits.allocate(part.id, line.id, 2)
        with self.assertRaises(errors.InvariantError):
            splits.remove_part(part.id)

    def test_cancel_session_only_before_any_payment(self):
        bill = self.make_bill((self.nasi, 2))
        line = bill.lines.get()
        session = splits.open_session(bill.id, actor=self.cashier)
        part = session.parts.first()
        splits.allocate(part.id, line.id, 1)

        self.client.force_authenticate(user=self.cashier)
        cancelled = self.client.delete(f"/api/v1/bills/{bill.id}/split/")
        self.assertEqual(cancelled.status_code, 204)
        self.assertFalse(SplitSession.objects.exists())

        session = splits.open_session(bill.id, actor=self.cashier)
        part = session.parts.first()
        splits.allocate(part.id, line.id, 1)
        self.pay_part(bill, part, method="ewallet")

        with self.assertRaises(errors.ConflictError):
            splits.cancel_session(bill.id)
        with self.assertRaises(errors.InvariantError):
            services.cancel(bill.id, reason="walked out", actor=self.supervisor)

    def test_items_are_frozen_while_split_is_open(self):
        bill = self.make_bill((self.nasi, 2))
        splits.open_session(bill.id, actor=self.cashier)

        with self.assertRaises(errors.ConflictError):
            services.add_items(bill.id, [{"menu_item": self.teh.id, "quantity": 1}])

    def test_discount_is_shared_proportionally(self):
        bill = self.make_bill((self.nasi, 2), (self.teh, 2), discount=Decimal("5000"))
        nasi_line, teh_line = services.ordered_lines(bill)
        session = splits.open_session(bill.id, actor=self.cashier)
        part_one, part_two = session.parts.all()
        splits.allocate(part_one.id, nasi_line.id, 2)
        splits.allocate(part_two.id, teh_line.id, 2)

        self.assertEqual(splits.part_amount(part_one), Decimal("36000.00"))
        result = self.pay_part(bill, part_one, method="ewallet")
        part_two.refresh_from_db()
        self.assertEqual(result.payment.amount, Decimal("36000.00"))
        self.assertEqual(splits.part_amount(part_two), Decimal("9000.00"))


class SettlementTests(BillingTestCase):
    def test_scenario_cart_cash_with_change(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/settlements/",
            {
                "mode": "cart",
                "customer_name": "Walk-in",
                "items": [{"menu_item": str(self.nasi.id), "quantity": 2}],
                "method": "cash",
                "amount_tendered": "50000",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        payload = response.json()
        self.assertEqual(Decimal(payload["change"]), Decimal("10000"))
        self.assertEqual(Decimal(payload["bill"]["total"]), Decimal("40000"))
        self.assertEqual(payload["bill"]["payment_status"], "paid")
        self.assertEqual(payload["bill"]["status"], "settled")
        self.shift.refresh_from_db()
        self.assertEqual(self.shift.cash_revenue, Decimal("40000.00"))
        self.assertEqual(self.shift.total_orders, 1)

    def test_insufficient_cash_leaves_no_trace(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post(
            "/api/v1/settlements/",
            {
                "mode": "cart",
                "customer_name": "Walk-in",
                "items": [{"menu_item": str(self.nasi.id), "quantity": 2}],
                "method": "cash",
                "amount_tendered": "30000",
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "insufficient_payment")
        self.assertEqual(response.json()["errors"]["shortfall"], "10000.00")
        self.assertFalse(Bill.objects.exists())
        self.shift.refresh_from_db()
        self.assertEqual(self.shift.total_revenue, Decimal("0.00"))

    def test_retry_with_same_key_pays_once(self):
        bill = self.make_bill((self.nasi, 1))
        self.client.force_authenticate(user=self.cashier)
        body = {
            "mode": "whole_bill",
            "bill": str(bill.id),
            "method": "cash",
            "amount_tendered": "20000",
            "idempotency_key": "terminal-1-0001",
        }

        first = self.client.post("/api/v1/settlements/", body, format="json")
        second = self.client.post("/api/v1/settlements/", body, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(second.status_code, 200)
        self.assertTrue(second.json()["replayed"])
        self.assertEqual(second.json()["payment"]["id"], first.json()["payment"]["id"])
        self.assertEqual(Payment.objects.filter(bill=bill).count(), 1)
        self.shift.refresh_from_db()
        self.assertEqual(self.shift.total_orders, 1)
        self.assertEqual(self.shift.cash_revenue, Decimal("20000.00"))

    def test_whole_bill_key_reused_for_cart_conflicts(self):
        bill = self.make_bill((self.nasi, 1), table="T1")
        tender = settlement.Tender(method="ewallet", idempotency_key="K1")
        settlement.settle(settlement.WholeBillContext(bill_id=bill.id), tender, cashier=self.cashier, shift=self.shift)

        with self.assertRaises(errors.ConflictError):
            settlement.settle(
                settlement.CartContext(
                    items=[{"menu_item": self.teh.id, "quantity": 1}], customer_name="Sari", table_number="T9"
                ),
                settlement.Tender(method="cash", amount_tendered=Decimal("5000"), idempotency_key="K1"),
                cashier=self.cashier,
                shift=self.shift,
            )

        self.assertFalse(Bill.objects.filter(table_number="T9").exists())
        self.assertEqual(Payment.objects.count(), 1)

    def test_cart_key_reused_for_whole_bill_conflicts(self):
        cart = settlement.CartContext(items=[{"menu_item": self.teh.id, "quantity": 1}], customer_name="Sari")
        settlement.settle(
            cart, settlement.Tender(method="ewallet", idempotency_key="K2"), cashier=self.cashier, shift=self.shift
        )
        bill = self.make_bill((self.nasi, 1), table="T1")

        with self.assertRaises(errors.ConflictError):
            settlement.settle(
                settlement.WholeBillContext(bill_id=bill.id),
                settlement.Tender(method="ewallet", idempotency_key="K2"),
                cashier=self.cashier,
                shift=self.shift,
            )

        bill.refresh_from_db()
        self.assertEqual(bill.payment_status, "unpaid")

    def test_cart_retry_replays_same_sale(self):
        cart = settlement.CartContext(
            items=[{"menu_item": self.teh.id, "quantity": 2}], customer_name="Sari", table_number="T4"
        )
        tender = settlement.Tender(method="cash", amount_tendered=Decimal("20000"), idempotency_key="K3")

        first = settlement.settle(cart, tender, cashier=self.cashier, shift=self.shift)
        second = settlement.settle(cart, tender, cashier=self.cashier, shift=self.shift)

        self.assertTrue(second.replayed)
        self.assertEqual(second.payment.id, first.payment.id)
        self.assertEqual(second.payment.mode, "cart")
        self.assertEqual(Bill.objects.filter(table_number="T4").count(), 1)

    def test_key_reused_for_another_bill_conflicts(self):
        first = self.make_bill((self.nasi, 1), table="T1")
        second = self.make_bill((self.teh, 1), table="T2")
        tender = settlement.Tender(method="ewallet", idempotency_key="dup-key")

        settlement.settle(settlement.WholeBillContext(bill_id=first.id), tender, cashier=self.cashier, shift=self.shift)
        with self.assertRaises(errors.ConflictError):
            settlement.settle(settlement.WholeBillContext(bill_id=second.id), tender, cashier=self.cashier, shift=self.shift)

        second.refresh_from_db()
        self.assertEqual(second.payment_status, "unpaid")

    def test_ewallet_has_no_change_and_counts_as_non_cash(self):
        bill = self.make_bill((self.nasi, 1), (self.teh, 1))

        result = settlement.settle(
            settlement.WholeBillContext(bill_id=bill.id),
            settlement.Tender(method="ewallet", amount_tendered=Decimal("100000")),
            cashier=self.cashier,
            shift=self.shift,
        )

        self.assertEqual(result.change, Decimal("0.00"))
        self.assertEqual(result.payment.amount_tendered, Decimal("25000.00"))
        self.assertEqual(result.bill.payment_method, "ewallet")
        self.shift.refresh_from_db()
        self.assertEqual(self.shift.non_cash_revenue, Decimal("25000.00"))
        self.assertEqual(self.shift.cash_revenue, Decimal("0.00"))

    def test_paying_twice_without_key_conflicts(self):
        bill = self.make_bill((self.nasi, 1))
        context = settlement.WholeBillContext(bill_id=bill.id)

        settlement.settle(context, settlement.Tender(method="ewallet"), cashier=self.cashier, shift=self.shift)
        with self.assertRaises(errors.ConflictError):
            settlement.settle(context, settlement.Tender(method="ewallet"), cashier=self.cashier, shift=self.shift)

    def test_settlement_requires_own_open_shift(self):
        bill = self.make_bill((self.nasi, 1))
        self.client.force_authenticate(user=self.supervisor)

        response = self.client.post(
            "/api/v1/settlements/", {"mode": "whole_bill", "bill": str(bill.id), "method": "ewallet"}, format="json"
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("active cash shift", response.json()["message"].lower())

        with self.assertRaises(errors.ValidationError):
            settlement.settle(
                settlement.WholeBillContext(bill_id=bill.id),
                settlement.Tender(method="ewallet"),
                cashier=self.supervisor,
                shift=self.shift,
            )

    def test_mode_fields_are_validated(self):
        self.client.force_authenticate(user=self.cashier)

        response = self.client.post("/api/v1/settlements/", {"mode": "split_part", "method": "cash"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertIn("part", response.json()["errors"])

    def test_whole_bill_refused_while_split_open(self):
        bill = self.make_bill((self.nasi, 2))
        splits.open_session(bill.id, actor=self.cashier)

        with self.assertRaises(errors.ConflictError):
            settlement.settle(
                settlement.WholeBillContext(bill_id=bill.id),
                settlement.Tender(method="ewallet"),
                cashier=self.cashier,
                shift=self.shift,
            )

    def test_split_parts_settle_bill_when_all_paid(self):
        bill = self.make_bill((self.nasi, 3), (self.teh, 2))
        nasi_line, teh_line = services.ordered_lines(bill)
        session = splits.open_session(bill.id, actor=self.cashier)
        part_one, part_two = session.parts.all()
        splits.allocate(part_one.id, nasi_line.id, 2)
        splits.allocate(part_two.id, nasi_line.id, 1)
        splits.allocate(part_two.id, teh_line.id, 2)

        first = self.pay_part(bill, part_one, method="ewallet")
        bill.refresh_from_db()
        self.assertFalse(first.split_completed)
        self.assertEqual(bill.status, "open")

        second = self.pay_part(bill, part_two, tendered=Decimal("50000"))
        self.assertTrue(second.split_completed)
        self.assertEqual(second.payment.amount, Decimal("30000.00"))
        self.assertEqual(second.change, Decimal("20000.00"))

        bill.refresh_from_db()
        session.refresh_from_db()
        self.shift.refresh_from_db()
        self.assertEqual(bill.status, "settled")
        self.assertEqual(bill.payment_status, "paid")
        self.assertEqual(session.status, "closed")
        self.assertEqual(self.shift.total_revenue, Decimal("70000.00"))
        self.assertEqual(self.shift.cash_revenue, Decimal("30000.00"))
        self.assertEqual(self.shift.total_orders, 1)

    def test_part_without_allocation_cannot_be_paid(self):
        bill = self.make_bill((self.nasi, 2))
        session = splits.open_session(bill.id, actor=self.cashier)

        with self.assertRaises(errors.ValidationError):
            self.pay_part(bill, session.parts.first(), method="ewallet")

    def test_last_part_requires_everything_allocated(self):
        bill = self.make_bill((self.nasi, 3))
        line = bill.lines.get()
        session = splits.open_session(bill.id, actor=self.cashier)
        part_one, part_two = session.parts.all()
        splits.allocate(part_one.id, line.id, 1)
        splits.allocate(part_two.id, line.id, 1)
        self.pay_part(bill, part_one, method="ewallet")

        with self.assertRaises(errors.InvariantError) as ctx:
            self.pay_part(bill, part_two, method="ewallet")
        self.assertEqual(ctx.exception.details["unallocated"], {str(line.id): 1})

    def test_split_closes_when_paid_parts_cover_every_item(self):
        bill = self.make_bill((self.nasi, 2), (self.teh, 1), discount=Decimal("5000"))
        nasi_line, teh_line = services.ordered_lines(bill)
        session = splits.open_session(bill.id, actor=self.cashier, parts=3)
        first = session.parts.first()
        splits.allocate(first.id, nasi_line.id, 2)
        splits.allocate(first.id, teh_line.id, 1)

        result = self.pay_part(bill, first, method="ewallet")

        self.assertTrue(result.split_completed)
        self.assertEqual(result.payment.amount, Decimal("40000.00"))
        bill.refresh_from_db()
        session.refresh_from_db()
        self.shift.refresh_from_db()
        self.assertEqual((bill.status, bill.payment_status), ("settled", "paid"))
        self.assertEqual(session.status, "closed")
        self.assertEqual(list(session.parts.values_list("sequence", flat=True)), [1])
        self.assertEqual(self.shift.non_cash_revenue, Decimal("40000.00"))
        self.assertEqual(self.shift.total_orders, 1)
