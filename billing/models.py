import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from common.models import AppendOnlyModel
from core.models import User
from menu.models import MenuItem
from shifts.models import Shift

ACTIVE_BILL_STATUSES = ("open", "submitted")


class Bill(models.Model):
    class Status(models.TextChoices):
        OPEN = "open", "Open"
        SUBMITTED = "submitted", "Submitted"
        SETTLED = "settled", "Settled"
        CANCELLED = "cancelled", "Cancelled"

    class PaymentStatus(models.TextChoices):
        UNPAID = "unpaid", "Unpaid"
        PAID = "paid", "Paid"
        FAILED = "failed", "Failed"

    class PaymentMethod(models.TextChoices):
        CASH = "cash", "Cash"
        EWALLET = "ewallet", "E-Wallet / QRIS"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    customer_name = models.CharField(max_length=255)
    table_number = models.CharField(max_length=32, blank=True, default="")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.OPEN)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.UNPAID)
    payment_method = models.CharField(max_length=16, choices=PaymentMethod.choices, blank=True, default="")
    subtotal = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    discount = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    total = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    version = models.PositiveIntegerField(default=1)
    created_by = models.ForeignKey(User, on_delete=models.PROTECT, related_name="bills")
    failure_reason = models.CharField(max_length=255, blank=True, default="")
    cancel_reason = models.CharField(max_length=255, blank=True, default="")
    paid_at = models.DateTimeField(null=True, blank=True)
    submitted_at = models.DateTimeField(null=True, blank=True)
    cancelled_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "created_at"], name="bill_status_created_idx"),
            models.Index(fields=["table_number", "status"], name="bill_table_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["table_number"],
                condition=Q(status__in=ACTIVE_BILL_STATUSES) & ~Q(table_number=""),
                name="uniq_active_bill_per_table",
            ),
        ]

    @property
    def is_active(self):
        return self.status in ACTIVE_BILL_STATUSES


class BillLine(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bill = models.ForeignKey(Bill, on_delete=models.CASCADE, related_name="lines")
    position = models.PositiveIntegerField()
    menu_item = models.ForeignKey(MenuItem, on_delete=models.PROTECT, related_name="+")
    name = models.CharField(max_length=255)
    unit_price = models.DecimalField(max_digits=14, decimal_places=2)
    quantity = models.PositiveIntegerField()
    note = models.CharField(max_length=255, blank=True, default="")

    class Meta:
        ordering = ["position"]
        indexes = [
            models.Index(fields=["bill", "position"], name="billline_bill_position_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(quantity__gt=0), name="billline_quantity_positive"),
        ]

    @property
    def line_total(self):
        return self.unit_price * self.quantity


class ApprovalRequest(models.Model):
    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        APPROVED = "approved", "Approved"
        REJECTED = "rejected", "Rejected"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bill = models.ForeignKey(Bill, on_delete=models.PROTECT, related_name="approval_requests")
    item_index = models.PositiveIntegerField()
    requester = models.ForeignKey(User, on_delete=models.PROTECT, related_name="+")
    item_menu_item_id = models.UUIDField()
    item_name = models.CharField(max_length=255)
    item_quantity = models.PositiveIntegerField()
    item_unit_price = models.DecimalField(max_digits=14, decimal_places=2)
    item_note = models.CharField(max_length=255, blank=True, default="")
    reason = models.CharField(max_length=255)
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.PENDING)
    authorizer = models.ForeignKey(User, on_delete=models.PROTECT, null=True, blank=True, related_name="+")
    resolution_note = models.CharField(max_length=255, blank=True, default="")
    requested_at = models.DateTimeField(default=timezone.now)
    resolved_at = models.DateTimeField(null=True, blank=True)
    applied_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        indexes = [
            models.Index(fields=["status", "requested_at"], name="approval_status_requested_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["bill", "item_index"],
                condition=Q(status="pending"),
                name="uniq_pending_approval_per_item",
            ),
        ]

    @property
    def item_snapshot(self):
        return {
            "menu_item": self.item_menu_item_id,
            "name": self.item_name,
            "quantity": self.item_quantity,
            "unit_price": self.item_unit_price,
            "note": self.item_note,
        }


class DeletionLogEntry(AppendOnlyModel):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bill = models.ForeignKey(Bill, on_delete=models.PROTECT, related_name="deletion_logs")
    approval = models.OneToOneField(ApprovalRequest, on_delete=models.PROTECT, related_name="deletion_log")
    requester = models.ForeignKey(User, on_delete=models.PROTECT, related_name="+")
    authorizer = models.ForeignKey(User, on_delete=models.PROTECT, related_name="+")
    item_name = models.CharField(max_length=255)
    item_quantity = models.PositiveIntegerField()
    item_unit_price = models.DecimalField(max_digits=14, decimal_places=2)
    reason = models.CharField(max_length=255)
    requested_at = models.DateTimeField()
    approved_at = models.DateTimeField()
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=["created_at"], name="deletionlog_created_idx"),
        ]


class SplitSession(models.Model):
    class Status(models.TextChoices):
        OPEN = "open", "Open"
        CLOSED = "closed", "Closed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bill = models.ForeignKey(Bill, on_delete=models.PROTECT, related_name="split_sessions")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.OPEN)
    created_by = models.ForeignKey(User, on_delete=models.PROTECT, related_name="+")
    created_at = models.DateTimeField(default=timezone.now)
    closed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(
                fields=["bill"],
                condition=Q(status="open"),
                name="uniq_open_split_session_per_bill",
            ),
        ]


class SplitPart(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    session = models.ForeignKey(SplitSession, on_delete=models.CASCADE, related_name="parts")
    sequence = models.PositiveIntegerField()
    assignee_name = models.CharField(max_length=255, blank=True, default="")
    paid = models.BooleanField(default=False)
    paid_at = models.DateTimeField(null=True, blank=True)
    amount_paid = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)

    class Meta:
        ordering = ["sequence"]
        constraints = [
            models.UniqueConstraint(fields=["session", "sequence"], name="uniq_split_part_sequence"),
        ]


class SplitAllocation(models.Model):
    id = models.BigAutoField(primary_key=True)
    part = models.ForeignKey(SplitPart, on_delete=models.CASCADE, related_name="allocations")
    line = models.ForeignKey(BillLine, on_delete=models.PROTECT, related_name="split_allocations")
    quantity = models.PositiveIntegerField()

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["part", "line"], name="uniq_split_allocation_line"),
            models.CheckConstraint(condition=Q(quantity__gt=0), name="split_allocation_quantity_positive"),
        ]


class Payment(models.Model):
    class Mode(models.TextChoices):
        CART = "cart", "Cart"
        WHOLE_BILL = "whole_bill", "Whole bill"
        SPLIT_PART = "split_part", "Split part"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    bill = models.ForeignKey(Bill, on_delete=models.PROTECT, related_name="payments")
    split_part = models.ForeignKey(SplitPart, on_delete=models.PROTECT, null=True, blank=True, related_name="payments")
    shift = models.ForeignKey(Shift, on_delete=models.PROTECT, related_name="payments")
    cashier = models.ForeignKey(User, on_delete=models.PROTECT, related_name="+")
    method = models.CharField(max_length=16, choices=Bill.PaymentMethod.choices)
    mode = models.CharField(max_length=16, choices=Mode.choices)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    amount_tendered = models.DecimalField(max_digits=14, decimal_places=2)
    change_due = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    idempotency_key = models.CharField(max_length=64, unique=True)
    paid_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=["bill", "paid_at"], name="payment_bill_paid_idx"),
            models.Index(fields=["shift", "method"], name="payment_shift_method_idx"),
        ]
