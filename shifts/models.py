import uuid

from django.db import models
from django.db.models import Q
from django.utils import timezone

from common.models import AppendOnlyModel
from core.models import User


class Shift(models.Model):
    class Status(models.TextChoices):
        OPEN = "open", "Open"
        CLOSED = "closed", "Closed"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    cashier = models.ForeignKey(User, on_delete=models.PROTECT, related_name="shifts")
    status = models.CharField(max_length=16, choices=Status.choices, default=Status.OPEN)
    started_at = models.DateTimeField(default=timezone.now)
    ended_at = models.DateTimeField(null=True, blank=True)
    initial_cash = models.DecimalField(max_digits=14, decimal_places=2)
    final_cash = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    system_cash = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    cash_difference = models.DecimalField(max_digits=14, decimal_places=2, null=True, blank=True)
    total_orders = models.PositiveIntegerField(default=0)
    total_revenue = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    cash_revenue = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    non_cash_revenue = models.DecimalField(max_digits=14, decimal_places=2, default=0)
    notes = models.TextField(blank=True, default="")
    closed_by = models.ForeignKey(User, on_delete=models.PROTECT, null=True, blank=True, related_name="+")
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        indexes = [
            models.Index(fields=["cashier", "started_at"], name="shift_cashier_started_idx"),
            models.Index(fields=["status", "started_at"], name="shift_status_started_idx"),
        ]
        constraints = [
            models.UniqueConstraint(
                fields=["cashier"],
                condition=Q(status="open"),
                name="uniq_open_shift_per_cashier",
            ),
        ]

    @property
    def is_open(self):
        return self.status == self.Status.OPEN


class CashMovement(AppendOnlyModel):
    class Type(models.TextChoices):
        IN = "in", "Cash In"
        OUT = "out", "Cash Out"

    class Category(models.TextChoices):
        DEPOSIT = "deposit", "Deposit"
        EXPENSE = "expense", "Expense"
        OTHER = "other", "Other"

    class ExpenseCategory(models.TextChoices):
        OPERATIONAL = "operational", "Operational"
        MAINTENANCE = "maintenance", "Maintenance"
        SUPPLIES = "supplies", "Supplies"
        OTHER = "other", "Other"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    shift = models.ForeignKey(Shift, on_delete=models.PROTECT, related_name="movements")
    cashier = models.ForeignKey(User, on_delete=models.PROTECT, related_name="+")
    type = models.CharField(max_length=8, choices=Type.choices)
    amount = models.DecimalField(max_digits=14, decimal_places=2)
    description = models.CharField(max_length=255)
    category = models.CharField(max_length=16, choices=Category.choices, default=Category.OTHER)
    expense_category = models.CharField(max_length=16, choices=ExpenseCategory.choices, blank=True, default="")
    created_at = models.DateTimeField(default=timezone.now)

    class Meta:
        indexes = [
            models.Index(fields=["shift", "created_at"], name="cashmove_shift_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=Q(amount__gt=0), name="cashmove_amount_positive"),
        ]
