"""Cash-drawer shift ledger.

A shift is the only place cash is accounted for. Every mutation locks the
shift row, so concurrent terminals cannot close a shift twice or post into a
shift that is being closed.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import Count, Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound

from common import errors
from common.permissions import user_has_capability
from common.utils import to_money
from shifts.models import CashMovement, Shift

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass
class CashMovementResult:
    movement: CashMovement
    expected_cash: Decimal
    warning: str | None = None


def get_active_shift(cashier):
    return Shift.objects.filter(cashier=cashier, status=Shift.Status.OPEN).first()


def require_active_shift(cashier):
    shift = get_active_shift(cashier)
    if shift is None:
        raise errors.ValidationError(
            "No active cash shift. Open a shift before taking payments.",
            details={"shift": "required"},
        )
    return shift


def lock_shift(shift_id):
    shift = Shift.objects.select_for_update().filter(id=shift_id).first()
    if shift is None:
        raise NotFound("Shift not found.")
    return shift


def ensure_can_operate(shift, actor):
    if actor is None or shift.cashier_id == actor.id:
        return
    if not user_has_capability(actor, "shift.close.override"):
        raise errors.AuthorizationError(
            "Only supervisors/admins can operate another cashier's shift.",
            details={"shift": str(shift.id)},
        )


def _ensure_open(shift):
    if not shift.is_open:
        raise errors.InvariantError(
            "Shift is closed; its ledger is read-only.",
            details={"shift": str(shift.id), "status": shift.status},
        )


def open_shift(cashier, initial_cash, *, notes=""):
    initial_cash = to_money(initial_cash)
    if initial_cash < 0:
        raise errors.ValidationError("Opening float cannot be negative.", details={"initial_cash": str(initial_cash)})

    try:
        with transaction.atomic():
            shift = Shift.objects.create(cashier=cashier, initial_cash=initial_cash, notes=notes or "")
    except IntegrityError as exc:
        existing = get_active_shift(cashier)
        raise errors.ConflictError(
            "An open shift already exists for this cashier.",
            details={"shift": str(existing.id) if existing else None},
        ) from exc

    logger.info(
        "shift_opened",
        extra={"shift_id": shift.id, "cashier_id": cashier.id, "amount": initial_cash},
    )
    return shift


def movement_totals(shift):
    rows = shift.movements.values("type").annotate(total=Sum("amount"))
    totals = {CashMovement.Type.IN: ZERO, CashMovement.Type.OUT: ZERO}
    for row in rows:
        totals[row["type"]] = row["total"] or ZERO
    return totals


def expected_cash(shift):
    """initial float + cash in - cash out + cash order revenue."""
    totals = movement_totals(shift)
    return to_money(
        shift.initial_cash + totals[CashMovement.Type.IN] - totals[CashMovement.Type.OUT] + shift.cash_revenue
    )


@transaction.atomic
def post_cash_movement(shift, *, movement_type, amount, description, category=CashMovement.Category.OTHER, actor=None, expense_category=""):
    amount = to_money(amount)
    if amount <= 0:
        raise errors.ValidationError("Cash movement amount must be greater than zero.", details={"amount": str(amount)})
    if movement_type not in CashMovement.Type.values:
        raise errors.ValidationError("Cash movement type must be 'in' or 'out'.", details={"type": movement_type})
    if category not in CashMovement.Category.values:
        raise errors.ValidationError("Unknown cash movement category.", details={"category": category})
    if not (description or "").strip():
        raise errors.ValidationError("A description is required.", details={"description": "required"})

    shift = lock_shift(shift.id)
    _ensure_open(shift)
    ensure_can_operate(shift, actor)

    movement = CashMovement.objects.create(
        shift=shift,
        cashier=actor or shift.cashier,
        type=movement_type,
        amount=amount,
        description=description.strip(),
        category=category,
        expense_category=expense_category,
    )
    expected = expected_cash(shift)

    warning = None
    if movement_type == CashMovement.Type.OUT and expected < 0:
        # Not a hard limit: corrections must still be recordable.
        warning = f"Expected drawer cash is now negative ({expected})."
        logger.warning(
            "cash_movement_negative_drawer",
            extra={"shift_id": shift.id, "cashier_id": movement.cashier_id, "amount": expected},
        )

    logger.info(
        "cash_movement_posted type=%s category=%s",
        movement_type,
        category,
        extra={"shift_id": shift.id, "cashier_id": movement.cashier_id, "amount": amount},
    )
    return CashMovementResult(movement=movement, expected_cash=expected, warning=warning)


def record_expense(shift, *, amount, description, expense_category=CashMovement.ExpenseCategory.OPERATIONAL, actor=None):
    if expense_category not in CashMovement.ExpenseCategory.values:
        raise errors.ValidationError("Unknown expense category.", details={"expense_category": expense_category})
    return post_cash_movement(
        shift,
        movement_type=CashMovement.Type.OUT,
        amount=amount,
        description=description,
        category=CashMovement.Category.EXPENSE,
        actor=actor,
        expense_category=expense_category,
    )


def post_order_revenue(shift, *, amount, is_cash, count_order=True):
    """Add a settled payment to the shift counters.

    Must run inside the caller's transaction so the bill transition and the
    ledger posting commit together.
    """
    amount = to_money(amount)
    shift = lock_shift(shift.id)
    _ensure_open(shift)

    shift.total_revenue = to_money(shift.total_revenue + amount)
    if is_cash:
        shift.cash_revenue = to_money(shift.cash_revenue + amount)
    else:
        shift.non_cash_revenue = to_money(shift.non_cash_revenue + amount)
    if count_order:
        shift.total_orders += 1
    shift.save(update_fields=["total_revenue", "cash_revenue", "non_cash_revenue", "total_orders", "updated_at"])

    logger.info(
        "shift_revenue_posted is_cash=%s",
        is_cash,
        extra={"shift_id": shift.id, "cashier_id": shift.cashier_id, "amount": amount},
    )
    return shift


@transaction.atomic
def close_shift(shift_id, counted_cash, *, closed_by, notes=""):
    counted_cash = to_money(counted_cash)
    if counted_cash < 0:
        raise errors.ValidationError("Counted cash cannot be negative.", details={"final_cash": str(counted_cash)})

    shift = lock_shift(shift_id)
    if not shift.is_open:
        raise errors.ConflictError("Shift is already closed.", details={"shift": str(shift.id)})
    ensure_can_operate(shift, closed_by)

    system_cash = expected_cash(shift)
    shift.system_cash = system_cash
    shift.final_cash = counted_cash
    shift.cash_difference = to_money(counted_cash - system_cash)
    shift.status = Shift.Status.CLOSED
    shift.ended_at = timezone.now()
    shift.closed_by = closed_by
    if notes:
        shift.notes = f"{shift.notes}\n{notes}".strip()
    shift.save(
        update_fields=[
            "system_cash",
            "final_cash",
            "cash_difference",
            "status",
            "ended_at",
            "closed_by",
            "notes",
            "updated_at",
        ]
    )

    log = logger.warning if shift.cash_difference else logger.info
    log(
        "shift_closed difference=%s",
        shift.cash_difference,
        extra={"shift_id": shift.id, "cashier_id": shift.cashier_id, "amount": system_cash},
    )
    return shift


def shift_report(shift):
    totals = movement_totals(shift)

    by_category = list(
        shift.movements.values("category", "type").annotate(total=Sum("amount"), count=Count("id")).order_by("category", "type")
    )
    payments = {
        row["method"]: {"total": row["total"], "count": row["count"]}
        for row in shift.payments.values("method").annotate(total=Sum("amount"), count=Count("id"))
    }

    return {
        "shift": shift,
        "cash_in_total": totals[CashMovement.Type.IN],
        "cash_out_total": totals[CashMovement.Type.OUT],
        "movements_by_category": by_category,
        "payments_by_method": payments,
        "expected_cash": shift.system_cash if shift.system_cash is not None else expected_cash(shift),
    }
