"""Settlement processor.

``settle`` takes one of three payment contexts and applies a tender to it.
The bill or split transition, the payment record and the shift ledger
posting commit in one transaction; a retry carrying the same idempotency key
returns the original result instead of paying twice.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from django.db import IntegrityError, transaction
from rest_framework.exceptions import NotFound

from billing import services, splits
from billing.models import Bill, Payment
from common import errors
from common.utils import to_money
from shifts.services import lock_shift, post_order_revenue

logger = logging.getLogger(__name__)

ZERO = Decimal("0.00")


@dataclass(frozen=True)
class CartContext:
    items: list
    customer_name: str
    table_number: str = ""
    discount: Decimal = ZERO


@dataclass(frozen=True)
class WholeBillContext:
    bill_id: uuid.UUID


@dataclass(frozen=True)
class SplitPartContext:
    bill_id: uuid.UUID
    part_id: uuid.UUID


@dataclass(frozen=True)
class Tender:
    method: str
    amount_tendered: Decimal | None = None
    idempotency_key: str | None = None


@dataclass
class SettlementResult:
    bill: Bill
    payment: Payment
    change: Decimal
    replayed: bool = False
    split_completed: bool = False


def _mode(context):
    if isinstance(context, CartContext):
        return "cart"
    if isinstance(context, WholeBillContext):
        return "whole_bill"
    if isinstance(context, SplitPartContext):
        return "split_part"
    raise TypeError(f"Unsupported settlement context: {type(context).__name__}")


def _same_target(payment, context):
    if payment.mode != _mode(context):
        return False
    if isinstance(context, SplitPartContext):
        return str(payment.split_part_id) == str(context.part_id)
    if isinstance(context, WholeBillContext):
        return str(payment.bill_id) == str(context.bill_id)
    bill = payment.bill
    return (
        bill.customer_name == (context.customer_name or "").strip()
        and bill.table_number == (context.table_number or "").strip()
    )


def _replay(idempotency_key, context):
    payment = Payment.objects.select_related("bill").filter(idempotency_key=idempotency_key).first()
    if payment is None:
        return None
    if not _same_target(payment, context):
        raise errors.ConflictError(
            "Idempotency key was already used for a different payment.",
            details={"idempotency_key": idempotency_key, "payment": str(payment.id)},
        )
    logger.info(
        "settlement_replayed key=%s",
        idempotency_key,
        extra={"bill_id": payment.bill_id, "payment_id": payment.id, "amount": payment.amount},
    )
    return SettlementResult(bill=payment.bill, payment=payment, change=payment.change_due, replayed=True)


def _tender_amounts(total, tender):
    """Return ``(amount_tendered, change)`` for ``total``."""
    if tender.method == Bill.PaymentMethod.EWALLET:
        return total, ZERO

    if tender.amount_tendered is None:
        raise errors.ValidationError("Amount tendered is required for cash.", details={"amount_tendered": "required"})
    tendered = to_money(tender.amount_tendered)
    if tendered < total:
        raise errors.InsufficientPaymentError(
            f"Cash tendered {tendered} is less than the total {total}.",
            details={"total": str(total), "amount_tendered": str(tendered), "shortfall": str(total - tendered)},
        )
    return tendered, to_money(tendered - total)


def _check_shift(shift, cashier):
    if shift is None:
        raise errors.ValidationError(
            "No active cash shift. Open a shift before taking payments.",
            details={"shift": "required"},
        )
    shift = lock_shift(shift.id)
    if not shift.is_open or shift.cashier_id != cashier.id:
        raise errors.ValidationError(
            "Payments must be posted to the cashier's own open shift.",
            details={"shift": str(shift.id), "status": shift.status},
        )
    return shift


def _record_payment(*, bill, mode, amount, tender, tendered, change, cashier, shift, key, split_part=None):
    return Payment.objects.create(
        bill=bill,
        mode=mode,
        split_part=split_part,
        shift=shift,
        cashier=cashier,
        method=tender.method,
        amount=amount,
        amount_tendered=tendered,
        change_due=change,
        idempotency_key=key,
    )


def _mark_bill_settled(bill, method, paid_at):
    bill.status = Bill.Status.SETTLED
    bill.payment_status = Bill.PaymentStatus.PAID
    bill.payment_method = method
    bill.paid_at = paid_at
    bill.failure_reason = ""
    bill.save(update_fields=["status", "payment_status", "payment_method", "paid_at", "failure_reason", "updated_at"])


def _lock_payable_bill(bill_id):
    bill = services.lock_bill(bill_id)
    if bill.status == Bill.Status.SETTLED or bill.payment_status == Bill.PaymentStatus.PAID:
        raise errors.ConflictError("Bill is already paid.", details={"bill": str(bill.id)})
    if bill.status == Bill.Status.CANCELLED:
        raise errors.InvariantError("A cancelled bill cannot be paid.", details={"bill": str(bill.id)})
    return bill


def _pay_whole_bill(bill, tender, *, mode, cashier, shift, key):
    tendered, change = _tender_amounts(bill.total, tender)
    payment = _record_payment(
        bill=bill, mode=mode, amount=bill.total, tender=tender, tendered=tendered, change=change, cashier=cashier, shift=shift, key=key
    )
    _mark_bill_settled(bill, tender.method, payment.paid_at)
    post_order_revenue(shift, amount=bill.total, is_cash=tender.method == Bill.PaymentMethod.CASH)
    return SettlementResult(bill=bill, payment=payment, change=change)


def _settle_cart(context, tender, *, cashier, shift, key):
    bill = services.create_open_bill(
        customer_name=context.customer_name,
        table_number=context.table_number,
        items=context.items,
        cashier=cashier,
        discount=context.discount,
    )
    return _pay_whole_bill(bill, tender, mode=Payment.Mode.CART, cashier=cashier, shift=shift, key=key)


def _settle_whole_bill(context, tender, *, cashier, shift, key):
    bill = _lock_payable_bill(context.bill_id)
    session = services.get_open_split_session(bill)
    if session is not None:
        raise errors.ConflictError(
            "Bill is being split; pay the split parts or cancel the split.",
            details={"bill": str(bill.id), "split_session": str(session.id)},
        )
    return _pay_whole_bill(bill, tender, mode=Payment.Mode.WHOLE_BILL, cashier=cashier, shift=shift, key=key)


def _settle_split_part(context, tender, *, cashier, shift, key):
    bill = _lock_payable_bill(context.bill_id)
    session = services.get_open_split_session(bill)
    if session is None:
        raise errors.ConflictError("This bill has no open split.", details={"bill": str(bill.id)})
    part = session.parts.select_for_update().filter(id=context.part_id).first()
    if part is None:
        raise NotFound("Split part not found.")
    if part.paid:
        raise errors.ConflictError(
            "This part has already been paid.",
            details={"part": str(part.id), "sequence": part.sequence},
        )
    if not part.allocations.exists():
        raise errors.ValidationError(
            "Allocate at least one item to this part before paying it.",
            details={"part": str(part.id), "sequence": part.sequence},
        )
    is_last = not session.parts.filter(paid=False).exclude(id=part.id).exists()
    if is_last:
        leftover = splits.unallocated_quantities(session)
        if leftover:
            raise errors.InvariantError(
                "Every item must be allocated before the last part is paid.",
                details={"unallocated": leftover},
            )

    amount = splits.part_amount(part)
    tendered, change = _tender_amounts(amount, tender)
    payment = _record_payment(
        bill=bill,
        mode=Payment.Mode.SPLIT_PART,
        amount=amount,
        tender=tender,
        tendered=tendered,
        change=change,
        cashier=cashier,
        shift=shift,
        key=key,
        split_part=part,
    )
    completed = splits.mark_part_paid(part, amount=amount, paid_at=payment.paid_at)
    if completed:
        _mark_bill_settled(bill, tender.method, payment.paid_at)
    post_order_revenue(shift, amount=amount, is_cash=tender.method == Bill.PaymentMethod.CASH, count_order=completed)
    return SettlementResult(bill=bill, payment=payment, change=change, split_completed=completed)


HANDLERS = {
    CartContext: _settle_cart,
    WholeBillContext: _settle_whole_bill,
    SplitPartContext: _settle_split_part,
}


def settle(context, tender, *, cashier, shift):
    """Apply ``tender`` to ``context`` against the cashier's open ``shift``.

    Raises ``InsufficientPaymentError`` when cash tendered is below the amount
    due. Nothing is written unless the whole settlement succeeds.
    """
    mode = _mode(context)
    if tender.method not in Bill.PaymentMethod.values:
        raise errors.ValidationError("Unknown payment method.", details={"method": tender.method})
    key = (tender.idempotency_key or "").strip() or uuid.uuid4().hex

    try:
        with transaction.atomic():
            replayed = _replay(key, context)
            if replayed is not None:
                return replayed
            shift = _check_shift(shift, cashier)
            result = HANDLERS[type(context)](context, tender, cashier=cashier, shift=shift, key=key)
    except IntegrityError:
        # A concurrent request with the same key won the insert.
        replayed = _replay(key, context)
        if replayed is None:
            raise
        return replayed

    logger.info(
        "bill_settled mode=%s method=%s change=%s",
        mode,
        tender.method,
        result.change,
        extra={
            "bill_id": result.bill.id,
            "payment_id": result.payment.id,
            "shift_id": shift.id,
            "cashier_id": cashier.id,
            "amount": result.payment.amount,
        },
    )
    return result
