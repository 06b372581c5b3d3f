"""Split sessions: partition a bill's line quantities into payable parts.

Every call locks the parent bill row, so terminals editing the same split
are serialized and the remaining quantity per line is always computed from
the database rather than from what a client last saw.
"""

import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.db.models import Max, Sum
from django.utils import timezone
from rest_framework.exceptions import NotFound

from billing import services
from billing.models import Bill, SplitAllocation, SplitPart, SplitSession
from common import errors
from common.utils import to_money

logger = logging.getLogger(__name__)

MIN_PARTS = 2


def _lock_part(part_id):
    part = SplitPart.objects.select_related("session").filter(id=part_id).first()
    if part is None:
        raise NotFound("Split part not found.")
    bill = services.lock_bill(part.session.bill_id)
    part = SplitPart.objects.select_related("session").select_for_update().get(id=part.id)
    if part.session.status != SplitSession.Status.OPEN:
        raise errors.ConflictError("Split session is already closed.", details={"split_session": str(part.session_id)})
    return bill, part


def _require_session(bill):
    session = services.get_open_split_session(bill)
    if session is None:
        raise NotFound("No open split session for this bill.")
    return session


def _ensure_unpaid(part):
    if part.paid:
        raise errors.InvariantError(
            "A paid part is frozen and cannot be changed.",
            details={"part": str(part.id), "sequence": part.sequence},
        )


@transaction.atomic
def open_session(bill_id, *, actor, parts=MIN_PARTS):
    try:
        parts = int(parts)
    except (TypeError, ValueError):
        raise errors.ValidationError("Number of parts must be a whole number.", details={"parts": parts})
    if parts < MIN_PARTS:
        raise errors.ValidationError(f"A split needs at least {MIN_PARTS} parts.", details={"parts": parts})

    bill = services.lock_bill(bill_id)
    if not bill.is_active or bill.payment_status == Bill.PaymentStatus.PAID:
        raise errors.InvariantError(
            "Only an open, unpaid bill can be split.",
            details={"bill": str(bill.id), "status": bill.status, "payment_status": bill.payment_status},
        )
    existing = services.get_open_split_session(bill)
    if existing is not None:
        raise errors.ConflictError(
            "This bill is already being split.",
            details={"bill": str(bill.id), "split_session": str(existing.id)},
        )

    try:
        with transaction.atomic():
            session = SplitSession.objects.create(bill=bill, created_by=actor)
            SplitPart.objects.bulk_create([SplitPart(session=session, sequence=number) for number in range(1, parts + 1)])
    except IntegrityError as exc:
        raise errors.ConflictError("This bill is already being split.", details={"bill": str(bill.id)}) from exc

    logger.info("split_opened parts=%s", parts, extra={"bill_id": bill.id, "split_session_id": session.id})
    return session


@transaction.atomic
def add_part(bill_id, *, assignee_name=""):
    bill = services.lock_bill(bill_id)
    session = _require_session(bill)
    last = session.parts.aggregate(last=Max("sequence"))["last"] or 0
    part = SplitPart.objects.create(session=session, sequence=last + 1, assignee_name=(assignee_name or "").strip())
    logger.info("split_part_added sequence=%s", part.sequence, extra={"bill_id": bill.id, "split_session_id": session.id})
    return part


@transaction.atomic
def remove_part(part_id):
    bill, part = _lock_part(part_id)
    _ensure_unpaid(part)
    if part.session.parts.count() <= MIN_PARTS:
        raise errors.InvariantError(
            f"A split needs at least {MIN_PARTS} parts.",
            details={"split_session": str(part.session_id)},
        )
    session = part.session
    if not session.parts.filter(paid=False).exclude(id=part.id).exists():
        raise errors.InvariantError(
            "The last unpaid part cannot be removed while items are still unallocated.",
            details={"split_session": str(session.id), "unallocated": unallocated_quantities(session)},
        )
    part.delete()
    logger.info("split_part_removed sequence=%s", part.sequence, extra={"bill_id": bill.id, "split_session_id": session.id})
    return session


@transaction.atomic
def rename_part(part_id, assignee_name):
    _, part = _lock_part(part_id)
    part.assignee_name = (assignee_name or "").strip()
    part.save(update_fields=["assignee_name"])
    return part


def remaining_quantity(line, session, *, exclude_part=None):
    """Quantity of ``line`` not yet allocated to any part of ``session``."""
    qs = SplitAllocation.objects.filter(line=line, part__session=session)
    if exclude_part is not None:
        qs = qs.exclude(part=exclude_part)
    allocated = qs.aggregate(total=Sum("quantity"))["total"] or 0
    return line.quantity - allocated


def unallocated_quantities(session):
    lines = services.ordered_lines(session.bill)
    allocated = {
        row["line"]: row["total"]
        for row in SplitAllocation.objects.filter(part__session=session).values("line").annotate(total=Sum("quantity"))
    }
    return {
        str(line.id): line.quantity - allocated.get(line.id, 0)
        for line in lines
        if line.quantity - allocated.get(line.id, 0) > 0
    }


@transaction.atomic
def allocate(part_id, line_id, quantity):
    """Set how many units of a line belong to a part; 0 clears the allocation."""
    try:
        quantity = int(quantity)
    except (TypeError, ValueError):
        raise errors.ValidationError("Quantity must be a whole number.", details={"quantity": quantity})
    if quantity < 0:
        raise errors.ValidationError("Quantity cannot be negative.", details={"quantity": quantity})

    bill, part = _lock_part(part_id)
    _ensure_unpaid(part)
    line = bill.lines.filter(id=line_id).first()
    if line is None:
        raise errors.ValidationError("Line item is not on this bill.", details={"line": str(line_id)})

    remaining = remaining_quantity(line, part.session, exclude_part=part)
    if quantity > remaining:
        raise errors.CapacityError(
            f"Only {remaining} x {line.name} left to allocate.",
            details={"line": str(line.id), "remaining": remaining, "requested": quantity},
        )

    if quantity == 0:
        SplitAllocation.objects.filter(part=part, line=line).delete()
        allocation = None
    else:
        allocation, _ = SplitAllocation.objects.update_or_create(part=part, line=line, defaults={"quantity": quantity})

    logger.info(
        "split_allocated sequence=%s line=%s quantity=%s remaining=%s",
        part.sequence,
        line.id,
        quantity,
        remaining - quantity,
        extra={"bill_id": bill.id, "split_session_id": part.session_id},
    )
    return allocation


def part_subtotal(part):
    return to_money(
        sum(
            (allocation.line.unit_price * allocation.quantity for allocation in part.allocations.select_related("line")),
            Decimal("0"),
        )
    )


def part_amount(part):
    """Amount due for ``part``.

    The part's share of the bill discount is proportional to its subtotal.
    The last unpaid part absorbs rounding by paying whatever is left of the
    bill total.
    """
    session = part.session
    bill = session.bill
    if part.paid:
        return part.amount_paid
    unpaid_others = session.parts.filter(paid=False).exclude(id=part.id).exists()
    if not unpaid_others:
        paid_total = session.parts.filter(paid=True).aggregate(total=Sum("amount_paid"))["total"] or Decimal("0")
        return to_money(bill.total - paid_total)

    subtotal = part_subtotal(part)
    if not bill.subtotal:
        return subtotal
    return to_money(subtotal - bill.discount * subtotal / bill.subtotal)


def covered_by_paid_parts(session):
    """True when the paid parts of ``session`` already hold every unit of every line."""
    paid = {
        row["line"]: row["total"]
        for row in SplitAllocation.objects.filter(part__session=session, part__paid=True)
        .values("line")
        .annotate(total=Sum("quantity"))
    }
    return all(paid.get(line.id, 0) >= line.quantity for line in session.bill.lines.all())


def mark_part_paid(part, *, amount, paid_at=None):
    """Freeze ``part`` as paid. Returns True when the session is now complete.

    The session completes when no unpaid part is left, or when the paid parts
    already cover the whole bill; any remaining unpaid parts are then empty
    and are dropped. Only the settlement processor calls this, inside its own
    transaction.
    """
    paid_at = paid_at or timezone.now()
    part.paid = True
    part.paid_at = paid_at
    part.amount_paid = to_money(amount)
    part.save(update_fields=["paid", "paid_at", "amount_paid"])

    session = part.session
    unpaid = session.parts.filter(paid=False)
    if unpaid.exists():
        if not covered_by_paid_parts(session):
            return False
        dropped = list(unpaid.values_list("sequence", flat=True))
        unpaid.delete()
        logger.info(
            "split_empty_parts_dropped sequences=%s",
            dropped,
            extra={"bill_id": session.bill_id, "split_session_id": session.id},
        )

    session.status = SplitSession.Status.CLOSED
    session.closed_at = paid_at
    session.save(update_fields=["status", "closed_at"])
    logger.info("split_completed", extra={"bill_id": session.bill_id, "split_session_id": session.id})
    return True


@transaction.atomic
def cancel_session(bill_id):
    bill = services.lock_bill(bill_id)
    session = _require_session(bill)
    paid = list(session.parts.filter(paid=True).values_list("sequence", flat=True))
    if paid:
        raise errors.ConflictError(
            "Part of this split is already paid; the split cannot be cancelled.",
            details={"split_session": str(session.id), "paid_parts": paid},
        )
    session_id = session.id
    session.delete()
    logger.info("split_cancelled", extra={"bill_id": bill.id, "split_session_id": session_id})
