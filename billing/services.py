"""Bill store: open bills, their ordered lines and the bill state machine.

``open -> submitted -> settled`` with ``cancelled`` reachable from both active
states. Lines may only change while the bill is active and unpaid, and every
mutation runs under a row lock on the bill.
"""

import logging
from decimal import Decimal

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound

from billing.models import ACTIVE_BILL_STATUSES, ApprovalRequest, Bill, BillLine, SplitSession
from common import errors
from common.utils import to_money
from menu.services import price_items

logger = logging.getLogger(__name__)

MERGE_MODES = ("create", "replace")


class StaleApprovalError(errors.ConflictError):
    """The approved line no longer matches the snapshot taken at request time."""


def get_bill(bill_id):
    bill = Bill.objects.filter(id=bill_id).first()
    if bill is None:
        raise NotFound("Bill not found.")
    return bill


def lock_bill(bill_id):
    bill = Bill.objects.select_for_update().filter(id=bill_id).first()
    if bill is None:
        raise NotFound("Bill not found.")
    return bill


def ordered_lines(bill):
    return list(bill.lines.order_by("position", "id"))


def line_snapshot(line):
    return {
        "menu_item": line.menu_item_id,
        "name": line.name,
        "quantity": line.quantity,
        "unit_price": line.unit_price,
        "note": line.note,
    }


def bill_snapshot(bill):
    return {
        "id": str(bill.id),
        "status": bill.status,
        "payment_status": bill.payment_status,
        "table_number": bill.table_number,
        "subtotal": str(bill.subtotal),
        "discount": str(bill.discount),
        "total": str(bill.total),
        "version": bill.version,
        "lines": [
            {
                "menu_item": str(line.menu_item_id),
                "name": line.name,
                "quantity": line.quantity,
                "unit_price": str(line.unit_price),
                "note": line.note,
            }
            for line in ordered_lines(bill)
        ],
    }


def get_open_split_session(bill):
    return SplitSession.objects.filter(bill=bill, status=SplitSession.Status.OPEN).first()


def recalculate_totals(bill, *, bump_version=True):
    subtotal = to_money(sum((line.line_total for line in bill.lines.all()), Decimal("0")))
    bill.subtotal = subtotal
    bill.discount = min(to_money(bill.discount), subtotal)
    bill.total = to_money(subtotal - bill.discount)
    if bump_version:
        bill.version += 1
    bill.save(update_fields=["subtotal", "discount", "total", "version", "updated_at"])
    return bill


def _parse_discount(value):
    discount = to_money(value)
    if discount < 0:
        raise errors.ValidationError("Discount cannot be negative.", details={"discount": str(discount)})
    return discount


def ensure_mutable(bill):
    if bill.status not in ACTIVE_BILL_STATUSES or bill.payment_status != Bill.PaymentStatus.UNPAID:
        raise errors.InvariantError(
            "Items can only be changed on an open, unpaid bill.",
            details={"bill": str(bill.id), "status": bill.status, "payment_status": bill.payment_status},
        )


def ensure_no_open_split(bill):
    session = get_open_split_session(bill)
    if session is not None:
        raise errors.ConflictError(
            "Bill is being split; cancel or finish the split first.",
            details={"bill": str(bill.id), "split_session": str(session.id)},
        )


def _ensure_version(bill, expected_version):
    if expected_version is not None and int(expected_version) != bill.version:
        raise errors.ConflictError(
            "Bill was changed by another terminal; reload and try again.",
            details={"bill": str(bill.id), "version": bill.version, "expected_version": expected_version},
        )


def _write_lines(bill, priced_items, *, start=0):
    BillLine.objects.bulk_create(
        [
            BillLine(
                bill=bill,
                position=start + offset,
                menu_item=item.menu_item,
                name=item.name,
                unit_price=item.unit_price,
                quantity=item.quantity,
                note=item.note,
            )
            for offset, item in enumerate(priced_items)
        ]
    )


def _table_conflict(table_number):
    existing = Bill.objects.filter(table_number=table_number, status__in=ACTIVE_BILL_STATUSES).first()
    return errors.ConflictError(
        f"Table {table_number} already has an open bill.",
        details={"table_number": table_number, "bill": str(existing.id) if existing else None},
    )


def create_open_bill(*, customer_name, table_number, items, cashier, discount=0):
    customer_name = (customer_name or "").strip()
    table_number = (table_number or "").strip()
    if not customer_name:
        raise errors.ValidationError("Customer name is required.", details={"customer_name": "required"})
    discount = _parse_discount(discount)
    priced = price_items(items)

    try:
        with transaction.atomic():
            bill = Bill.objects.create(
                customer_name=customer_name,
                table_number=table_number,
                discount=discount,
                created_by=cashier,
            )
            _write_lines(bill, priced)
            recalculate_totals(bill, bump_version=False)
    except IntegrityError as exc:
        raise _table_conflict(table_number) from exc

    logger.info(
        "bill_created table=%s lines=%s",
        table_number or "-",
        len(priced),
        extra={"bill_id": bill.id, "cashier_id": cashier.id, "amount": bill.total},
    )
    return bill


@transaction.atomic
def merge_or_replace_open_bill(*, table_number, items, mode, customer_name, cashier, expected_version=None):
    """Create the table's open bill, or replace its lines when editing.

    Returns ``(bill, created)``. ``mode="create"`` against an occupied table is
    a conflict. Without ``expected_version`` the last write wins.
    """
    if mode not in MERGE_MODES:
        raise errors.ValidationError("Mode must be 'create' or 'replace'.", details={"mode": mode})
    table_number = (table_number or "").strip()
    if not table_number:
        raise errors.ValidationError("A table is required for an open bill.", details={"table_number": "required"})

    bill = (
        Bill.objects.select_for_update()
        .filter(table_number=table_number, status__in=ACTIVE_BILL_STATUSES)
        .first()
    )
    if bill is None:
        bill = create_open_bill(customer_name=customer_name, table_number=table_number, items=items, cashier=cashier)
        return bill, True

    if mode == "create":
        raise _table_conflict(table_number)

    ensure_mutable(bill)
    ensure_no_open_split(bill)
    _ensure_version(bill, expected_version)
    priced = price_items(items)

    bill.lines.all().delete()
    _write_lines(bill, priced)
    customer_name = (customer_name or "").strip()
    if customer_name and customer_name != bill.customer_name:
        bill.customer_name = customer_name
        bill.save(update_fields=["customer_name", "updated_at"])
    recalculate_totals(bill)

    logger.info(
        "bill_lines_replaced table=%s lines=%s",
        table_number,
        len(priced),
        extra={"bill_id": bill.id, "cashier_id": cashier.id, "amount": bill.total},
    )
    return bill, False


@transaction.atomic
def add_items(bill_id, items, *, expected_version=None):
    bill = lock_bill(bill_id)
    ensure_mutable(bill)
    ensure_no_open_split(bill)
    _ensure_version(bill, expected_version)
    priced = price_items(items)

    lines = ordered_lines(bill)
    next_position = (lines[-1].position + 1) if lines else 0
    new_items = []
    for item in priced:
        match = next(
            (
                line
                for line in lines
                if line.menu_item_id == item.menu_item.id and line.note == item.note and line.unit_price == item.unit_price
            ),
            None,
        )
        if match is None:
            new_items.append(item)
            continue
        match.quantity += item.quantity
        match.save(update_fields=["quantity"])

    _write_lines(bill, new_items, start=next_position)
    recalculate_totals(bill)
    logger.info("bill_items_added lines=%s", len(priced), extra={"bill_id": bill.id, "amount": bill.total})
    return bill


@transaction.atomic
def remove_line_item(bill_id, item_index, *, approval):
    """Remove the line at ``item_index``; only callable with an approved request.

    The request must target the same bill and index, must not have been
    applied yet, and its item snapshot must still match the live line.
    """
    if (
        approval is None
        or approval.status != ApprovalRequest.Status.APPROVED
        or str(approval.bill_id) != str(bill_id)
        or approval.item_index != item_index
        or approval.applied_at is not None
    ):
        raise errors.AuthorizationError(
            "Removing an item requires an approved cancellation request for that item.",
            details={"bill": str(bill_id), "item_index": item_index},
        )

    bill = lock_bill(bill_id)
    ensure_mutable(bill)
    ensure_no_open_split(bill)

    lines = ordered_lines(bill)
    if item_index < 0 or item_index >= len(lines):
        raise StaleApprovalError(
            "The approved item is no longer on the bill.",
            details={"bill": str(bill.id), "item_index": item_index},
        )
    line = lines[item_index]
    if line_snapshot(line) != approval.item_snapshot:
        raise StaleApprovalError(
            "The item changed after the cancellation was requested.",
            details={"bill": str(bill.id), "item_index": item_index},
        )
    if len(lines) < 2:
        raise errors.InvariantError(
            "A bill must keep at least one item; cancel the bill instead.",
            details={"bill": str(bill.id), "item_index": item_index},
        )

    removed = line_snapshot(line)
    line.delete()
    recalculate_totals(bill)
    approval.applied_at = timezone.now()
    approval.save(update_fields=["applied_at"])

    logger.info(
        "bill_line_removed index=%s name=%s",
        item_index,
        removed["name"],
        extra={"bill_id": bill.id, "approval_id": approval.id, "amount": bill.total},
    )
    return bill, removed


@transaction.atomic
def submit(bill_id):
    bill = lock_bill(bill_id)
    if bill.status == Bill.Status.SUBMITTED:
        return bill
    if bill.status != Bill.Status.OPEN:
        raise errors.InvariantError(
            "Only an open bill can be sent to the kitchen.",
            details={"bill": str(bill.id), "status": bill.status},
        )
    bill.status = Bill.Status.SUBMITTED
    bill.submitted_at = timezone.now()
    bill.save(update_fields=["status", "submitted_at", "updated_at"])
    logger.info("bill_submitted", extra={"bill_id": bill.id})
    return bill


@transaction.atomic
def cancel(bill_id, *, reason, actor):
    reason = (reason or "").strip()
    if not reason:
        raise errors.ValidationError("A cancellation reason is required.", details={"reason": "required"})

    bill = lock_bill(bill_id)
    if bill.status == Bill.Status.SETTLED:
        raise errors.InvariantError("A settled bill cannot be cancelled.", details={"bill": str(bill.id)})
    if bill.status == Bill.Status.CANCELLED:
        raise errors.ConflictError("Bill is already cancelled.", details={"bill": str(bill.id)})

    session = get_open_split_session(bill)
    if session is not None:
        if session.parts.filter(paid=True).exists():
            raise errors.InvariantError(
                "Part of this bill has already been paid; it cannot be cancelled.",
                details={"bill": str(bill.id), "split_session": str(session.id)},
            )
        session.delete()

    now = timezone.now()
    bill.approval_requests.filter(status=ApprovalRequest.Status.PENDING).update(
        status=ApprovalRequest.Status.REJECTED,
        resolution_note="bill cancelled",
        resolved_at=now,
    )
    bill.status = Bill.Status.CANCELLED
    bill.cancel_reason = reason
    bill.cancelled_at = now
    bill.save(update_fields=["status", "cancel_reason", "cancelled_at", "updated_at"])

    logger.info(
        "bill_cancelled reason=%s",
        reason,
        extra={"bill_id": bill.id, "cashier_id": getattr(actor, "id", None), "amount": bill.total},
    )
    return bill


@transaction.atomic
def mark_payment_failed(bill_id, *, reason):
    """Record an e-wallet decline reported by the terminal; settlement may be retried."""
    bill = lock_bill(bill_id)
    if bill.status not in ACTIVE_BILL_STATUSES or bill.payment_status == Bill.PaymentStatus.PAID:
        raise errors.InvariantError(
            "Only an unpaid open bill can be marked as failed.",
            details={"bill": str(bill.id), "status": bill.status, "payment_status": bill.payment_status},
        )
    bill.payment_status = Bill.PaymentStatus.FAILED
    bill.failure_reason = (reason or "").strip()[:255]
    bill.save(update_fields=["payment_status", "failure_reason", "updated_at"])
    logger.warning("bill_payment_failed reason=%s", bill.failure_reason, extra={"bill_id": bill.id})
    return bill


def list_open_bills(table=None):
    qs = Bill.objects.filter(status__in=ACTIVE_BILL_STATUSES).prefetch_related("lines").order_by("created_at")
    if table:
        qs = qs.filter(table_number=table)
    return qs
