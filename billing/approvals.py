"""Two-party approval for removing an item from an open bill.

A cashier files a request holding a snapshot of the targeted line; a
supervisor or admin resolves it later with their own approval PIN. Approval
removes the line and appends a deletion log entry in the same transaction.
"""

import logging

from django.db import IntegrityError, transaction
from django.utils import timezone
from rest_framework.exceptions import NotFound

from billing import services
from billing.models import ApprovalRequest, DeletionLogEntry
from common import errors
from core.services import verify_authorizer

logger = logging.getLogger(__name__)

STALE_ITEM_NOTE = "item changed"


def request_cancellation(bill_id, item_index, *, requester, reason):
    reason = (reason or "").strip()
    if not reason:
        raise errors.ValidationError("A reason is required to cancel an item.", details={"reason": "required"})

    with transaction.atomic():
        bill = services.lock_bill(bill_id)
        services.ensure_mutable(bill)
        lines = services.ordered_lines(bill)
        if not isinstance(item_index, int) or item_index < 0 or item_index >= len(lines):
            raise errors.ValidationError(
                "Item index is out of range.",
                details={"item_index": item_index, "line_count": len(lines)},
            )
        if len(lines) < 2:
            raise errors.InvariantError(
                "The last item cannot be removed; cancel the whole bill instead.",
                details={"bill": str(bill.id)},
            )

        line = lines[item_index]
        try:
            with transaction.atomic():
                request = ApprovalRequest.objects.create(
                    bill=bill,
                    item_index=item_index,
                    requester=requester,
                    item_menu_item_id=line.menu_item_id,
                    item_name=line.name,
                    item_quantity=line.quantity,
                    item_unit_price=line.unit_price,
                    item_note=line.note,
                    reason=reason,
                )
        except IntegrityError as exc:
            pending = ApprovalRequest.objects.filter(
                bill=bill, item_index=item_index, status=ApprovalRequest.Status.PENDING
            ).first()
            raise errors.ConflictError(
                "A cancellation request for this item is already pending.",
                details={"approval": str(pending.id) if pending else None, "item_index": item_index},
            ) from exc

    logger.info(
        "approval_requested index=%s name=%s",
        item_index,
        request.item_name,
        extra={"bill_id": bill.id, "approval_id": request.id, "cashier_id": requester.id},
    )
    return request


def resolve(request_id, credentials, decision, *, note=""):
    """Approve or reject a pending request.

    Approving a request whose item changed since it was filed commits the
    request as rejected and then raises ``ConflictError``.
    """
    if decision not in (ApprovalRequest.Status.APPROVED, ApprovalRequest.Status.REJECTED):
        raise errors.ValidationError("Decision must be 'approved' or 'rejected'.", details={"decision": decision})

    request = ApprovalRequest.objects.filter(id=request_id).first()
    if request is None:
        raise NotFound("Approval request not found.")
    authorizer = verify_authorizer(credentials, requester_id=request.requester_id)

    stale = None
    with transaction.atomic():
        services.lock_bill(request.bill_id)
        request = ApprovalRequest.objects.select_for_update().get(id=request.id)
        if request.status != ApprovalRequest.Status.PENDING:
            raise errors.ConflictError(
                f"Request was already {request.status}.",
                details={"approval": str(request.id), "status": request.status},
            )

        now = timezone.now()
        request.status = decision
        request.authorizer = authorizer
        request.resolved_at = now
        request.resolution_note = (note or "").strip()[:255]
        request.save(update_fields=["status", "authorizer", "resolved_at", "resolution_note"])

        if decision == ApprovalRequest.Status.APPROVED:
            try:
                with transaction.atomic():
                    services.remove_line_item(request.bill_id, request.item_index, approval=request)
                    DeletionLogEntry.objects.create(
                        bill_id=request.bill_id,
                        approval=request,
                        requester_id=request.requester_id,
                        authorizer=authorizer,
                        item_name=request.item_name,
                        item_quantity=request.item_quantity,
                        item_unit_price=request.item_unit_price,
                        reason=request.reason,
                        requested_at=request.requested_at,
                        approved_at=now,
                    )
            except services.StaleApprovalError as exc:
                stale = exc
                request.status = ApprovalRequest.Status.REJECTED
                request.resolution_note = STALE_ITEM_NOTE
                request.applied_at = None
                request.save(update_fields=["status", "resolution_note", "applied_at"])

    logger.info(
        "approval_resolved decision=%s",
        request.status,
        extra={"bill_id": request.bill_id, "approval_id": request.id, "cashier_id": authorizer.id},
    )
    if stale is not None:
        raise stale
    return request


def list_pending(bill_id=None):
    qs = ApprovalRequest.objects.filter(status=ApprovalRequest.Status.PENDING).order_by("requested_at")
    if bill_id:
        qs = qs.filter(bill_id=bill_id)
    return qs


def list_deletion_logs(bill_id=None):
    qs = DeletionLogEntry.objects.select_related("requester", "authorizer").order_by("-created_at")
    if bill_id:
        qs = qs.filter(bill_id=bill_id)
    return qs
