from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import NotFound
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from billing import approvals, services, settlement, splits
from billing.models import ApprovalRequest, Bill, DeletionLogEntry, SplitPart
from billing.serializers import (
    AddItemsSerializer,
    AllocateSerializer,
    ApprovalRequestCreateSerializer,
    ApprovalRequestSerializer,
    ApprovalResolveSerializer,
    BillCreateSerializer,
    BillSerializer,
    DeletionLogEntrySerializer,
    OpenBillSmartSerializer,
    ReasonSerializer,
    SettlementResultSerializer,
    SettlementSerializer,
    SplitOpenSerializer,
    SplitPartSerializer,
    SplitPartWriteSerializer,
    SplitSessionSerializer,
)
from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from core.services import AuthorizerCredentials
from shifts.services import get_active_shift

UUID_PATTERN = "[0-9a-fA-F-]{36}"


def _items(validated):
    return [dict(item) for item in validated["items"]]


class BillViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = Bill.objects.all()
    serializer_class = BillSerializer
    lookup_value_regex = UUID_PATTERN
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "pos.access",
        "retrieve": "pos.access",
        "create": "bill.manage",
        "open_bill_smart": "bill.manage",
        "add_items": "bill.manage",
        "submit": "bill.manage",
        "cancel": "bill.cancel",
        "payment_failed": "settlement.create",
        "split": "bill.manage",
        "split_detail": "pos.access",
        "split_parts": "bill.manage",
    }

    def get_queryset(self):
        if self.action == "list":
            return services.list_open_bills(self.request.query_params.get("table"))
        return super().get_queryset()

    def _audit(self, *, action, bill, before_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity="bill",
            entity_id=bill.id,
            before_snapshot=before_snapshot,
            after_snapshot=services.bill_snapshot(bill),
        )

    def _bill_response(self, bill, status_code=status.HTTP_200_OK):
        return Response(BillSerializer(bill).data, status=status_code)

    def create(self, request):
        serializer = BillCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        bill = services.create_open_bill(
            customer_name=data["customer_name"],
            table_number=data["table_number"],
            items=_items(data),
            cashier=request.user,
            discount=data["discount"],
        )
        self._audit(action="bill.create", bill=bill)
        return self._bill_response(bill, status.HTTP_201_CREATED)

    @action(detail=False, methods=["post"], url_path="open-bill-smart")
    def open_bill_smart(self, request):
        serializer = OpenBillSmartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        bill, created = services.merge_or_replace_open_bill(
            table_number=data["table_number"],
            items=_items(data),
            mode=data["mode"],
            customer_name=data["customer_name"],
            cashier=request.user,
            expected_version=data.get("expected_version"),
        )
        self._audit(action="bill.create" if created else "bill.replace_items", bill=bill)
        return self._bill_response(bill, status.HTTP_201_CREATED if created else status.HTTP_200_OK)

    @action(detail=True, methods=["post"], url_path="items")
    def add_items(self, request, pk=None):
        serializer = AddItemsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        bill = services.add_items(pk, _items(serializer.validated_data), expected_version=serializer.validated_data.get("expected_version"))
        self._audit(action="bill.add_items", bill=bill)
        return self._bill_response(bill)

    @action(detail=True, methods=["post"])
    def submit(self, request, pk=None):
        bill = services.submit(pk)
        self._audit(action="bill.submit", bill=bill)
        return self._bill_response(bill)

    @action(detail=True, methods=["post"])
    def cancel(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        before = services.bill_snapshot(services.get_bill(pk))
        bill = services.cancel(pk, reason=serializer.validated_data["reason"], actor=request.user)
        self._audit(action="bill.cancel", bill=bill, before_snapshot=before)
        return self._bill_response(bill)

    @action(detail=True, methods=["post"], url_path="payment-failed")
    def payment_failed(self, request, pk=None):
        serializer = ReasonSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        bill = services.mark_payment_failed(pk, reason=serializer.validated_data["reason"])
        self._audit(action="bill.payment_failed", bill=bill)
        return self._bill_response(bill)

    @action(detail=True, methods=["post", "delete"])
    def split(self, request, pk=None):
        if request.method == "DELETE":
            splits.cancel_session(pk)
            create_audit_log_from_request(request, action="split.cancel", entity="bill", entity_id=pk)
            return Response(status=status.HTTP_204_NO_CONTENT)

        serializer = SplitOpenSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        session = splits.open_session(pk, actor=request.user, parts=serializer.validated_data["parts"])
        create_audit_log_from_request(
            request,
            action="split.open",
            entity="split_session",
            entity_id=session.id,
            after_snapshot={"bill": str(pk), "parts": serializer.validated_data["parts"]},
        )
        return Response(SplitSessionSerializer(session).data, status=status.HTTP_201_CREATED)

    @split.mapping.get
    def split_detail(self, request, pk=None):
        session = services.get_open_split_session(services.get_bill(pk))
        if session is None:
            raise NotFound("No open split session for this bill.")
        return Response(SplitSessionSerializer(session).data)

    @action(detail=True, methods=["post"], url_path="split/parts")
    def split_parts(self, request, pk=None):
        serializer = SplitPartWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        part = splits.add_part(pk, assignee_name=serializer.validated_data["assignee_name"])
        return Response(SplitPartSerializer(part).data, status=status.HTTP_201_CREATED)


class SplitPartViewSet(mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = SplitPart.objects.select_related("session__bill")
    serializer_class = SplitPartSerializer
    lookup_value_regex = UUID_PATTERN
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "retrieve": "pos.access",
        "partial_update": "bill.manage",
        "destroy": "bill.manage",
        "allocate": "bill.manage",
    }

    def partial_update(self, request, pk=None):
        serializer = SplitPartWriteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        part = splits.rename_part(pk, serializer.validated_data["assignee_name"])
        return Response(SplitPartSerializer(part).data)

    def destroy(self, request, pk=None):
        session = splits.remove_part(pk)
        return Response(SplitSessionSerializer(session).data)

    @action(detail=True, methods=["post"])
    def allocate(self, request, pk=None):
        serializer = AllocateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        splits.allocate(pk, serializer.validated_data["line"], serializer.validated_data["quantity"])
        part = self.get_queryset().get(id=pk)
        return Response(SplitSessionSerializer(part.session).data)


class ApprovalRequestViewSet(mixins.ListModelMixin, mixins.RetrieveModelMixin, viewsets.GenericViewSet):
    queryset = ApprovalRequest.objects.all()
    serializer_class = ApprovalRequestSerializer
    lookup_value_regex = UUID_PATTERN
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "pos.access",
        "retrieve": "pos.access",
        "create": "bill.item.void.request",
        "approve": "bill.item.void.approve",
        "reject": "bill.item.void.approve",
    }

    def get_queryset(self):
        if self.action == "list":
            return approvals.list_pending(self.request.query_params.get("bill"))
        return super().get_queryset()

    def create(self, request):
        serializer = ApprovalRequestCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        approval = approvals.request_cancellation(
            data["bill"], data["item_index"], requester=request.user, reason=data["reason"]
        )
        payload = ApprovalRequestSerializer(approval).data
        create_audit_log_from_request(
            request, action="approval.request", entity="approval_request", entity_id=approval.id, after_snapshot=payload
        )
        return Response(payload, status=status.HTTP_201_CREATED)

    def _resolve(self, request, pk, decision):
        serializer = ApprovalResolveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        credentials = AuthorizerCredentials(user=request.user, pin=serializer.validated_data["pin"])
        approval = approvals.resolve(pk, credentials, decision, note=serializer.validated_data["note"])
        payload = ApprovalRequestSerializer(approval).data
        create_audit_log_from_request(
            request,
            action=f"approval.{decision}",
            entity="approval_request",
            entity_id=approval.id,
            after_snapshot=payload,
        )
        return Response(payload)

    @action(detail=True, methods=["post"])
    def approve(self, request, pk=None):
        return self._resolve(request, pk, ApprovalRequest.Status.APPROVED)

    @action(detail=True, methods=["post"])
    def reject(self, request, pk=None):
        return self._resolve(request, pk, ApprovalRequest.Status.REJECTED)


class DeletionLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = DeletionLogEntry.objects.all()
    serializer_class = DeletionLogEntrySerializer
    lookup_value_regex = UUID_PATTERN
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "deletion_log.view", "retrieve": "deletion_log.view"}

    def get_queryset(self):
        return approvals.list_deletion_logs(self.request.query_params.get("bill"))


class SettlementView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "settlement.create"}

    def post(self, request):
        serializer = SettlementSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = settlement.settle(
            serializer.to_context(),
            serializer.to_tender(),
            cashier=request.user,
            shift=get_active_shift(request.user),
        )
        payload = SettlementResultSerializer(result).data
        if not result.replayed:
            create_audit_log_from_request(
                request,
                action=f"settlement.{serializer.validated_data['mode']}",
                entity="payment",
                entity_id=result.payment.id,
                after_snapshot=payload["payment"],
            )
        return Response(payload, status=status.HTTP_200_OK if result.replayed else status.HTTP_201_CREATED)
