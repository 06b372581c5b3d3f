from rest_framework import status
from rest_framework.exceptions import NotFound
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission, user_has_capability
from shifts import services
from shifts.models import Shift
from shifts.serializers import (
    CashMovementCreateSerializer,
    CashMovementSerializer,
    ExpenseCreateSerializer,
    ShiftCloseSerializer,
    ShiftOpenSerializer,
    ShiftReportSerializer,
    ShiftSerializer,
)


def _movement_response(result):
    payload = {
        "movement": CashMovementSerializer(result.movement).data,
        "expected_cash": str(result.expected_cash),
        "warning": result.warning,
    }
    return Response(payload, status=status.HTTP_201_CREATED)


class ShiftOpenView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "shift.manage.self"}

    def post(self, request):
        serializer = ShiftOpenSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        shift = services.open_shift(
            request.user,
            serializer.validated_data["initial_cash"],
            notes=serializer.validated_data["notes"],
        )
        payload = ShiftSerializer(shift).data
        create_audit_log_from_request(request, action="shift.open", entity="shift", entity_id=shift.id, after_snapshot=payload)
        return Response(payload, status=status.HTTP_201_CREATED)


class ShiftCurrentView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "shift.manage.self"}

    def get(self, request):
        shift = services.get_active_shift(request.user)
        if shift is None:
            raise NotFound("No active shift found for this cashier.")

        payload = ShiftSerializer(shift).data
        payload["expected_cash"] = str(services.expected_cash(shift))
        return Response(payload)


class CashMovementView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "shift.report.view", "post": "shift.manage.self"}

    def get(self, request, shift_id):
        shift = _visible_shift(request.user, shift_id)
        movements = shift.movements.order_by("created_at")
        return Response(CashMovementSerializer(movements, many=True).data)

    def post(self, request, shift_id):
        serializer = CashMovementCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = services.post_cash_movement(
            _visible_shift(request.user, shift_id),
            movement_type=data["type"],
            amount=data["amount"],
            description=data["description"],
            category=data["category"],
            actor=request.user,
        )
        create_audit_log_from_request(
            request,
            action="shift.cash_movement",
            entity="cash_movement",
            entity_id=result.movement.id,
            after_snapshot=CashMovementSerializer(result.movement).data,
        )
        return _movement_response(result)


class ExpenseView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "shift.manage.self"}

    def post(self, request, shift_id):
        serializer = ExpenseCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data

        result = services.record_expense(
            _visible_shift(request.user, shift_id),
            amount=data["amount"],
            description=data["description"],
            expense_category=data["expense_category"],
            actor=request.user,
        )
        create_audit_log_from_request(
            request,
            action="shift.expense",
            entity="cash_movement",
            entity_id=result.movement.id,
            after_snapshot=CashMovementSerializer(result.movement).data,
        )
        return _movement_response(result)


class ShiftCloseView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "shift.manage.self"}

    def post(self, request, shift_id):
        serializer = ShiftCloseSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        shift = services.close_shift(
            shift_id,
            serializer.validated_data["final_cash"],
            closed_by=request.user,
            notes=serializer.validated_data["notes"],
        )
        create_audit_log_from_request(
            request,
            action="shift.close",
            entity="shift",
            entity_id=shift.id,
            after_snapshot=ShiftSerializer(shift).data,
        )
        return Response(ShiftReportSerializer(services.shift_report(shift)).data)


class ShiftReportView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "shift.report.view"}

    def get(self, request, shift_id):
        shift = _visible_shift(request.user, shift_id)
        return Response(ShiftReportSerializer(services.shift_report(shift)).data)


def _visible_shift(user, shift_id):
    qs = Shift.objects.filter(id=shift_id)
    if not user_has_capability(user, "shift.close.override"):
        qs = qs.filter(cashier=user)

    shift = qs.first()
    if shift is None:
        raise NotFound("Shift not found.")
    return shift
