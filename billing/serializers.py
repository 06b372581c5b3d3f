from rest_framework import serializers

from billing import services, splits
from billing.models import ApprovalRequest, Bill, BillLine, DeletionLogEntry, Payment, SplitPart, SplitSession
from billing.settlement import CartContext, SplitPartContext, Tender, WholeBillContext


class ItemInputSerializer(serializers.Serializer):
    menu_item = serializers.UUIDField()
    quantity = serializers.IntegerField()
    note = serializers.CharField(required=False, allow_blank=True, default="", max_length=255)


class BillLineSerializer(serializers.ModelSerializer):
    line_total = serializers.DecimalField(max_digits=14, decimal_places=2, read_only=True)

    class Meta:
        model = BillLine
        fields = ["id", "position", "menu_item", "name", "unit_price", "quantity", "note", "line_total"]
        read_only_fields = fields


class BillSerializer(serializers.ModelSerializer):
    lines = serializers.SerializerMethodField()
    split_session = serializers.SerializerMethodField()

    class Meta:
        model = Bill
        fields = [
            "id",
            "customer_name",
            "table_number",
            "status",
            "payment_status",
            "payment_method",
            "subtotal",
            "discount",
            "total",
            "version",
            "created_by",
            "failure_reason",
            "cancel_reason",
            "lines",
            "split_session",
            "paid_at",
            "submitted_at",
            "cancelled_at",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_lines(self, obj):
        return BillLineSerializer(services.ordered_lines(obj), many=True).data

    def get_split_session(self, obj):
        session = services.get_open_split_session(obj)
        return str(session.id) if session else None


class BillCreateSerializer(serializers.Serializer):
    customer_name = serializers.CharField(max_length=255)
    table_number = serializers.CharField(max_length=32, required=False, allow_blank=True, default="")
    items = ItemInputSerializer(many=True)
    discount = serializers.DecimalField(max_digits=14, decimal_places=2, required=False, default=0)


class OpenBillSmartSerializer(serializers.Serializer):
    customer_name = serializers.CharField(max_length=255)
    table_number = serializers.CharField(max_length=32)
    items = ItemInputSerializer(many=True)
    mode = serializers.ChoiceField(choices=services.MERGE_MODES, default="create")
    expected_version = serializers.IntegerField(required=False, min_value=1)


class AddItemsSerializer(serializers.Serializer):
    items = ItemInputSerializer(many=True)
    expected_version = serializers.IntegerField(required=False, min_value=1)


class ReasonSerializer(serializers.Serializer):
    reason = serializers.CharField(max_length=255)


class ApprovalRequestSerializer(serializers.ModelSerializer):
    class Meta:
        model = ApprovalRequest
        fields = [
            "id",
            "bill",
            "item_index",
            "requester",
            "item_menu_item_id",
            "item_name",
            "item_quantity",
            "item_unit_price",
            "item_note",
            "reason",
            "status",
            "authorizer",
            "resolution_note",
            "requested_at",
            "resolved_at",
            "applied_at",
        ]
        read_only_fields = fields


class ApprovalRequestCreateSerializer(serializers.Serializer):
    bill = serializers.UUIDField()
    item_index = serializers.IntegerField(min_value=0)
    reason = serializers.CharField(max_length=255)


class ApprovalResolveSerializer(serializers.Serializer):
    pin = serializers.CharField(max_length=16, trim_whitespace=True)
    note = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class DeletionLogEntrySerializer(serializers.ModelSerializer):
    requester_username = serializers.CharField(source="requester.username", read_only=True)
    authorizer_username = serializers.CharField(source="authorizer.username", read_only=True)

    class Meta:
        model = DeletionLogEntry
        fields = [
            "id",
            "bill",
            "approval",
            "requester",
            "requester_username",
            "authorizer",
            "authorizer_username",
            "item_name",
            "item_quantity",
            "item_unit_price",
            "reason",
            "requested_at",
            "approved_at",
            "created_at",
        ]
        read_only_fields = fields


class SplitPartSerializer(serializers.ModelSerializer):
    allocations = serializers.SerializerMethodField()
    subtotal = serializers.SerializerMethodField()
    amount_due = serializers.SerializerMethodField()

    class Meta:
        model = SplitPart
        fields = ["id", "sequence", "assignee_name", "paid", "paid_at", "amount_paid", "allocations", "subtotal", "amount_due"]
        read_only_fields = fields

    def get_allocations(self, obj):
        return [
            {"line": str(allocation.line_id), "name": allocation.line.name, "quantity": allocation.quantity}
            for allocation in obj.allocations.select_related("line").order_by("line__position")
        ]

    def get_subtotal(self, obj):
        return str(splits.part_subtotal(obj))

    def get_amount_due(self, obj):
        return str(splits.part_amount(obj))


class SplitSessionSerializer(serializers.ModelSerializer):
    parts = SplitPartSerializer(many=True, read_only=True)
    unallocated = serializers.SerializerMethodField()

    class Meta:
        model = SplitSession
        fields = ["id", "bill", "status", "created_by", "created_at", "closed_at", "parts", "unallocated"]
        read_only_fields = fields

    def get_unallocated(self, obj):
        return splits.unallocated_quantities(obj)


class SplitOpenSerializer(serializers.Serializer):
    parts = serializers.IntegerField(min_value=splits.MIN_PARTS, default=splits.MIN_PARTS)


class SplitPartWriteSerializer(serializers.Serializer):
    assignee_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")


class AllocateSerializer(serializers.Serializer):
    line = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=0)


class PaymentSerializer(serializers.ModelSerializer):
    class Meta:
        model = Payment
        fields = [
            "id",
            "bill",
            "split_part",
            "shift",
            "cashier",
            "method",
            "mode",
            "amount",
            "amount_tendered",
            "change_due",
            "idempotency_key",
            "paid_at",
        ]
        read_only_fields = fields


class SettlementSerializer(serializers.Serializer):
    MODES = ("cart", "whole_bill", "split_part")

    mode = serializers.ChoiceField(choices=MODES)
    method = serializers.ChoiceField(choices=Bill.PaymentMethod.choices)
    amount_tendered = serializers.DecimalField(max_digits=14, decimal_places=2, required=False, allow_null=True)
    idempotency_key = serializers.CharField(max_length=64, required=False, allow_blank=True)
    bill = serializers.UUIDField(required=False)
    part = serializers.UUIDField(required=False)
    items = ItemInputSerializer(many=True, required=False)
    customer_name = serializers.CharField(max_length=255, required=False)
    table_number = serializers.CharField(max_length=32, required=False, allow_blank=True, default="")
    discount = serializers.DecimalField(max_digits=14, decimal_places=2, required=False, default=0)

    def validate(self, attrs):
        mode = attrs["mode"]
        required = {
            "cart": ["items", "customer_name"],
            "whole_bill": ["bill"],
            "split_part": ["bill", "part"],
        }[mode]
        missing = {name: "This field is required for this mode." for name in required if attrs.get(name) in (None, "")}
        if missing:
            raise serializers.ValidationError(missing)
        return attrs

    def to_context(self):
        data = self.validated_data
        mode = data["mode"]
        if mode == "cart":
            return CartContext(
                items=[dict(item) for item in data["items"]],
                customer_name=data["customer_name"],
                table_number=data.get("table_number", ""),
                discount=data.get("discount", 0),
            )
        if mode == "whole_bill":
            return WholeBillContext(bill_id=data["bill"])
        return SplitPartContext(bill_id=data["bill"], part_id=data["part"])

    def to_tender(self):
        data = self.validated_data
        return Tender(
            method=data["method"],
            amount_tendered=data.get("amount_tendered"),
            idempotency_key=data.get("idempotency_key") or None,
        )


class SettlementResultSerializer(serializers.Serializer):
    bill = BillSerializer()
    payment = PaymentSerializer()
    change = serializers.DecimalField(max_digits=14, decimal_places=2)
    replayed = serializers.BooleanField()
    split_completed = serializers.BooleanField()
