from rest_framework import serializers

from shifts.models import CashMovement, Shift


class ShiftSerializer(serializers.ModelSerializer):
    class Meta:
        model = Shift
        fields = [
            "id",
            "cashier",
            "status",
            "started_at",
            "ended_at",
            "initial_cash",
            "final_cash",
            "system_cash",
            "cash_difference",
            "total_orders",
            "total_revenue",
            "cash_revenue",
            "non_cash_revenue",
            "notes",
            "closed_by",
        ]
        read_only_fields = fields


class ShiftOpenSerializer(serializers.Serializer):
    initial_cash = serializers.DecimalField(max_digits=14, decimal_places=2)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ShiftCloseSerializer(serializers.Serializer):
    final_cash = serializers.DecimalField(max_digits=14, decimal_places=2)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class CashMovementSerializer(serializers.ModelSerializer):
    class Meta:
        model = CashMovement
        fields = ["id", "shift", "cashier", "type", "amount", "description", "category", "expense_category", "created_at"]
        read_only_fields = fields


class CashMovementCreateSerializer(serializers.Serializer):
    type = serializers.ChoiceField(choices=CashMovement.Type.choices)
    amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    description = serializers.CharField(max_length=255)
    category = serializers.ChoiceField(choices=CashMovement.Category.choices, default=CashMovement.Category.OTHER)


class ExpenseCreateSerializer(serializers.Serializer):
    amount = serializers.DecimalField(max_digits=14, decimal_places=2)
    description = serializers.CharField(max_length=255)
    expense_category = serializers.ChoiceField(
        choices=CashMovement.ExpenseCategory.choices, default=CashMovement.ExpenseCategory.OPERATIONAL
    )


class CategoryTotalSerializer(serializers.Serializer):
    category = serializers.CharField()
    type = serializers.CharField()
    total = serializers.DecimalField(max_digits=14, decimal_places=2)
    count = serializers.IntegerField()


class ShiftReportSerializer(serializers.Serializer):
    shift = ShiftSerializer()
    cash_in_total = serializers.DecimalField(max_digits=14, decimal_places=2)
    cash_out_total = serializers.DecimalField(max_digits=14, decimal_places=2)
    movements_by_category = CategoryTotalSerializer(many=True)
    payments_by_method = serializers.DictField()
    expected_cash = serializers.DecimalField(max_digits=14, decimal_places=2)

    def to_representation(self, instance):
        data = super().to_representation(instance)
        data["payments_by_method"] = {
            method: {"total": str(row["total"]), "count": row["count"]}
            for method, row in instance["payments_by_method"].items()
        }
        return data
