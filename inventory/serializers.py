from rest_framework import serializers

from inventory.models import (
    Category,
    InventoryItem,
    InventoryTransaction,
    MaterialRequest,
    MaterialRequestItem,
    PurchaseRequest,
    PurchaseRequestItem,
)
from inventory.services import create_inventory_item, low_stock_warning_ratio


class CategorySerializer(serializers.ModelSerializer):
    class Meta:
        model = Category
        fields = ["id", "name", "description", "is_active", "created_at", "updated_at"]
        read_only_fields = ["id", "created_at", "updated_at"]


class InventoryItemSerializer(serializers.ModelSerializer):
    category_name = serializers.CharField(source="category.name", read_only=True)
    stock_level = serializers.SerializerMethodField()
    initial_stock = serializers.DecimalField(
        max_digits=12,
        decimal_places=2,
        min_value=0,
        required=False,
        write_only=True,
    )

    class Meta:
        model = InventoryItem
        fields = [
            "code",
            "name",
            "description",
            "category",
            "category_name",
            "unit_of_measure",
            "current_stock",
            "minimum_threshold",
            "unit_cost",
            "supplier_name",
            "supplier_contact",
            "is_active",
            "stock_level",
            "initial_stock",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["current_stock", "created_at", "updated_at"]

    def get_stock_level(self, obj):
        return obj.stock_level(low_stock_warning_ratio())

    def validate_minimum_threshold(self, value):
        if value < 0:
            raise serializers.ValidationError("Minimum threshold cannot be negative.")
        return value

    def validate_unit_cost(self, value):
        if value is not None and value < 0:
            raise serializers.ValidationError("Unit cost cannot be negative.")
        return value

    def validate_code(self, value):
        if self.instance is not None and value != self.instance.code:
            raise serializers.ValidationError("Item code cannot be changed.")
        return value.strip()

    def create(self, validated_data):
        request = self.context.get("request")
        return create_inventory_item(user=getattr(request, "user", None), **validated_data)

    def update(self, instance, validated_data):
        validated_data.pop("initial_stock", None)
        return super().update(instance, validated_data)


class InventoryTransactionSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="item_id", read_only=True)
    username = serializers.CharField(source="user.username", read_only=True, default=None)

    class Meta:
        model = InventoryTransaction
        fields = [
            "id",
            "item_code",
            "type",
            "quantity",
            "stock_before",
            "stock_after",
            "user",
            "username",
            "reference",
            "notes",
            "created_at",
        ]
        read_only_fields = fields


class StockTransactionCreateSerializer(serializers.Serializer):
    item_code = serializers.CharField(max_length=64)
    type = serializers.ChoiceField(choices=InventoryTransaction.Type.choices)
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2)
    reference = serializers.CharField(max_length=255, required=False, allow_blank=True)
    notes = serializers.CharField(required=False, allow_blank=True)


class RequestLineSerializer(serializers.Serializer):
    item_code = serializers.CharField(max_length=64)
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2)


class AvailabilityCheckSerializer(serializers.Serializer):
    items = RequestLineSerializer(many=True, allow_empty=False)


class AvailabilityLineSerializer(serializers.Serializer):
    item_code = serializers.CharField()
    item_name = serializers.CharField()
    available = serializers.DecimalField(max_digits=12, decimal_places=2)
    required = serializers.DecimalField(max_digits=12, decimal_places=2)
    shortage = serializers.DecimalField(max_digits=12, decimal_places=2)
    is_available = serializers.BooleanField()


class AvailabilityResultSerializer(serializers.Serializer):
    all_available = serializers.BooleanField()
    items = AvailabilityLineSerializer(many=True)


class MaterialRequestItemSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="inventory_item_id", read_only=True)
    item_name = serializers.CharField(source="inventory_item.name", read_only=True)

    class Meta:
        model = MaterialRequestItem
        fields = [
            "id",
            "item_code",
            "item_name",
            "requested_quantity",
            "available_quantity",
            "request_type",
            "status",
            "actual_quantity_used",
        ]
        read_only_fields = fields


class MaterialRequestSerializer(serializers.ModelSerializer):
    items = MaterialRequestItemSerializer(many=True, read_only=True)
    canonical_status = serializers.CharField(read_only=True)
    purchase_request_ids = serializers.PrimaryKeyRelatedField(source="purchase_requests", many=True, read_only=True)

    class Meta:
        model = MaterialRequest
        fields = [
            "id",
            "code",
            "maintenance_schedule",
            "status",
            "canonical_status",
            "notes",
            "requested_by",
            "approved_by",
            "approved_at",
            "delivered_by",
            "delivered_at",
            "rejection_reason",
            "items",
            "purchase_request_ids",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class MaterialRequestCreateSerializer(serializers.Serializer):
    maintenance_schedule_id = serializers.UUIDField()
    items = RequestLineSerializer(many=True, allow_empty=False)
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class ApprovalSerializer(serializers.Serializer):
    approve = serializers.BooleanField()
    rejection_reason = serializers.CharField(required=False, allow_blank=True)


class MaterialRequestReceiveSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True)


class PurchaseRequestItemSerializer(serializers.ModelSerializer):
    item_code = serializers.CharField(source="inventory_item_id", read_only=True)
    item_name = serializers.CharField(source="inventory_item.name", read_only=True)

    class Meta:
        model = PurchaseRequestItem
        fields = ["id", "item_code", "item_name", "requested_quantity", "unit_cost", "total_cost"]
        read_only_fields = fields


class PurchaseRequestSerializer(serializers.ModelSerializer):
    items = PurchaseRequestItemSerializer(many=True, read_only=True)
    canonical_status = serializers.CharField(read_only=True)
    stage = serializers.CharField(source="stage.label", read_only=True)

    class Meta:
        model = PurchaseRequest
        fields = [
            "id",
            "code",
            "material_request",
            "maintenance_schedule",
            "status",
            "canonical_status",
            "stage",
            "total_cost",
            "supplier_name",
            "supplier_contact",
            "notes",
            "requested_by",
            "approved_by",
            "approved_at",
            "rejection_reason",
            "ordered_by",
            "ordered_at",
            "ready_to_deliver_by",
            "ready_to_deliver_at",
            "completed_by",
            "completed_at",
            "grn_code",
            "delivered_by",
            "delivered_at",
            "receiving_code",
            "items",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields


class PurchaseLineSerializer(serializers.Serializer):
    item_code = serializers.CharField(max_length=64)
    quantity = serializers.DecimalField(max_digits=12, decimal_places=2)
    unit_cost = serializers.DecimalField(max_digits=12, decimal_places=2, required=False, allow_null=True)


class PurchaseRequestCreateSerializer(serializers.Serializer):
    material_request_id = serializers.UUIDField(required=False, allow_null=True)
    maintenance_schedule_id = serializers.UUIDField(required=False, allow_null=True)
    items = PurchaseLineSerializer(many=True, allow_empty=False)
    supplier_name = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    supplier_contact = serializers.CharField(max_length=255, required=False, allow_blank=True, default="")
    notes = serializers.CharField(required=False, allow_blank=True, default="")


class PurchaseReceiptSerializer(serializers.Serializer):
    notes = serializers.CharField(required=False, allow_blank=True)
    grn_code = serializers.CharField(max_length=64, required=False, allow_blank=True)


class PurchaseDeliverySerializer(serializers.Serializer):
    receiving_code = serializers.CharField(max_length=64, required=False, allow_blank=True)


class FulfillmentResultSerializer(serializers.Serializer):
    kind = serializers.CharField()
    material_request = MaterialRequestSerializer(allow_null=True)
    purchase_request = PurchaseRequestSerializer(allow_null=True)
