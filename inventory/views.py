from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.permissions import RoleCapabilityPermission
from inventory import fulfillment
from inventory.ledger import apply_transaction
from inventory.models import Category, InventoryItem, MaterialRequest, PurchaseRequest
from inventory.serializers import (
    ApprovalSerializer,
    AvailabilityCheckSerializer,
    AvailabilityResultSerializer,
    CategorySerializer,
    FulfillmentResultSerializer,
    InventoryItemSerializer,
    InventoryTransactionSerializer,
    MaterialRequestCreateSerializer,
    MaterialRequestReceiveSerializer,
    MaterialRequestSerializer,
    PurchaseDeliverySerializer,
    PurchaseReceiptSerializer,
    PurchaseRequestCreateSerializer,
    PurchaseRequestSerializer,
    StockTransactionCreateSerializer,
)
from inventory.services import check_availability, filter_items, low_stock_items, transaction_history


def _parse_bool(value, name):
    if value is None or value == "":
        return None
    normalized = str(value).strip().lower()
    if normalized in {"1", "true", "yes"}:
        return True
    if normalized in {"0", "false", "no"}:
        return False
    raise ValidationError({name: "Must be true or false."})


class AuditedMutationMixin:
    audit_entity = None

    def _audit(self, *, action, instance, entity=None, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=action,
            entity=entity or self.audit_entity,
            entity_id=instance.pk,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action=f"{self.audit_entity}.update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )


class CategoryViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Category.objects.all()
    serializer_class = CategorySerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "create": "inventory.manage",
        "update": "inventory.manage",
        "partial_update": "inventory.manage",
    }
    http_method_names = ["get", "post", "put", "patch", "head", "options"]
    audit_entity = "category"

    def get_queryset(self):
        qs = super().get_queryset()
        is_active = _parse_bool(self.request.query_params.get("is_active"), "is_active")
        if is_active is not None:
            qs = qs.filter(is_active=is_active)
        return qs


class InventoryItemViewSet(AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = InventoryItem.objects.select_related("category")
    serializer_class = InventoryItemSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "inventory.view",
        "retrieve": "inventory.view",
        "low_stock": "inventory.view",
        "check_availability": "inventory.view",
        "transactions": "inventory.view",
        "create": "inventory.manage",
        "update": "inventory.manage",
        "partial_update": "inventory.manage",
    }
    http_method_names = ["get", "post", "put", "patch", "head", "options"]
    lookup_field = "code"
    lookup_value_regex = "[^/]+"
    audit_entity = "inventory_item"

    def get_queryset(self):
        params = self.request.query_params
        return filter_items(
            super().get_queryset(),
            search=params.get("search"),
            category=params.get("category"),
            stock_level=params.get("stock_level"),
            is_active=_parse_bool(params.get("is_active"), "is_active"),
        )

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        return Response(self.get_serializer(low_stock_items(), many=True).data)

    @action(detail=False, methods=["post"], url_path="check-availability")
    def check_availability(self, request):
        serializer = AvailabilityCheckSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        report = check_availability(serializer.validated_data["items"])
        return Response(AvailabilityResultSerializer(report).data)

    @action(detail=True, methods=["get"], url_path="transactions")
    def transactions(self, request, code=None):
        limit = request.query_params.get("limit")
        if limit is not None:
            if not limit.isdigit() or int(limit) < 1:
                raise ValidationError({"limit": "Must be a positive integer."})
            limit = min(int(limit), 500)
        entries = transaction_history(code, limit=limit)
        return Response(InventoryTransactionSerializer(entries, many=True).data)


class StockTransactionCreateView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "stock.transaction.create"}

    def post(self, request):
        serializer = StockTransactionCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        entry = apply_transaction(
            data["item_code"],
            data["type"],
            data["quantity"],
            user=request.user,
            reference=data.get("reference"),
            notes=data.get("notes"),
        )
        payload = InventoryTransactionSerializer(entry).data
        create_audit_log_from_request(
            request,
            action="stock.transaction",
            entity="inventory_item",
            entity_id=entry.item_id,
            after_snapshot=payload,
        )
        return Response(payload, status=status.HTTP_201_CREATED)


class MaterialRequestViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    queryset = MaterialRequest.objects.select_related("maintenance_schedule").prefetch_related(
        "items__inventory_item",
        "purchase_requests",
    )
    serializer_class = MaterialRequestSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "material_request.view",
        "retrieve": "material_request.view",
        "create": "material_request.create",
        "destroy": "material_request.delete",
        "approve": "material_request.approve",
        "receive": "material_request.receive",
    }

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        status_filter = self.request.query_params.get("status")
        schedule_id = self.request.query_params.get("maintenance_schedule")
        if status_filter:
            qs = qs.filter(status=status_filter)
        if schedule_id:
            qs = qs.filter(maintenance_schedule_id=schedule_id)
        return qs

    def _audit(self, action, material_request, before_status=None):
        create_audit_log_from_request(
            self.request,
            action=f"material_request.{action}",
            entity="material_request",
            entity_id=material_request.id,
            before_snapshot={"status": before_status} if before_status else None,
            after_snapshot={"status": material_request.status, "code": material_request.code},
        )

    def _respond(self, material_request_id):
        return Response(self.get_serializer(self.get_queryset().get(id=material_request_id)).data)

    def create(self, request, *args, **kwargs):
        serializer = MaterialRequestCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        result = fulfillment.create_material_request(
            maintenance_schedule_id=data["maintenance_schedule_id"],
            items=data["items"],
            notes=data.get("notes", ""),
            user=request.user,
        )
        if result.material_request is not None:
            self._audit("create", result.material_request)
        if result.purchase_request is not None:
            create_audit_log_from_request(
                request,
                action="purchase_request.create",
                entity="purchase_request",
                entity_id=result.purchase_request.id,
                after_snapshot={"status": result.purchase_request.status, "code": result.purchase_request.code},
            )
        return Response(FulfillmentResultSerializer(result).data, status=status.HTTP_201_CREATED)

    def destroy(self, request, pk=None):
        material_request = fulfillment.get_material_request(pk)
        fulfillment.delete_material_request(pk)
        create_audit_log_from_request(
            request,
            action="material_request.delete",
            entity="material_request",
            entity_id=pk,
            before_snapshot={"status": material_request.status, "code": material_request.code},
        )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="approve")
    def approve(self, request, pk=None):
        before_status = fulfillment.get_material_request(pk).status
        serializer = ApprovalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        material_request = fulfillment.approve_material_request(
            pk,
            approve=serializer.validated_data["approve"],
            rejection_reason=serializer.validated_data.get("rejection_reason"),
            user=request.user,
        )
        self._audit("approve" if serializer.validated_data["approve"] else "reject", material_request, before_status)
        return self._respond(material_request.id)

    @action(detail=True, methods=["post"], url_path="receive")
    def receive(self, request, pk=None):
        before_status = fulfillment.get_material_request(pk).status
        serializer = MaterialRequestReceiveSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        material_request = fulfillment.receive_material_request(
            pk,
            notes=serializer.validated_data.get("notes"),
            user=request.user,
        )
        self._audit("receive", material_request, before_status)
        return self._respond(material_request.id)


class PurchaseRequestViewSet(
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    viewsets.GenericViewSet,
):
    queryset = PurchaseRequest.objects.select_related("material_request", "maintenance_schedule").prefetch_related(
        "items__inventory_item"
    )
    serializer_class = PurchaseRequestSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "purchase_request.view",
        "retrieve": "purchase_request.view",
        "create": "purchase_request.create",
        "approve": "purchase_request.approve",
        "order": "purchase_request.process",
        "ready_to_deliver": "purchase_request.process",
        "complete": "purchase_request.receive",
        "receive": "purchase_request.receive",
        "deliver": "purchase_request.receive",
    }

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        params = self.request.query_params
        if params.get("status"):
            qs = qs.filter(status=params["status"])
        if params.get("maintenance_schedule"):
            qs = qs.filter(maintenance_schedule_id=params["maintenance_schedule"])
        if params.get("material_request"):
            qs = qs.filter(material_request_id=params["material_request"])
        return qs

    def _transitioned(self, action, purchase_request, before_status):
        create_audit_log_from_request(
            self.request,
            action=f"purchase_request.{action}",
            entity="purchase_request",
            entity_id=purchase_request.id,
            before_snapshot={"status": before_status},
            after_snapshot={
                "status": purchase_request.status,
                "stage": purchase_request.stage.label,
                "code": purchase_request.code,
            },
        )
        return Response(self.get_serializer(self.get_queryset().get(id=purchase_request.id)).data)

    def create(self, request, *args, **kwargs):
        serializer = PurchaseRequestCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        purchase_request = fulfillment.create_purchase_request(
            items=data["items"],
            material_request_id=data.get("material_request_id"),
            maintenance_schedule_id=data.get("maintenance_schedule_id"),
            supplier_name=data.get("supplier_name", ""),
            supplier_contact=data.get("supplier_contact", ""),
            notes=data.get("notes", ""),
            user=request.user,
        )
        create_audit_log_from_request(
            request,
            action="purchase_request.create",
            entity="purchase_request",
            entity_id=purchase_request.id,
            after_snapshot={"status": purchase_request.status, "code": purchase_request.code},
        )
        payload = self.get_serializer(self.get_queryset().get(id=purchase_request.id)).data
        return Response(payload, status=status.HTTP_201_CREATED)

    @action(detail=True, methods=["post"], url_path="approve")
    def approve(self, request, pk=None):
        serializer = ApprovalSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        approve = serializer.validated_data["approve"]
        purchase_request = fulfillment.approve_purchase_request(
            pk,
            approve=approve,
            rejection_reason=serializer.validated_data.get("rejection_reason"),
            user=request.user,
        )
        return self._transitioned("approve" if approve else "reject", purchase_request, PurchaseRequest.Status.PENDING)

    @action(detail=True, methods=["post"], url_path="order")
    def order(self, request, pk=None):
        purchase_request = fulfillment.mark_purchase_ordered(pk, user=request.user)
        return self._transitioned("order", purchase_request, PurchaseRequest.Status.APPROVED)

    @action(detail=True, methods=["post"], url_path="ready-to-deliver")
    def ready_to_deliver(self, request, pk=None):
        purchase_request = fulfillment.mark_purchase_ready_to_deliver(pk, user=request.user)
        return self._transitioned("ready_to_deliver", purchase_request, PurchaseRequest.Status.APPROVED)

    @action(detail=True, methods=["post"], url_path="complete")
    def complete(self, request, pk=None):
        serializer = PurchaseReceiptSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        purchase_request = fulfillment.complete_purchase_request(
            pk,
            notes=serializer.validated_data.get("notes"),
            grn_code=serializer.validated_data.get("grn_code"),
            user=request.user,
        )
        return self._transitioned("complete", purchase_request, PurchaseRequest.Status.READY_TO_DELIVER)

    @action(detail=True, methods=["post"], url_path="receive")
    def receive(self, request, pk=None):
        before_status = fulfillment.get_purchase_request(pk).status
        serializer = PurchaseReceiptSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        purchase_request = fulfillment.receive_purchase_request(
            pk,
            notes=serializer.validated_data.get("notes"),
            grn_code=serializer.validated_data.get("grn_code"),
            user=request.user,
        )
        return self._transitioned("receive", purchase_request, before_status)

    @action(detail=True, methods=["post"], url_path="deliver")
    def deliver(self, request, pk=None):
        before_status = fulfillment.get_purchase_request(pk).status
        serializer = PurchaseDeliverySerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        purchase_request = fulfillment.deliver_purchase_request(
            pk,
            receiving_code=serializer.validated_data.get("receiving_code"),
            user=request.user,
        )
        return self._transitioned("deliver", purchase_request, before_status)
