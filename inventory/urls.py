from django.urls import path
from rest_framework.routers import DefaultRouter

from inventory.views import (
    CategoryViewSet,
    InventoryItemViewSet,
    MaterialRequestViewSet,
    PurchaseRequestViewSet,
    StockTransactionCreateView,
)

router = DefaultRouter()
router.register(r"inventory/categories", CategoryViewSet, basename="category")
router.register(r"inventory/items", InventoryItemViewSet, basename="inventory-item")
router.register(r"material-requests", MaterialRequestViewSet, basename="material-request")
router.register(r"purchase-requests", PurchaseRequestViewSet, basename="purchase-request")

urlpatterns = [
    path("inventory/transactions/", StockTransactionCreateView.as_view(), name="inventory-transaction-create"),
] + router.urls
