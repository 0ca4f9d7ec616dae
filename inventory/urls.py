from rest_framework.routers import DefaultRouter

from inventory.views import ProductViewSet, PurchaseOrderViewSet, SupplierViewSet, VariantViewSet

router = DefaultRouter()
router.register(r"products", ProductViewSet, basename="product")
router.register(r"variants", VariantViewSet, basename="variant")
router.register(r"suppliers", SupplierViewSet, basename="supplier")
router.register(r"purchase-orders", PurchaseOrderViewSet, basename="purchase-order")

urlpatterns = router.urls
