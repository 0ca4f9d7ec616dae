from django.urls import path
from rest_framework.routers import DefaultRouter

from pos.views import CartQuoteView, CheckoutView, OrderViewSet, PosCatalogView, PosLookupView

router = DefaultRouter()
router.register(r"orders", OrderViewSet, basename="pos-order")

urlpatterns = router.urls + [
    path("catalog/", PosCatalogView.as_view(), name="pos-catalog"),
    path("lookup/", PosLookupView.as_view(), name="pos-lookup"),
    path("cart/quote/", CartQuoteView.as_view(), name="pos-cart-quote"),
    path("checkout/", CheckoutView.as_view(), name="pos-checkout"),
]
