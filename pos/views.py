from rest_framework import status, viewsets
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response
from rest_framework.views import APIView

from common.audit import create_audit_log_from_request
from common.cache import CachedReadMixin
from common.permissions import RoleCapabilityPermission
from pos.models import Order
from pos.serializers import CartSerializer, CheckoutSerializer, OrderSerializer, QuoteSerializer
from pos.services import checkout, lookup_variant, pos_catalog, price_cart


class PosCatalogView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "catalog.view"}

    def get(self, request):
        return Response(pos_catalog(request.query_params.get("search")))


class PosLookupView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"get": "catalog.view"}

    def get(self, request):
        return Response(lookup_variant(request.query_params.get("code")))


class CartQuoteView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "pos.checkout"}

    def post(self, request):
        serializer = CartSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        return Response(QuoteSerializer(price_cart(serializer.validated_data["lines"])).data)


class CheckoutView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "pos.checkout"}

    def post(self, request):
        serializer = CheckoutSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        order = checkout(user=request.user, **serializer.validated_data)

        order = Order.objects.select_related("cashier").prefetch_related("details__variant").get(pk=order.pk)
        order_payload = OrderSerializer(order).data
        create_audit_log_from_request(
            request,
            action="order.create",
            entity="order",
            entity_id=order.id,
            after_snapshot=order_payload,
        )
        return Response(order_payload, status=status.HTTP_201_CREATED)


class OrderViewSet(CachedReadMixin, viewsets.ReadOnlyModelViewSet):
    queryset = Order.objects.select_related("cashier").prefetch_related("details__variant").order_by("-created_at")
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "pos.orders.view", "retrieve": "pos.orders.view"}
    cache_prefix = "orders"

    def get_queryset(self):
        queryset = super().get_queryset()
        search = (self.request.query_params.get("search") or "").strip()
        if search:
            queryset = queryset.filter(order_code__icontains=search)
        order_status = self.request.query_params.get("status")
        if order_status:
            queryset = queryset.filter(status=order_status)
        return queryset
