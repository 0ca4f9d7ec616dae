from django.db.models import Count, Q
from django.utils.dateparse import parse_date, parse_datetime
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.exceptions import ValidationError
from rest_framework.parsers import FormParser, JSONParser, MultiPartParser
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import AuditedMutationMixin, create_audit_log_from_request
from common.cache import CachedReadMixin, flush_catalog_cache_after_write, make_cache_key, read_through
from common.exceptions import BusinessRuleViolation
from common.permissions import RoleCapabilityPermission
from inventory import importing
from inventory.models import Product, PurchaseOrder, Supplier, Variant
from inventory.serializers import (
    BulkCancelSerializer,
    BulkIdsSerializer,
    BulkStatusSerializer,
    DirectImportSerializer,
    ForceDeleteSerializer,
    ProductCreateSerializer,
    ProductImportUploadSerializer,
    ProductSerializer,
    ProductUpdateSerializer,
    PurchaseOrderCreateSerializer,
    PurchaseOrderImportSerializer,
    PurchaseOrderSerializer,
    PurchaseOrderStatusSerializer,
    PurchaseOrderSummarySerializer,
    RestockSerializer,
    SupplierDetailSerializer,
    SupplierOptionSerializer,
    SupplierSerializer,
    VariantSerializer,
    VariantUpdateSerializer,
)
from inventory.services import (
    VARIANT_STOCK_PREFETCH,
    build_deletability_report,
    cancel_purchase_orders,
    create_purchase_order,
    delete_product,
    delete_purchase_orders,
    direct_import as direct_import_variant,
    force_delete_product,
    import_purchase_order,
    import_purchase_orders,
    purchase_order_queryset,
    update_purchase_order_statuses,
)


def _inventory_updates_payload(updates):
    return [
        {
            "variant": update["variant_id"],
            "base_variant": update["base_variant_id"],
            "sku": update["sku"],
            "old_stock": update["old_stock"],
            "new_stock": update["new_stock"],
            "imported": update["imported"],
        }
        for update in updates
    ]


def _filter_created(queryset, value, lookup):
    if not value:
        return queryset
    moment = parse_datetime(value)
    if moment is not None:
        return queryset.filter(**{f"created_at__{lookup}": moment})
    day = parse_date(value)
    if day is None:
        raise ValidationError({"date": f"Invalid date: {value}."})
    return queryset.filter(**{f"created_at__date__{lookup}": day})


class ProductViewSet(CachedReadMixin, AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Product.objects.prefetch_related(*VARIANT_STOCK_PREFETCH).order_by("-created_at")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "catalog.view",
        "retrieve": "catalog.view",
        "deletability": "catalog.view",
        "purchase_orders": "purchase_order.view",
        "create": "catalog.manage",
        "update": "catalog.manage",
        "partial_update": "catalog.manage",
        "destroy": "catalog.manage",
        "force_delete": "catalog.force_delete",
        "import_preview": "catalog.bulk_import",
        "bulk_import": "catalog.bulk_import",
    }
    parser_classes = [JSONParser, MultiPartParser, FormParser]
    cache_prefix = "products"
    audit_entity = "product"

    def get_queryset(self):
        queryset = super().get_queryset()
        search = (self.request.query_params.get("search") or "").strip()
        if search and self.action == "list":
            queryset = queryset.filter(name__icontains=search)
        return queryset

    def get_serializer_class(self):
        if self.action == "create":
            return ProductCreateSerializer
        if self.action in {"update", "partial_update"}:
            return ProductUpdateSerializer
        return ProductSerializer

    def _detail(self, product):
        return ProductSerializer(self.get_queryset().get(pk=product.pk)).data

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        product = serializer.save()
        purchase_order = purchase_order_queryset().prefetch_related("details__variant").get(pk=serializer.purchase_order.pk)
        product_data = self._detail(product)
        self._audit(action="create", instance=product, after_snapshot=product_data)
        flush_catalog_cache_after_write()
        return Response(
            {"product": product_data, "purchase_order": PurchaseOrderSerializer(purchase_order).data},
            status=status.HTTP_201_CREATED,
        )

    def update(self, request, *args, **kwargs):
        super().update(request, *args, **kwargs)
        return Response(self._detail(self.get_object()))

    def destroy(self, request, *args, **kwargs):
        product = self.get_object()
        before_snapshot = ProductSerializer(product).data
        result = delete_product(product)
        create_audit_log_from_request(
            request, action="product.delete", entity="product", entity_id=result["product_id"], before_snapshot=before_snapshot
        )
        return Response(result, status=status.HTTP_200_OK)

    @action(detail=True, methods=["get"], url_path="deletability")
    def deletability(self, request, pk=None):
        return Response(build_deletability_report(self.get_object()))

    @action(detail=True, methods=["post"], url_path="force-delete")
    def force_delete(self, request, pk=None):
        product = self.get_object()
        serializer = ForceDeleteSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        before_snapshot = ProductSerializer(product).data
        result = force_delete_product(product, **serializer.validated_data)
        result["stock_value"] = str(result["stock_value"])
        create_audit_log_from_request(
            request,
            action="product.force_delete",
            entity="product",
            entity_id=result["product_id"],
            before_snapshot=before_snapshot,
            after_snapshot={**result, **serializer.validated_data},
        )
        return Response(result)

    @action(detail=True, methods=["get"], url_path="purchase-orders")
    def purchase_orders(self, request, pk=None):
        product = self.get_object()

        def load():
            orders = (
                purchase_order_queryset()
                .filter(id__in=PurchaseOrder.objects.filter(details__variant__product=product).values("id"))
                .order_by("-created_at")
            )
            return PurchaseOrderSummarySerializer(orders, many=True).data

        return Response(read_through(make_cache_key("product-purchase-orders", str(product.pk)), load))

    def _upload(self, request, *, require_supplier):
        serializer = ProductImportUploadSerializer(data=request.data, context={"require_supplier": require_supplier})
        serializer.is_valid(raise_exception=True)
        upload = serializer.validated_data["file"]
        return serializer.validated_data, importing.prepare_import(upload, upload.name)

    @action(detail=False, methods=["post"], url_path="import/preview")
    def import_preview(self, request):
        _, prepared = self._upload(request, require_supplier=False)
        return Response(
            {
                "is_valid": prepared["is_valid"],
                "row_count": prepared["row_count"],
                "product_count": prepared["product_count"],
                "variant_count": prepared["variant_count"],
                "errors": prepared["errors"],
                "warnings": prepared["warnings"],
                "products": importing.summarize_groups(prepared["groups"]),
            }
        )

    @action(detail=False, methods=["post"], url_path="import")
    def bulk_import(self, request):
        data, prepared = self._upload(request, require_supplier=True)
        if not prepared["is_valid"]:
            raise BusinessRuleViolation(
                "The file contains errors. Nothing was imported.",
                errors={"errors": prepared["errors"], "warnings": prepared["warnings"]},
            )
        result = importing.import_products(
            prepared,
            supplier=data["supplier"],
            import_date=data.get("import_date"),
            note=data["note"],
            user=request.user,
        )
        purchase_order = result["purchase_order"]
        create_audit_log_from_request(
            request,
            action="product.bulk_import",
            entity="product",
            after_snapshot={
                "product_ids": result["product_ids"],
                "purchase_order": purchase_order.purchase_order_code if purchase_order else None,
            },
        )
        return Response(
            {
                "product_count": result["product_count"],
                "variant_count": result["variant_count"],
                "product_ids": result["product_ids"],
                "purchase_order": PurchaseOrderSummarySerializer(
                    purchase_order_queryset().get(pk=purchase_order.pk)
                ).data
                if purchase_order
                else None,
                "inventory_updates": _inventory_updates_payload(result["inventory_updates"]),
                "total_amount": str(result["total_amount"]),
                "warnings": result["warnings"],
            },
            status=status.HTTP_201_CREATED,
        )


class VariantViewSet(
    CachedReadMixin,
    AuditedMutationMixin,
    mixins.ListModelMixin,
    mixins.RetrieveModelMixin,
    mixins.UpdateModelMixin,
    viewsets.GenericViewSet,
):
    queryset = Variant.objects.select_related("product", "inventory").prefetch_related(
        "conversions_to__from_variant__inventory", "conversions_from__to_variant"
    )
    serializer_class = VariantSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "catalog.view",
        "retrieve": "catalog.view",
        "update": "catalog.manage",
        "partial_update": "catalog.manage",
        "restock": "purchase_order.manage",
    }
    cache_prefix = "variants"
    audit_entity = "variant"

    def get_queryset(self):
        queryset = super().get_queryset().order_by("product__name", "created_at")
        product_id = self.request.query_params.get("product")
        if product_id:
            queryset = queryset.filter(product_id=product_id)
        return queryset

    def get_serializer_class(self):
        if self.action in {"update", "partial_update"}:
            return VariantUpdateSerializer
        return VariantSerializer

    def update(self, request, *args, **kwargs):
        super().update(request, *args, **kwargs)
        return Response(VariantSerializer(self.get_queryset().get(pk=kwargs["pk"])).data)

    @action(detail=True, methods=["post"], url_path="restock")
    def restock(self, request, pk=None):
        variant = self.get_object()
        serializer = RestockSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        unit_price = data.get("unit_price")
        purchase_order = create_purchase_order(
            supplier=data["supplier"],
            items=[{"variant": variant, "quantity": data["quantity"], "unit_price": variant.import_price if unit_price is None else unit_price}],
            prefix="PO-RESTOCK",
            note=data["note"] or f"Restock of {variant.sku}",
            user=request.user,
        )
        create_audit_log_from_request(request, action="purchase_order.create", entity="purchase_order", entity_id=purchase_order.pk)
        purchase_order = purchase_order_queryset().prefetch_related("details__variant").get(pk=purchase_order.pk)
        return Response(PurchaseOrderSerializer(purchase_order).data, status=status.HTTP_201_CREATED)


class SupplierViewSet(CachedReadMixin, AuditedMutationMixin, viewsets.ModelViewSet):
    queryset = Supplier.objects.annotate(purchase_order_count=Count("purchase_orders")).order_by("name")
    serializer_class = SupplierSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "supplier.view",
        "retrieve": "supplier.view",
        "supplier_options": "supplier.view",
        "create": "supplier.manage",
        "update": "supplier.manage",
        "partial_update": "supplier.manage",
        "destroy": "supplier.manage",
    }
    cache_prefix = "suppliers"
    audit_entity = "supplier"

    def get_queryset(self):
        queryset = super().get_queryset()
        if self.action != "list":
            return queryset
        search = (self.request.query_params.get("search") or "").strip()
        if search:
            queryset = queryset.filter(
                Q(name__icontains=search) | Q(supplier_code__icontains=search) | Q(email__icontains=search)
            )
        supplier_status = self.request.query_params.get("status")
        if supplier_status:
            queryset = queryset.filter(status=supplier_status)
        return queryset

    def get_serializer_class(self):
        if self.action == "retrieve":
            return SupplierDetailSerializer
        return SupplierSerializer

    @action(detail=False, methods=["get"], url_path="options")
    def supplier_options(self, request):
        def load():
            suppliers = Supplier.objects.order_by("name")
            return SupplierOptionSerializer(suppliers, many=True).data

        return Response(read_through(make_cache_key("supplier-options"), load))

    def perform_destroy(self, instance):
        count = instance.purchase_orders.count()
        if count:
            raise BusinessRuleViolation(
                f"Supplier {instance.supplier_code} has {count} purchase order(s) and cannot be deleted. "
                "Set its status to INACTIVE instead.",
                errors={"purchase_order_count": count},
            )
        super().perform_destroy(instance)


class PurchaseOrderViewSet(CachedReadMixin, viewsets.ModelViewSet):
    serializer_class = PurchaseOrderSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "purchase_order.view",
        "retrieve": "purchase_order.view",
        "create": "purchase_order.manage",
        "destroy": "purchase_order.manage",
        "set_status": "purchase_order.manage",
        "bulk_status": "purchase_order.manage",
        "bulk_cancel": "purchase_order.manage",
        "bulk_delete": "purchase_order.manage",
        "import_order": "purchase_order.import",
        "bulk_import": "purchase_order.import",
        "direct_import": "purchase_order.import",
    }
    http_method_names = ["get", "post", "delete", "head", "options"]
    cache_prefix = "purchase-orders"

    def get_queryset(self):
        queryset = purchase_order_queryset().select_related("created_by").order_by("-created_at")
        if self.action != "list":
            return queryset.prefetch_related("details__variant")

        params = self.request.query_params
        if params.get("status"):
            queryset = queryset.filter(status=params["status"])
        if params.get("import_status"):
            queryset = queryset.filter(import_status=params["import_status"])
        if params.get("supplier"):
            queryset = queryset.filter(supplier_id=params["supplier"])
        search = (params.get("search") or "").strip()
        if search:
            queryset = queryset.filter(purchase_order_code__icontains=search)

        queryset = _filter_created(queryset, params.get("date_from"), "gte")
        return _filter_created(queryset, params.get("date_to"), "lte")

    def get_serializer_class(self):
        if self.action == "list":
            return PurchaseOrderSummarySerializer
        return PurchaseOrderSerializer

    def _detail_response(self, purchase_order, *, inventory_updates=None, status_code=status.HTTP_200_OK):
        data = PurchaseOrderSerializer(purchase_order_queryset().prefetch_related("details__variant").get(pk=purchase_order.pk)).data
        if inventory_updates is not None:
            data = {"purchase_order": data, "inventory_updates": _inventory_updates_payload(inventory_updates)}
        return Response(data, status=status_code)

    def create(self, request, *args, **kwargs):
        serializer = PurchaseOrderCreateSerializer(data=request.data, context=self.get_serializer_context())
        serializer.is_valid(raise_exception=True)
        purchase_order = serializer.save()
        create_audit_log_from_request(
            request,
            action="purchase_order.create",
            entity="purchase_order",
            entity_id=purchase_order.pk,
            after_snapshot={"code": purchase_order.purchase_order_code},
        )
        return self._detail_response(purchase_order, status_code=status.HTTP_201_CREATED)

    def destroy(self, request, *args, **kwargs):
        purchase_order = self.get_object()
        result = delete_purchase_orders([purchase_order.pk])
        create_audit_log_from_request(request, action="purchase_order.delete", entity="purchase_order", entity_id=purchase_order.pk)
        return Response(result)

    @action(detail=True, methods=["post"], url_path="import")
    def import_order(self, request, pk=None):
        purchase_order = self.get_object()
        serializer = PurchaseOrderImportSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        purchase_order, updates = import_purchase_order(
            purchase_order,
            actual_quantities=serializer.validated_data["actual_quantities"],
            import_date=serializer.validated_data.get("import_date"),
        )
        create_audit_log_from_request(
            request,
            action="purchase_order.import",
            entity="purchase_order",
            entity_id=purchase_order.pk,
            after_snapshot={"inventory_updates": _inventory_updates_payload(updates)},
        )
        return self._detail_response(purchase_order, inventory_updates=updates)

    @action(detail=True, methods=["post"], url_path="status")
    def set_status(self, request, pk=None):
        purchase_order = self.get_object()
        serializer = PurchaseOrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = update_purchase_order_statuses([purchase_order.pk], **serializer.validated_data)
        create_audit_log_from_request(
            request,
            action="purchase_order.status",
            entity="purchase_order",
            entity_id=purchase_order.pk,
            before_snapshot={"status": purchase_order.status, "import_status": purchase_order.import_status},
            after_snapshot=serializer.validated_data,
        )
        return self._detail_response(purchase_order, inventory_updates=result["inventory_updates"])

    @action(detail=False, methods=["post"], url_path="bulk-status")
    def bulk_status(self, request):
        serializer = BulkStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        ids = data.pop("ids")
        result = update_purchase_order_statuses(ids, **data)
        create_audit_log_from_request(request, action="purchase_order.bulk_status", entity="purchase_order", after_snapshot={"ids": ids, **data})
        return Response({"updated_count": result["updated_count"], "inventory_updates": _inventory_updates_payload(result["inventory_updates"])})

    @action(detail=False, methods=["post"], url_path="bulk-import")
    def bulk_import(self, request):
        serializer = BulkIdsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = import_purchase_orders(serializer.validated_data["ids"])
        create_audit_log_from_request(
            request,
            action="purchase_order.bulk_import",
            entity="purchase_order",
            after_snapshot={"ids": serializer.validated_data["ids"]},
        )
        return Response({"imported_count": result["imported_count"], "inventory_updates": _inventory_updates_payload(result["inventory_updates"])})

    @action(detail=False, methods=["post"], url_path="bulk-cancel")
    def bulk_cancel(self, request):
        serializer = BulkCancelSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = cancel_purchase_orders(serializer.validated_data["ids"], reason=serializer.validated_data["reason"])
        create_audit_log_from_request(request, action="purchase_order.bulk_cancel", entity="purchase_order", after_snapshot=serializer.validated_data)
        return Response(result)

    @action(detail=False, methods=["post"], url_path="bulk-delete")
    def bulk_delete(self, request):
        serializer = BulkIdsSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = delete_purchase_orders(serializer.validated_data["ids"])
        create_audit_log_from_request(request, action="purchase_order.bulk_delete", entity="purchase_order", after_snapshot=result)
        return Response(result)

    @action(detail=False, methods=["post"], url_path="direct-import")
    def direct_import(self, request):
        serializer = DirectImportSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        purchase_order, updates = direct_import_variant(**serializer.validated_data, user=request.user)
        create_audit_log_from_request(
            request,
            action="purchase_order.direct_import",
            entity="purchase_order",
            entity_id=purchase_order.pk,
            after_snapshot={"inventory_updates": _inventory_updates_payload(updates)},
        )
        return self._detail_response(purchase_order, inventory_updates=updates, status_code=status.HTTP_201_CREATED)
