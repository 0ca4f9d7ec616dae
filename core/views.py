import csv
import logging

from django.contrib.auth import get_user_model
from django.db import connections
from django.http import HttpResponse
from django.utils.dateparse import parse_datetime
from rest_framework import generics, status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework.views import APIView
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import create_audit_log_from_request
from common.cache import flush_catalog_cache
from common.permissions import RoleCapabilityPermission
from core.models import AuditLog
from core.serializers import (
    AuditLogSerializer,
    CurrentUserSerializer,
    EmailOrUsernameTokenObtainPairSerializer,
    UserRegistrationSerializer,
    UserSerializer,
)

User = get_user_model()
logger = logging.getLogger(__name__)


class RegisterView(generics.CreateAPIView):
    serializer_class = UserRegistrationSerializer
    permission_classes = [AllowAny]
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"

    def perform_create(self, serializer):
        user = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="user.create",
            entity="user",
            entity_id=user.id,
            after_snapshot={
                "id": str(user.id),
                "username": user.username,
                "email": user.email,
            },
        )


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class CurrentUserView(generics.RetrieveUpdateAPIView):
    serializer_class = CurrentUserSerializer
    permission_classes = [IsAuthenticated]

    def get_object(self):
        return self.request.user


class UserViewSet(viewsets.ModelViewSet):
    """Staff accounts for the back office; deleting an account only deactivates it."""

    serializer_class = UserSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {name: "user.manage" for name in ("list", "retrieve", "create", "update", "partial_update", "destroy")}

    def get_queryset(self):
        queryset = User.objects.order_by("username")
        role = self.request.query_params.get("role")
        if role:
            queryset = queryset.filter(role=role)
        active = self.request.query_params.get("is_active")
        if active in {"true", "false"}:
            queryset = queryset.filter(is_active=active == "true")
        return queryset

    def _record(self, verb, user, before=None, after=None):
        create_audit_log_from_request(
            self.request,
            action=f"user.{verb}",
            entity="user",
            entity_id=user.pk,
            before_snapshot=before,
            after_snapshot=after,
        )

    def perform_create(self, serializer):
        user = serializer.save()
        self._record("create", user, after=serializer.data)

    def perform_update(self, serializer):
        before = UserSerializer(serializer.instance).data
        user = serializer.save()
        self._record("update", user, before=before, after=serializer.data)

    def perform_destroy(self, instance):
        # Audit rows keep pointing at the actor, so accounts are never removed.
        instance.is_active = False
        instance.save(update_fields=["is_active"])
        self._record("deactivate", instance)
        logger.info("user_deactivated", extra={"user_id": str(instance.pk)})


AUDIT_EXPORT_COLUMNS = ["id", "created_at", "actor", "action", "entity", "entity_id", "request_id"]


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {name: "admin.records.manage" for name in ("list", "retrieve", "export")}
    # query param -> ORM lookup
    exact_filters = {"actor_id": "actor_id", "action": "action", "entity": "entity", "entity_id": "entity_id"}
    range_filters = {"start_date": "created_at__gte", "end_date": "created_at__lte"}

    def get_queryset(self):
        params = self.request.query_params
        lookups = {lookup: params[name] for name, lookup in self.exact_filters.items() if params.get(name)}
        for name, lookup in self.range_filters.items():
            moment = parse_datetime(params.get(name) or "")
            if moment is not None:
                lookups[lookup] = moment
        return AuditLog.objects.select_related("actor").filter(**lookups).order_by("-created_at")

    @action(detail=False, methods=["get"])
    def export(self, request):
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'
        writer = csv.DictWriter(response, fieldnames=AUDIT_EXPORT_COLUMNS, extrasaction="ignore")
        writer.writeheader()
        for row in self.get_serializer(self.get_queryset(), many=True).data:
            writer.writerow({**row, "actor": row["actor_username"] or ""})
        return response


class CacheFlushView(APIView):
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"post": "cache.flush"}

    def post(self, request):
        flush_catalog_cache()
        create_audit_log_from_request(request, action="cache.flush", entity="cache")
        return Response({"detail": "Catalog cache flushed."}, status=status.HTTP_200_OK)


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
