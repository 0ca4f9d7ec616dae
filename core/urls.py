from django.urls import path
from rest_framework.routers import DefaultRouter

from core.views import (
    AuditLogViewSet,
    CacheFlushView,
    CurrentUserView,
    RegisterView,
    UserViewSet,
)

router = DefaultRouter()
router.register(r"admin/users", UserViewSet, basename="admin-user")
router.register(r"admin/audit-logs", AuditLogViewSet, basename="audit-log")

urlpatterns = router.urls + [
    path("register/", RegisterView.as_view(), name="register"),
    path("me/", CurrentUserView.as_view(), name="current-user"),
    path("cache/flush/", CacheFlushView.as_view(), name="cache-flush"),
]
