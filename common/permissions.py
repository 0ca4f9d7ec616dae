import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

ALL_ROLES = frozenset(User.Role)
MANAGERS = frozenset({User.Role.SUPERVISOR, User.Role.ADMIN})
ADMINS = frozenset({User.Role.ADMIN})

# Cashiers run the till and browse the catalog; supervisors run purchasing and
# catalog maintenance; admins also manage users, force deletes and the cache.
ROLE_CAPABILITY_MATRIX = {
    "catalog.view": ALL_ROLES,
    "catalog.manage": MANAGERS,
    "catalog.force_delete": ADMINS,
    "catalog.bulk_import": MANAGERS,
    "supplier.view": ALL_ROLES,
    "supplier.manage": MANAGERS,
    "purchase_order.view": MANAGERS,
    "purchase_order.manage": MANAGERS,
    "purchase_order.import": MANAGERS,
    "pos.checkout": ALL_ROLES,
    "pos.orders.view": ALL_ROLES,
    "user.manage": ADMINS,
    "admin.records.manage": ADMINS,
    "cache.flush": ADMINS,
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    return getattr(user, "role", None) or (User.Role.ADMIN if user.is_staff else User.Role.CASHIER)


def user_has_capability(user, capability):
    role = get_user_role(user)
    if role is None:
        return False
    return user.is_superuser or role in ROLE_CAPABILITY_MATRIX.get(capability, ())


def capabilities_for(user):
    """Sorted capability names granted to ``user``; drives which screens a client shows."""
    return sorted(capability for capability in ROLE_CAPABILITY_MATRIX if user_has_capability(user, capability))


class RoleCapabilityPermission(BasePermission):
    """Checks ``view.permission_action_map[action or http method]``; unmapped actions are allowed."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = getattr(view, "permission_action_map", {}).get(action_key)
        if capability is None or user_has_capability(request.user, capability):
            return True

        logger.warning(
            "permission_denied capability=%s user=%s role=%s method=%s path=%s action=%s",
            capability,
            getattr(request.user, "username", "anonymous"),
            get_user_role(request.user),
            request.method,
            request.path,
            action_key,
        )
        return False
