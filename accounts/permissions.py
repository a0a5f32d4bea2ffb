from rest_framework.permissions import BasePermission

from .models import CustomUser

STAFF_ROLES = (
    CustomUser.HOSPITAL_STAFF,
    CustomUser.BLOOD_BANK_STAFF,
    CustomUser.EMERGENCY_RESPONDER,
    CustomUser.ADMIN,
)
INVENTORY_ROLES = (CustomUser.HOSPITAL_STAFF, CustomUser.BLOOD_BANK_STAFF, CustomUser.ADMIN)
COORDINATOR_ROLES = (CustomUser.EMERGENCY_RESPONDER, CustomUser.ADMIN)


def has_role(user, *roles):
    if not user or not user.is_authenticated:
        return False
    return user.is_superuser or user.user_type in roles


class HasRole(BasePermission):
    """Viewset counterpart of accounts.decorators.role_required."""
    roles = ()

    def has_permission(self, request, view):
        return has_role(request.user, *self.roles)


class IsPlatformAdmin(HasRole):
    roles = (CustomUser.ADMIN,)


class IsStaffMember(HasRole):
    roles = STAFF_ROLES


class IsInventoryStaff(HasRole):
    roles = INVENTORY_ROLES


class IsDonor(HasRole):
    roles = (CustomUser.DONOR,)

    def has_permission(self, request, view):
        return super().has_permission(request, view) and hasattr(request.user, 'donor_profile')
