from functools import wraps

from rest_framework.exceptions import PermissionDenied, NotAuthenticated


def role_required(*required_roles):
    """
    Role-based decorator for API views and viewset actions.

    Superusers pass every check. Works on plain function views
    (``request`` first) and on methods (``self, request``).
    """
    def decorator(view_func):
        @wraps(view_func)
        def wrapper(*args, **kwargs):
            request = _find_request(args)
            user = getattr(request, 'user', None)

            if not user or not user.is_authenticated:
                raise NotAuthenticated("Authentication required")

            if not user.is_superuser and user.user_type not in required_roles:
                raise PermissionDenied(
                    f"Access denied. Allowed roles: {', '.join(required_roles)}"
                )

            return view_func(*args, **kwargs)
        return wrapper
    return decorator


def _find_request(args):
    for arg in args[:2]:
        if hasattr(arg, 'user') and hasattr(arg, 'method'):
            return arg
    return None
