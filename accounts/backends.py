# accounts/backends.py
from django.contrib.auth.backends import ModelBackend
from django.contrib.auth import get_user_model
from django.db.models import Q

User = get_user_model()


class EmailBackend(ModelBackend):
    """
    Lets users sign in with username, email or phone number.
    Compatible with Django admin.
    """
    def authenticate(self, request, username=None, password=None, **kwargs):
        if username is None or password is None:
            return None

        lookup = Q(username=username) | Q(email__iexact=username)
        if username.startswith('+'):
            lookup |= Q(phone=username)

        candidates = list(User.objects.filter(lookup)[:3])
        if not candidates:
            # Run the default password hasher once to reduce timing attack
            User().set_password(password)
            return None

        # Exact username wins over email/phone matches
        user = next((u for u in candidates if u.username == username), candidates[0])

        if user.check_password(password) and self.user_can_authenticate(user):
            return user
        return None

    def user_can_authenticate(self, user):
        """Locked accounts are rejected alongside inactive ones."""
        if getattr(user, 'is_locked', False):
            return False
        return getattr(user, 'is_active', True)
