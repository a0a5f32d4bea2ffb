"""Input patterns shared by the serializers of every app."""
import re

from django.core.validators import RegexValidator

BLOOD_TYPES = ['A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-']
BLOOD_TYPE_CHOICES = [(bt, bt) for bt in BLOOD_TYPES]

PHONE_REGEX = r'^\+[1-9]\d{1,14}$'
NAME_REGEX = r"^[a-zA-ZÀ-ÿĀ-žа-я\s'-]+$"
PASSWORD_REGEX = r'^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)(?=.*[@$!%*?&])[A-Za-z\d@$!%*?&]+$'

phone_validator = RegexValidator(
    PHONE_REGEX, 'Phone number must be in international format (+1234567890)'
)
name_validator = RegexValidator(NAME_REGEX, 'Name contains invalid characters')
password_validator = RegexValidator(
    PASSWORD_REGEX,
    'Password must contain at least one uppercase letter, one lowercase letter, '
    'one number, and one special character',
)


def sanitize_phone(phone):
    cleaned = re.sub(r'[^\d+]', '', phone or '')
    if not cleaned.startswith('+'):
        return '+' + cleaned
    return cleaned


def sanitize_name(name):
    name = re.sub(r'\s+', ' ', (name or '').strip())
    return re.sub(r"[^\w\s'-]|[\d_]", '', name)
