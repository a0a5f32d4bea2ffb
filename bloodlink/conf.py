"""Access to the BLOODLINK settings dict with built-in defaults."""
from django.conf import settings

DEFAULTS = {
    'DONATION_COOLDOWN_DAYS': 56,
    'MATCH_RADIUS_KM': 50,
    'NOTIFY_TOP_N': 8,
    'ESCALATION_BATCH_SIZE': 5,
    'ESCALATION_DELAY_MINUTES': {'emergency': 10, 'critical': 30, 'urgent': 30},
    'POINTS_PER_DONATION': 50,
    'MAX_FAILED_LOGINS': 5,
    'INVENTORY_LOW_STOCK': 5,
    'INVENTORY_CRITICAL_STOCK': 2,
    'INVENTORY_EXPIRY_WARNING_DAYS': 7,
    'INVENTORY_QUALITY_THRESHOLD': 80,
    'RED_CELL_SHELF_LIFE_DAYS': 42,
    'NOTIFICATION_BATCH_SIZE': 100,
    'MAX_DELIVERY_ATTEMPTS': 3,
}


def get_setting(name):
    overrides = getattr(settings, 'BLOODLINK', {}) or {}
    if name in overrides:
        return overrides[name]
    return DEFAULTS[name]
