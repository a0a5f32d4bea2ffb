from django.core.management.base import BaseCommand

from institutions.models import PrioritizationRule

DEFAULT_RULES = [
    ('Emergency Critical', {'urgency_level': 'critical', 'request_type': 'emergency'}, 10),
    ('Emergency Urgent', {'urgency_level': 'urgent', 'request_type': 'emergency'}, 9),
    ('Mass Casualty', {'alert_type': 'mass_casualty'}, 10),
    ('Natural Disaster', {'alert_type': 'natural_disaster'}, 9),
    ('Pediatric Emergency', {'patient_age': '<18', 'urgency_level': 'urgent'}, 8),
    ('Rare Blood Type', {'blood_type': ['AB-', 'B-', 'A-']}, 7),
    ('High Volume Need', {'units_needed': '>5'}, 6),
    ('Scheduled Surgery', {'request_type': 'scheduled'}, 3),
    ('Regular Donation', {'request_type': 'donation'}, 1),
]


class Command(BaseCommand):
    help = 'Create (or refresh) the default blood request prioritization rules'

    def add_arguments(self, parser):
        parser.add_argument('--reset', action='store_true', help='Overwrite edited default rules')

    def handle(self, *args, **options):
        created_count = updated_count = 0

        for name, conditions, score in DEFAULT_RULES:
            defaults = {'rule_conditions': conditions, 'priority_score': score, 'is_active': True}
            if options['reset']:
                _, created = PrioritizationRule.objects.update_or_create(rule_name=name, defaults=defaults)
            else:
                _, created = PrioritizationRule.objects.get_or_create(rule_name=name, defaults=defaults)

            if created:
                created_count += 1
            elif options['reset']:
                updated_count += 1

        self.stdout.write(self.style.SUCCESS(
            f'Prioritization rules: {created_count} created, {updated_count} reset'
        ))
