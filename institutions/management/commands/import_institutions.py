# institutions/management/commands/import_institutions.py
"""
Import hospitals, clinics and blood banks from a CSV or Excel sheet.

USAGE:
    python manage.py import_institutions path/to/institutions.xlsx

Required columns: name, institution_type, location, contact_phone.
Optional: contact_email, license_number, latitude, longitude.
Rows are matched on license number when present, else on name.
"""
from pathlib import Path

import pandas as pd
from django.core.management.base import BaseCommand, CommandError
from django.db import transaction

from bloodlink.validators import sanitize_phone
from institutions.models import Institution

REQUIRED_COLUMNS = ['name', 'institution_type', 'location', 'contact_phone']
TYPE_ALIASES = {
    'hospital': Institution.HOSPITAL,
    'clinic': Institution.CLINIC,
    'blood bank': Institution.BLOOD_BANK,
    'blood_bank': Institution.BLOOD_BANK,
    'emergency': Institution.EMERGENCY_SERVICE,
    'emergency_service': Institution.EMERGENCY_SERVICE,
}


class Command(BaseCommand):
    help = 'Import institutions from a CSV or Excel file'

    def add_arguments(self, parser):
        parser.add_argument('path', type=str, help='Path to a .csv, .xls or .xlsx file')
        parser.add_argument('--verified', action='store_true', help='Mark imported institutions as verified')

    def handle(self, *args, **options):
        path = Path(options['path'])
        if not path.exists():
            raise CommandError(f'File not found: {path}')

        df = pd.read_csv(path) if path.suffix.lower() == '.csv' else pd.read_excel(path)
        df.columns = [str(c).strip().lower() for c in df.columns]

        missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
        if missing:
            raise CommandError(f'Missing columns: {", ".join(missing)}')

        created_count = updated_count = skipped_count = 0

        with transaction.atomic():
            for index, row in df.iterrows():
                def text(key):
                    value = row.get(key)
                    return '' if value is None or pd.isna(value) else str(value).strip()

                def number(key):
                    value = row.get(key)
                    return None if value is None or pd.isna(value) else float(value)

                name = text('name')
                institution_type = TYPE_ALIASES.get(text('institution_type').lower())
                if not name or institution_type is None:
                    skipped_count += 1
                    self.stdout.write(self.style.WARNING(
                        f'Skipping row {index + 2}: missing name or unknown type {text("institution_type")!r}'
                    ))
                    continue

                defaults = {
                    'name': name[:200],
                    'institution_type': institution_type,
                    'location': text('location')[:200],
                    'contact_phone': sanitize_phone(text('contact_phone'))[:16],
                    'contact_email': text('contact_email'),
                    'license_number': text('license_number'),
                    'latitude': number('latitude'),
                    'longitude': number('longitude'),
                    'is_active': True,
                }
                if options['verified']:
                    defaults['is_verified'] = True

                if defaults['license_number']:
                    lookup = {'license_number': defaults['license_number']}
                else:
                    lookup = {'name': name}

                institution, created = Institution.objects.update_or_create(defaults=defaults, **lookup)
                if created:
                    created_count += 1
                    self.stdout.write(f'Created: {institution.name}')
                else:
                    updated_count += 1
                    self.stdout.write(f'Updated: {institution.name}')

        self.stdout.write(self.style.SUCCESS(
            f'Import complete. Created: {created_count}, Updated: {updated_count}, Skipped: {skipped_count}'
        ))
