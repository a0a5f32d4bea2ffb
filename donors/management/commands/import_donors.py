# donors/management/commands/import_donors.py
"""
Import donor records from a CSV or Excel sheet.

Usage: python manage.py import_donors path/to/donors.xlsx [--dry-run]

Expected columns: full_name, email, phone, blood_type (or blood_group).
Optional: location, latitude, longitude, last_donation_date,
donation_count, medical_conditions.
"""
import re
from pathlib import Path

import pandas as pd
from django.contrib.auth import get_user_model
from django.core.management.base import BaseCommand, CommandError
from django.db import IntegrityError, transaction

from bloodlink.validators import BLOOD_TYPES, PHONE_REGEX, sanitize_phone
from donors.models import DonorProfile

User = get_user_model()

REQUIRED_COLUMNS = ['full_name', 'email', 'phone']
COLUMN_ALIASES = {'blood_group': 'blood_type', 'phone_number': 'phone', 'address': 'location'}


class Command(BaseCommand):
    help = 'Import donors from a CSV or Excel file'

    def add_arguments(self, parser):
        parser.add_argument('path', type=str, help='Path to a .csv, .xls or .xlsx file')
        parser.add_argument('--dry-run', action='store_true', help='Validate rows without saving')

    def read_frame(self, path):
        if not path.exists():
            raise CommandError(f'File not found: {path}')
        if path.suffix.lower() == '.csv':
            df = pd.read_csv(path, dtype=str)
        elif path.suffix.lower() in ('.xls', '.xlsx'):
            df = pd.read_excel(path, dtype=str)
        else:
            raise CommandError(f'Unsupported file type: {path.suffix}')

        df.columns = [str(c).strip().lower() for c in df.columns]
        df = df.rename(columns=COLUMN_ALIASES)

        missing = [c for c in REQUIRED_COLUMNS + ['blood_type'] if c not in df.columns]
        if missing:
            raise CommandError(f'Missing columns: {", ".join(missing)}')

        return df.dropna(subset=['full_name'])

    def clean_row(self, row):
        def value(key, default=''):
            raw = row.get(key)
            return default if raw is None or pd.isna(raw) else str(raw).strip()

        blood_type = value('blood_type').upper()
        if blood_type not in BLOOD_TYPES:
            raise ValueError(f'invalid blood type {blood_type!r}')

        phone = sanitize_phone(value('phone'))
        if not re.match(PHONE_REGEX, phone):
            raise ValueError(f'invalid phone {phone!r}')

        email = value('email').lower()
        if '@' not in email:
            raise ValueError(f'invalid email {email!r}')

        last_donation = value('last_donation_date')
        latitude, longitude = value('latitude'), value('longitude')

        return {
            'email': email,
            'full_name': value('full_name')[:100],
            'phone': phone,
            'blood_type': blood_type,
            'location': value('location')[:200],
            'latitude': float(latitude) if latitude else None,
            'longitude': float(longitude) if longitude else None,
            'last_donation_date': pd.to_datetime(last_donation).date() if last_donation else None,
            'donation_count': int(float(value('donation_count', '0') or 0)),
            'medical_conditions': value('medical_conditions')[:1000],
        }

    def handle(self, *args, **options):
        path = Path(options['path'])
        dry_run = options['dry_run']

        df = self.read_frame(path)
        self.stdout.write(f'Found {len(df)} rows in {path.name}')

        created_count = updated_count = skipped_count = 0

        for index, row in df.iterrows():
            line = index + 2  # header row + 1-based
            try:
                data = self.clean_row(row)
            except ValueError as exc:
                skipped_count += 1
                self.stdout.write(self.style.WARNING(f'Skipping row {line}: {exc}'))
                continue

            if dry_run:
                created_count += 1
                continue

            email = data.pop('email')
            try:
                with transaction.atomic():
                    user, user_created = User.objects.get_or_create(
                        email=email,
                        defaults={
                            'username': email.split('@')[0][:150],
                            'user_type': User.DONOR,
                            'phone': data['phone'],
                        }
                    )
                    if user_created:
                        # Imported donors set their password through a reset
                        user.set_unusable_password()
                        user.save()

                    _, created = DonorProfile.objects.update_or_create(user=user, defaults=data)
            except IntegrityError as exc:
                skipped_count += 1
                self.stdout.write(self.style.ERROR(f'Row {line}: {exc}'))
                continue

            if created:
                created_count += 1
            else:
                updated_count += 1

        label = 'Validated' if dry_run else 'Created'
        self.stdout.write(self.style.SUCCESS(
            f'Import complete. {label}: {created_count}, Updated: {updated_count}, Skipped: {skipped_count}'
        ))
