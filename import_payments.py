"""
Import LeagueSafe Payments
==========================
Load the LeagueSafe CSV export and upsert entry-fee records for a season.

Usage:
    python import_payments.py leaguesafe_export.csv [season]
    python import_payments.py list [season]

Each row is matched to a user by primary email or linked LeagueSafe email.
Unmatched rows are kept so the admin can link them later.
"""

import csv
import sys

from email_validator import EmailNotValidError, validate_email

from app import app, db
from models import LeagueSafePayment, PAYMENT_STATUSES

REQUIRED_COLUMNS = ('Owner', 'OwnerEmail')


def _money(value):
    try:
        return float((value or '0').replace('$', '').replace(',', ''))
    except ValueError:
        return 0.0


def clean_entry(row):
    """Validate one CSV row. Returns (data, errors)."""
    errors = []
    name = (row.get('Owner') or '').strip()
    email = (row.get('OwnerEmail') or '').strip().lower()
    status = (row.get('Status') or 'NotPaid').strip()

    if not name:
        errors.append('Missing Owner name')
    try:
        email = validate_email(email, check_deliverability=False).normalized.lower()
    except EmailNotValidError:
        errors.append(f'Invalid email: {email or "(blank)"}')
    if status not in PAYMENT_STATUSES:
        errors.append(f'Invalid status: {status}')

    data = {
        'owner_name': name,
        'email': email,
        'status': status,
        'entry_fee': _money(row.get('EntryFee')),
        'paid': _money(row.get('Paid')),
        'pending': _money(row.get('Pending')),
        'owes': _money(row.get('Owes')),
    }
    return data, errors


def import_rows(rows, season):
    """Upsert payment rows for a season. Caller provides an app context."""
    result = {'created': 0, 'updated': 0, 'skipped': 0, 'matched': 0, 'unmatched': 0, 'errors': []}

    for line_number, row in enumerate(rows, start=2):
        data, errors = clean_entry(row)
        if errors:
            result['errors'].append(f"Line {line_number}: {', '.join(errors)}")
            continue

        payment = LeagueSafePayment.query.filter_by(season=season, email=data['email']).first()
        if payment is None:
            payment = LeagueSafePayment(season=season, email=data['email'])
            db.session.add(payment)
            result['created'] += 1
        elif (payment.status, payment.owner_name, payment.paid) == (data['status'], data['owner_name'], data['paid']):
            result['skipped'] += 1
        else:
            result['updated'] += 1

        for field, value in data.items():
            setattr(payment, field, value)

        if payment.match_user():
            result['matched'] += 1
        else:
            result['unmatched'] += 1

    db.session.commit()
    return result


def import_payments(path, season):
    """Import a LeagueSafe CSV export into the database."""
    with open(path, newline='', encoding='utf-8-sig') as handle:
        reader = csv.DictReader(handle)
        missing = [c for c in REQUIRED_COLUMNS if c not in (reader.fieldnames or [])]
        if missing:
            raise ValueError(f"Invalid CSV format. Missing required columns: {', '.join(missing)}")

        with app.app_context():
            result = import_rows(list(reader), season)

    print(f"\n{'='*50}")
    print(f"Import Complete for {season}!")
    print(f"  New payments: {result['created']}")
    print(f"  Updated payments: {result['updated']}")
    print(f"  Unchanged: {result['skipped']}")
    print(f"  Matched to users: {result['matched']}")
    print(f"  Unmatched: {result['unmatched']}")
    print(f"{'='*50}")
    for error in result['errors']:
        print(f"  ⚠️  {error}")

    return result


def list_payments(season):
    """List payment records for a season."""

    with app.app_context():
        payments = LeagueSafePayment.query.filter_by(season=season).order_by(LeagueSafePayment.owner_name).all()

        print(f"\n{season} LeagueSafe Payments ({len(payments)} entries)")
        print("=" * 70)

        for p in payments:
            matched = "" if p.is_matched else " [UNMATCHED]"
            print(f"{p.status:8s} | ${p.paid:>7,.2f} | {p.owner_name} <{p.email}>{matched}")


if __name__ == "__main__":
    with app.app_context():
        default_season = app.config['SEASON_YEAR']

    if len(sys.argv) < 2:
        print(__doc__)
        sys.exit(1)

    season_arg = int(sys.argv[2]) if len(sys.argv) > 2 else default_season
    if sys.argv[1] == "list":
        list_payments(season_arg)
    else:
        print(f"Importing LeagueSafe payments for {season_arg}...")
        print("=" * 50)
        import_payments(sys.argv[1], season_arg)
