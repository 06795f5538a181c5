"""
Pigskin Pick Six - Email Job Runner
===================================

Sends queued emails whose send time has arrived.

Jobs are queued by the app:
  • Week opened - when the admin opens a week
  • Pick reminder - 48 hours before the deadline
  • Deadline alerts - 24 and 2 hours before the deadline
  • Pick confirmations and weekly results

Reminders and alerts for users who have already submitted are cancelled
instead of sent. A job that fails 3 times is marked failed.

Setup:
  1. Set RESEND_API_KEY (and SITE_URL) in the environment
  2. Schedule this script to run hourly
     Recommended: Every hour at :00 (e.g., 8:00, 9:00, 10:00...)

Scheduled Task:
  cd /path/to/pigskin-pick-six && python send_reminders.py
"""

import os

# Set environment
os.environ.setdefault('FLASK_ENV', 'production')

from app import app
from email_service import process_pending_jobs
from models import EmailJob, get_current_time


def main():
    """Main job processing function."""
    now = get_current_time()

    print()
    print("=" * 60)
    print("Pigskin Pick Six Email Run")
    print(f"Time: {now.strftime('%A, %B %d, %Y at %I:%M %p %Z')}")
    print("=" * 60)

    with app.app_context():
        if not app.config.get('RESEND_API_KEY'):
            print("\n❌ RESEND_API_KEY is not set; jobs will fail and be retried")

        sent, errors = process_pending_jobs(now)
        remaining = EmailJob.query.filter_by(status='pending').count()

    print()
    print("-" * 60)
    print(f"📊 Summary: {sent} sent, {errors} errors, {remaining} still pending")
    print("=" * 60)
    return sent, errors


if __name__ == "__main__":
    main()
