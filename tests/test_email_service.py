# tests/test_email_service.py
# -------------------------------
# Resend delivery, the /api/send-email endpoint, and the email job queue:
# scheduling on week open, retries, and reminders cancelled by submission.
# -------------------------------
from datetime import timedelta

import pytest
import resend

from config import Config
from email_service import (
    EmailTemplate, MAX_ATTEMPTS, schedule_job, process_pending_jobs,
    queue_week_opened_notifications, cancel_scheduled_emails, strip_tags,
)
from models import db, Game, Pick, EmailJob, WeekSettings, get_current_time

SEASON = Config.SEASON_YEAR


@pytest.fixture
def sent_emails(app, monkeypatch):
    """Capture everything handed to Resend."""
    sent = []

    def fake_send(params):
        sent.append(params)
        return {'id': f'msg_{len(sent)}'}

    monkeypatch.setitem(app.config, 'RESEND_API_KEY', 're_test_key')
    monkeypatch.setattr(resend.Emails, 'send', fake_send)
    return sent


@pytest.fixture
def failing_resend(app, monkeypatch):
    def fake_send(params):
        raise RuntimeError('provider down')

    monkeypatch.setitem(app.config, 'RESEND_API_KEY', 're_test_key')
    monkeypatch.setattr(resend.Emails, 'send', fake_send)


def _template():
    return EmailTemplate('Hello', '<p>Hello <b>there</b></p>', 'Hello there')


def test_strip_tags():
    assert strip_tags('<p>Hi <b>you</b></p>') == 'Hi you'


# ============================================================================
# /api/send-email
# ============================================================================

def test_send_email_requires_login(client):
    resp = client.post('/api/send-email', json={'to': 'a@b.com', 'subject': 'S', 'html': '<p>x</p>'})
    assert resp.status_code == 401


def test_send_email_missing_fields(client, make_user, login):
    make_user('alice@pickleague.com')
    login('alice@pickleague.com')

    resp = client.post('/api/send-email', json={'to': 'bob@pickleague.com', 'subject': 'Hi'})
    assert resp.status_code == 400
    assert resp.get_json()['error'] == 'Missing required fields: to, subject, html'


def test_send_email_success(client, make_user, login, sent_emails):
    make_user('alice@pickleague.com')
    login('alice@pickleague.com')

    resp = client.post('/api/send-email', json={
        'to': 'bob@pickleague.com', 'subject': 'Hi', 'html': '<p>Good <i>luck</i></p>',
    })
    assert resp.status_code == 200
    body = resp.get_json()
    assert body == {'success': True, 'messageId': 'msg_1', 'message': 'Email sent successfully'}

    params = sent_emails[0]
    assert params['to'] == ['bob@pickleague.com']
    assert params['from'] == Config.MAIL_DEFAULT_SENDER
    assert params['text'] == 'Good luck'


def test_send_email_without_api_key(client, make_user, login):
    make_user('alice@pickleague.com')
    login('alice@pickleague.com')

    resp = client.post('/api/send-email', json={'to': 'bob@pickleague.com', 'subject': 'Hi', 'html': '<p>x</p>'})
    assert resp.status_code == 500
    body = resp.get_json()
    assert body['error'] == 'Failed to send email'
    assert 'RESEND_API_KEY' in body['details']


def test_send_email_provider_error(client, make_user, login, failing_resend):
    make_user('alice@pickleague.com')
    login('alice@pickleague.com')

    resp = client.post('/api/send-email', json={'to': 'bob@pickleague.com', 'subject': 'Hi', 'html': '<p>x</p>'})
    assert resp.status_code == 500
    assert 'provider down' in resp.get_json()['details']


# ============================================================================
# Queueing
# ============================================================================

def test_week_open_queues_announcement_reminder_and_alerts(app_ctx, seed_week, make_user):
    now = get_current_time()
    seed_week(deadline=now + timedelta(days=3), picks_open=False)
    make_user('alice@pickleague.com')

    settings = WeekSettings.get(SEASON, 1)
    assert queue_week_opened_notifications(settings, total_games=8, now=now) == 4
    db.session.commit()

    types = sorted(job.template_type for job in EmailJob.query.all())
    assert types == ['deadline_alert', 'deadline_alert', 'pick_reminder', 'week_opened']


def test_week_open_skips_send_times_already_past(app_ctx, seed_week, make_user):
    now = get_current_time()
    seed_week(deadline=now + timedelta(hours=30), picks_open=False)
    make_user('alice@pickleague.com')

    settings = WeekSettings.get(SEASON, 1)
    # reminder at -48h has passed; alerts at -24h and -2h are still ahead
    assert queue_week_opened_notifications(settings, total_games=8, now=now) == 3


def test_week_open_respects_preferences(app_ctx, seed_week, make_user):
    now = get_current_time()
    seed_week(deadline=now + timedelta(days=3), picks_open=False)
    make_user('quiet@pickleague.com', email_notifications=False)
    make_user('noreminders@pickleague.com', pick_reminders=False, deadline_alerts=False)

    settings = WeekSettings.get(SEASON, 1)
    assert queue_week_opened_notifications(settings, total_games=8, now=now) == 1
    db.session.commit()
    assert EmailJob.query.one().email == 'noreminders@pickleague.com'


def test_cancel_scheduled_emails_only_touches_reminders(app_ctx, make_user):
    user_id = make_user('alice@pickleague.com')
    later = get_current_time() + timedelta(hours=5)
    for template_type in ('pick_reminder', 'deadline_alert', 'weekly_results'):
        schedule_job('alice@pickleague.com', template_type, _template(), later,
                     user_id=user_id, week=1, season=SEASON)
    db.session.commit()

    assert cancel_scheduled_emails(user_id, SEASON, 1) == 2
    db.session.commit()
    assert EmailJob.query.filter_by(status='pending').one().template_type == 'weekly_results'


# ============================================================================
# Processing
# ============================================================================

def test_process_sends_due_jobs(app_ctx, sent_emails):
    now = get_current_time()
    schedule_job('alice@pickleague.com', 'week_opened', _template(), now - timedelta(minutes=1))
    db.session.commit()

    assert process_pending_jobs(now) == (1, 0)
    job = EmailJob.query.one()
    assert job.status == 'sent'
    assert job.attempts == 1
    assert job.sent_at is not None
    assert sent_emails[0]['subject'] == 'Hello'
    assert sent_emails[0]['text'] == 'Hello there'


def test_process_skips_future_jobs(app_ctx, sent_emails):
    now = get_current_time()
    schedule_job('alice@pickleague.com', 'pick_reminder', _template(), now + timedelta(hours=1))
    db.session.commit()

    assert process_pending_jobs(now) == (0, 0)
    assert EmailJob.query.one().status == 'pending'
    assert sent_emails == []


def test_failed_job_retried_then_marked_failed(app_ctx, failing_resend):
    now = get_current_time()
    schedule_job('alice@pickleague.com', 'week_opened', _template(), now - timedelta(minutes=1))
    db.session.commit()

    assert process_pending_jobs(now) == (0, 1)
    job = EmailJob.query.one()
    assert job.status == 'pending'
    assert job.attempts == 1
    assert 'provider down' in job.error_message

    for _ in range(MAX_ATTEMPTS - 1):
        process_pending_jobs(now)

    assert job.status == 'failed'
    assert job.attempts == MAX_ATTEMPTS
    # Failed jobs are not picked up again
    assert process_pending_jobs(now) == (0, 0)


def test_reminder_cancelled_when_user_already_submitted(app_ctx, seed_week, make_user, sent_emails):
    game_id = seed_week(num_games=1)[0]
    user_id = make_user('alice@pickleague.com')
    now = get_current_time()

    game = db.session.get(Game, game_id)
    db.session.add(Pick(user_id=user_id, game_id=game.id, week=1, season=SEASON,
                        selected_team=game.home_team, is_lock=True, submitted=True))
    schedule_job('alice@pickleague.com', 'deadline_alert', _template(), now - timedelta(minutes=1),
                 user_id=user_id, week=1, season=SEASON)
    schedule_job('alice@pickleague.com', 'picks_submitted', _template(), now - timedelta(minutes=1),
                 user_id=user_id, week=1, season=SEASON)
    db.session.commit()

    assert process_pending_jobs(now) == (1, 0)
    statuses = {job.template_type: job.status for job in EmailJob.query.all()}
    assert statuses == {'deadline_alert': 'cancelled', 'picks_submitted': 'sent'}
    assert len(sent_emails) == 1
