# tests/test_reminders.py
# -------------------------------
# The scheduled email runner (send_reminders.py).
# -------------------------------
from datetime import timedelta

import resend

import send_reminders
from email_service import EmailTemplate, schedule_job
from models import db, EmailJob, get_current_time


def test_runner_sends_due_jobs(app, monkeypatch, capsys):
    sent = []
    monkeypatch.setitem(app.config, 'RESEND_API_KEY', 're_test_key')
    monkeypatch.setattr(resend.Emails, 'send', lambda params: sent.append(params) or {'id': 'msg'})

    with app.app_context():
        now = get_current_time()
        template = EmailTemplate('Week 1 Picks are OPEN!', '<p>Go</p>', 'Go')
        schedule_job('alice@pickleague.com', 'week_opened', template, now - timedelta(minutes=5))
        schedule_job('alice@pickleague.com', 'pick_reminder', template, now + timedelta(days=1))
        db.session.commit()

    assert send_reminders.main() == (1, 0)
    assert [params['to'] for params in sent] == [['alice@pickleague.com']]
    assert '1 sent, 0 errors, 1 still pending' in capsys.readouterr().out


def test_runner_without_api_key_leaves_jobs_for_retry(app, capsys):
    with app.app_context():
        template = EmailTemplate('Subject', '<p>Body</p>', 'Body')
        schedule_job('alice@pickleague.com', 'week_opened', template, get_current_time() - timedelta(minutes=5))
        db.session.commit()

    assert send_reminders.main() == (0, 1)
    assert 'RESEND_API_KEY is not set' in capsys.readouterr().out

    with app.app_context():
        job = EmailJob.query.one()
        assert job.status == 'pending' and job.attempts == 1
