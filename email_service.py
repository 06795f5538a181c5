"""
Pigskin Pick Six - Email Service
================================
Templates, delivery and the outbound job queue.

Delivery goes through Resend. Everything except password resets and the
raw send endpoint is queued as an EmailJob and sent by send_reminders.py.

Notification Schedule (when a week opens):
  • Week opened announcement - immediately
  • Pick reminder - 48 hours before deadline
  • Deadline alerts - 24 and 2 hours before deadline
"""

import logging
import re
from collections import namedtuple
from datetime import timedelta

import resend
from flask import current_app
from markupsafe import escape

from models import db, User, Pick, EmailJob, get_current_time, localize, to_storage

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
BATCH_SIZE = 50

PICK_REMINDER_HOURS = 48
DEADLINE_ALERT_HOURS = (24, 2)

# Jobs that are pointless once a user has submitted
REMINDER_TYPES = ('pick_reminder', 'deadline_alert')

EmailTemplate = namedtuple('EmailTemplate', ['subject', 'html', 'text'])

TAG_RE = re.compile(r'<[^>]*>')


class EmailDeliveryError(Exception):
    """Raised when the email provider rejects or cannot take a message."""


def strip_tags(html):
    return TAG_RE.sub('', html)


# ============================================================================
# Delivery
# ============================================================================

def send_email(to, subject, html, text=None, sender=None):
    """
    Send one email through Resend and return the provider's message id.

    Raises EmailDeliveryError when no API key is configured or Resend fails.
    """
    api_key = current_app.config.get('RESEND_API_KEY')
    if not api_key:
        raise EmailDeliveryError('RESEND_API_KEY is not configured')

    resend.api_key = api_key
    params = {
        'from': sender or current_app.config['MAIL_DEFAULT_SENDER'],
        'to': [to] if isinstance(to, str) else list(to),
        'subject': subject,
        'html': html,
        'text': text or strip_tags(html),
    }

    try:
        result = resend.Emails.send(params)
    except Exception as exc:
        logger.exception("Resend rejected email to %s: %s", params['to'], subject)
        raise EmailDeliveryError(f'Resend API error: {exc}') from exc

    message_id = result.get('id') if isinstance(result, dict) else getattr(result, 'id', None)
    logger.info("Sent email to %s: %s (id=%s)", params['to'], subject, message_id)
    return message_id


# ============================================================================
# Templates
# ============================================================================

def _deadline_str(deadline):
    return localize(deadline).strftime('%A, %B %d at %I:%M %p %Z')


def _wrap(heading, body_html):
    return f'''<div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto;">
  <div style="background-color: #8B4513; color: white; padding: 20px; text-align: center;">
    <h1 style="margin: 0; font-size: 24px;">Pigskin Pick Six</h1>
    <p style="margin: 10px 0 0 0;">{heading}</p>
  </div>
  <div style="padding: 30px;">
    {body_html}
  </div>
  <p style="color: #999; font-size: 12px; text-align: center;">The Pigskin Pick Six Team</p>
</div>'''


def _site_url(path=''):
    return current_app.config['SITE_URL'].rstrip('/') + path


RULES_HTML = '''<ul>
      <li>Select exactly 6 games</li>
      <li>Choose 1 game as your Lock (doubles margin bonus)</li>
      <li>Submit your picks before the deadline</li>
    </ul>'''

RULES_TEXT = '''• Select exactly 6 games
• Choose 1 game as your Lock (doubles margin bonus)
• Submit your picks before the deadline'''


def pick_reminder_template(display_name, week, season, deadline):
    deadline_str = _deadline_str(deadline)
    picks_url = _site_url('/picks')
    html = _wrap('Pick Reminder', f'''<h2>Hi {escape(display_name)}!</h2>
    <p>Don't forget to submit your picks for <strong>Week {week}</strong> of the {season} season!</p>
    <p><strong>Picks must be submitted by:</strong><br>{deadline_str}</p>
    <p>Remember to:</p>
    {RULES_HTML}
    <p><a href="{picks_url}">Make Your Picks Now</a></p>''')
    text = f'''Pigskin Pick Six - Pick Reminder

Hi {display_name}!

Don't forget to submit your picks for Week {week} of the {season} season!

DEADLINE: {deadline_str}

Remember to:
{RULES_TEXT}

Make your picks now: {picks_url}'''
    subject = f"Week {week} Pick Reminder - Deadline {localize(deadline).strftime('%m/%d/%Y')}"
    return EmailTemplate(subject, html, text)


def deadline_alert_template(display_name, week, season, deadline, hours_left):
    urgency = 'URGENT' if hours_left <= 2 else 'REMINDER'
    plural = '' if hours_left == 1 else 's'
    deadline_str = _deadline_str(deadline)
    picks_url = _site_url('/picks')
    html = _wrap(f'{urgency}: Deadline Alert', f'''<h2>Hi {escape(display_name)}!</h2>
    <p><strong>Only {hours_left} hour{plural} left</strong> to submit your Week {week} picks
    for the {season} season.</p>
    <p>Deadline: {deadline_str}</p>
    <p><a href="{picks_url}">Submit Picks Now</a></p>''')
    text = f'''Pigskin Pick Six - {urgency}

Hi {display_name}!

Only {hours_left} hour{plural} left to submit Week {week} picks!

Deadline: {deadline_str}

Submit your picks: {picks_url}'''
    subject = f'{urgency}: Week {week} Picks Due in {hours_left}h!'
    return EmailTemplate(subject, html, text)


def picks_submitted_template(display_name, week, season, picks, deadline):
    """Confirmation listing each pick. `picks` items need game and selected_team."""
    rows_html = []
    rows_text = []
    for index, pick in enumerate(picks, start=1):
        game = pick.game
        lock = ' (LOCK)' if pick.is_lock else ''
        matchup = f'{game.away_team} @ {game.home_team}'
        rows_html.append(
            f'<li><strong>{escape(pick.selected_team)}</strong>{lock} in {escape(matchup)} '
            f'({escape(game.spread_label())})</li>'
        )
        rows_text.append(f'{index}. {matchup}\n   Pick: {pick.selected_team}{lock}')

    html = _wrap('Picks Confirmed', f'''<h2>Hi {escape(display_name)}!</h2>
    <p>Your Week {week} picks for the {season} season are locked in.</p>
    <ol>{''.join(rows_html)}</ol>
    <p>You can change unsubmitted picks until {_deadline_str(deadline)}.</p>
    <p>Lock Pick: Doubles your margin bonus for that game</p>''')
    text = f'''Pigskin Pick Six - Picks Confirmed

Hi {display_name}!

Your Week {week} picks for the {season} season:

{chr(10).join(rows_text)}

Lock Pick: Doubles your margin bonus for that game'''
    subject = f'Week {week} Picks Confirmed - {len(picks)} Games Selected'
    return EmailTemplate(subject, html, text)


def week_opened_template(display_name, week, season, deadline, total_games):
    deadline_str = _deadline_str(deadline)
    picks_url = _site_url('/picks')
    html = _wrap(f'Week {week} is Open', f'''<h2>Hi {escape(display_name)}!</h2>
    <p>Week {week} of the {season} season is open with <strong>{total_games} games</strong> to choose from.</p>
    <p>Pick 1 game as your "Lock" to double the margin bonus.</p>
    {RULES_HTML}
    <p>Deadline: {deadline_str}</p>
    <p><a href="{picks_url}">Make Your Picks</a></p>''')
    text = f'''Pigskin Pick Six - Week {week} is Open

Hi {display_name}!

Week {week} of the {season} season is open with {total_games} games to choose from.

{RULES_TEXT}

Deadline: {deadline_str}

Make your picks: {picks_url}'''
    subject = f'Week {week} Picks are OPEN! {total_games} Games Available'
    return EmailTemplate(subject, html, text)


def weekly_results_template(display_name, week, season, row, total_players):
    """Results summary from a leaderboard row."""
    html = _wrap(f'Week {week} Results', f'''<h2>Hi {escape(display_name)}!</h2>
    <p>You scored <strong>{row['points']} points</strong> in Week {week} of the {season} season.</p>
    <p>Record: {row['record']} &middot; Lock: {row['lock_record']}</p>
    <p>Rank: #{row['rank']} of {total_players}</p>
    <p><a href="{_site_url('/leaderboard')}">View the Leaderboard</a></p>''')
    text = f'''Pigskin Pick Six - Week {week} Results

Hi {display_name}!

Points: {row['points']}
Record: {row['record']}
Lock: {row['lock_record']}
Rank: #{row['rank']} of {total_players}'''
    subject = f"Week {week} Results: {row['points']} Points (#{row['rank']} of {total_players})"
    return EmailTemplate(subject, html, text)


def password_reset_template(display_name, reset_url, expires_hours):
    html = _wrap('Password Reset', f'''<h2>Hi {escape(display_name)}!</h2>
    <p>A password reset has been requested for your account. If you didn't request this,
    you can safely ignore this email.</p>
    <p><a href="{escape(reset_url)}">Reset Password</a></p>
    <p>This link expires in {expires_hours} hours and can only be used once.</p>''')
    text = f'''Pigskin Pick Six - Password Reset

Hi {display_name}!

A password reset has been requested for your account. If you didn't request this, you can safely ignore this email.

Reset your password: {reset_url}

This link expires in {expires_hours} hours and can only be used once.'''
    return EmailTemplate('Password Reset Request - Pigskin Pick Six', html, text)


# ============================================================================
# Job queue
# ============================================================================

def schedule_job(email, template_type, template, send_at, user_id=None, week=None, season=None):
    """Queue an email. Caller commits."""
    job = EmailJob(
        user_id=user_id,
        email=email,
        template_type=template_type,
        subject=template.subject,
        html_content=template.html,
        text_content=template.text,
        week=week,
        season=season,
        scheduled_for=to_storage(send_at),
        status='pending',
        attempts=0,
    )
    db.session.add(job)
    return job


def notification_recipients(preference):
    """Users with email on and the given preference enabled."""
    column = getattr(User, preference)
    return User.query.filter(User.email_notifications.is_(True), column.is_(True)).all()


def queue_week_opened_notifications(settings, total_games, now=None):
    """
    Queue the announcement, reminder and deadline alerts for a newly opened week.

    Send times that have already passed are skipped. Returns the number of
    jobs queued. Caller commits.
    """
    now = now or get_current_time()
    deadline = localize(settings.deadline)
    week, season = settings.week, settings.season
    queued = 0

    for user in User.query.filter(User.email_notifications.is_(True)).all():
        name = user.get_display_name()
        schedule_job(user.email, 'week_opened',
                     week_opened_template(name, week, season, deadline, total_games),
                     now, user_id=user.id, week=week, season=season)
        queued += 1

        reminder_at = deadline - timedelta(hours=PICK_REMINDER_HOURS)
        if user.pick_reminders and reminder_at > now:
            schedule_job(user.email, 'pick_reminder',
                         pick_reminder_template(name, week, season, deadline),
                         reminder_at, user_id=user.id, week=week, season=season)
            queued += 1

        if user.deadline_alerts:
            for hours in DEADLINE_ALERT_HOURS:
                alert_at = deadline - timedelta(hours=hours)
                if alert_at > now:
                    schedule_job(user.email, 'deadline_alert',
                                 deadline_alert_template(name, week, season, deadline, hours),
                                 alert_at, user_id=user.id, week=week, season=season)
                    queued += 1

    logger.info("Queued %s notification emails for %s week %s", queued, season, week)
    return queued


def queue_pick_confirmation(user, picks, settings, now=None):
    template = picks_submitted_template(user.get_display_name(), settings.week, settings.season,
                                        picks, settings.deadline)
    return schedule_job(user.email, 'picks_submitted', template, now or get_current_time(),
                        user_id=user.id, week=settings.week, season=settings.season)


def queue_weekly_results(season, week, rows, now=None):
    """Queue a results email for each ranked user who wants them. Caller commits."""
    now = now or get_current_time()
    wanted = {u.id: u for u in notification_recipients('weekly_results')}
    queued = 0
    for row in rows:
        user = wanted.get(row['user_id'])
        if not user:
            continue
        template = weekly_results_template(user.get_display_name(), week, season, row, len(rows))
        schedule_job(user.email, 'weekly_results', template, now,
                     user_id=user.id, week=week, season=season)
        queued += 1
    return queued


def cancel_scheduled_emails(user_id, season, week, template_types=REMINDER_TYPES):
    """Cancel a user's pending jobs of the given types for a week. Caller commits."""
    cancelled = EmailJob.query.filter(
        EmailJob.user_id == user_id,
        EmailJob.season == season,
        EmailJob.week == week,
        EmailJob.status == 'pending',
        EmailJob.template_type.in_(template_types),
    ).update({'status': 'cancelled'}, synchronize_session=False)
    if cancelled:
        logger.info("Cancelled %s scheduled emails for user %s (%s week %s)", cancelled, user_id, season, week)
    return cancelled


def _already_submitted(job):
    if job.template_type not in REMINDER_TYPES or job.user_id is None:
        return False
    return Pick.query.filter_by(
        user_id=job.user_id, season=job.season, week=job.week, submitted=True
    ).count() > 0


def process_pending_jobs(now=None):
    """
    Send due jobs, oldest first.

    A failed job stays pending for another try until it has been attempted
    MAX_ATTEMPTS times, then it is marked failed. Returns (sent, errors).
    """
    now = now or get_current_time()
    jobs = (
        EmailJob.query
        .filter(
            EmailJob.status == 'pending',
            EmailJob.scheduled_for <= to_storage(now),
            EmailJob.attempts < MAX_ATTEMPTS,
        )
        .order_by(EmailJob.scheduled_for)
        .limit(BATCH_SIZE)
        .all()
    )

    if not jobs:
        logger.info("No pending emails to process")
        return 0, 0

    sent = 0
    errors = 0
    for job in jobs:
        if _already_submitted(job):
            job.status = 'cancelled'
            continue

        try:
            send_email(job.email, job.subject, job.html_content, job.text_content)
        except EmailDeliveryError as exc:
            job.status = 'failed' if job.attempts + 1 >= MAX_ATTEMPTS else 'pending'
            job.attempts += 1
            job.error_message = str(exc)
            errors += 1
            logger.warning("Email job %s failed (attempt %s/%s): %s", job.id, job.attempts, MAX_ATTEMPTS, exc)
        else:
            job.status = 'sent'
            job.attempts += 1
            job.sent_at = to_storage(get_current_time())
            sent += 1

    db.session.commit()
    logger.info("Email processing complete: %s sent, %s errors", sent, errors)
    return sent, errors
