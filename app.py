"""
Pigskin Pick Six - Main Application
===================================
Flask JSON API for the college football pick 'em league.
"""

import os
import secrets
from functools import wraps
from datetime import datetime, timedelta
import logging

import click
from email_validator import EmailNotValidError, validate_email
from flask import Flask, request, jsonify
from flask_login import LoginManager, login_user, logout_user, login_required, current_user
from flask_wtf.csrf import CSRFProtect, CSRFError, generate_csrf
from sqlalchemy import func

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address

from config import config
from models import (
    db, User, Game, Pick, AnonymousPick, WeekSettings, BlogPost, EmailJob,
    LeagueSafePayment, PasswordResetToken, PickLimitError, PAYMENT_STATUSES,
    VALIDATION_STATUSES, get_current_time, to_storage, LEAGUE_TZ,
)
from scoring import complete_game, reset_game_scoring, rescore_week, ScoringError
from leaderboard import build_leaderboard, pick_distribution, season_totals
from email_service import (
    send_email, EmailDeliveryError, process_pending_jobs, queue_week_opened_notifications,
    queue_pick_confirmation, queue_weekly_results, cancel_scheduled_emails,
    password_reset_template,
)
from sync_api import CollegeFootballDataAPI, GameSync, get_active_week, get_latest_results_week

# Initialize Flask app
app = Flask(__name__)
app.config.from_object(config[os.environ.get('FLASK_ENV', 'default')])

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

# Initialize extensions
db.init_app(app)
csrf = CSRFProtect(app)
limiter = Limiter(get_remote_address, app=app, default_limits=["200 per hour"])
login_manager = LoginManager()
login_manager.init_app(app)


@login_manager.user_loader
def load_user(user_id):
    """Load user by ID for Flask-Login."""
    return db.session.get(User, int(user_id))


@login_manager.unauthorized_handler
def unauthorized():
    return jsonify({'error': 'Authentication required'}), 401


@app.before_request
def refresh_week_states():
    """Lock weeks whose deadline has passed without waiting for the admin."""
    if not request.endpoint or request.endpoint in {"static"}:
        return

    now = get_current_time()
    refresh_interval = app.config.get("STATUS_REFRESH_INTERVAL_SECONDS", 300)
    last_refresh = app.config.get("_LAST_STATUS_REFRESH")

    if last_refresh and (now - last_refresh).total_seconds() < refresh_interval:
        return

    open_weeks = WeekSettings.query.filter(
        WeekSettings.season == app.config['SEASON_YEAR'],
        WeekSettings.picks_open.is_(True),
        WeekSettings.games_locked.is_(False)
    ).all()
    updated = False
    for settings in open_weeks:
        if settings.is_deadline_passed(now):
            settings.games_locked = True
            updated = True
            logger.info("Auto-locked week %s (deadline %s)", settings.week, settings.get_deadline_display())
    if updated:
        db.session.commit()
    app.config["_LAST_STATUS_REFRESH"] = now


# ============================================================================
# Helpers
# ============================================================================

def json_body():
    return request.get_json(silent=True) or {}


def error_response(message, status=400, **extra):
    payload = {'error': message}
    payload.update(extra)
    return jsonify(payload), status


def parse_datetime(value):
    """Parse an ISO timestamp from a request. Naive values are league time."""
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace('Z', '+00:00'))
    if dt.tzinfo is None:
        return LEAGUE_TZ.localize(dt)
    return dt.astimezone(LEAGUE_TZ)


def current_season():
    return app.config['SEASON_YEAR']


def requested_week(default=None):
    week = request.args.get('week', type=int)
    if week is not None:
        return week
    return default if default is not None else get_active_week(current_season())


def normalize_email(email):
    """Validate and lowercase an email. Raises EmailNotValidError."""
    return validate_email(email or '', check_deliverability=False).normalized.lower()


def validate_pick_entries(settings, entries, now=None, locked_picks=None):
    """
    Check a pick sheet against the week and its games.

    ``locked_picks`` maps game id to an already-saved pick on a game that has
    since locked. Those picks must come back unchanged; any other locked game
    is rejected.

    Returns (errors, games_by_id). Weekly pick/lock limits are enforced when
    the picks are written.
    """
    errors = []
    games_by_id = {}
    locked_picks = locked_picks or {}

    if settings is None or not settings.picks_open:
        return ['Picks are not open for this week.'], games_by_id
    if settings.games_locked or settings.is_deadline_passed(now):
        return ['The deadline for this week has passed.'], games_by_id
    if not isinstance(entries, list) or not entries:
        return ['No picks provided.'], games_by_id

    seen = set()
    for entry in entries:
        if not isinstance(entry, dict):
            errors.append('Invalid pick entry.')
            continue
        game_id = entry.get('game_id')
        game = db.session.get(Game, game_id) if isinstance(game_id, int) else None
        if game is None:
            errors.append(f'Game {game_id} not found.')
            continue
        if game.id in seen:
            errors.append(f'{game.away_team} @ {game.home_team} was picked more than once.')
            continue
        seen.add(game.id)

        if game.week != settings.week or game.season != settings.season:
            errors.append(f'{game.away_team} @ {game.home_team} is not a week {settings.week} game.')
        elif game.is_locked(now):
            stored = locked_picks.get(game.id)
            if stored is None:
                errors.append(f'{game.away_team} @ {game.home_team} is locked.')
            elif (stored.selected_team != entry.get('selected_team')
                    or bool(stored.is_lock) != bool(entry.get('is_lock'))):
                errors.append(f"{game.away_team} @ {game.home_team} is locked and your pick can't be changed.")
        elif not game.has_team(entry.get('selected_team')):
            errors.append(f'Pick {game.home_team} or {game.away_team} for that game.')
        games_by_id[game.id] = game

    for game_id, stored in locked_picks.items():
        if game_id not in seen:
            game = stored.game
            errors.append(f"{game.away_team} @ {game.home_team} is locked and can't be removed from your picks.")

    return errors, games_by_id


def check_full_sheet(entries):
    """A submitted sheet needs exactly the weekly number of picks and locks."""
    picks_required = app.config['PICKS_PER_WEEK']
    locks_required = app.config['LOCKS_PER_WEEK']
    errors = []
    if len(entries) != picks_required:
        errors.append(f'Select exactly {picks_required} games.')
    if sum(1 for e in entries if e.get('is_lock')) != locks_required:
        errors.append(f'Choose exactly {locks_required} lock pick.')
    return errors


# ============================================================================
# Decorators
# ============================================================================

def admin_required(f):
    """Decorator to require admin access."""
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if not current_user.is_authenticated:
            return error_response('Authentication required', 401)
        if not current_user.is_admin:
            return error_response('Admin access required', 403)
        return f(*args, **kwargs)
    return decorated_function


# ============================================================================
# Auth Routes
# ============================================================================

@app.route('/auth/csrf')
def csrf_token():
    return jsonify({'csrf_token': generate_csrf()})


@app.route('/auth/register', methods=['POST'])
@limiter.limit("10 per minute")
def register():
    """User registration."""
    data = json_body()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''
    display_name = (data.get('display_name') or '').strip()

    errors = []

    try:
        validated_email = normalize_email(email)
    except EmailNotValidError as exc:
        errors.append(str(exc))
        validated_email = None

    if validated_email and User.query.filter(func.lower(User.email) == validated_email).first():
        errors.append('Email already registered.')

    if len(password) < 6:
        errors.append('Password must be at least 6 characters.')

    if errors:
        return error_response(errors[0], errors=errors)

    user = User(
        email=validated_email,
        display_name=display_name or validated_email.split('@')[0],
    )
    user.set_password(password)

    db.session.add(user)
    db.session.commit()
    logger.info("Registered user %s", user.email)

    login_user(user, remember=True)
    return jsonify({'user': user.to_dict(include_private=True)}), 201


@app.route('/auth/login', methods=['POST'])
@limiter.limit("10 per minute")
def login():
    """User login by email."""
    data = json_body()
    email = (data.get('email') or '').strip().lower()
    password = data.get('password') or ''

    user = User.query.filter(func.lower(User.email) == email).first()
    if not user or not user.check_password(password):
        return error_response('Invalid email or password.', 401)

    login_user(user, remember=True)
    return jsonify({'user': user.to_dict(include_private=True)})


@app.route('/auth/logout', methods=['POST'])
@login_required
def logout():
    """User logout."""
    logout_user()
    return jsonify({'success': True})


@app.route('/auth/me')
@login_required
def me():
    return jsonify({
        'user': current_user.to_dict(include_private=True),
        'payment_status': current_user.payment_status(current_season()),
    })


@app.route('/auth/me', methods=['PUT'])
@login_required
def update_profile():
    """Update display name and notification preferences."""
    data = json_body()

    if 'display_name' in data:
        display_name = (data.get('display_name') or '').strip()
        if not display_name:
            return error_response('Display name cannot be empty.')
        current_user.display_name = display_name

    for preference in ('email_notifications', 'pick_reminders', 'deadline_alerts', 'weekly_results'):
        if preference in (data.get('preferences') or {}):
            setattr(current_user, preference, bool(data['preferences'][preference]))

    db.session.commit()
    return jsonify({'user': current_user.to_dict(include_private=True)})


# ============================================================================
# Password Management Routes
# ============================================================================

@app.route('/auth/change-password', methods=['POST'])
@login_required
def change_password():
    """Allow logged-in users to change their password."""
    data = json_body()
    current_password = data.get('current_password') or ''
    new_password = data.get('new_password') or ''

    if not current_user.check_password(current_password):
        return error_response('Current password is incorrect.')

    if len(new_password) < 6:
        return error_response('New password must be at least 6 characters.')

    if current_password == new_password:
        return error_response('New password must be different from current password.')

    current_user.set_password(new_password)
    db.session.commit()

    return jsonify({'success': True, 'message': 'Password changed successfully!'})


@app.route('/auth/forgot-password', methods=['POST'])
@limiter.limit("5 per minute")
def forgot_password():
    """Email a single-use reset link. Always succeeds so emails can't be probed."""
    email = (json_body().get('email') or '').strip().lower()
    user = User.query.filter(func.lower(User.email) == email).first() if email else None

    if user:
        hours = app.config['PASSWORD_RESET_TOKEN_HOURS']
        token = PasswordResetToken(
            user_id=user.id,
            token=secrets.token_urlsafe(32),
            expires_at=to_storage(get_current_time() + timedelta(hours=hours)),
        )
        db.session.add(token)
        db.session.commit()

        reset_url = f"{app.config['SITE_URL'].rstrip('/')}/reset-password?token={token.token}"
        template = password_reset_template(user.get_display_name(), reset_url, hours)
        try:
            send_email(user.email, template.subject, template.html, template.text)
        except EmailDeliveryError:
            logger.exception("Could not send password reset to %s", user.email)

    return jsonify({
        'success': True,
        'message': 'If that email is registered, a reset link is on its way.',
    })


@app.route('/auth/reset-password', methods=['POST'])
@limiter.limit("10 per minute")
def reset_password():
    data = json_body()
    password = data.get('password') or ''

    token = PasswordResetToken.query.filter_by(token=data.get('token') or '').first()
    if not token or not token.is_valid():
        return error_response('This reset link is invalid or has expired.')

    if len(password) < 6:
        return error_response('Password must be at least 6 characters.')

    token.user.set_password(password)
    token.used = True
    db.session.commit()
    logger.info("Password reset for user %s", token.user_id)

    return jsonify({'success': True, 'message': 'Password updated. Please log in.'})


# ============================================================================
# Public Routes
# ============================================================================

@app.route('/api/weeks/active')
def active_week():
    """The week users should be picking, plus the latest week with results."""
    season = current_season()
    week = get_active_week(season)
    settings = WeekSettings.get(season, week)
    return jsonify({
        'season': season,
        'week': week,
        'latest_results_week': get_latest_results_week(season),
        'settings': settings.to_dict() if settings else None,
    })


@app.route('/api/weeks/<int:week>')
def week_detail(week):
    """Week settings and its games."""
    season = current_season()
    settings = WeekSettings.get(season, week)
    games = Game.query.filter_by(season=season, week=week).order_by(Game.kickoff_time).all()
    return jsonify({
        'season': season,
        'week': week,
        'settings': settings.to_dict() if settings else None,
        'games': [g.to_dict() for g in games],
    })


@app.route('/api/leaderboard')
def leaderboard():
    """Weekly standings, or season standings with ?scope=season."""
    season = current_season()
    paid_only = app.config['LEADERBOARD_PAID_ONLY']

    if request.args.get('scope') == 'season':
        return jsonify({
            'season': season,
            'rows': build_leaderboard(season, paid_only=paid_only),
        })

    week = requested_week(get_latest_results_week(season))
    settings = WeekSettings.get(season, week)
    live = Game.query.filter_by(season=season, week=week, status='in_progress').count() > 0
    return jsonify({
        'season': season,
        'week': week,
        'notice': settings.notice_message(is_live_updating=live) if settings else None,
        'rows': build_leaderboard(season, week, paid_only=paid_only),
    })


@app.route('/api/weeks/<int:week>/distribution')
def week_distribution(week):
    """How the league picked each game. Hidden until the deadline passes."""
    distribution = pick_distribution(current_season(), week)
    if distribution is None:
        return error_response('Pick distribution is available after the deadline.', 403)
    return jsonify({'week': week, 'games': distribution})


@app.route('/api/blog')
def blog_list():
    posts = BlogPost.query.filter_by(is_published=True).order_by(BlogPost.created_at.desc()).all()
    return jsonify({'posts': [p.to_dict(include_content=False) for p in posts]})


@app.route('/api/blog/<slug>')
def blog_detail(slug):
    post = BlogPost.query.filter_by(slug=slug, is_published=True).first_or_404()
    return jsonify({'post': post.to_dict()})


# ============================================================================
# Pick Routes
# ============================================================================

@app.route('/api/picks')
@login_required
def my_picks():
    """The current user's picks for a week."""
    season = current_season()
    week = requested_week()
    picks = Pick.query.filter_by(user_id=current_user.id, season=season, week=week).all()
    return jsonify({
        'season': season,
        'week': week,
        'submitted': any(p.submitted for p in picks),
        'picks': [p.to_dict() for p in picks],
    })


@app.route('/api/picks', methods=['PUT'])
@login_required
def save_picks():
    """Replace the current user's unsubmitted picks for a week."""
    data = json_body()
    season = current_season()
    week = data.get('week') or get_active_week(season)
    entries = data.get('picks') or []

    if current_user.has_submitted(season, week):
        return error_response('Picks for this week have already been submitted.')

    # Saved picks on games that have since locked stay as they are
    now = get_current_time()
    saved = Pick.query.filter_by(
        user_id=current_user.id, season=season, week=week, submitted=False
    ).all()
    locked = {p.game_id: p for p in saved if p.game.is_locked(now)}

    settings = WeekSettings.get(season, week)
    errors, games_by_id = validate_pick_entries(settings, entries, now=now, locked_picks=locked)
    if errors:
        return error_response(errors[0], errors=errors)

    try:
        Pick.query.filter(
            Pick.user_id == current_user.id,
            Pick.season == season,
            Pick.week == week,
            Pick.submitted.is_(False),
            Pick.game_id.notin_(list(locked)),
        ).delete(synchronize_session=False)

        for entry in entries:
            if entry['game_id'] in locked:
                continue
            db.session.add(Pick(
                user_id=current_user.id,
                game_id=entry['game_id'],
                week=week,
                season=season,
                selected_team=entry['selected_team'],
                is_lock=bool(entry.get('is_lock')),
            ))
        db.session.commit()
    except PickLimitError as exc:
        db.session.rollback()
        return error_response(str(exc))

    picks = Pick.query.filter_by(user_id=current_user.id, season=season, week=week).all()
    return jsonify({'success': True, 'picks': [p.to_dict() for p in picks]})


@app.route('/api/picks/submit', methods=['POST'])
@login_required
def submit_picks():
    """Finalize the week's picks and send a confirmation."""
    season = current_season()
    week = json_body().get('week') or get_active_week(season)
    settings = WeekSettings.get(season, week)

    if settings is None or not settings.accepting_picks():
        return error_response('Picks are not being accepted for this week.')

    picks = Pick.query.filter_by(user_id=current_user.id, season=season, week=week).all()
    if any(p.submitted for p in picks):
        return error_response('Picks for this week have already been submitted.')

    errors = check_full_sheet([{'is_lock': p.is_lock} for p in picks])
    if errors:
        return error_response(errors[0], errors=errors)

    now = get_current_time()
    for pick in picks:
        pick.submitted = True
        pick.submitted_at = to_storage(now)

    cancel_scheduled_emails(current_user.id, season, week)
    queue_pick_confirmation(current_user, picks, settings, now)
    db.session.commit()
    logger.info("User %s submitted %s picks for week %s", current_user.id, len(picks), week)

    return jsonify({'success': True, 'picks': [p.to_dict() for p in picks]})


@app.route('/api/anonymous-picks', methods=['POST'])
@limiter.limit("10 per minute")
def submit_anonymous_picks():
    """Full pick sheet from a participant without an account."""
    data = json_body()
    season = current_season()
    week = data.get('week') or get_active_week(season)
    name = (data.get('name') or '').strip()
    entries = data.get('picks') or []

    try:
        email = normalize_email((data.get('email') or '').strip())
    except EmailNotValidError as exc:
        return error_response(str(exc))
    if not name:
        return error_response('Name is required.')

    if AnonymousPick.query.filter_by(email=email, season=season, week=week).first():
        return error_response('Picks for this email have already been submitted this week.')

    settings = WeekSettings.get(season, week)
    errors, games_by_id = validate_pick_entries(settings, entries)
    errors = errors or check_full_sheet(entries)
    if errors:
        return error_response(errors[0], errors=errors)

    # An account holder who already submitted makes this set a duplicate to review
    account = User.query.filter(func.lower(User.email) == email).first()
    status = 'duplicate_conflict' if account and account.has_submitted(season, week) else 'pending_validation'

    try:
        for entry in entries:
            game = games_by_id[entry['game_id']]
            db.session.add(AnonymousPick(
                email=email,
                name=name,
                week=week,
                season=season,
                game_id=game.id,
                home_team=game.home_team,
                away_team=game.away_team,
                selected_team=entry['selected_team'],
                is_lock=bool(entry.get('is_lock')),
                validation_status=status,
            ))
        db.session.commit()
    except PickLimitError as exc:
        db.session.rollback()
        return error_response(str(exc))

    logger.info("Anonymous picks from %s for week %s (%s)", email, week, status)
    picks = AnonymousPick.query.filter_by(email=email, season=season, week=week).all()
    return jsonify({'success': True, 'picks': [p.to_dict() for p in picks]}), 201


# ============================================================================
# Email Route
# ============================================================================

@app.route('/api/send-email', methods=['POST'])
@login_required
def api_send_email():
    """Forward a message to the email provider."""
    data = json_body()
    to = data.get('to')
    subject = data.get('subject')
    html = data.get('html')

    if not to or not subject or not html:
        return error_response('Missing required fields: to, subject, html')

    try:
        message_id = send_email(to, subject, html, text=data.get('text'), sender=data.get('from'))
    except EmailDeliveryError as exc:
        return error_response('Failed to send email', 500, details=str(exc))

    return jsonify({
        'success': True,
        'messageId': message_id,
        'message': 'Email sent successfully',
    })


# ============================================================================
# Admin Routes
# ============================================================================

@app.route('/api/admin/dashboard')
@admin_required
def admin_dashboard():
    season = current_season()
    return jsonify({
        'season': season,
        'active_week': get_active_week(season),
        'totals': season_totals(season),
        'pending_emails': EmailJob.query.filter_by(status='pending').count(),
        'failed_emails': EmailJob.query.filter_by(status='failed').count(),
    })


def _apply_game_fields(game, data):
    """Copy editable game fields from a request. Raises ValueError on bad input."""
    for field in ('home_team', 'away_team'):
        if field in data:
            value = (data.get(field) or '').strip()
            if not value:
                raise ValueError(f'{field} is required.')
            setattr(game, field, value)
    if 'spread' in data:
        game.spread = float(data['spread'])
    if 'kickoff_time' in data:
        game.kickoff_time = to_storage(parse_datetime(data['kickoff_time']))
    if 'custom_lock_time' in data:
        value = data.get('custom_lock_time')
        game.custom_lock_time = to_storage(parse_datetime(value)) if value else None
    for field in ('home_score', 'away_score'):
        if field in data:
            value = data.get(field)
            setattr(game, field, int(value) if value is not None else None)


@app.route('/api/admin/games', methods=['POST'])
@admin_required
def admin_create_game():
    data = json_body()
    season = current_season()
    game = Game(season=season, week=data.get('week') or get_active_week(season))

    try:
        for field in ('home_team', 'away_team', 'spread', 'kickoff_time'):
            if data.get(field) is None:
                raise ValueError(f'{field} is required.')
        _apply_game_fields(game, data)
    except (TypeError, ValueError) as exc:
        return error_response(str(exc))

    if Game.query.filter_by(season=season, week=game.week,
                            home_team=game.home_team, away_team=game.away_team).first():
        return error_response('That game is already on the slate.')

    db.session.add(game)
    db.session.commit()
    logger.info("Admin %s added %s", current_user.id, game)
    return jsonify({'game': game.to_dict()}), 201


@app.route('/api/admin/games/<int:game_id>', methods=['PUT'])
@admin_required
def admin_update_game(game_id):
    game = db.get_or_404(Game, game_id)
    try:
        _apply_game_fields(game, json_body())
    except (TypeError, ValueError) as exc:
        db.session.rollback()
        return error_response(str(exc))

    if game.home_score is not None and game.away_score is not None and game.status == 'scheduled':
        game.status = 'in_progress'

    db.session.commit()
    return jsonify({'game': game.to_dict()})


@app.route('/api/admin/games/<int:game_id>', methods=['DELETE'])
@admin_required
def admin_delete_game(game_id):
    game = db.get_or_404(Game, game_id)
    if game.picks.count() or game.anonymous_picks.count():
        return error_response('Game has picks and cannot be deleted.')
    db.session.delete(game)
    db.session.commit()
    return jsonify({'success': True})


@app.route('/api/admin/games/<int:game_id>/complete', methods=['POST'])
@admin_required
def admin_complete_game(game_id):
    """Enter final scores (optional if already set) and score all picks."""
    game = db.get_or_404(Game, game_id)
    data = json_body()

    try:
        for field in ('home_score', 'away_score'):
            if data.get(field) is not None:
                setattr(game, field, int(data[field]))
        scored = complete_game(game)
        db.session.commit()
    except (TypeError, ValueError, ScoringError) as exc:
        db.session.rollback()
        return error_response(str(exc))

    return jsonify({'game': game.to_dict(), 'picks_scored': scored})


@app.route('/api/admin/games/<int:game_id>/reset', methods=['POST'])
@admin_required
def admin_reset_game(game_id):
    game = db.get_or_404(Game, game_id)
    cleared = reset_game_scoring(game, keep_scores=bool(json_body().get('keep_scores')))
    db.session.commit()
    return jsonify({'game': game.to_dict(), 'picks_cleared': cleared})


def _get_game_sync():
    api_key = app.config.get('CFBD_API_KEY')
    if not api_key:
        return None
    return GameSync(CollegeFootballDataAPI(api_key))


@app.route('/api/admin/candidates')
@admin_required
def admin_candidate_games():
    """Pick-worthy games for a week from CollegeFootballData."""
    sync = _get_game_sync()
    if sync is None:
        return error_response('CFBD_API_KEY is not configured.', 503)
    week = requested_week()
    limit = request.args.get('limit', type=int)
    return jsonify({'week': week, 'games': sync.get_candidate_games(current_season(), week, limit=limit)})


@app.route('/api/admin/games/import', methods=['POST'])
@admin_required
def admin_import_games():
    sync = _get_game_sync()
    if sync is None:
        return error_response('CFBD_API_KEY is not configured.', 503)
    data = json_body()
    week = data.get('week') or get_active_week(current_season())
    imported = sync.import_games(current_season(), week, data.get('external_ids') or [])
    return jsonify({'week': week, 'imported': imported})


@app.route('/api/admin/weeks/<int:week>', methods=['PUT'])
@admin_required
def admin_update_week(week):
    """Create or edit a week's deadline and leaderboard flags."""
    data = json_body()
    season = current_season()
    settings = WeekSettings.get(season, week)

    try:
        deadline = parse_datetime(data['deadline']) if data.get('deadline') else None
    except ValueError:
        return error_response('Invalid deadline.')

    if settings is None:
        if deadline is None:
            return error_response('A deadline is required for a new week.')
        settings = WeekSettings.get_or_create(season, week, deadline)
    elif deadline is not None:
        settings.deadline = to_storage(deadline)

    for flag in ('scoring_complete', 'leaderboard_complete', 'games_locked'):
        if flag in data:
            setattr(settings, flag, bool(data[flag]))
    if 'admin_custom_message' in data:
        settings.admin_custom_message = (data.get('admin_custom_message') or '').strip() or None

    db.session.commit()
    return jsonify({'settings': settings.to_dict()})


@app.route('/api/admin/weeks/<int:week>/open', methods=['POST'])
@admin_required
def admin_open_week(week):
    """Publish the week's games, open picks and queue notifications."""
    data = json_body()
    season = current_season()
    total_games = Game.query.filter_by(season=season, week=week).count()
    if not total_games:
        return error_response('Add games before opening the week.')

    try:
        deadline = parse_datetime(data['deadline']) if data.get('deadline') else None
    except ValueError:
        return error_response('Invalid deadline.')

    settings = WeekSettings.get(season, week)
    if settings is None:
        if deadline is None:
            return error_response('A deadline is required to open a week.')
        settings = WeekSettings.get_or_create(season, week, deadline)
    elif deadline is not None:
        settings.deadline = to_storage(deadline)

    if settings.is_deadline_passed():
        return error_response('The deadline must be in the future.')

    already_open = settings.picks_open
    settings.games_selected = True
    settings.picks_open = True
    settings.games_locked = False

    queued = 0
    if not already_open:
        queued = queue_week_opened_notifications(settings, total_games)
    db.session.commit()
    logger.info("Opened week %s with %s games (%s emails queued)", week, total_games, queued)

    return jsonify({'settings': settings.to_dict(), 'emails_queued': queued})


@app.route('/api/admin/weeks/<int:week>/lock', methods=['POST'])
@admin_required
def admin_lock_week(week):
    settings = WeekSettings.get(current_season(), week)
    if settings is None:
        return error_response('Week not found.', 404)
    settings.games_locked = True
    db.session.commit()
    return jsonify({'settings': settings.to_dict()})


@app.route('/api/admin/weeks/<int:week>/unsave', methods=['POST'])
@admin_required
def admin_unsave_week(week):
    """Take the week back to draft. Games and deadline are kept."""
    settings = WeekSettings.get(current_season(), week)
    if settings is None:
        return error_response('Week not found.', 404)
    settings.games_selected = False
    settings.picks_open = False
    settings.games_locked = False
    db.session.commit()
    return jsonify({'settings': settings.to_dict()})


@app.route('/api/admin/weeks/<int:week>/rescore', methods=['POST'])
@admin_required
def admin_rescore_week(week):
    scored = rescore_week(current_season(), week)
    return jsonify({'week': week, 'picks_scored': scored})


@app.route('/api/admin/weeks/<int:week>/results-email', methods=['POST'])
@admin_required
def admin_send_results(week):
    """Queue weekly results emails from the week's standings."""
    season = current_season()
    rows = build_leaderboard(season, week)
    queued = queue_weekly_results(season, week, rows)
    db.session.commit()
    return jsonify({'week': week, 'emails_queued': queued})


@app.route('/api/admin/process-emails', methods=['POST'])
@admin_required
def admin_process_emails():
    sent, errors = process_pending_jobs()
    return jsonify({'sent': sent, 'errors': errors})


@app.route('/api/admin/users')
@admin_required
def admin_users():
    season = current_season()
    users = User.query.order_by(func.lower(User.display_name)).all()
    return jsonify({'users': [
        dict(u.to_dict(include_private=True), payment_status=u.payment_status(season))
        for u in users
    ]})


@app.route('/api/admin/users/<int:user_id>', methods=['PUT'])
@admin_required
def admin_update_user(user_id):
    """Toggle admin or link a LeagueSafe email."""
    user = db.get_or_404(User, user_id)
    data = json_body()

    if 'is_admin' in data:
        if user.id == current_user.id and not data['is_admin']:
            return error_response('You cannot remove your own admin access.')
        user.is_admin = bool(data['is_admin'])

    if 'leaguesafe_email' in data:
        value = (data.get('leaguesafe_email') or '').strip()
        if value:
            try:
                value = normalize_email(value)
            except EmailNotValidError as exc:
                return error_response(str(exc))
        user.leaguesafe_email = value or None
        if value:
            for payment in LeagueSafePayment.query.filter(func.lower(LeagueSafePayment.email) == value).all():
                payment.match_user()

    db.session.commit()
    return jsonify({'user': user.to_dict(include_private=True)})


@app.route('/api/admin/users/<int:user_id>/reset-password', methods=['POST'])
@admin_required
def admin_reset_password(user_id):
    """Admin can reset a user's password."""
    user = db.get_or_404(User, user_id)
    new_password = (json_body().get('new_password') or '').strip()

    if len(new_password) < 6:
        return error_response('Password must be at least 6 characters.')

    user.set_password(new_password)
    db.session.commit()
    return jsonify({'success': True, 'message': f'Password reset for {user.get_display_name()}.'})


@app.route('/api/admin/payments')
@admin_required
def admin_payments():
    """LeagueSafe payment records for the season."""
    season = current_season()
    payments = LeagueSafePayment.query.filter_by(season=season).order_by(
        func.lower(LeagueSafePayment.owner_name)).all()

    paid_count = sum(1 for p in payments if p.status == 'Paid')
    return jsonify({
        'payments': [p.to_dict() for p in payments],
        'paid_count': paid_count,
        'unpaid_count': len(payments) - paid_count,
        'unmatched_count': sum(1 for p in payments if not p.is_matched),
        'total_collected': sum(p.paid or 0 for p in payments),
        'entry_fee': app.config['ENTRY_FEE'],
    })


@app.route('/api/admin/payments', methods=['PUT'])
@admin_required
def admin_update_payment():
    """Create or update a payment record by email."""
    data = json_body()
    season = current_season()

    try:
        email = normalize_email(data.get('email'))
    except EmailNotValidError as exc:
        return error_response(str(exc))

    status = data.get('status', 'NotPaid')
    if status not in PAYMENT_STATUSES:
        return error_response(f'Status must be one of {", ".join(PAYMENT_STATUSES)}.')

    payment = LeagueSafePayment.query.filter_by(season=season, email=email).first()
    if not payment:
        payment = LeagueSafePayment(season=season, email=email,
                                    owner_name=data.get('owner_name') or email.split('@')[0],
                                    entry_fee=app.config['ENTRY_FEE'])
        db.session.add(payment)

    payment.status = status
    for field in ('paid', 'pending', 'owes', 'entry_fee'):
        if data.get(field) is not None:
            setattr(payment, field, float(data[field]))
    if data.get('owner_name'):
        payment.owner_name = data['owner_name']
    payment.match_user()

    db.session.commit()
    return jsonify({'payment': payment.to_dict()})


@app.route('/api/admin/anonymous-picks')
@admin_required
def admin_anonymous_picks():
    """Anonymous pick sets for a week, grouped by email."""
    season = current_season()
    week = requested_week()
    groups = {}
    for pick in AnonymousPick.query.filter_by(season=season, week=week).order_by(AnonymousPick.email).all():
        group = groups.setdefault(pick.email, {
            'email': pick.email,
            'name': pick.name,
            'assigned_user_id': pick.assigned_user_id,
            'show_on_leaderboard': pick.show_on_leaderboard,
            'validation_status': pick.validation_status,
            'picks': [],
        })
        group['picks'].append(pick.to_dict())
    return jsonify({'week': week, 'sets': list(groups.values())})


@app.route('/api/admin/anonymous-picks/assign', methods=['POST'])
@admin_required
def admin_assign_anonymous_picks():
    """
    Assign an email's anonymous picks for a week to a user.

    When shown on the leaderboard they replace that user's own picks for the
    week, and any other set shown for the same user is hidden.
    """
    data = json_body()
    season = current_season()
    week = data.get('week') or get_active_week(season)
    email = (data.get('email') or '').strip().lower()
    show = bool(data.get('show_on_leaderboard', True))

    picks = AnonymousPick.query.filter_by(email=email, season=season, week=week).all()
    if not picks:
        return error_response('No anonymous picks for that email and week.', 404)

    user_id = data.get('user_id')
    user = db.session.get(User, user_id) if user_id else None
    if user_id and user is None:
        return error_response('User not found.', 404)

    if user and show:
        AnonymousPick.query.filter(
            AnonymousPick.assigned_user_id == user.id,
            AnonymousPick.season == season,
            AnonymousPick.week == week,
            AnonymousPick.email != email,
        ).update({'show_on_leaderboard': False}, synchronize_session=False)

    for pick in picks:
        pick.assigned_user_id = user.id if user else None
        pick.show_on_leaderboard = show and user is not None
        pick.is_validated = user is not None
        pick.validation_status = 'manually_validated' if user else 'pending_validation'

    db.session.commit()
    logger.info("Assigned anonymous picks %s week %s to user %s (shown=%s)", email, week, user_id, show)
    return jsonify({'success': True, 'picks': [p.to_dict() for p in picks]})


@app.route('/api/admin/anonymous-picks/<int:pick_id>', methods=['PUT'])
@admin_required
def admin_update_anonymous_pick(pick_id):
    """Fix a single anonymous pick or its validation status."""
    pick = db.get_or_404(AnonymousPick, pick_id)
    data = json_body()

    if 'validation_status' in data:
        if data['validation_status'] not in VALIDATION_STATUSES:
            return error_response('Unknown validation status.')
        pick.validation_status = data['validation_status']
        pick.is_validated = data['validation_status'] == 'manually_validated'
    if 'selected_team' in data:
        if data['selected_team'] not in (pick.home_team, pick.away_team):
            return error_response(f'Pick {pick.home_team} or {pick.away_team} for that game.')
        pick.selected_team = data['selected_team']
    if 'is_lock' in data:
        pick.is_lock = bool(data['is_lock'])

    try:
        db.session.commit()
    except PickLimitError as exc:
        db.session.rollback()
        return error_response(str(exc))
    return jsonify({'pick': pick.to_dict()})


@app.route('/api/admin/anonymous-picks/<int:pick_id>', methods=['DELETE'])
@admin_required
def admin_delete_anonymous_pick(pick_id):
    pick = db.get_or_404(AnonymousPick, pick_id)
    db.session.delete(pick)
    db.session.commit()
    return jsonify({'success': True})


@app.route('/api/admin/blog')
@admin_required
def admin_blog_list():
    posts = BlogPost.query.order_by(BlogPost.created_at.desc()).all()
    return jsonify({'posts': [p.to_dict(include_content=False) for p in posts]})


@app.route('/api/admin/blog', methods=['POST'])
@admin_required
def admin_create_post():
    data = json_body()
    title = (data.get('title') or '').strip()
    content = (data.get('content') or '').strip()
    if not title or not content:
        return error_response('Title and content are required.')

    post = BlogPost(
        title=title,
        content=content,
        excerpt=data.get('excerpt'),
        author_id=current_user.id,
        season=data.get('season') or current_season(),
        week=data.get('week'),
        is_published=bool(data.get('is_published')),
        featured_image_url=data.get('featured_image_url'),
        slug=BlogPost.generate_slug(title),
    )
    db.session.add(post)
    db.session.commit()
    return jsonify({'post': post.to_dict()}), 201


@app.route('/api/admin/blog/<int:post_id>', methods=['PUT'])
@admin_required
def admin_update_post(post_id):
    post = db.get_or_404(BlogPost, post_id)
    data = json_body()

    if 'title' in data:
        title = (data.get('title') or '').strip()
        if not title:
            return error_response('Title cannot be empty.')
        if title != post.title:
            post.title = title
            post.slug = BlogPost.generate_slug(title, post_id=post.id)
    for field in ('content', 'excerpt', 'featured_image_url', 'week', 'season'):
        if field in data:
            setattr(post, field, data[field])
    if 'is_published' in data:
        post.is_published = bool(data['is_published'])

    db.session.commit()
    return jsonify({'post': post.to_dict()})


@app.route('/api/admin/blog/<int:post_id>', methods=['DELETE'])
@admin_required
def admin_delete_post(post_id):
    post = db.get_or_404(BlogPost, post_id)
    db.session.delete(post)
    db.session.commit()
    return jsonify({'success': True})


# ============================================================================
# Error Handlers
# ============================================================================

@app.errorhandler(CSRFError)
def csrf_error(e):
    return error_response(e.description, 400)


@app.errorhandler(404)
def not_found(e):
    return error_response('Not found', 404)


@app.errorhandler(405)
def method_not_allowed(e):
    return error_response('Method not allowed', 405)


@app.errorhandler(429)
def rate_limited(e):
    return error_response('Too many requests', 429)


@app.errorhandler(500)
def server_error(e):
    db.session.rollback()
    return error_response('Internal server error', 500)


# ============================================================================
# CLI Commands
# ============================================================================

@app.cli.command('init-db')
def init_db():
    """Initialize the database."""
    db.create_all()
    print('Database initialized.')


@app.cli.command('create-admin')
def create_admin():
    """Create an admin user."""
    import getpass

    email = input('Admin email: ').strip().lower()
    display_name = input('Display name: ').strip()
    password = getpass.getpass('Admin password: ')

    if User.query.filter(func.lower(User.email) == email).first():
        print(f'User {email} already exists.')
        return

    user = User(
        email=email,
        display_name=display_name or email.split('@')[0],
        is_admin=True
    )
    user.set_password(password)

    db.session.add(user)
    db.session.commit()

    print(f'Admin user {email} created.')


@app.cli.command('rescore-week')
@click.option('--week', type=int, required=True)
def rescore_week_cli(week):
    """Re-run scoring for every completed game in a week."""
    scored = rescore_week(current_season(), week)
    print(f'Rescored {scored} picks for week {week}.')


@app.cli.command('process-emails')
def process_emails_cli():
    """Send due email jobs."""
    sent, errors = process_pending_jobs()
    print(f'Sent {sent} emails ({errors} errors).')


# Register API sync commands
from sync_api import register_sync_commands
register_sync_commands(app)


# ============================================================================
# Run Application
# ============================================================================

if __name__ == '__main__':
    app.run(debug=True)
