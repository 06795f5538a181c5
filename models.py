"""
Pigskin Pick Six - Database Models
==================================
SQLAlchemy models for the college football pick 'em league.

Core Concepts:
- Each week the admin selects games and a pick deadline
- Users pick 6 games against the spread, one of them flagged as their lock
- Points: 20 for a cover, 10 for a push, plus a margin bonus (doubled on the lock)
- Participants without an account submit anonymous picks keyed by email
- A participant never holds more than 6 picks or more than 1 lock per week
"""

import re
from datetime import datetime, time, timedelta, timezone

import pytz
from flask import current_app, has_app_context
from flask_login import UserMixin
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event, func, inspect, select
from sqlalchemy.orm import Session
from werkzeug.security import generate_password_hash, check_password_hash

db = SQLAlchemy()

# Timezone for the league (Central Time)
LEAGUE_TZ = pytz.timezone('America/Chicago')

GAME_STATUSES = ('scheduled', 'in_progress', 'completed')
PICK_RESULTS = ('win', 'loss', 'push')
PAYMENT_STATUSES = ('Paid', 'NotPaid', 'Pending')
VALIDATION_STATUSES = ('pending_validation', 'manually_validated', 'duplicate_conflict')

# Default pick locks (league time)
WEEKNIGHT_LOCK_HOUR = 18  # Thursday/Friday games lock at 6:00 PM on game day
SATURDAY_LOCK_HOUR = 11   # everything else locks at 11:00 AM on the week's Saturday
WEEKNIGHT_DAYS = (3, 4)
# Days from a game's weekday to the Saturday whose slate it belongs to
SATURDAY_OFFSETS = {0: -2, 1: -3, 2: 3, 5: 0, 6: -1}


class PickLimitError(Exception):
    """Raised when a pick would exceed the weekly pick or lock allowance."""


def _utcnow():
    return datetime.now(timezone.utc).replace(tzinfo=None)


def localize(dt):
    """Return an aware datetime in league time. Naive values are league wall time."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return LEAGUE_TZ.localize(dt)
    return dt.astimezone(LEAGUE_TZ)


def to_storage(dt):
    """Convert a datetime to naive league wall time for storage."""
    if dt is None:
        return None
    return localize(dt).replace(tzinfo=None)


def _iso(dt):
    return localize(dt).isoformat() if dt else None


def default_lock_time(kickoff):
    """
    Lock time for a game without a custom lock.

    Thursday and Friday games lock at 6:00 PM on game day. Saturday through
    Wednesday games lock at 11:00 AM on the Saturday of their slate (Sunday
    to Tuesday look back to the previous Saturday, Wednesday ahead to the
    next). A game never locks after its own kickoff.
    """
    kickoff = localize(kickoff)
    weekday = kickoff.weekday()
    if weekday in WEEKNIGHT_DAYS:
        lock = datetime.combine(kickoff.date(), time(WEEKNIGHT_LOCK_HOUR))
    else:
        saturday = kickoff.date() + timedelta(days=SATURDAY_OFFSETS[weekday])
        lock = datetime.combine(saturday, time(SATURDAY_LOCK_HOUR))
    return min(LEAGUE_TZ.localize(lock), kickoff)


class User(UserMixin, db.Model):
    """
    League member with an account.
    """
    __tablename__ = 'user'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), unique=True, nullable=False)
    password_hash = db.Column(db.String(256), nullable=False)
    display_name = db.Column(db.String(100), nullable=False)

    is_admin = db.Column(db.Boolean, default=False)
    leaguesafe_email = db.Column(db.String(120), nullable=True)  # Email used on LeagueSafe, if different

    # Notification preferences
    email_notifications = db.Column(db.Boolean, default=True)
    pick_reminders = db.Column(db.Boolean, default=True)
    deadline_alerts = db.Column(db.Boolean, default=True)
    weekly_results = db.Column(db.Boolean, default=True)

    # Timestamps
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    # Relationships
    picks = db.relationship('Pick', backref='user', lazy='dynamic', cascade='all, delete-orphan')

    def set_password(self, password):
        """Hash and store password."""
        self.password_hash = generate_password_hash(password)

    def check_password(self, password):
        """Verify password against hash."""
        return check_password_hash(self.password_hash, password)

    def get_display_name(self):
        """Return display name or the local part of the email."""
        return self.display_name or self.email.split('@')[0]

    def known_emails(self):
        """All lowercase emails this user can be matched by."""
        emails = {self.email.lower()}
        if self.leaguesafe_email:
            emails.add(self.leaguesafe_email.lower())
        return emails

    def payment_status(self, season):
        payment = LeagueSafePayment.query.filter_by(user_id=self.id, season=season).first()
        return payment.status if payment else 'No Payment'

    def has_submitted(self, season, week):
        return self.picks.filter_by(season=season, week=week, submitted=True).count() > 0

    def to_dict(self, include_private=False):
        data = {
            'id': self.id,
            'display_name': self.get_display_name(),
            'is_admin': bool(self.is_admin),
        }
        if include_private:
            data.update({
                'email': self.email,
                'leaguesafe_email': self.leaguesafe_email,
                'preferences': {
                    'email_notifications': bool(self.email_notifications),
                    'pick_reminders': bool(self.pick_reminders),
                    'deadline_alerts': bool(self.deadline_alerts),
                    'weekly_results': bool(self.weekly_results),
                },
            })
        return data

    def __repr__(self):
        return f'<User {self.email}>'


class Game(db.Model):
    """
    A college football game selected for a pick 'em week.

    The spread is the home team's line: -7 means the home team is favoured by 7.
    """
    __tablename__ = 'game'

    id = db.Column(db.Integer, primary_key=True)
    week = db.Column(db.Integer, nullable=False, index=True)
    season = db.Column(db.Integer, nullable=False, index=True)
    home_team = db.Column(db.String(100), nullable=False)
    away_team = db.Column(db.String(100), nullable=False)
    spread = db.Column(db.Float, nullable=False)

    home_score = db.Column(db.Integer, nullable=True)
    away_score = db.Column(db.Integer, nullable=True)

    kickoff_time = db.Column(db.DateTime, nullable=False)
    custom_lock_time = db.Column(db.DateTime, nullable=True)  # Admin override for when picks lock

    status = db.Column(db.String(20), default='scheduled', nullable=False)

    # Resolved when the game completes
    winner_against_spread = db.Column(db.String(100), nullable=True)  # team name or 'push'
    margin_bonus = db.Column(db.Integer, nullable=True)
    base_points = db.Column(db.Integer, nullable=True)

    external_id = db.Column(db.Integer, nullable=True, index=True)  # CollegeFootballData game id

    # Timestamps
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    picks = db.relationship('Pick', backref='game', lazy='dynamic', cascade='all, delete-orphan')
    anonymous_picks = db.relationship('AnonymousPick', backref='game', lazy='dynamic',
                                      cascade='all, delete-orphan')

    __table_args__ = (
        db.UniqueConstraint('week', 'season', 'home_team', 'away_team', name='unique_game_week_teams'),
    )

    def lock_time(self):
        """When picks on this game close: the admin override, else the default lock."""
        if self.custom_lock_time:
            return localize(self.custom_lock_time)
        return default_lock_time(self.kickoff_time)

    def is_locked(self, now=None):
        now = now or get_current_time()
        return now >= self.lock_time()

    def has_team(self, team):
        return team in (self.home_team, self.away_team)

    def spread_label(self):
        """Return the line from the home team's side, e.g. "Alabama -7.5"."""
        if self.spread > 0:
            return f"{self.home_team} +{self.spread:g}"
        if self.spread == 0:
            return f"{self.home_team} PK"
        return f"{self.home_team} {self.spread:g}"

    def to_dict(self):
        return {
            'id': self.id,
            'week': self.week,
            'season': self.season,
            'home_team': self.home_team,
            'away_team': self.away_team,
            'spread': self.spread,
            'spread_label': self.spread_label(),
            'home_score': self.home_score,
            'away_score': self.away_score,
            'kickoff_time': _iso(self.kickoff_time),
            'custom_lock_time': _iso(self.custom_lock_time),
            'locked': self.is_locked(),
            'status': self.status,
            'winner_against_spread': self.winner_against_spread,
            'margin_bonus': self.margin_bonus,
            'base_points': self.base_points,
        }

    def __repr__(self):
        return f'<Game {self.season} W{self.week}: {self.away_team} @ {self.home_team}>'


class Pick(db.Model):
    """
    A user's pick against the spread for one game.
    """
    __tablename__ = 'pick'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False)
    week = db.Column(db.Integer, nullable=False)
    season = db.Column(db.Integer, nullable=False)

    selected_team = db.Column(db.String(100), nullable=False)
    is_lock = db.Column(db.Boolean, default=False, nullable=False)

    submitted = db.Column(db.Boolean, default=False, nullable=False)
    submitted_at = db.Column(db.DateTime, nullable=True)

    # Set once the game completes
    result = db.Column(db.String(10), nullable=True)
    points_earned = db.Column(db.Integer, nullable=True)

    # Timestamps
    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint('user_id', 'game_id', name='unique_user_game_pick'),
        db.Index('ix_pick_user_week_season', 'user_id', 'week', 'season'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'user_id': self.user_id,
            'game_id': self.game_id,
            'week': self.week,
            'season': self.season,
            'selected_team': self.selected_team,
            'is_lock': bool(self.is_lock),
            'submitted': bool(self.submitted),
            'submitted_at': _iso(self.submitted_at),
            'result': self.result,
            'points_earned': self.points_earned,
        }

    def __repr__(self):
        return f'<Pick User:{self.user_id} Game:{self.game_id} {self.selected_team}>'


class AnonymousPick(db.Model):
    """
    A pick from a participant without an account, identified by email.

    An admin can assign the picks to a user and choose whether they count on
    the leaderboard in place of that user's own picks for the week.
    """
    __tablename__ = 'anonymous_pick'

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(120), nullable=False)
    name = db.Column(db.String(100), nullable=False)
    week = db.Column(db.Integer, nullable=False)
    season = db.Column(db.Integer, nullable=False)
    game_id = db.Column(db.Integer, db.ForeignKey('game.id'), nullable=False)
    home_team = db.Column(db.String(100), nullable=False)
    away_team = db.Column(db.String(100), nullable=False)

    selected_team = db.Column(db.String(100), nullable=False)
    is_lock = db.Column(db.Boolean, default=False, nullable=False)
    submitted_at = db.Column(db.DateTime, default=_utcnow)

    # Admin management
    is_validated = db.Column(db.Boolean, default=False)
    validation_status = db.Column(db.String(30), default='pending_validation')
    assigned_user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    show_on_leaderboard = db.Column(db.Boolean, default=False, nullable=False)

    result = db.Column(db.String(10), nullable=True)
    points_earned = db.Column(db.Integer, nullable=True)

    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    assigned_user = db.relationship('User', foreign_keys=[assigned_user_id])

    __table_args__ = (
        db.UniqueConstraint('email', 'week', 'season', 'game_id', name='unique_anonymous_pick_per_game'),
        db.Index('ix_anonymous_pick_email_week_season', 'email', 'week', 'season'),
    )

    def to_dict(self):
        return {
            'id': self.id,
            'email': self.email,
            'name': self.name,
            'week': self.week,
            'season': self.season,
            'game_id': self.game_id,
            'home_team': self.home_team,
            'away_team': self.away_team,
            'selected_team': self.selected_team,
            'is_lock': bool(self.is_lock),
            'submitted_at': _iso(self.submitted_at),
            'is_validated': bool(self.is_validated),
            'validation_status': self.validation_status,
            'assigned_user_id': self.assigned_user_id,
            'show_on_leaderboard': bool(self.show_on_leaderboard),
            'result': self.result,
            'points_earned': self.points_earned,
        }

    def __repr__(self):
        return f'<AnonymousPick {self.email} Game:{self.game_id} {self.selected_team}>'


class WeekSettings(db.Model):
    """Deadline and open/locked state for one week of the season."""
    __tablename__ = 'week_settings'

    id = db.Column(db.Integer, primary_key=True)
    week = db.Column(db.Integer, nullable=False)
    season = db.Column(db.Integer, nullable=False)
    deadline = db.Column(db.DateTime, nullable=False)

    games_selected = db.Column(db.Boolean, default=False, nullable=False)
    picks_open = db.Column(db.Boolean, default=False, nullable=False)
    games_locked = db.Column(db.Boolean, default=False, nullable=False)

    scoring_complete = db.Column(db.Boolean, default=False, nullable=False)
    leaderboard_complete = db.Column(db.Boolean, default=False, nullable=False)
    admin_custom_message = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    __table_args__ = (
        db.UniqueConstraint('week', 'season', name='unique_week_season'),
    )

    @classmethod
    def get(cls, season, week):
        return cls.query.filter_by(season=season, week=week).first()

    @classmethod
    def get_or_create(cls, season, week, deadline):
        """Return the week's settings, creating closed settings if none exist."""
        settings = cls.get(season, week)
        if settings is None:
            settings = cls(season=season, week=week, deadline=to_storage(deadline))
            db.session.add(settings)
            db.session.flush()
        return settings

    def is_deadline_passed(self, now=None):
        now = now or get_current_time()
        return now >= localize(self.deadline)

    def accepting_picks(self, now=None):
        return self.picks_open and not self.games_locked and not self.is_deadline_passed(now)

    def get_deadline_display(self):
        return localize(self.deadline).strftime('%a %b %d, %I:%M %p CT')

    def notice_message(self, is_live_updating=False):
        """Banner shown above the leaderboard, and whether scoring is final."""
        contact = 'IF YOU SEE ANY ERRORS, PLEASE EMAIL US AT ADMIN@PIGSKINPICKSIX.COM.'
        if self.scoring_complete and self.leaderboard_complete:
            parts = ['SCORING AND LEADERBOARD ARE COMPLETE AND VALIDATED.']
            if self.admin_custom_message:
                parts.append(self.admin_custom_message)
            parts.append(contact)
            return {'message': ' '.join(parts), 'type': 'final'}
        if is_live_updating or self.games_locked:
            return {
                'message': 'SCORES ARE UPDATING LIVE AND ARE NOT FINAL UNTIL VALIDATED. ' + contact,
                'type': 'experimental',
            }
        return {'message': contact, 'type': 'default'}

    def to_dict(self):
        return {
            'week': self.week,
            'season': self.season,
            'deadline': _iso(self.deadline),
            'deadline_display': self.get_deadline_display(),
            'games_selected': self.games_selected,
            'picks_open': self.picks_open,
            'games_locked': self.games_locked,
            'scoring_complete': self.scoring_complete,
            'leaderboard_complete': self.leaderboard_complete,
            'admin_custom_message': self.admin_custom_message,
        }

    def __repr__(self):
        return f'<WeekSettings {self.season} W{self.week}>'


class BlogPost(db.Model):
    """Commissioner's weekly write-up."""
    __tablename__ = 'blog_post'

    id = db.Column(db.Integer, primary_key=True)
    title = db.Column(db.String(200), nullable=False)
    content = db.Column(db.Text, nullable=False)
    excerpt = db.Column(db.String(500), nullable=True)
    author_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    season = db.Column(db.Integer, nullable=False)
    week = db.Column(db.Integer, nullable=True)  # None for pre-season posts
    is_published = db.Column(db.Boolean, default=False, nullable=False)
    featured_image_url = db.Column(db.String(500), nullable=True)
    slug = db.Column(db.String(220), unique=True, nullable=False)

    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    author = db.relationship('User')

    @staticmethod
    def generate_slug(title, post_id=None):
        """Build a unique URL slug from a title."""
        base_slug = re.sub(r'[^a-zA-Z0-9\s]', '', title).strip().lower()
        base_slug = re.sub(r'\s+', '-', base_slug).strip('-') or 'blog-post'

        slug = base_slug
        counter = 1
        while True:
            query = BlogPost.query.filter_by(slug=slug)
            if post_id is not None:
                query = query.filter(BlogPost.id != post_id)
            if not query.first():
                return slug
            counter += 1
            slug = f'{base_slug}-{counter}'

    def to_dict(self, include_content=True):
        data = {
            'id': self.id,
            'title': self.title,
            'excerpt': self.excerpt,
            'slug': self.slug,
            'season': self.season,
            'week': self.week,
            'is_published': self.is_published,
            'featured_image_url': self.featured_image_url,
            'author': self.author.get_display_name() if self.author else None,
            'created_at': self.created_at.isoformat() if self.created_at else None,
        }
        if include_content:
            data['content'] = self.content
        return data

    def __repr__(self):
        return f'<BlogPost {self.slug}>'


class EmailJob(db.Model):
    """An outbound email waiting to be sent, or the record of one that was."""
    __tablename__ = 'email_job'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    email = db.Column(db.String(120), nullable=False)
    template_type = db.Column(db.String(30), nullable=False)
    subject = db.Column(db.String(300), nullable=False)
    html_content = db.Column(db.Text, nullable=False)
    text_content = db.Column(db.Text, nullable=False)
    week = db.Column(db.Integer, nullable=True)
    season = db.Column(db.Integer, nullable=True)

    scheduled_for = db.Column(db.DateTime, nullable=False, index=True)
    status = db.Column(db.String(20), default='pending', nullable=False, index=True)  # pending, sent, failed, cancelled
    attempts = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text, nullable=True)
    sent_at = db.Column(db.DateTime, nullable=True)

    created_at = db.Column(db.DateTime, default=_utcnow)

    user = db.relationship('User')

    def __repr__(self):
        return f'<EmailJob {self.template_type} -> {self.email} ({self.status})>'


class LeagueSafePayment(db.Model):
    """Entry fee status for a season, imported from the LeagueSafe export."""
    __tablename__ = 'leaguesafe_payment'

    id = db.Column(db.Integer, primary_key=True)
    season = db.Column(db.Integer, nullable=False)
    owner_name = db.Column(db.String(120), nullable=False)
    email = db.Column(db.String(120), nullable=False)
    entry_fee = db.Column(db.Float, default=0)
    paid = db.Column(db.Float, default=0)
    pending = db.Column(db.Float, default=0)
    owes = db.Column(db.Float, default=0)
    status = db.Column(db.String(10), default='NotPaid', nullable=False)

    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=True)
    is_matched = db.Column(db.Boolean, default=False, nullable=False)

    created_at = db.Column(db.DateTime, default=_utcnow)
    updated_at = db.Column(db.DateTime, default=_utcnow, onupdate=_utcnow)

    user = db.relationship('User', backref='payments')

    __table_args__ = (
        db.UniqueConstraint('season', 'email', name='unique_payment_per_season'),
    )

    def match_user(self):
        """Link this payment to the user whose primary or LeagueSafe email matches."""
        email = self.email.lower()
        user = User.query.filter(
            (func.lower(User.email) == email) | (func.lower(User.leaguesafe_email) == email)
        ).first()
        self.user_id = user.id if user else None
        self.is_matched = user is not None
        return user

    def to_dict(self):
        return {
            'id': self.id,
            'season': self.season,
            'owner_name': self.owner_name,
            'email': self.email,
            'entry_fee': self.entry_fee,
            'paid': self.paid,
            'pending': self.pending,
            'owes': self.owes,
            'status': self.status,
            'user_id': self.user_id,
            'is_matched': self.is_matched,
        }


class PasswordResetToken(db.Model):
    """Single-use token emailed to a user who forgot their password."""
    __tablename__ = 'password_reset_token'

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey('user.id'), nullable=False)
    token = db.Column(db.String(100), unique=True, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=False)
    used = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=_utcnow)

    user = db.relationship('User')

    def is_valid(self, now=None):
        now = now or get_current_time()
        return not self.used and now < localize(self.expires_at)


# ============================================================================
# Weekly pick limits
# ============================================================================

def _pick_limits():
    if has_app_context():
        return (current_app.config.get('PICKS_PER_WEEK', 6),
                current_app.config.get('LOCKS_PER_WEEK', 1))
    return 6, 1


# (model, identity attribute) pairs the weekly limits apply to
_LIMITED_MODELS = (
    (Pick, 'user_id'),
    (AnonymousPick, 'email'),
)


def _limit_key(obj, identity_attr):
    return getattr(obj, identity_attr), obj.week, obj.season


def _changed(obj, *names):
    state = inspect(obj)
    return any(state.attrs[name].history.has_changes() for name in names)


def _check_pick_limits(session, model, identity_attr, obj, pending, excluded_ids, check_count):
    picks_limit, locks_limit = _pick_limits()
    key = _limit_key(obj, identity_attr)
    identity_column = getattr(model, identity_attr)

    conditions = [
        identity_column == key[0],
        model.week == obj.week,
        model.season == obj.season,
    ]
    if excluded_ids:
        conditions.append(model.id.notin_(excluded_ids))

    others = [o for o in pending if o is not obj and _limit_key(o, identity_attr) == key]

    if check_count:
        stored = session.execute(
            select(func.count()).select_from(model).where(*conditions)
        ).scalar()
        if stored + len(others) >= picks_limit:
            raise PickLimitError(f'Cannot have more than {picks_limit} picks per week')

    if obj.is_lock:
        stored_locks = session.execute(
            select(func.count()).select_from(model).where(*conditions, model.is_lock.is_(True))
        ).scalar()
        if stored_locks + sum(1 for o in others if o.is_lock) >= locks_limit:
            raise PickLimitError(f'Cannot have more than {locks_limit} lock pick per week')


@event.listens_for(Session, 'before_flush')
def enforce_pick_limits(session, flush_context, instances):
    """
    Reject a flush that would leave a participant over the weekly limits.

    Runs on inserts and on updates that move a pick to another game, week,
    season or participant, plus updates that turn a pick into the lock.
    Rows in the same flush are counted alongside the stored rows.
    """
    for model, identity_attr in _LIMITED_MODELS:
        deleted = [o for o in session.deleted if isinstance(o, model)]
        pending = [
            o for o in list(session.new) + list(session.dirty)
            if isinstance(o, model) and o not in deleted
        ]
        if not pending:
            continue

        excluded_ids = {o.id for o in pending + deleted if o.id is not None}

        with session.no_autoflush:
            for obj in pending:
                if obj in session.new:
                    moved = True
                else:
                    moved = _changed(obj, 'game_id', 'week', 'season', identity_attr)
                    if not moved and not (_changed(obj, 'is_lock') and obj.is_lock):
                        continue
                _check_pick_limits(session, model, identity_attr, obj, pending, excluded_ids,
                                   check_count=moved)


# Helper function to get current time in league timezone
def get_current_time():
    """Get current time in league timezone."""
    return datetime.now(LEAGUE_TZ)
