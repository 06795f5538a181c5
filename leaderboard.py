"""
Pigskin Pick Six - Leaderboards
===============================
Weekly and season standings built from scored picks.

Counted picks for a user and week are either:
- their submitted picks, or
- anonymous picks an admin assigned to them and marked for the leaderboard,
  which then replace their submitted picks for that week.
"""

import logging
from collections import defaultdict

from sqlalchemy import func

from models import db, User, Game, Pick, AnonymousPick, LeagueSafePayment, WeekSettings

logger = logging.getLogger(__name__)


def _empty_row():
    return {
        'wins': 0,
        'losses': 0,
        'pushes': 0,
        'lock_wins': 0,
        'lock_losses': 0,
        'points': 0,
        'picks': 0,
    }


def _tally(row, pick):
    row['picks'] += 1
    if pick.result == 'win':
        row['wins'] += 1
        if pick.is_lock:
            row['lock_wins'] += 1
    elif pick.result == 'loss':
        row['losses'] += 1
        if pick.is_lock:
            row['lock_losses'] += 1
    elif pick.result == 'push':
        row['pushes'] += 1
    row['points'] += pick.points_earned or 0


def counted_picks(season, week=None):
    """
    Return {user_id: [pick, ...]} of the picks that count toward standings.

    Anonymous pick sets shown on the leaderboard take precedence over the
    assigned user's own picks for the same week.
    """
    anon_query = AnonymousPick.query.filter(
        AnonymousPick.season == season,
        AnonymousPick.assigned_user_id.isnot(None),
        AnonymousPick.show_on_leaderboard.is_(True),
    )
    pick_query = Pick.query.filter(Pick.season == season, Pick.submitted.is_(True))
    if week is not None:
        anon_query = anon_query.filter(AnonymousPick.week == week)
        pick_query = pick_query.filter(Pick.week == week)

    by_user = defaultdict(list)
    replaced = set()
    for pick in anon_query.all():
        by_user[pick.assigned_user_id].append(pick)
        replaced.add((pick.assigned_user_id, pick.week))

    for pick in pick_query.all():
        if (pick.user_id, pick.week) in replaced:
            continue
        by_user[pick.user_id].append(pick)

    return by_user


def payment_statuses(season):
    """Map user_id -> (status, is_verified) from LeagueSafe records."""
    rows = LeagueSafePayment.query.filter(
        LeagueSafePayment.season == season,
        LeagueSafePayment.user_id.isnot(None),
    ).all()
    return {
        row.user_id: (row.status, row.status == 'Paid' and bool(row.is_matched))
        for row in rows
    }


def assign_ranks(rows):
    """
    Sort rows and give tied rows the same rank, skipping the ranks they fill.

    Rows tie when both points and wins match.
    """
    rows.sort(key=lambda r: (-r['points'], -r['wins'], r['display_name'].lower()))
    previous = None
    for position, row in enumerate(rows, start=1):
        key = (row['points'], row['wins'])
        if key != previous:
            rank = position
            previous = key
        row['rank'] = rank
    return rows


def build_leaderboard(season, week=None, paid_only=False):
    """Standings for a season, or for one week when `week` is given."""
    picks_by_user = counted_picks(season, week)
    if not picks_by_user:
        return []

    users = User.query.filter(User.id.in_(list(picks_by_user))).all()
    payments = payment_statuses(season)

    rows = []
    for user in users:
        status, verified = payments.get(user.id, ('NotPaid', False))
        if paid_only and status != 'Paid':
            continue

        row = _empty_row()
        for pick in picks_by_user[user.id]:
            _tally(row, pick)

        row.update({
            'user_id': user.id,
            'display_name': user.get_display_name(),
            'record': f"{row['wins']}-{row['losses']}-{row['pushes']}",
            'lock_record': f"{row['lock_wins']}-{row['lock_losses']}",
            'payment_status': status,
            'is_verified': verified,
        })
        rows.append(row)

    logger.debug("Built leaderboard for %s week %s (%s rows)", season, week, len(rows))
    return assign_ranks(rows)


def pick_distribution(season, week):
    """
    How the league picked each game of a week.

    Returns None until the week's deadline has passed so picks stay private.
    """
    settings = WeekSettings.get(season, week)
    if settings is None or not settings.is_deadline_passed():
        return None

    games = Game.query.filter_by(season=season, week=week).order_by(Game.kickoff_time).all()

    team_counts = defaultdict(int)
    lock_counts = defaultdict(int)
    for user_picks in counted_picks(season, week).values():
        for pick in user_picks:
            team_counts[(pick.game_id, pick.selected_team)] += 1
            if pick.is_lock:
                lock_counts[pick.game_id] += 1

    distribution = []
    for game in games:
        home = team_counts[(game.id, game.home_team)]
        away = team_counts[(game.id, game.away_team)]
        distribution.append({
            'game_id': game.id,
            'home_team': game.home_team,
            'away_team': game.away_team,
            'spread': game.spread,
            'home_picks': home,
            'away_picks': away,
            'lock_picks': lock_counts[game.id],
            'total_picks': home + away,
        })
    return distribution


def season_totals(season):
    """Quick summary numbers for the admin dashboard."""
    submitted_users = (
        db.session.query(func.count(func.distinct(Pick.user_id)))
        .filter(Pick.season == season, Pick.submitted.is_(True))
        .scalar()
    )
    anonymous_emails = (
        db.session.query(func.count(func.distinct(AnonymousPick.email)))
        .filter(AnonymousPick.season == season)
        .scalar()
    )
    return {
        'users': User.query.count(),
        'users_with_picks': submitted_users or 0,
        'anonymous_participants': anonymous_emails or 0,
        'games': Game.query.filter_by(season=season).count(),
        'completed_games': Game.query.filter_by(season=season, status='completed').count(),
    }
