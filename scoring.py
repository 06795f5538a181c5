"""
Pigskin Pick Six - Scoring
==========================
Resolve completed games against the spread and score every pick on them.

Scoring Rules:
- Winner ATS: home_score + spread vs away_score (equal is a push)
- Cover margin bonus: +5 for 29+, +3 for 20+, +1 for 11+
- Win: 20 points + margin bonus (bonus counted twice on the lock)
- Push: 10 points
- Loss: 0 points
"""

import logging

from models import db, Game, Pick, AnonymousPick

logger = logging.getLogger(__name__)

BASE_POINTS = 20
PUSH_POINTS = 10
PUSH = 'push'

# (minimum cover margin, bonus), checked top down
MARGIN_BONUS_TIERS = (
    (29, 5),
    (20, 3),
    (11, 1),
)


class ScoringError(Exception):
    """Raised when a game cannot be scored."""


def winner_against_spread(home_team, away_team, home_score, away_score, spread):
    """Return the team that covered, or 'push'."""
    adjusted_home = home_score + spread
    if adjusted_home > away_score:
        return home_team
    if adjusted_home < away_score:
        return away_team
    return PUSH


def cover_margin(home_score, away_score, spread):
    return abs((home_score + spread) - away_score)


def margin_bonus(margin):
    for threshold, bonus in MARGIN_BONUS_TIERS:
        if margin >= threshold:
            return bonus
    return 0


def pick_points(result, bonus, is_lock):
    if result == 'win':
        return BASE_POINTS + bonus + (bonus if is_lock else 0)
    if result == PUSH:
        return PUSH_POINTS
    return 0


def _score_pick(pick, winner, bonus):
    if winner == PUSH:
        pick.result = PUSH
    elif pick.selected_team == winner:
        pick.result = 'win'
    else:
        pick.result = 'loss'
    pick.points_earned = pick_points(pick.result, bonus, pick.is_lock)


def complete_game(game: Game) -> int:
    """
    Mark a game completed and score every pick on it.

    Returns the number of picks scored (authenticated and anonymous).
    Caller commits.
    """
    if game.home_score is None or game.away_score is None:
        raise ScoringError(f'Both scores are required to complete {game.away_team} @ {game.home_team}')
    if game.spread is None:
        raise ScoringError(f'No spread set for {game.away_team} @ {game.home_team}')

    winner = winner_against_spread(game.home_team, game.away_team,
                                   game.home_score, game.away_score, game.spread)
    bonus = margin_bonus(cover_margin(game.home_score, game.away_score, game.spread))

    game.status = 'completed'
    game.winner_against_spread = winner
    game.margin_bonus = bonus
    game.base_points = BASE_POINTS

    scored = 0
    for pick in Pick.query.filter_by(game_id=game.id).all():
        _score_pick(pick, winner, bonus)
        scored += 1
    for pick in AnonymousPick.query.filter_by(game_id=game.id).all():
        _score_pick(pick, winner, bonus)
        scored += 1

    logger.info("Completed %s: winner ATS %s, bonus %s, %s picks scored", game, winner, bonus, scored)
    return scored


def reset_game_scoring(game: Game, keep_scores: bool = False) -> int:
    """Undo completion: clear the ATS result and every pick's points."""
    game.winner_against_spread = None
    game.margin_bonus = None
    game.base_points = None

    if keep_scores and game.home_score is not None and game.away_score is not None:
        game.status = 'in_progress'
    else:
        game.home_score = None
        game.away_score = None
        game.status = 'scheduled'

    cleared = 0
    for model in (Pick, AnonymousPick):
        for pick in model.query.filter_by(game_id=game.id).all():
            pick.result = None
            pick.points_earned = None
            cleared += 1

    logger.info("Reset scoring for %s (%s picks cleared)", game, cleared)
    return cleared


def rescore_week(season: int, week: int) -> int:
    """
    Re-run scoring for every completed game in a week. Commits.

    A game that can no longer be scored (missing score or spread) is logged
    and skipped; the rest of the week is still rescored.
    """
    games = Game.query.filter_by(season=season, week=week, status='completed').all()
    scored = 0
    skipped = 0
    try:
        for game in games:
            try:
                with db.session.begin_nested():
                    scored += complete_game(game)
            except ScoringError:
                skipped += 1
                logger.exception("Skipped rescoring %s", game)
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception("Failed rescoring %s week %s", season, week)
        raise

    logger.info("Rescored %s games in %s week %s (%s picks, %s skipped)",
                len(games) - skipped, season, week, scored, skipped)
    return scored
