"""
Pigskin Pick Six - API Sync Module
==================================
Sync game data from the CollegeFootballData API.

Data Flow:
1. get_candidate_games() - Early in the week: list games worth picking, with spreads + ranks
2. import_games() - Admin chooses games: store them for the week
3. sync_live_scores() - Game days: update scores, complete games, score picks

API Endpoints Used:
- /games - Matchups, kickoff, scores, completion
- /lines - Betting lines (first line with a spread wins)
- /rankings - AP Top 25
"""

import logging
import os
import random
import sys
import time
from datetime import datetime
from typing import Optional, Dict, List

import click
import requests
from sqlalchemy import func

from models import db, Game, WeekSettings, LEAGUE_TZ, to_storage
from scoring import complete_game, ScoringError

logger = logging.getLogger(__name__)
logging.basicConfig(level=logging.INFO)

MAJOR_CONFERENCES = {'SEC', 'Big Ten', 'Big 12', 'ACC', 'Pac-12'}
AP_POLL = 'AP Top 25'


class CollegeFootballDataAPI:
    """Client for the CollegeFootballData API."""

    BASE_URL = "https://api.collegefootballdata.com"

    def __init__(self, api_key: str):
        """
        Initialize API client.

        Args:
            api_key: CollegeFootballData bearer token
        """
        self.api_key = api_key
        self.headers = {
            "Authorization": f"Bearer {api_key}",
            "Accept": "application/json",
        }

    def _make_request(self, endpoint: str, params: Dict = None, retries: int = 5) -> Optional[List]:
        """Make API request with exponential backoff, jitter, and structured logging."""
        url = f"{self.BASE_URL}/{endpoint}"
        params = params or {}

        backoff = 1.5
        for attempt in range(1, retries + 1):
            try:
                response = requests.get(url, headers=self.headers, params=params, timeout=15)

                if response.status_code == 200:
                    return response.json()

                is_retryable = response.status_code in (429, 500, 502, 503, 504)
                logger.warning(
                    "API error %s on %s params=%s (attempt %s/%s, retryable=%s)",
                    response.status_code,
                    endpoint,
                    params,
                    attempt,
                    retries,
                    is_retryable,
                )

                if not is_retryable:
                    break

            except requests.RequestException:
                logger.exception(
                    "Request failed for %s params=%s (attempt %s/%s)",
                    endpoint,
                    params,
                    attempt,
                    retries,
                )

            if attempt < retries:
                sleep_for = min(60, backoff * (2 ** (attempt - 1)))
                sleep_for = sleep_for * (1 + random.uniform(-0.25, 0.25))
                time.sleep(max(0.5, sleep_for))

        logger.error("Exhausted retries for endpoint %s params=%s", endpoint, params)
        return None

    def get_games(self, year: int, week: int, season_type: str = "regular") -> Optional[List]:
        """Get games (with scores once played) for a week."""
        return self._make_request("games", {"year": year, "week": week, "seasonType": season_type})

    def get_lines(self, year: int, week: int, season_type: str = "regular") -> Optional[List]:
        """Get betting lines for a week."""
        return self._make_request("lines", {"year": year, "week": week, "seasonType": season_type})

    def get_rankings(self, year: int, week: int, season_type: str = "regular") -> Optional[List]:
        """Get poll rankings for a week."""
        return self._make_request("rankings", {"year": year, "week": week, "seasonType": season_type})


def importance_score(game: Dict) -> float:
    """Lower is more important: ranked matchups first, then major conferences."""
    home_rank = game.get("home_ranking")
    away_rank = game.get("away_ranking")

    if home_rank and away_rank:
        return (home_rank + away_rank) / 2
    if home_rank or away_rank:
        return (home_rank or away_rank) + 25

    home_major = game.get("home_conference") in MAJOR_CONFERENCES
    away_major = game.get("away_conference") in MAJOR_CONFERENCES
    if home_major and away_major:
        return 100
    if home_major or away_major:
        return 200
    return 1000


def parse_start_date(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO start date into league time."""
    if not value:
        return None
    try:
        dt = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unable to parse start date '%s'", value)
        return None
    if dt.tzinfo is None:
        return LEAGUE_TZ.localize(dt)
    return dt.astimezone(LEAGUE_TZ)


class GameSync:
    """Sync game data from API to database."""

    def __init__(self, api: CollegeFootballDataAPI):
        self.api = api

    @staticmethod
    def _spreads_by_game(lines_data: Optional[List]) -> Dict[int, float]:
        spreads = {}
        for entry in lines_data or []:
            for line in entry.get("lines") or []:
                spread = line.get("spread")
                if spread is not None:
                    spreads[entry.get("id")] = float(spread)
                    break
        return spreads

    @staticmethod
    def _ap_ranks(rankings_data: Optional[List]) -> Dict[str, int]:
        if not rankings_data:
            return {}
        polls = rankings_data[0].get("polls") or []
        if not polls:
            return {}
        poll = next((p for p in polls if p.get("poll") == AP_POLL), polls[0])
        return {r["school"]: r["rank"] for r in poll.get("ranks", []) if r.get("school")}

    def get_candidate_games(self, year: int, week: int, limit: Optional[int] = None) -> List[Dict]:
        """
        Games for a week, most pick-worthy first.

        Each candidate carries the first available spread (None if no line yet)
        and AP ranks for both teams.
        """
        games = self.api.get_games(year, week)
        if not games:
            logger.error("Failed to fetch games for %s week %s", year, week)
            return []

        spreads = self._spreads_by_game(self.api.get_lines(year, week))
        ranks = self._ap_ranks(self.api.get_rankings(year, week))

        candidates = []
        for game in games:
            home, away = game.get("homeTeam"), game.get("awayTeam")
            if not home or not away:
                continue
            start = parse_start_date(game.get("startDate"))
            candidate = {
                "external_id": game.get("id"),
                "week": week,
                "season": year,
                "home_team": home,
                "away_team": away,
                "home_conference": game.get("homeConference"),
                "away_conference": game.get("awayConference"),
                "kickoff_time": start.isoformat() if start else None,
                "spread": spreads.get(game.get("id")),
                "home_ranking": ranks.get(home),
                "away_ranking": ranks.get(away),
                "completed": bool(game.get("completed")),
            }
            candidate["importance"] = importance_score(candidate)
            candidates.append(candidate)

        candidates.sort(key=lambda c: c["importance"])
        logger.info("Found %s candidate games for %s week %s", len(candidates), year, week)
        return candidates[:limit] if limit else candidates

    def import_games(self, year: int, week: int, external_ids: List[int]) -> int:
        """Store the chosen candidates as games for the week. Returns games created or updated."""
        wanted = set(external_ids)
        candidates = [c for c in self.get_candidate_games(year, week) if c["external_id"] in wanted]
        imported = 0

        try:
            for candidate in candidates:
                if candidate["spread"] is None or not candidate["kickoff_time"]:
                    logger.warning("Skipping %s @ %s: no spread or kickoff yet",
                                   candidate["away_team"], candidate["home_team"])
                    continue

                game = Game.query.filter_by(
                    season=year, week=week,
                    home_team=candidate["home_team"], away_team=candidate["away_team"]
                ).first()
                if not game:
                    game = Game(season=year, week=week,
                                home_team=candidate["home_team"], away_team=candidate["away_team"])
                    db.session.add(game)

                game.external_id = candidate["external_id"]
                game.spread = candidate["spread"]
                game.kickoff_time = to_storage(datetime.fromisoformat(candidate["kickoff_time"]))
                imported += 1

            db.session.commit()
            logger.info("Imported %s games for %s week %s", imported, year, week)
        except Exception:
            db.session.rollback()
            logger.exception("Failed importing games for %s week %s", year, week)
            return 0

        return imported

    def sync_live_scores(self, year: int, week: int) -> int:
        """
        Update scores for stored games of a week and complete finished ones.

        A game is only completed when the provider has final scores for it.
        Returns the number of games updated.
        """
        data = self.api.get_games(year, week)
        if not data:
            logger.error("Failed to fetch scores for %s week %s", year, week)
            return 0

        by_id = {g.get("id"): g for g in data}
        by_teams = {(g.get("homeTeam"), g.get("awayTeam")): g for g in data}

        updated = 0
        games = Game.query.filter(Game.season == year, Game.week == week).all()

        try:
            for game in games:
                if game.status == 'completed' and game.winner_against_spread:
                    continue

                api_game = by_id.get(game.external_id) or by_teams.get((game.home_team, game.away_team))
                if not api_game:
                    continue

                home_points = api_game.get("homePoints")
                away_points = api_game.get("awayPoints")
                has_scores = home_points is not None and away_points is not None

                if has_scores:
                    game.home_score = home_points
                    game.away_score = away_points

                with db.session.begin_nested():
                    if api_game.get("completed") and has_scores:
                        complete_game(game)
                    elif has_scores and game.status == 'scheduled':
                        game.status = 'in_progress'

                updated += 1

            db.session.commit()
            logger.info("Updated live scores for %s week %s (%s games)", year, week, updated)
        except ScoringError:
            db.session.rollback()
            logger.exception("Failed scoring games for %s week %s", year, week)
            return 0
        except Exception:
            db.session.rollback()
            logger.exception("Failed updating live scores for %s week %s", year, week)
            return 0

        return updated


def get_active_week(season: int) -> int:
    """Latest week with picks open, else latest with games selected, else 1."""
    for flag in (WeekSettings.picks_open, WeekSettings.games_selected):
        settings = (
            WeekSettings.query
            .filter(WeekSettings.season == season, flag.is_(True))
            .order_by(WeekSettings.week.desc())
            .first()
        )
        if settings:
            return settings.week
    return 1


def get_latest_results_week(season: int) -> int:
    """Highest week with a completed game, else highest week with any game, else 1."""
    completed = (
        db.session.query(func.max(Game.week))
        .filter(Game.season == season, Game.status == 'completed')
        .scalar()
    )
    if completed:
        return completed
    any_game = db.session.query(func.max(Game.week)).filter(Game.season == season).scalar()
    return any_game or 1


# ============================================================================
# CLI Commands for manual sync
# ============================================================================

def register_sync_commands(app):
    """Register sync CLI commands with Flask app."""

    def _get_sync():
        api_key = app.config.get('CFBD_API_KEY') or os.environ.get('CFBD_API_KEY')
        if not api_key:
            click.echo("Error: CFBD_API_KEY not set")
            sys.exit(1)
        return GameSync(CollegeFootballDataAPI(api_key))

    @app.cli.command('sync-candidates')
    @click.option('--week', type=int, default=None, help='Week to list (defaults to the active week)')
    @click.option('--limit', type=int, default=20, show_default=True)
    def sync_candidates_cmd(week, limit):
        """List the most pick-worthy games for a week."""
        sync = _get_sync()
        season = app.config['SEASON_YEAR']
        week = week or get_active_week(season)

        candidates = sync.get_candidate_games(season, week, limit=limit)
        if not candidates:
            click.echo(f"No games found for {season} week {week}")
            return

        for candidate in candidates:
            spread = "n/a" if candidate["spread"] is None else f"{candidate['spread']:+g}"
            click.echo(
                f"[{candidate['external_id']}] {candidate['away_team']} @ {candidate['home_team']} "
                f"spread {spread} (importance {candidate['importance']:g})"
            )

    @app.cli.command('sync-run')
    @click.option('--mode', type=click.Choice(['live']), required=True)
    @click.option('--week', type=int, default=None)
    def sync_run_cmd(mode, week):
        """Unified automation entrypoint for scheduled tasks."""
        sync = _get_sync()
        exit_code = 0
        season = app.config.get('SEASON_YEAR', datetime.now().year)
        week = week or get_active_week(season)

        try:
            if mode == 'live':
                updated = sync.sync_live_scores(season, week)
                click.echo(f"Live sync complete for week {week} ({updated} games updated)")
        except Exception:
            logger.exception("sync-run failed")
            exit_code = 1

        sys.exit(exit_code)
