# tests/test_sync_api.py
# -------------------------------
# CollegeFootballData sync: request retries, candidate ranking, game
# import, live score updates, and the active-week helpers. The API is
# replaced with canned responses so nothing leaves the machine.
# -------------------------------
import pytest

import sync_api
from config import Config
from models import db, Game, Pick, WeekSettings
from sync_api import (
    CollegeFootballDataAPI, GameSync, importance_score, parse_start_date,
    get_active_week, get_latest_results_week,
)

SEASON = Config.SEASON_YEAR


class FakeAPI:
    def __init__(self, games=None, lines=None, rankings=None):
        self.games = games
        self.lines = lines
        self.rankings = rankings

    def get_games(self, year, week, season_type='regular'):
        return self.games

    def get_lines(self, year, week, season_type='regular'):
        return self.lines

    def get_rankings(self, year, week, season_type='regular'):
        return self.rankings


GAMES = [
    {'id': 101, 'homeTeam': 'Kent State', 'awayTeam': 'Akron',
     'homeConference': 'MAC', 'awayConference': 'MAC', 'startDate': '2025-09-06T16:00:00Z'},
    {'id': 102, 'homeTeam': 'Georgia', 'awayTeam': 'Alabama',
     'homeConference': 'SEC', 'awayConference': 'SEC', 'startDate': '2025-09-06T23:30:00Z'},
    {'id': 103, 'homeTeam': 'Iowa', 'awayTeam': 'Iowa State',
     'homeConference': 'Big Ten', 'awayConference': 'Big 12', 'startDate': '2025-09-06T20:00:00Z'},
    {'id': 104, 'homeTeam': 'Ohio State', 'awayTeam': 'Toledo',
     'homeConference': 'Big Ten', 'awayConference': 'MAC', 'startDate': '2025-09-06T17:00:00Z'},
]

LINES = [
    {'id': 101, 'lines': [{'provider': 'Bovada', 'spread': None}, {'provider': 'DraftKings', 'spread': '-3'}]},
    {'id': 102, 'lines': [{'provider': 'DraftKings', 'spread': -2.5}]},
    {'id': 104, 'lines': [{'provider': 'DraftKings', 'spread': -24.5}]},
]

RANKINGS = [{'polls': [
    {'poll': 'Coaches Poll', 'ranks': [{'school': 'Kent State', 'rank': 1}]},
    {'poll': 'AP Top 25', 'ranks': [
        {'school': 'Georgia', 'rank': 2},
        {'school': 'Alabama', 'rank': 5},
        {'school': 'Ohio State', 'rank': 3},
    ]},
]}]


def _sync():
    return GameSync(FakeAPI(games=GAMES, lines=LINES, rankings=RANKINGS))


# ============================================================================
# Request handling
# ============================================================================

class FakeResponse:
    def __init__(self, status_code, payload=None):
        self.status_code = status_code
        self._payload = payload

    def json(self):
        return self._payload


@pytest.fixture
def no_sleep(monkeypatch):
    monkeypatch.setattr(sync_api.time, 'sleep', lambda seconds: None)


def test_request_retries_server_errors(monkeypatch, no_sleep):
    responses = [FakeResponse(503), FakeResponse(429), FakeResponse(200, [{'id': 1}])]
    calls = []

    def fake_get(url, headers=None, params=None, timeout=None):
        calls.append((url, headers, params, timeout))
        return responses.pop(0)

    monkeypatch.setattr(sync_api.requests, 'get', fake_get)
    api = CollegeFootballDataAPI('secret')

    assert api.get_games(2025, 3) == [{'id': 1}]
    assert len(calls) == 3
    url, headers, params, timeout = calls[0]
    assert url == 'https://api.collegefootballdata.com/games'
    assert headers['Authorization'] == 'Bearer secret'
    assert params == {'year': 2025, 'week': 3, 'seasonType': 'regular'}
    assert timeout == 15


def test_request_gives_up_on_client_error(monkeypatch, no_sleep):
    calls = []

    def fake_get(url, **kwargs):
        calls.append(url)
        return FakeResponse(401)

    monkeypatch.setattr(sync_api.requests, 'get', fake_get)
    assert CollegeFootballDataAPI('bad').get_lines(2025, 1) is None
    assert len(calls) == 1


def test_request_exhausts_retries(monkeypatch, no_sleep):
    def fake_get(url, **kwargs):
        raise sync_api.requests.ConnectionError('unreachable')

    monkeypatch.setattr(sync_api.requests, 'get', fake_get)
    assert CollegeFootballDataAPI('key')._make_request('games', retries=3) is None


# ============================================================================
# Candidates and import
# ============================================================================

def test_importance_score_order():
    both_ranked = {'home_ranking': 2, 'away_ranking': 5}
    one_ranked = {'home_ranking': 3}
    major_vs_major = {'home_conference': 'SEC', 'away_conference': 'Big Ten'}
    one_major = {'home_conference': 'SEC', 'away_conference': 'MAC'}
    neither = {'home_conference': 'MAC', 'away_conference': 'MAC'}

    scores = [importance_score(g) for g in (both_ranked, one_ranked, major_vs_major, one_major, neither)]
    assert scores == [3.5, 28, 100, 200, 1000]


def test_parse_start_date_converts_to_league_time():
    kickoff = parse_start_date('2025-09-06T23:30:00Z')
    assert (kickoff.hour, kickoff.minute) == (18, 30)
    assert parse_start_date(None) is None
    assert parse_start_date('not a date') is None


def test_candidate_games_sorted_with_spreads_and_ranks():
    candidates = _sync().get_candidate_games(SEASON, 2)

    assert [c['external_id'] for c in candidates] == [102, 104, 103, 101]
    top = candidates[0]
    assert top['spread'] == -2.5
    assert (top['home_ranking'], top['away_ranking']) == (2, 5)

    by_id = {c['external_id']: c for c in candidates}
    # first line with a spread wins
    assert by_id[101]['spread'] == -3.0
    # AP poll preferred over the first poll listed
    assert by_id[101]['home_ranking'] is None
    assert by_id[103]['spread'] is None


def test_candidate_games_limit():
    assert len(_sync().get_candidate_games(SEASON, 2, limit=2)) == 2


def test_candidate_games_empty_when_api_fails():
    assert GameSync(FakeAPI(games=None)).get_candidate_games(SEASON, 2) == []


def test_import_games_stores_chosen_candidates(app_ctx):
    imported = _sync().import_games(SEASON, 2, [102, 103, 104])

    # 103 has no line yet
    assert imported == 2
    games = {g.external_id: g for g in Game.query.filter_by(season=SEASON, week=2).all()}
    assert set(games) == {102, 104}
    assert games[102].home_team == 'Georgia'
    assert games[102].spread == -2.5
    assert games[102].kickoff_time.hour == 18


def test_import_games_updates_existing(app_ctx):
    _sync().import_games(SEASON, 2, [102])
    lines = [{'id': 102, 'lines': [{'spread': -4}]}]
    GameSync(FakeAPI(games=GAMES, lines=lines, rankings=RANKINGS)).import_games(SEASON, 2, [102])

    game = Game.query.filter_by(external_id=102).one()
    assert game.spread == -4.0


# ============================================================================
# Live scores
# ============================================================================

def test_sync_live_scores_completes_and_scores(app_ctx, seed_week, make_user):
    game_ids = seed_week(num_games=2)
    user_id = make_user('alice@pickleague.com')
    final, live = [db.session.get(Game, i) for i in game_ids]
    db.session.add(Pick(user_id=user_id, game_id=final.id, week=1, season=SEASON,
                        selected_team=final.home_team, is_lock=True, submitted=True))
    db.session.commit()

    api = FakeAPI(games=[
        {'id': 900, 'homeTeam': final.home_team, 'awayTeam': final.away_team,
         'homePoints': 28, 'awayPoints': 10, 'completed': True},
        {'id': 901, 'homeTeam': live.home_team, 'awayTeam': live.away_team,
         'homePoints': 7, 'awayPoints': 3, 'completed': False},
    ])
    assert GameSync(api).sync_live_scores(SEASON, 1) == 2

    assert final.status == 'completed'
    assert final.winner_against_spread == final.home_team
    # covered by 14.5: 20 + 1 bonus, doubled on the lock
    assert Pick.query.filter_by(user_id=user_id).one().points_earned == 22

    assert live.status == 'in_progress'
    assert (live.home_score, live.away_score) == (7, 3)


def test_sync_live_scores_matches_external_id(app_ctx, seed_week):
    game = db.session.get(Game, seed_week(num_games=1)[0])
    game.external_id = 555
    db.session.commit()

    api = FakeAPI(games=[{'id': 555, 'homeTeam': 'Renamed', 'awayTeam': 'Other',
                          'homePoints': 14, 'awayPoints': 14, 'completed': True}])
    GameSync(api).sync_live_scores(SEASON, 1)
    # home -3.5 in a tie: away covers
    assert game.winner_against_spread == game.away_team


def test_sync_live_scores_returns_zero_when_api_fails(app_ctx, seed_week):
    seed_week(num_games=1)
    assert GameSync(FakeAPI(games=None)).sync_live_scores(SEASON, 1) == 0


# ============================================================================
# Week helpers and CLI
# ============================================================================

def test_active_week_prefers_open_weeks(app_ctx, seed_week):
    assert get_active_week(SEASON) == 1

    seed_week(week=1)
    seed_week(week=2, picks_open=False)
    assert get_active_week(SEASON) == 1

    settings = WeekSettings.get(SEASON, 1)
    settings.picks_open = False
    WeekSettings.get(SEASON, 2).games_selected = True
    db.session.commit()
    assert get_active_week(SEASON) == 2


def test_latest_results_week(app_ctx, seed_week):
    assert get_latest_results_week(SEASON) == 1
    seed_week(week=1, num_games=1)
    seed_week(week=2, num_games=1)
    seed_week(week=3, num_games=1)
    assert get_latest_results_week(SEASON) == 3

    game = Game.query.filter_by(week=2).one()
    game.status = 'completed'
    db.session.commit()
    assert get_latest_results_week(SEASON) == 2


def test_sync_cli_requires_api_key(app, monkeypatch):
    monkeypatch.delenv('CFBD_API_KEY', raising=False)
    result = app.test_cli_runner().invoke(args=['sync-candidates'])
    assert result.exit_code == 1
    assert 'CFBD_API_KEY not set' in result.output


def test_sync_run_live_cli(app, seed_week, monkeypatch):
    seed_week(num_games=1)
    monkeypatch.setitem(app.config, 'CFBD_API_KEY', 'key')
    monkeypatch.setattr(sync_api, 'CollegeFootballDataAPI', lambda key: FakeAPI(games=[
        {'id': 1, 'homeTeam': 'Home 1-1', 'awayTeam': 'Away 1-1',
         'homePoints': 3, 'awayPoints': 0, 'completed': False},
    ]))

    result = app.test_cli_runner().invoke(args=['sync-run', '--mode', 'live', '--week', '1'])
    assert result.exit_code == 0
    assert 'Live sync complete for week 1 (1 games updated)' in result.output
