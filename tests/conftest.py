# tests/conftest.py
# -------------------------------
# Shared fixtures: the app on an in-memory SQLite database (TestingConfig),
# plus small factories for users, weeks and games.
# -------------------------------
import os
from datetime import timedelta

import pytest

os.environ['FLASK_ENV'] = 'testing'

from app import app as flask_app  # noqa: E402
from models import db, User, Game, WeekSettings, get_current_time, to_storage  # noqa: E402

SEASON = flask_app.config['SEASON_YEAR']
PASSWORD = 'password123'


@pytest.fixture
def app():
    with flask_app.app_context():
        db.drop_all()
        db.create_all()
    yield flask_app
    with flask_app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def app_ctx(app):
    """Run the test body inside an application context."""
    with app.app_context():
        yield app


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(app):
    def _make_user(email, display_name=None, is_admin=False, password=PASSWORD, **fields):
        with app.app_context():
            user = User(
                email=email,
                display_name=display_name or email.split('@')[0],
                is_admin=is_admin,
                **fields
            )
            user.set_password(password)
            db.session.add(user)
            db.session.commit()
            return user.id
    return _make_user


@pytest.fixture
def seed_week(app):
    """Create games for a week and (optionally) open it. Returns game ids."""
    def _seed_week(week=1, num_games=8, deadline=None, kickoff=None, picks_open=True, season=SEASON):
        now = get_current_time()
        deadline = deadline or now + timedelta(days=2)
        kickoff = kickoff or now + timedelta(days=7)
        with app.app_context():
            games = []
            for i in range(1, num_games + 1):
                game = Game(
                    season=season,
                    week=week,
                    home_team=f'Home {week}-{i}',
                    away_team=f'Away {week}-{i}',
                    spread=-3.5,
                    kickoff_time=to_storage(kickoff),
                )
                db.session.add(game)
                games.append(game)
            db.session.add(WeekSettings(
                season=season,
                week=week,
                deadline=to_storage(deadline),
                games_selected=picks_open,
                picks_open=picks_open,
            ))
            db.session.commit()
            return [g.id for g in games]
    return _seed_week


@pytest.fixture
def login(client):
    def _login(email, password=PASSWORD):
        resp = client.post('/auth/login', json={'email': email, 'password': password})
        assert resp.status_code == 200, resp.get_json()
        return resp
    return _login


@pytest.fixture
def pick_sheet(app):
    """Build a JSON pick sheet for the given games: home team each time, first game as the lock."""
    def _pick_sheet(game_ids, lock_index=0):
        with app.app_context():
            sheet = []
            for index, game_id in enumerate(game_ids):
                game = db.session.get(Game, game_id)
                sheet.append({
                    'game_id': game_id,
                    'selected_team': game.home_team,
                    'is_lock': index == lock_index,
                })
            return sheet
    return _pick_sheet
