import os
import sys

PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
if PROJECT_ROOT not in sys.path:
    sys.path.insert(0, PROJECT_ROOT)

import pytest
from cardroom.app import create_app, db
from cardroom.models import User
from cardroom.lifecycle import TournamentController


@pytest.fixture
def app(tmp_path, monkeypatch):
    # use temporary SQLite databases for testing
    monkeypatch.setenv("CARDROOM_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("CARDROOM_LOG_DB_PATH", str(tmp_path / "test_logs.db"))
    application = create_app()
    application.config['TESTING'] = True
    with application.app_context():
        db.create_all()
        yield application
        db.session.remove()


@pytest.fixture
def session(app):
    return db.session


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def admin(session):
    u = User(email='admin@example.com', name='Admin', is_admin=True)
    u.set_password('secret')
    session.add(u)
    session.commit()
    return u


@pytest.fixture
def make_player(session):
    counter = {'n': 0}

    def factory(coins=1000, name=None):
        counter['n'] += 1
        n = counter['n']
        u = User(email=f'p{n}@example.com', name=name or f'Player {n}', coins=coins)
        u.set_password('secret')
        session.add(u)
        session.commit()
        return u

    return factory


@pytest.fixture
def controller(session):
    return TournamentController(session)
