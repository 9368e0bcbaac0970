import os
import sys
import pytest

# Ensure the backend root (containing the `photoguess` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from config import Config
from photoguess import create_app, db, socketio
from photoguess.services.rooms.actions import RoomActions
from photoguess.services.rooms.scheduler import ManualTimerQueue
from photoguess.services.rooms.store import RoomStore


class TestConfig(Config):
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    WTF_CSRF_ENABLED = False
    ANONYMOUS_AUTH_ENABLED = True
    MIN_PLAYERS = 2
    BASE_STAGE_SECONDS = 120
    TIMER_PER_USER_SEC = 30


@pytest.fixture()
def flask_app(tmp_path):
    class _Config(TestConfig):
        BLOB_ROOT = str(tmp_path / 'blobs')

    application = create_app(_Config)
    with application.app_context():
        # Ensure models are imported so tables are created
        import photoguess.models  # noqa: F401
        db.create_all()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


@pytest.fixture()
def store(flask_app):
    return RoomStore()


@pytest.fixture()
def timers():
    return ManualTimerQueue()


@pytest.fixture()
def make_room(store):
    """Room with a host and ``guests`` guests, all seated in join order."""
    def _make(guests=1, countdown_enabled=False, max_photos=1, host_id='host', host_name='Hana'):
        actions = RoomActions(store)
        actions.create_room(host_id, host_name, 'Who is this baby?!',
                            countdown_enabled=countdown_enabled, max_photos=max_photos)
        for index in range(guests):
            actions.join_room(f"guest{index + 1}", f"Guest {index + 1}")
        return actions
    return _make
