import io

import pytest
from PIL import Image

from services.mqtt_bridge import MqttBridge
from services.store import LocalFileGameStore, SqlGameStore


class RecordingBridge(MqttBridge):
    def __init__(self):
        super().__init__(disabled=True)
        self.events = []

    def piece_unlocked(self, game, piece, unlocked, total):
        self.events.append(("piece", piece, unlocked, total))

    def puzzle_complete(self, game):
        self.events.append(("complete",))

    def game_reset(self, game):
        self.events.append(("reset",))


@pytest.fixture
def local_store(tmp_path):
    return LocalFileGameStore(str(tmp_path / "game.json"))


@pytest.fixture
def sql_store(tmp_path):
    return SqlGameStore(f"sqlite:///{tmp_path / 'game.db'}")


@pytest.fixture(params=["local", "sql"])
def store(request, tmp_path):
    if request.param == "local":
        return LocalFileGameStore(str(tmp_path / "game.json"))
    return SqlGameStore(f"sqlite:///{tmp_path / 'game.db'}")


@pytest.fixture
def png_bytes():
    bio = io.BytesIO()
    Image.new("RGB", (8, 8), "red").save(bio, format="PNG")
    return bio.getvalue()


@pytest.fixture
def bridge():
    return RecordingBridge()


@pytest.fixture
def app_and_socketio(local_store, bridge):
    from app import create_app
    return create_app(
        {
            "TESTING": True,
            "SECRET_KEY": "test",
            "SOCKETIO_ASYNC_MODE": "threading",
            "VERIFY_DELAY_SEC": 0,
            "VERIFY_IN_BACKGROUND": False,
        },
        store=local_store,
        bridge=bridge,
    )


@pytest.fixture
def app(app_and_socketio):
    return app_and_socketio[0]


@pytest.fixture
def socketio(app_and_socketio):
    return app_and_socketio[1]


@pytest.fixture
def client(app):
    return app.test_client()
