import random
import sys
from pathlib import Path

import pytest
from flask import Flask

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from blueprints.api import create_api_blueprint
from categories import CategoryBank
from game_store import SQLiteGameStore
from image_storage import LocalImageStorage
from nano_banana import NanoBananaService

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 32


class FakeClock:
    """Millisecond clock that moves forward 1 ms per reading."""

    def __init__(self, start_ms: int = 1_735_680_000_000):
        self.now = start_ms

    def __call__(self) -> int:
        self.now += 1
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += int(seconds * 1000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(tmp_path):
    return SQLiteGameStore(str(tmp_path / "game.db"))


@pytest.fixture
def rng():
    return random.Random(1234)


@pytest.fixture
def category_bank(store, rng):
    return CategoryBank(store, rng=rng)


@pytest.fixture
def image_storage(tmp_path):
    return LocalImageStorage(
        tmp_path / "uploads",
        public_base_url="http://localhost:8040",
        max_bytes=1024,
    )


@pytest.fixture
def service(store, category_bank, image_storage, rng, clock):
    return NanoBananaService(
        store=store,
        categories=category_bank,
        image_storage=image_storage,
        rng=rng,
        clock=clock,
    )


@pytest.fixture
def make_session(service):
    """Host a session as ``names[0]`` and join the rest; ids are the lowercased names."""

    def _make(*names):
        hosted = service.host_session(names[0], player_id=names[0].lower())
        code = hosted["session_code"]
        for name in names[1:]:
            service.join_session(code, name, player_id=name.lower())
        return code

    return _make


@pytest.fixture
def app(service, category_bank, image_storage):
    app = Flask(__name__)
    app.config["TESTING"] = True
    app.config["SECRET_KEY"] = "test-secret"
    app.register_blueprint(
        create_api_blueprint(
            game_service=service,
            category_bank=category_bank,
            image_storage=image_storage,
            long_poll_seconds=1,
        )
    )
    return app


@pytest.fixture
def client(app):
    return app.test_client()
