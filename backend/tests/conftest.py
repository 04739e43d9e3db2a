import os
import sys

import pytest

TEST_SECRET_KEY = "0123456789abcdef0123456789abcdef0123456789abcdef0123456789abcdef"

os.environ.setdefault("DATABASE_URL", "sqlite:///./data/zenchat.db")
os.environ.setdefault("SECRET_KEY", TEST_SECRET_KEY)

sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from zenchat import models  # noqa: E402,F401
from zenchat.config import Settings  # noqa: E402
from zenchat.database import Base, build_engine, build_session_factory  # noqa: E402


def make_settings(**overrides) -> Settings:
    values = {
        "secret_key": TEST_SECRET_KEY,
        "environment": "test",
        "bcrypt_rounds": 4,
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def settings():
    return make_settings()


@pytest.fixture
def session_factory(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'test.db'}", 5.0)
    Base.metadata.create_all(bind=engine)
    yield build_session_factory(engine)
    engine.dispose()
