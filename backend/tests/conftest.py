from __future__ import annotations

from pathlib import Path
from typing import Iterator

import pytest
from sqlalchemy.engine import Engine

from learner_engine.config import get_settings
from learner_engine.db import models  # noqa: F401  registers every table on Base.metadata
from learner_engine.db.base import Base
from learner_engine.db.session import dispose_engine, get_engine


@pytest.fixture()
def database(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Iterator[Engine]:
    db_path = tmp_path / "learner_engine.db"
    monkeypatch.setenv("LEARNER_DATABASE_URL", f"sqlite:///{db_path}")
    get_settings.cache_clear()
    dispose_engine()
    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    yield engine
    dispose_engine()
    get_settings.cache_clear()
