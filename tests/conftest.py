from __future__ import annotations

import dataclasses
import sys
from pathlib import Path
from typing import Callable

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from ufds_alert.config import NotifierConfig
from ufds_alert.database import Database
from ufds_alert.notifier import Notifier

from helpers import RecordingMailer


@pytest.fixture()
def config() -> NotifierConfig:
    return NotifierConfig(
        cloud_name="Test Cloud",
        company="Acme Corp",
        my_email="ufds-alert@example.com",
        operators=("ops@example.com", "security@example.com"),
        oper_prefix="[oper] ",
        user_prefix="[Test Cloud] ",
    )


@pytest.fixture()
def database(tmp_path: Path) -> Database:
    db = Database(tmp_path / "ufds-alert.sqlite3")
    db.initialize()
    return db


@pytest.fixture()
def mailer() -> RecordingMailer:
    return RecordingMailer()


@pytest.fixture()
def make_notifier(config: NotifierConfig, database: Database, mailer: RecordingMailer) -> Callable[..., Notifier]:
    def _factory(*, db: Database | None = None, clock=None, **overrides) -> Notifier:
        effective = dataclasses.replace(config, **overrides) if overrides else config
        return Notifier(effective, db or database, mailer, clock=clock)

    return _factory
