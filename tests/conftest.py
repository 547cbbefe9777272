"""Pytest configuration for test isolation.

Engines are cached per database URL in ``db.client``. Each test gets its own
temporary SQLite file, so the cache is disposed after every test to release
file handles and keep one test's engine from leaking into the next.

``PAYRECON_*`` variables and ``DATABASE_URL`` from the developer's shell (or a
local ``.env``) would change defaults under test, so they are cleared too. CLI
tests configure package logging; it is reset afterwards.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from pathlib import Path

import pytest
from db.client import dispose_engines
from payment_recon import logging_setup

from tests.helpers.db import bootstrap_sqlite_db


@pytest.fixture(autouse=True)
def _isolate_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    for key in list(os.environ):
        if key.startswith("PAYRECON_") or key == "DATABASE_URL":
            monkeypatch.delenv(key, raising=False)
    yield
    dispose_engines()
    _reset_package_logging()


def _reset_package_logging() -> None:
    """Undo ``configure_logging`` so caplog sees records in later tests."""

    logger = logging.getLogger("payment_recon")
    for h in list(logger.handlers):
        logger.removeHandler(h)
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
    logging_setup._CONFIGURED = False


@pytest.fixture
def db_url(tmp_path: Path) -> str:
    """A fresh, schema-initialized SQLite database for one test."""

    return bootstrap_sqlite_db(tmp_path / "payments.sqlite3")
