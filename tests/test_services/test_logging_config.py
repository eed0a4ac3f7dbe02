"""Tests for logging setup."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

import pytest

from directory_snapshot.logging_config import configure_logging

if TYPE_CHECKING:
    from collections.abc import Iterator


@pytest.fixture(autouse=True)
def restore_root_logging() -> Iterator[None]:
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield
    root.handlers[:] = handlers
    root.setLevel(level)


class TestConfigureLogging:
    def test_info_level_by_default(self) -> None:
        configure_logging(debug=False)
        assert logging.getLogger().level == logging.INFO
        assert logging.getLogger("sqlalchemy.engine").level == logging.WARNING

    def test_debug_level(self) -> None:
        configure_logging(debug=True)
        assert logging.getLogger().level == logging.DEBUG
        assert logging.getLogger("httpx").level == logging.INFO
