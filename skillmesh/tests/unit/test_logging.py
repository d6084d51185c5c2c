from __future__ import annotations

import logging

import pytest

from skillmesh.core.config import get_settings
from skillmesh.core.logging import configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def test_configure_logging_installs_one_plain_handler(monkeypatch, restore_root_logger) -> None:
    monkeypatch.setenv("LOG_LEVEL", "debug")
    get_settings.cache_clear()

    configure_logging()
    configure_logging()

    ours = [handler for handler in restore_root_logger.handlers if handler.get_name() == "skillmesh"]
    assert len(ours) == 1
    assert restore_root_logger.level == logging.DEBUG

    record = logging.LogRecord(
        "skillmesh.routing", logging.INFO, __file__, 1, "routing_cache_invalidated tenant_id=%s", ("acme",), None
    )
    line = ours[0].format(record)
    assert line.endswith("INFO skillmesh.routing routing_cache_invalidated tenant_id=acme")
