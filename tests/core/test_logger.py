"""Tests for loguru sink setup."""

import json

import pytest
from loguru import logger

from carevisit.config.settings import Settings
from carevisit.core.logger import setup_logger


@pytest.fixture
def restore_logger():
    yield
    setup_logger(Settings(DATABASE_URL="sqlite:///:memory:"))


def test_json_file_sink_keeps_extra_fields(tmp_path, restore_logger):
    log_file = tmp_path / "logs" / "scheduling.log"
    config = Settings(LOG_FILE=str(log_file), LOG_JSON=True, LOG_LEVEL="debug", DATABASE_URL="sqlite:///:memory:")

    setup_logger(config)
    logger.info("[COMMIT] Batch write committed", preview_id="p-1", visits_written=3)
    logger.remove()

    records = [json.loads(line)["record"] for line in log_file.read_text().splitlines()]
    committed = next(r for r in records if r["message"] == "[COMMIT] Batch write committed")
    assert committed["extra"] == {"preview_id": "p-1", "visits_written": 3}
    assert committed["level"]["name"] == "INFO"

