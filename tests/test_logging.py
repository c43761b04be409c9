from __future__ import annotations

import json
import logging
from pathlib import Path

from archivist.utils.logging import (
    JsonFormatter,
    clear_log_context,
    get_log_context,
    set_log_context,
    setup_logging,
)


def _record(message: str, **extra: object) -> logging.LogRecord:
    record = logging.LogRecord(
        name="archivist.test",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_formatter_includes_context_and_drops_empty_fields() -> None:
    set_log_context(backup_name="Full_20260301_123000", stage="compress")
    try:
        payload = json.loads(JsonFormatter().format(_record("Archive created")))
    finally:
        clear_log_context()

    assert payload["level"] == "INFO"
    assert payload["logger"] == "archivist.test"
    assert payload["msg"] == "Archive created"
    assert payload["backup_name"] == "Full_20260301_123000"
    assert payload["stage"] == "compress"
    assert "backup_id" not in payload


def test_record_fields_override_context_and_extra_fields_pass_through() -> None:
    set_log_context(stage="stage")
    try:
        payload = json.loads(
            JsonFormatter().format(
                _record("Restored", stage="restore", item_path="Files/A/a.txt", outcome="Success")
            )
        )
    finally:
        clear_log_context()

    assert payload["stage"] == "restore"
    assert payload["item_path"] == "Files/A/a.txt"
    assert payload["outcome"] == "Success"


def test_clear_log_context_selected_keys() -> None:
    set_log_context(backup_id=7, stage="restore")

    clear_log_context(["stage"])

    assert get_log_context() == {"backup_id": 7}
    clear_log_context()
    assert get_log_context() == {}


def test_setup_logging_writes_json_lines_to_file(tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "archivist.log"
    logger = setup_logging("INFO", log_file)

    logging.getLogger("archivist.backup.runner").info("Backup finished")
    for handler in logger.handlers:
        handler.flush()

    lines = log_file.read_text(encoding="utf-8").splitlines()
    assert json.loads(lines[-1])["msg"] == "Backup finished"
    for handler in list(logger.handlers):
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
