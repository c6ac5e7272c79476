from __future__ import annotations

import logging
from collections.abc import Iterator

import pytest

from task_sync.core.logging import ROOT_LOGGER_NAME


class _RecordCollector(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.DEBUG)
        self.records: list[logging.LogRecord] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.records.append(record)


@pytest.fixture
def package_log_records() -> Iterator[list[logging.LogRecord]]:
    """Collect every record on the package logger, whatever its propagation."""
    collector = _RecordCollector()
    package_logger = logging.getLogger(ROOT_LOGGER_NAME)
    previous_level = package_logger.level
    package_logger.addHandler(collector)
    package_logger.setLevel(logging.DEBUG)
    try:
        yield collector.records
    finally:
        package_logger.removeHandler(collector)
        package_logger.setLevel(previous_level)
