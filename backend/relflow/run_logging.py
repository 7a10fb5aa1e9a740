"""Run-scoped logging helpers.

Log records emitted by the engine carry `run_id` (and, inside task bodies,
`node`) through `extra`; `configure_logging` makes sure every record has both
attributes so the shared format string never fails.
"""

from __future__ import annotations

import logging

TASK_LOGGER_NAME = "relflow.task"

LOG_FORMAT = "%(asctime)s %(levelname)s [run_id=%(run_id)s node=%(node)s] %(name)s: %(message)s"


class _RunContextFilter(logging.Filter):
    """Ensure every log record has run_id and node attributes."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "run_id"):
            record.run_id = "system"
        if not hasattr(record, "node"):
            record.node = "-"
        return True


def configure_logging(level: int = logging.INFO) -> None:
    """Install a basic root configuration with run-aware formatting."""
    logging.basicConfig(level=level, format=LOG_FORMAT)
    root_logger = logging.getLogger()
    for handler in root_logger.handlers:
        if not any(isinstance(f, _RunContextFilter) for f in handler.filters):
            handler.addFilter(_RunContextFilter())


def task_logger(run_id: str, node: str) -> logging.LoggerAdapter:
    """Return a logger that stamps records with the run and node."""
    return logging.LoggerAdapter(
        logging.getLogger(TASK_LOGGER_NAME), {"run_id": run_id, "node": node}
    )


__all__ = ["LOG_FORMAT", "TASK_LOGGER_NAME", "configure_logging", "task_logger"]
