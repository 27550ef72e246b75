"""Run correlation for log records.

Each export run gets a short id that is attached to every log record
emitted while the run is active, and a single-line stage record is logged
for ``collect``, ``write`` and ``invoke``.
"""

import logging
import uuid
from contextvars import ContextVar
from typing import Any, Literal

logger = logging.getLogger(__name__)

Stage = Literal["collect", "write", "invoke"]
Status = Literal["ok", "warn", "error"]

NO_RUN_ID = "-"

_run_id: ContextVar[str | None] = ContextVar("run_id", default=None)


def new_run_id() -> str:
    return uuid.uuid4().hex[:12]


def bind_run_id(run_id: str) -> None:
    _run_id.set(run_id)


def clear_run_id() -> None:
    _run_id.set(None)


def current_run_id() -> str | None:
    return _run_id.get()


class RunContextFilter(logging.Filter):
    """Adds ``run_id`` to every record so formatters can reference it."""

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = _run_id.get() or NO_RUN_ID
        return True


def format_payload(fields: dict[str, Any]) -> str:
    parts = []
    for key, value in fields.items():
        text = str(value)
        if not text or any(ch.isspace() for ch in text) or "=" in text:
            text = '"' + text.replace('"', '\\"') + '"'
        parts.append(f"{key}={text}")
    return " ".join(parts)


def log_stage(stage: Stage, status: Status, **fields: Any) -> None:
    """Emit one structured line for a pipeline stage.

    Example: ``stage=write status=ok run_id=1a2b3c report=USERS files=2``
    """
    payload = {"stage": stage, "status": status, "run_id": _run_id.get() or NO_RUN_ID}
    payload.update(fields)
    level = {"ok": logging.INFO, "warn": logging.WARNING, "error": logging.ERROR}[status]
    logger.log(level, "%s", format_payload(payload))
