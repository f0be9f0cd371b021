from __future__ import annotations

import logging
import re
import sys
from contextlib import suppress
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import structlog

from videotext_pipeline.config import get_settings

job_id_var: ContextVar[str | None] = ContextVar("job_id", default=None)
user_id_var: ContextVar[str | None] = ContextVar("user_id", default=None)


def set_job_id(jid: str | None) -> None:
    job_id_var.set(jid)


def set_user_id(uid: str | None) -> None:
    user_id_var.set(uid)


def _log_path() -> Path:
    s = get_settings()
    return Path(s.log_dir) / "app.log"


_BEARER_RE = re.compile(r"(?i)\bBearer\s+([A-Za-z0-9_\-\.=]+)")
_URL_CRED_RE = re.compile(r"(?i)([a-z][a-z0-9+\-.]*://)([^:@/\s]+):([^@/\s]+)@")
_KV_RE = re.compile(
    r"(?i)\b(job_token_secret|job_token|redis_url|token|secret|password|api_key)\b\s*=\s*([^\s,;&]+)"
)


def _secret_literals() -> list[str]:
    """
    Configured secret values that must never appear in logs.
    Safe even if settings fail to load.
    """
    vals: list[str] = []
    with suppress(Exception):
        sec = get_settings().secret
        v = sec.job_token_secret.get_secret_value()
        if v:
            vals.append(str(v))
        if sec.redis_url:
            vals.append(str(sec.redis_url))
    # ignore tiny values to avoid over-redaction
    return [v for v in dict.fromkeys(vals) if len(v) >= 8]


def _redact_str(s: str) -> str:
    with suppress(Exception):
        for lit in _secret_literals():
            if lit in s:
                s = s.replace(lit, "***REDACTED***")
    s = _URL_CRED_RE.sub(r"\1***REDACTED***@", s)
    s = _BEARER_RE.sub("Bearer ***REDACTED***", s)
    s = _KV_RE.sub(lambda m: f"{m.group(1)}=***REDACTED***", s)
    return s


def redact_event(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    for k, v in list(event_dict.items()):
        if isinstance(v, str):
            event_dict[k] = _redact_str(v)
    return event_dict


def add_contextvars(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    jid = job_id_var.get()
    uid = user_id_var.get()
    if jid:
        event_dict.setdefault("job_id", jid)
    if uid:
        event_dict.setdefault("user_id", uid)
    return event_dict


def rename_event_to_msg(_, __, event_dict: dict[str, Any]) -> dict[str, Any]:
    if "msg" not in event_dict and "event" in event_dict:
        event_dict["msg"] = event_dict.pop("event")
    return event_dict


# shared by structlog loggers and foreign stdlib records
_PROCESSORS: list[Any] = [
    structlog.processors.TimeStamper(fmt="iso", utc=True, key="ts"),
    structlog.stdlib.add_log_level,
    add_contextvars,
    redact_event,
    structlog.processors.format_exc_info,
    rename_event_to_msg,
]


def _handlers(formatter: logging.Formatter) -> list[logging.Handler]:
    s = get_settings()
    path = _log_path()
    path.parent.mkdir(parents=True, exist_ok=True)
    out: list[logging.Handler] = [
        RotatingFileHandler(
            filename=str(path),
            maxBytes=int(s.log_max_bytes),
            backupCount=int(s.log_backup_count),
            encoding="utf-8",
        ),
        logging.StreamHandler(sys.stdout),
    ]
    for h in out:
        h.setFormatter(formatter)
    return out


def _configure_structlog() -> structlog.stdlib.BoundLogger:
    root = logging.getLogger()
    root.setLevel(str(get_settings().log_level).upper())
    if getattr(root, "_videotext_structlog_configured", False):
        return structlog.get_logger("videotext_pipeline")

    formatter = structlog.stdlib.ProcessorFormatter(
        processor=structlog.processors.JSONRenderer(),
        foreign_pre_chain=list(_PROCESSORS),
    )
    root.handlers[:] = _handlers(formatter)
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.PositionalArgumentsFormatter(),
            *_PROCESSORS,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    root._videotext_structlog_configured = True
    return structlog.get_logger("videotext_pipeline")


logger = _configure_structlog()


def set_log_level(level: str) -> None:
    """Runtime log level override (CLI convenience)."""
    lvl = getattr(logging, str(level).upper(), logging.INFO)
    root = logging.getLogger()
    root.setLevel(lvl)
    for h in root.handlers:
        h.setLevel(lvl)
