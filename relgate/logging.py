# FILE: relgate/logging.py
from __future__ import annotations

import contextvars
import datetime as _dt
import json
import logging
import os
import sys
import traceback
from typing import Any, Dict, Optional

# ---------- Module-level config (env-driven, safe defaults) ----------
_LOG_SCHEMA = os.environ.get("RELGATE_LOG_SCHEMA", "relgate.log.v1")
_LOG_SERVICE = os.environ.get("RELGATE_SERVICE", "relgate")

# Max chars per field (truncate to keep JSON small)
try:
    _MAX_FIELD = int(os.environ.get("RELGATE_LOG_MAX_FIELD", "4096"))
    _MAX_FIELD = max(256, _MAX_FIELD)
except ValueError:
    _MAX_FIELD = 4096

_INCLUDE_STACK = os.environ.get("RELGATE_LOG_INCLUDE_STACK", "1") == "1"

# Envelope fields picked from the bound context or record attributes.
_ENVELOPE_FIELDS = (
    "req_id",
    "verdict",
    "error_kind",
    "policy_id",
    "package_uri",
    "releaser_id",
    "environment",
    "digest_ref",
    "policyset_ref",
    "config_hash",
    "creator_id",
)

# Attributes every LogRecord carries; never copied into "meta".
_RECORD_ATTRS = set(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}

# ---------- Context management ----------
_log_ctx: contextvars.ContextVar[Dict[str, Any]] = contextvars.ContextVar(
    "relgate_log_ctx", default={}
)


def bind(**fields: Any) -> None:
    """Merge fields into the current logging context (per-coroutine)."""
    cur = dict(_log_ctx.get())
    for k, v in fields.items():
        if v is None:
            continue
        cur[str(k)] = v
    _log_ctx.set(cur)


def unbind(*keys: str) -> None:
    cur = dict(_log_ctx.get())
    for k in keys:
        cur.pop(k, None)
    _log_ctx.set(cur)


def reset() -> None:
    _log_ctx.set({})


def context() -> Dict[str, Any]:
    return dict(_log_ctx.get())


# ---------- Helpers ----------
def _ts_iso() -> str:
    # RFC3339 with milliseconds, UTC Z
    now = _dt.datetime.now(_dt.timezone.utc)
    ms = int(now.microsecond / 1000)
    base = now.replace(microsecond=0).isoformat().replace("+00:00", "Z")
    return f"{base[:-1]}.{ms:03d}Z"


def _compact_json(obj: Dict[str, Any]) -> str:
    return json.dumps(obj, ensure_ascii=False, separators=(",", ":"), default=str)


def _truncate(v: Any) -> Any:
    if isinstance(v, str) and len(v) > _MAX_FIELD:
        return v[:_MAX_FIELD] + "...<truncated>"
    return v


def _scalar(v: Any) -> Any:
    if v is None or isinstance(v, (bool, int, float)):
        return v
    return _truncate(str(v))


def _meta_from_record(record: logging.LogRecord, evt_keys: set) -> Dict[str, Any]:
    meta: Dict[str, Any] = {}
    for k, v in record.__dict__.items():
        if k in _RECORD_ATTRS or k in evt_keys or k.startswith("_"):
            continue
        if v is None:
            continue
        meta[k] = _scalar(v)
    return meta


class JSONFormatter(logging.Formatter):
    """
    JSON formatter with a stable envelope.

    Core envelope fields:
      - schema, service, ts, lvl, logger, msg
      - req_id, verdict, error_kind
      - policy_id, package_uri, releaser_id, environment
      - digest_ref, policyset_ref, config_hash, creator_id
    Remaining record extras land in "meta".
    """

    def __init__(self, *, include_stack: bool = True):
        super().__init__()
        self.include_stack = include_stack

    def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
        ctx = context()

        evt: Dict[str, Any] = {
            "schema": _LOG_SCHEMA,
            "service": _LOG_SERVICE,
            "ts": _ts_iso(),
            "lvl": record.levelname,
            "logger": record.name,
            "msg": _truncate(str(record.getMessage())),
        }

        # Context picks (prefer bound ctx -> record.<attr>)
        for name in _ENVELOPE_FIELDS:
            if name in ctx:
                value = ctx[name]
            else:
                value = getattr(record, name, None)
            if value is not None:
                evt[name] = _scalar(value)

        # Exception info
        if record.exc_info and self.include_stack:
            exc_type, exc_val, exc_tb = record.exc_info
            evt["exc_type"] = getattr(exc_type, "__name__", str(exc_type))
            evt["exc_message"] = str(exc_val)[:_MAX_FIELD]
            evt["stack"] = "".join(
                traceback.format_exception(exc_type, exc_val, exc_tb)
            )[:_MAX_FIELD]

        meta = _meta_from_record(record, evt_keys=set(evt.keys()) | set(_ENVELOPE_FIELDS))
        if meta:
            evt["meta"] = meta

        return _compact_json(evt)


# ---------- Root integration ----------
def _clear_handlers(logger: logging.Logger) -> None:
    for h in list(logger.handlers):
        logger.removeHandler(h)


def configure_json_logging(
    level: str = "INFO",
    *,
    stream: Any = None,
    include_stack: bool = _INCLUDE_STACK,
) -> logging.Logger:
    """
    Configure the root logger for JSON output on `stream` (stderr by default).
    """
    lvl = getattr(logging, (level or "INFO").upper(), logging.INFO)
    stream = stream or sys.stderr

    h = logging.StreamHandler(stream=stream)
    h.setFormatter(JSONFormatter(include_stack=include_stack))
    h.setLevel(lvl)

    root = logging.getLogger()
    root.setLevel(lvl)
    _clear_handlers(root)
    root.addHandler(h)
    return root


# ---------- Decisions ----------
def log_decision(
    logger: logging.Logger,
    *,
    verdict: bool,
    error_kind: Optional[str] = None,
    message: str = "decision",
    extra: Optional[Dict[str, Any]] = None,
    level: int = logging.INFO,
) -> None:
    """
    Convenience helper for logging gate decisions.

    Only identifiers and small tags are logged, never document contents.
    """
    extra_dict: Dict[str, Any] = {"verdict": bool(verdict)}
    if error_kind is not None:
        extra_dict["error_kind"] = str(error_kind)
    if extra:
        for k, v in extra.items():
            if v is None:
                continue
            key = str(k)
            if key in _RECORD_ATTRS:
                # LogRecord refuses to overwrite its own attributes
                key = f"x_{key}"
            extra_dict[key] = _truncate(v)

    logger.log(level, message, extra=extra_dict)


# ---------- Convenience: module-level logger ----------
_configured = False


def get_logger(name: str = "relgate") -> logging.Logger:
    """
    Return a named logger, configuring JSON output on the root logger the
    first time it is called.
    """
    global _configured
    if not _configured:
        configure_json_logging(level=os.environ.get("RELGATE_LOG_LEVEL", "INFO"))
        _configured = True
    return logging.getLogger(name)


# ---------- Public API (what users are expected to import) ----------
__all__ = [
    "bind",
    "unbind",
    "reset",
    "context",
    "configure_json_logging",
    "get_logger",
    "log_decision",
    "JSONFormatter",
]
