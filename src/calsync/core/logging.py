"""Process-wide log setup for calsync.

Every module logs through ``logging.getLogger(__name__)``; structlog's
``ProcessorFormatter`` renders those records either as a readable console
line (``text``) or as one JSON object per line (``json``). Each record is
tagged with the owner being synced and the active OTel trace/span ids, and
OAuth material is scrubbed before anything is written.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from pathlib import Path

import structlog
from opentelemetry import trace

from calsync.errors import redact_credentials

_owner_context: ContextVar[str | None] = ContextVar("calsync_owner", default=None)

_NOISE_LOGGERS = ("httpx", "httpcore", "asyncpg")
_LOG_FILE_NAME = "calsync.log"
_ZERO_TRACE_ID = "0" * 32
_ZERO_SPAN_ID = "0" * 16


def get_owner_context() -> str | None:
    return _owner_context.get()


@contextmanager
def owner_context(owner_id: str) -> Iterator[None]:
    """Tag log records emitted inside the block with *owner_id*."""
    token = _owner_context.set(owner_id)
    try:
        yield
    finally:
        _owner_context.reset(token)


# ---------------------------------------------------------------------------
# Processors
# ---------------------------------------------------------------------------


def add_owner_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    event_dict["owner"] = _owner_context.get()
    return event_dict


def add_otel_context(
    logger: logging.Logger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: dict,
) -> dict:
    """Attach hex ``trace_id``/``span_id``; all zeros outside a recording span."""
    span_context = trace.get_current_span().get_span_context()
    if span_context and span_context.trace_id:
        event_dict["trace_id"] = format(span_context.trace_id, "032x")
        event_dict["span_id"] = format(span_context.span_id, "016x")
    else:
        event_dict["trace_id"] = _ZERO_TRACE_ID
        event_dict["span_id"] = _ZERO_SPAN_ID
    return event_dict


class CredentialRedactionFilter(logging.Filter):
    """Scrub bearer tokens and OAuth secrets from formatted log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message = record.getMessage()
        except Exception:
            return True
        redacted = redact_credentials(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def _pre_chain(timestamp_fmt: str) -> list[structlog.types.Processor]:
    return [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt=timestamp_fmt),
        add_owner_context,
        add_otel_context,
        structlog.stdlib.ExtraAdder(),
    ]


def _handler(
    handler: logging.Handler,
    renderer: structlog.types.Processor,
    pre_chain: list[structlog.types.Processor],
) -> logging.Handler:
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
            foreign_pre_chain=pre_chain,
        )
    )
    handler.addFilter(CredentialRedactionFilter())
    return handler


# ---------------------------------------------------------------------------
# Setup
# ---------------------------------------------------------------------------


def configure_logging(
    level: str = "INFO",
    fmt: str = "text",
    log_root: Path | None = None,
) -> None:
    """Install the calsync handlers on the root logger.

    Parameters
    ----------
    level:
        Root level name; unknown names fall back to ``INFO``.
    fmt:
        ``"text"`` for the dev console renderer, ``"json"`` for JSON lines.
    log_root:
        When set, also append JSON lines to ``{log_root}/calsync.log``.
    """
    if fmt == "json":
        pre_chain = _pre_chain("iso")
        renderer: structlog.types.Processor = structlog.processors.JSONRenderer()
    else:
        pre_chain = _pre_chain("%H:%M:%S")
        renderer = structlog.dev.ConsoleRenderer()

    root = logging.getLogger()
    # calling twice must not duplicate output
    root.handlers.clear()
    root.addHandler(_handler(logging.StreamHandler(sys.stderr), renderer, pre_chain))
    root.setLevel(getattr(logging, level.upper(), logging.INFO))

    if log_root is not None:
        log_dir = Path(log_root)
        log_dir.mkdir(parents=True, exist_ok=True)
        file_handler = _handler(
            logging.FileHandler(log_dir / _LOG_FILE_NAME),
            structlog.processors.JSONRenderer(),
            _pre_chain("iso"),
        )
        file_handler.setLevel(logging.DEBUG)
        root.addHandler(file_handler)

    for name in _NOISE_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*pre_chain, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
