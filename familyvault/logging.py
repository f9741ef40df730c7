import structlog, sys, pathlib, os

from .models import AuditEvent

_LOG_STREAM = None
_SECRET_FIELDS = ("secret", "password", "passphrase", "key")


def default_log_path() -> pathlib.Path:
    return pathlib.Path(os.environ.get(
        "FAMILYVAULT_LOG",
        pathlib.Path.home() / ".local" / "state" / "familyvault" / "familyvault.log",
    ))


def _log_handle(path: pathlib.Path):
    """Open (or reuse) the 0600 append-only log file handle."""
    global _LOG_STREAM
    if _LOG_STREAM is None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_APPEND | os.O_CREAT, 0o600)
        os.chmod(path, 0o600)
        _LOG_STREAM = os.fdopen(fd, "a", buffering=1)
    return _LOG_STREAM


def _filter_secrets(_, __, event_dict):
    for field in _SECRET_FIELDS:
        event_dict.pop(field, None)
    return event_dict


def _human_renderer(_, __, event_dict):
    """Render structlog event dictionaries into human-readable timestamped lines."""
    ts = event_dict.pop("timestamp", "")
    level = event_dict.pop("level", "").upper()
    category = event_dict.pop("category", "")
    event = event_dict.pop("event", "")
    extras = " ".join(f"{k}={event_dict[k]}" for k in sorted(event_dict))
    prefix = f"[{category.upper()}] " if category else ""
    return f"{ts} [{level}] {prefix}{event} {extras}".strip()


def configure_logging(debug: bool = False, log_path: pathlib.Path | None = None):
    """Route events to stderr in debug mode, otherwise to the secure log file."""
    processors = [
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.add_log_level,
        structlog.processors.dict_tracebacks,
        _human_renderer,
    ]
    if debug:
        target = sys.stderr
    else:
        processors = [_filter_secrets] + processors
        target = _log_handle(log_path or default_log_path())

    structlog.configure(
        processors=processors,
        logger_factory=structlog.PrintLoggerFactory(file=target),
    )


def get_logger(category: str):
    """Return a structlog logger tagged with a log category (security, storage, ...)."""
    return structlog.get_logger(category=category)


def log_audit(logger, event: AuditEvent):
    logger.info(
        "audit",
        action=event.action.value,
        actor=str(event.actor_id),
        target=str(event.target_id),
        **event.metadata,
    )
