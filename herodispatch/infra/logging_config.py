# herodispatch/infra/logging_config.py
"""
Logging setup.

One stdout handler on the root logger: JSON lines in production, colored
single lines in development. Dispatch context (job, hero, wave, request)
travels as record attributes set through ``extra=`` or ``LogContext``.
"""
import json
import logging
import sys
from datetime import datetime, timezone

CONTEXT_FIELDS = ("job_id", "hero_id", "wave", "request_id")

# Third-party loggers that are too chatty at INFO
_NOISY_LOGGERS = {
    "uvicorn.access": logging.WARNING,
    "asyncio": logging.WARNING,
    "aiohttp.access": logging.WARNING,
}


def _context_of(record: logging.LogRecord) -> dict:
    return {name: getattr(record, name) for name in CONTEXT_FIELDS if hasattr(record, name)}


class JSONFormatter(logging.Formatter):
    """One JSON object per record (production)"""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "location": f"{record.module}:{record.funcName}:{record.lineno}",
            **_context_of(record),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Readable colored lines (development)"""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, self.RESET)
        when = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")

        # Ids are uuid hex; the first 8 chars are enough to follow a job by eye
        tags = []
        for name, value in _context_of(record).items():
            if name == "request_id":
                continue
            label = name.removesuffix("_id")
            tags.append(f"{label}={str(value)[:8]}")
        context = f" [{' '.join(tags)}]" if tags else ""

        line = f"{color}{when} {record.levelname:<8}{self.RESET} {record.name}{context}: {record.getMessage()}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def setup_logging(level: str = "INFO", use_json: bool = False) -> None:
    """
    Configure the root logger.

    Args:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        use_json: JSON lines instead of colored console output
    """
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter() if use_json else ConsoleFormatter())

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    for name, noisy_level in _NOISY_LOGGERS.items():
        logging.getLogger(name).setLevel(noisy_level)

    root.info(f"Logging configured: level={level}, json={use_json}")


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


class LogContext(logging.LoggerAdapter):
    """
    Logger adapter carrying dispatch context on every record.

    Usage:
        log = LogContext(logger, job_id=job.id)
        log.bind(wave=2).info("Wave opened")
    """

    def __init__(
            self,
            logger: logging.Logger,
            job_id: str | None = None,
            hero_id: str | None = None,
            request_id: str | None = None,
            **fields,
    ):
        context = {"job_id": job_id, "hero_id": hero_id, "request_id": request_id, **fields}
        super().__init__(logger, {k: v for k, v in context.items() if v is not None})

    def bind(self, **fields) -> "LogContext":
        """Copy with extra context (e.g. ``wave=2``)"""
        return LogContext(self.logger, **{**self.extra, **fields})

    def process(self, msg, kwargs):
        kwargs["extra"] = {**kwargs.get("extra", {}), **self.extra}
        return msg, kwargs


def mask_coordinates(lat: float, lon: float) -> str:
    """Mask GPS coordinates for logging.

    Example: ``mask_coordinates(32.794, 34.989)`` → ``"32.8**, 35.0**"``

    Only the first decimal digit is kept (roughly 10 km precision).
    """
    return f"{lat:.1f}**, {lon:.1f}**"
