"""Logger configuration for athlete-sync.

Every sink goes through a patcher that masks OAuth secrets, so a token that
reaches a log message by accident (an error body echoed from Garmin, a
request dump) is never written in full.
"""

import re
import sys
from pathlib import Path

from loguru import logger

_SECRET_PATTERN = re.compile(
    r"(?P<key>access_token|refresh_token|client_secret|code_verifier)"
    r"(?P<sep>[\"']?\s*[:=]\s*[\"']?)"
    r"(?P<value>[A-Za-z0-9._~+/=-]{16,})"
)


def mask_secret(value: str | None) -> str:
    """Mask a token for logging, keeping only its edges."""
    if not value:
        return "None"
    return f"{value[:6]}...{value[-4:]}" if len(value) > 14 else "***"


def redact_secrets(message: str) -> str:
    """Mask token-looking values that follow a known OAuth field name."""
    return _SECRET_PATTERN.sub(lambda m: f"{m.group('key')}{m.group('sep')}{mask_secret(m.group('value'))}", message)


def _redact_record(record) -> None:
    record["message"] = redact_secrets(record["message"])


def setup_logger(
    level: str = "INFO",
    log_file: str | None = None,
    rotation: str = "10 MB",
    retention: str = "7 days",
) -> None:
    """Configure loguru with a console sink and an optional rotating file sink.

    Args:
        level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_file: Optional path to log file. If None, only console logging.
        rotation: Log rotation size (e.g., "10 MB", "1 day")
        retention: Log retention period (e.g., "7 days", "1 month")
    """
    logger.remove()
    logger.configure(patcher=_redact_record)

    logger.add(
        sys.stderr,
        format="<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format="{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}",
            level=level,
            rotation=rotation,
            retention=retention,
            diagnose=False,  # Tracebacks may carry OAuth tokens in local variables
        )

    logger.info(f"Logger initialized with level={level}, file={log_file or 'none'}")
