from __future__ import annotations

import re
import sys
from pathlib import Path
from tempfile import gettempdir
from typing import Any

from loguru import logger

from linux_ssh_client.settings import SSHClientSettings

_REDACTIONS: list[tuple[re.Pattern[str], str]] = [
    (re.compile(r"(?i)(password\s*[:=]\s*)([^\s,]+)"), r"\1***"),
    (re.compile(r"(?i)(passphrase\s*[:=]\s*)([^\s,]+)"), r"\1***"),
    (re.compile(r"(?i)(token\s*[:=]\s*)([^\s,]+)"), r"\1***"),
    (re.compile(r"-----BEGIN [A-Z ]*PRIVATE KEY-----.*?-----END [A-Z ]*PRIVATE KEY-----", re.S), "***"),
]


def redact(text: str) -> str:
    for pattern, repl in _REDACTIONS:
        text = pattern.sub(repl, text)
    return text


def _patcher(record: Any) -> None:
    record["message"] = redact(record.get("message", ""))


def get_logger(**context: object):
    """Package logger with secret redaction, bound to ``context``."""
    return logger.patch(_patcher).bind(**context)


def setup_logger(settings: SSHClientSettings) -> None:
    try:
        settings.log_dir.mkdir(parents=True, exist_ok=True)
        log_dir = Path(settings.log_dir)
    except OSError:
        log_dir = Path(gettempdir()) / "linux-ssh-client-logs"
        log_dir.mkdir(parents=True, exist_ok=True)

    logger.remove()
    patched = logger.patch(_patcher)

    if getattr(sys.stderr, "isatty", lambda: False)():
        patched.add(
            sys.stderr,
            level=settings.log_level,
            colorize=True,
            backtrace=False,
            diagnose=False,
            enqueue=True,
        )

    patched.add(
        str(log_dir / "client.log"),
        level=settings.log_level,
        rotation=settings.log_rotation,
        retention=settings.log_retention,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        encoding="utf-8",
    )

    patched.add(
        str(log_dir / "error.log"),
        level="ERROR",
        rotation=settings.log_rotation,
        retention=settings.log_retention,
        enqueue=True,
        backtrace=False,
        diagnose=False,
        encoding="utf-8",
    )
