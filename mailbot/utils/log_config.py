"""
structlog setup with secret redaction and the append-only error log
"""

import logging
import re
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Pattern

import structlog

REDACTION_PLACEHOLDER = "***REDACTED***"

# GitHub installation tokens and bearer credentials
TOKEN_PATTERNS: List[Pattern] = [
    re.compile(r"\bghs_[A-Za-z0-9]{20,}\b"),
    re.compile(r"(?i)\bbearer\s+[A-Za-z0-9\-._~+/]+=*"),
]


class SecretRedactor:
    """structlog processor that scrubs known secret values from every event field"""

    def __init__(self, secrets: Iterable[str] = ()):
        # Longest first so a secret containing another is replaced whole.
        self.secrets = sorted({s for s in secrets if s}, key=len, reverse=True)

    def redact(self, text: str) -> str:
        for secret in self.secrets:
            text = text.replace(secret, REDACTION_PLACEHOLDER)
        for pattern in TOKEN_PATTERNS:
            text = pattern.sub(REDACTION_PLACEHOLDER, text)
        return text

    def _redact_value(self, value: Any) -> Any:
        if isinstance(value, str):
            return self.redact(value)
        if isinstance(value, dict):
            return {k: self._redact_value(v) for k, v in value.items()}
        if isinstance(value, (list, tuple)):
            return type(value)(self._redact_value(v) for v in value)
        return value

    def __call__(self, logger, method_name: str, event_dict: Dict[str, Any]) -> Dict[str, Any]:
        return {key: self._redact_value(value) for key, value in event_dict.items()}


def configure_logging(
    level: str = "INFO",
    secrets: Iterable[str] = (),
    error_log_path: Optional[Path] = None,
) -> SecretRedactor:
    """Configure structured logging for the whole process"""
    redactor = SecretRedactor(secrets)

    handlers: List[logging.Handler] = [logging.StreamHandler()]
    if error_log_path is not None:
        error_log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(error_log_path, mode="a", encoding="utf-8")
        file_handler.setLevel(logging.WARNING)
        handlers.append(file_handler)

    logging.basicConfig(
        format="%(message)s",
        level=getattr(logging, level.upper(), logging.INFO),
        handlers=handlers,
        force=True,
    )

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            redactor,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )
    return redactor
