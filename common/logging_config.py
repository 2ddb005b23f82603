"""Process-wide logging setup with masking of credentials."""

import logging
import os
import re
import sys
from typing import Any, Optional

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'
MASK = '***MASKED***'


class SensitiveDataFilter(logging.Filter):
    """Mask bearer tokens, API tokens and secrets in log records."""

    PATTERNS = [
        (re.compile(r'(bearer\s+)([^\s,}\'\"]+)', re.IGNORECASE), r'\1' + MASK),
        (re.compile(r'(authorization["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r'\1' + MASK),
        (re.compile(r'(token["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r'\1' + MASK),
        (re.compile(r'(password["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r'\1' + MASK),
        (re.compile(r'(secret["\']?\s*[:=]\s*["\']?)([^"\'}\s,]+)', re.IGNORECASE), r'\1' + MASK),
    ]

    def filter(self, record: logging.LogRecord) -> bool:
        if isinstance(record.msg, str):
            record.msg = mask_sensitive(record.msg)

        if record.args:
            if isinstance(record.args, dict):
                record.args = {k: self._mask_value(v) for k, v in record.args.items()}
            elif isinstance(record.args, tuple):
                record.args = tuple(self._mask_value(arg) for arg in record.args)

        return True

    @staticmethod
    def _mask_value(value: Any) -> Any:
        if isinstance(value, str):
            return mask_sensitive(value)
        return value


def mask_sensitive(text: str) -> str:
    """
    Replace credential values in free text with a mask.

    Args:
        text: Text that may contain tokens or secrets

    Returns:
        Text with every matched credential value masked
    """
    for pattern, replacement in SensitiveDataFilter.PATTERNS:
        text = pattern.sub(replacement, text)
    return text


def setup_logging(component_name: str, log_level: Optional[str] = None) -> logging.Logger:
    """
    Configure logging for a process component.

    Handlers are attached to the root logger so every module logger created
    with get_logger(__name__) inherits them.

    Args:
        component_name: Name of the component (e.g., 'syncserver', 'replica')
        log_level: DEBUG, INFO, WARNING or ERROR. Defaults to the
            DOCSYNC_LOG_LEVEL env var, then INFO

    Returns:
        Logger for the component
    """
    if log_level is None:
        log_level = os.getenv('DOCSYNC_LOG_LEVEL', 'INFO')

    level = getattr(logging, log_level.upper(), logging.INFO)

    root = logging.getLogger()
    root.setLevel(level)

    if not any(getattr(h, '_docsync_handler', False) for h in root.handlers):
        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT))
        handler.addFilter(SensitiveDataFilter())
        handler._docsync_handler = True
        root.addHandler(handler)
    else:
        for handler in root.handlers:
            if getattr(handler, '_docsync_handler', False):
                handler.setLevel(level)

    return logging.getLogger(component_name)


def get_logger(name: str) -> logging.Logger:
    """
    Get a logger with the given name.

    Args:
        name: Logger name (typically __name__)

    Returns:
        Logger instance
    """
    return logging.getLogger(name)
