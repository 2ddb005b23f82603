"""Configuration settings for the sync server."""

import os
from dataclasses import dataclass, field
from typing import Dict

from common.constants import (
    BLOCK_DURATION_SECONDS,
    DEFAULT_CONFLICT_POLICY,
    DEFAULT_RATE_LIMIT_PER_MINUTE,
    MAX_WRITE_ATTEMPTS,
    METRICS_INACTIVITY_SECONDS,
    RETRY_BATCH_SIZE,
    RETRY_INTERVAL_SECONDS,
    RETRY_MAX_RETRIES,
    STRICT_RATE_LIMIT_PER_MINUTE,
    STRICT_VIOLATIONS_BEFORE_BLOCK,
    SUSPICION_DURATION_SECONDS,
)


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def parse_token_table(raw: str) -> Dict[str, str]:
    """
    Parse "token:actor,token:actor" into a token -> actor mapping.

    Entries without a colon or with an empty side are ignored.
    """
    table: Dict[str, str] = {}
    for item in raw.split(","):
        token, sep, actor = item.strip().partition(":")
        if sep and token.strip() and actor.strip():
            table[token.strip()] = actor.strip()
    return table


DATABASE_PATH = os.environ.get("DOCSYNC_DATABASE_PATH", "./data/docsync.db")

SERVER_HOST = os.environ.get("DOCSYNC_HOST", "0.0.0.0")

SERVER_PORT = int(os.environ.get("DOCSYNC_PORT", "8000"))

API_TOKENS = parse_token_table(os.environ.get("DOCSYNC_API_TOKENS", ""))

CONFLICT_POLICY = os.environ.get("DOCSYNC_CONFLICT_POLICY", DEFAULT_CONFLICT_POLICY)

TIE_BREAKER = os.environ.get("DOCSYNC_TIE_BREAKER", "client")

OWNER_SCOPING = _env_bool("DOCSYNC_OWNER_SCOPING", False)

RATE_LIMIT = int(os.environ.get("DOCSYNC_RATE_LIMIT", str(DEFAULT_RATE_LIMIT_PER_MINUTE)))

STRICT_RATE_LIMIT = int(
    os.environ.get("DOCSYNC_STRICT_RATE_LIMIT", str(STRICT_RATE_LIMIT_PER_MINUTE))
)

SUSPICION_DURATION = float(os.environ.get("DOCSYNC_SUSPICION_DURATION", str(SUSPICION_DURATION_SECONDS)))

BLOCK_DURATION = float(os.environ.get("DOCSYNC_BLOCK_DURATION", str(BLOCK_DURATION_SECONDS)))

BLOCK_AFTER_VIOLATIONS = int(
    os.environ.get("DOCSYNC_BLOCK_AFTER_VIOLATIONS", str(STRICT_VIOLATIONS_BEFORE_BLOCK))
)

METRICS_INACTIVITY = float(os.environ.get("DOCSYNC_METRICS_INACTIVITY", str(METRICS_INACTIVITY_SECONDS)))

RETRY_INTERVAL = float(os.environ.get("DOCSYNC_RETRY_INTERVAL", str(RETRY_INTERVAL_SECONDS)))

RETRY_BATCH = int(os.environ.get("DOCSYNC_RETRY_BATCH_SIZE", str(RETRY_BATCH_SIZE)))

RETRY_CEILING = int(os.environ.get("DOCSYNC_MAX_RETRIES", str(RETRY_MAX_RETRIES)))

AUDIT_RETENTION_DAYS = int(os.environ.get("DOCSYNC_AUDIT_RETENTION_DAYS", "30"))


@dataclass
class AdmissionConfig:
    """Tunables for the admission monitor."""
    rate_per_minute: int = RATE_LIMIT
    strict_rate_per_minute: int = STRICT_RATE_LIMIT
    suspicion_duration: float = SUSPICION_DURATION
    block_duration: float = BLOCK_DURATION
    block_after_violations: int = BLOCK_AFTER_VIOLATIONS
    inactivity_window: float = METRICS_INACTIVITY
    cleanup_interval: float = 300.0


@dataclass
class CoordinatorConfig:
    """Tunables for the reconciliation coordinator."""
    conflict_policy: str = CONFLICT_POLICY
    tie_breaker: str = TIE_BREAKER
    owner_scoping: bool = OWNER_SCOPING
    max_write_attempts: int = MAX_WRITE_ATTEMPTS
    admission: AdmissionConfig = field(default_factory=AdmissionConfig)
