"""Configuration schema for tbd.

Defines Pydantic models for ``.tbd/config.yml`` with dedicated sections
for sync, display and logging.  ``config.load_config()`` flattens the
validated sections into the runtime ``Config`` dataclass.

Usage:
    from tbd.config_schema import TbdConfig, build_config

    raw = load_hierarchical_config(root)
    schema = build_config(raw)
"""

from __future__ import annotations

import logging

from pydantic import BaseModel, Field, field_validator

from .validators import (
    validate_branch_name,
    validate_id_prefix,
    validate_remote_name,
)

logger = logging.getLogger(__name__)

DEFAULT_SYNC_BRANCH = "tbd-sync"
DEFAULT_REMOTE = "origin"
DEFAULT_ID_PREFIX = "tbd"


# ---------------------------------------------------------------------------
# Section models
# ---------------------------------------------------------------------------


class SyncConfig(BaseModel):
    """Sync branch settings."""

    branch: str = Field(
        default=DEFAULT_SYNC_BRANCH,
        description="Dedicated branch holding issue data",
    )
    remote: str = Field(
        default=DEFAULT_REMOTE, description="Git remote to sync with"
    )
    max_push_retries: int = Field(
        default=3,
        ge=1,
        le=10,
        description="Fetch/merge/push attempts when a push is rejected (1-10)",
    )
    text_merge: bool = Field(
        default=False,
        description="Line-merge description/notes before falling back to LWW",
    )
    network_timeout: int = Field(
        default=60,
        ge=1,
        le=3600,
        description="Seconds before a fetch or push is abandoned",
    )

    model_config = {"frozen": True}

    @field_validator("branch")
    @classmethod
    def _check_branch(cls, value: str) -> str:
        ok, reason = validate_branch_name(value)
        if not ok:
            raise ValueError(reason)
        return value

    @field_validator("remote")
    @classmethod
    def _check_remote(cls, value: str) -> str:
        ok, reason = validate_remote_name(value)
        if not ok:
            raise ValueError(reason)
        return value


class DisplayConfig(BaseModel):
    """How ids are shown to people."""

    id_prefix: str = Field(
        default=DEFAULT_ID_PREFIX,
        description="Prefix for external ids, e.g. 'tbd' in 'tbd-a7k2'",
    )

    model_config = {"frozen": True}

    @field_validator("id_prefix")
    @classmethod
    def _check_prefix(cls, value: str) -> str:
        ok, reason = validate_id_prefix(value)
        if not ok:
            raise ValueError(reason)
        return value


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level name (DEBUG, INFO, WARNING, ERROR, CRITICAL).
        file: Optional log file path.
    """

    level: str = Field(default="INFO", description="Log level")
    file: str | None = Field(default=None, description="Log file path")

    model_config = {"frozen": True}


# ---------------------------------------------------------------------------
# Top-level config
# ---------------------------------------------------------------------------


class TbdConfig(BaseModel):
    """Top-level configuration.

    Every section has sensible defaults, so ``TbdConfig()`` (zero-config)
    is always valid.
    """

    sync: SyncConfig = Field(default_factory=SyncConfig)
    display: DisplayConfig = Field(default_factory=DisplayConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    model_config = {"frozen": True}


def build_config(raw_data: dict) -> TbdConfig:
    """Construct a ``TbdConfig`` from the raw dict returned by
    ``load_hierarchical_config()``.

    Missing sections get defaults; unknown top-level sections are ignored
    with a warning so newer config files still load.

    Raises:
        pydantic.ValidationError: If a known section has invalid values.
    """
    if not raw_data:
        return TbdConfig()

    known = set(TbdConfig.model_fields)
    unknown = sorted(set(raw_data) - known)
    if unknown:
        logger.warning(
            "Ignoring unknown config sections: %s", ", ".join(unknown)
        )
    return TbdConfig(**{k: v for k, v in raw_data.items() if k in known})

