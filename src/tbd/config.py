"""Runtime configuration for tbd.

Reads sync and display settings from explicit arguments, environment
variables, .env files, and ``.tbd/config.yml`` fallbacks.

Precedence (highest to lowest):
    Arguments > Environment variables > .env file > YAML config > Built-in defaults

Environment variables:
    TBD_SYNC_BRANCH: Sync branch name (default: tbd-sync)
    TBD_SYNC_REMOTE: Git remote name (default: origin)
    TBD_ID_PREFIX: Display prefix for short ids (default: tbd)
    TBD_MAX_PUSH_RETRIES: Push attempts before giving up (default: 3)
    TBD_TEXT_MERGE: Line-merge description/notes on conflict (default: false)
    TBD_DEBUG: Enable debug logging (default: false)
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

from .config_loader import load_hierarchical_config
from .config_schema import (
    DEFAULT_ID_PREFIX,
    DEFAULT_REMOTE,
    DEFAULT_SYNC_BRANCH,
    build_config,
)
from .validators import (
    validate_branch_name,
    validate_id_prefix,
    validate_remote_name,
)

logger = logging.getLogger(__name__)


@dataclass
class Config:
    sync_branch: str = DEFAULT_SYNC_BRANCH
    remote: str = DEFAULT_REMOTE
    id_prefix: str = DEFAULT_ID_PREFIX
    max_push_retries: int = 3
    text_merge: bool = False
    network_timeout: int = 60
    debug: bool = False
    log_level: str = "INFO"
    log_file: str | None = None


def validate_config(config: Config) -> None:
    """Validate configuration values and raise ValueError if invalid.

    Args:
        config: Config instance to validate.

    Raises:
        ValueError: If a branch, remote or prefix is malformed, or the
            retry count is out of range.
    """
    config.sync_branch = config.sync_branch.strip()
    config.remote = config.remote.strip()
    config.id_prefix = config.id_prefix.strip().lower()

    for check, value in (
        (validate_branch_name, config.sync_branch),
        (validate_remote_name, config.remote),
        (validate_id_prefix, config.id_prefix),
    ):
        ok, reason = check(value)
        if not ok:
            raise ValueError(f"Invalid config: {reason}")

    if not (1 <= config.max_push_retries <= 10):
        raise ValueError(
            f"Invalid max_push_retries '{config.max_push_retries}': "
            "must be a number between 1 and 10"
        )


def _get_bool_env(key: str) -> bool | None:
    """Return True/False from env var, or None if unset."""
    val = os.getenv(key)
    if val is None:
        return None
    return val.lower() in ("true", "1", "yes", "on")


def load_config(
    root: Path | None = None,
    sync_branch: str | None = None,
    remote: str | None = None,
    id_prefix: str | None = None,
    debug: bool = False,
    yaml_fallbacks: dict | None = None,
) -> Config:
    """Load configuration with unified precedence.

    Resolution order for each field (highest to lowest):
        argument > env var / .env > YAML > built-in default

    ``.env`` in the current directory is loaded first.  When
    *yaml_fallbacks* is not given and *root* is, the YAML files
    discovered for *root* are read and flattened.

    Args:
        root: Project root used to locate ``.tbd/config.yml``.
        sync_branch: Override sync branch name.
        remote: Override remote name.
        id_prefix: Override display prefix.
        debug: Enable debug logging.
        yaml_fallbacks: Flat dict with keys sync_branch, remote,
            id_prefix, max_push_retries, text_merge, network_timeout,
            log_level, log_file.

    Returns:
        Validated Config instance.

    Raises:
        ValueError: If any resolved value is invalid.
    """
    load_dotenv()

    if yaml_fallbacks is None:
        yaml_fallbacks = {}
        if root is not None:
            schema = build_config(load_hierarchical_config(root))
            yaml_fallbacks = {
                "sync_branch": schema.sync.branch,
                "remote": schema.sync.remote,
                "id_prefix": schema.display.id_prefix,
                "max_push_retries": schema.sync.max_push_retries,
                "text_merge": schema.sync.text_merge,
                "network_timeout": schema.sync.network_timeout,
                "log_level": schema.logging.level,
                "log_file": schema.logging.file,
            }
    fb = yaml_fallbacks

    # --- String fields: argument > env > YAML > default ---

    final_branch = (
        sync_branch
        or os.getenv("TBD_SYNC_BRANCH")
        or fb.get("sync_branch")
        or DEFAULT_SYNC_BRANCH
    )
    final_remote = (
        remote
        or os.getenv("TBD_SYNC_REMOTE")
        or fb.get("remote")
        or DEFAULT_REMOTE
    )
    final_prefix = (
        id_prefix
        or os.getenv("TBD_ID_PREFIX")
        or fb.get("id_prefix")
        or DEFAULT_ID_PREFIX
    )

    # --- Boolean fields: argument > env > YAML > default ---

    env_text_merge = _get_bool_env("TBD_TEXT_MERGE")
    if env_text_merge is not None:
        final_text_merge = env_text_merge
    else:
        final_text_merge = bool(fb.get("text_merge", False))

    if debug:
        final_debug = True
    else:
        final_debug = bool(_get_bool_env("TBD_DEBUG"))

    # --- Numeric fields: env > YAML > default ---

    retries_raw = os.getenv("TBD_MAX_PUSH_RETRIES")
    if retries_raw is not None:
        try:
            final_retries = int(retries_raw)
        except ValueError:
            raise ValueError(
                f"Invalid TBD_MAX_PUSH_RETRIES '{retries_raw}': must be a number between 1 and 10"
            ) from None
    else:
        final_retries = int(fb.get("max_push_retries", 3))

    config = Config(
        sync_branch=final_branch,
        remote=final_remote,
        id_prefix=final_prefix,
        max_push_retries=final_retries,
        text_merge=final_text_merge,
        network_timeout=int(fb.get("network_timeout", 60)),
        debug=final_debug,
        log_level=fb.get("log_level") or "INFO",
        log_file=fb.get("log_file"),
    )
    validate_config(config)
    return config
