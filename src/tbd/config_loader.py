"""
Layered YAML configuration for tbd.

Settings come from up to three files, highest precedence first:

1. the file named by ``TBD_CONFIG``;
2. the project's ``.tbd/config.yml``;
3. the user's ``~/.config/tbd/config.yml``.

Each file holds sections (``sync``, ``display``, ``logging``).  Layers
are merged key by key inside a section, so a user file can set
``display.id_prefix`` while the project file sets ``sync.branch``.

Usage:
    from tbd.config_loader import load_hierarchical_config

    raw = load_hierarchical_config(project_root)
"""

import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .file_handler import read_text, write_file_atomic

logger = logging.getLogger(__name__)

CONFIG_DIR = ".tbd"
CONFIG_FILE = "config.yml"
CONFIG_HEADER = "# tbd configuration\n"


# ---------------------------------------------------------------------------
# Discovery
# ---------------------------------------------------------------------------


def project_config_path(root: Path) -> Path:
    """Return ``<root>/.tbd/config.yml`` whether or not it exists."""
    return root / CONFIG_DIR / CONFIG_FILE


def user_config_path() -> Path:
    return Path.home() / ".config" / "tbd" / CONFIG_FILE


def discover_config_files(root: Path) -> list[Path]:
    """Existing config files for *root*, highest precedence first."""
    candidates: list[Path] = []
    env_path = os.environ.get("TBD_CONFIG")
    if env_path:
        explicit = Path(env_path).expanduser().resolve()
        if not explicit.exists():
            logger.warning("TBD_CONFIG points to missing file %s", explicit)
        candidates.append(explicit)
    candidates.append(project_config_path(root))
    candidates.append(user_config_path())
    return [p for p in candidates if p.exists()]


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def read_config_file(path: Path) -> dict[str, dict[str, Any]]:
    """Parse one config file into ``{section: {key: value}}``.

    An empty file is an empty config.

    Raises:
        ValueError: The file is not YAML, its root is not a mapping, or
            a section is not a mapping.
    """
    try:
        data = yaml.safe_load(read_text(path))
    except yaml.YAMLError as exc:
        raise ValueError(f"{path}: invalid YAML: {exc}") from None
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(
            f"{path}: expected sections at the top level, "
            f"got {type(data).__name__}"
        )

    sections: dict[str, dict[str, Any]] = {}
    for name, body in data.items():
        if body is None:
            body = {}
        if not isinstance(body, dict):
            raise ValueError(
                f"{path}: section '{name}' must be a mapping of settings"
            )
        sections[str(name)] = body
    return sections


def merge_config_layers(
    layers: list[tuple[Path, dict[str, dict[str, Any]]]],
) -> dict[str, dict[str, Any]]:
    """Merge *layers* given lowest precedence first.

    A later layer overrides single settings, not whole sections.
    """
    merged: dict[str, dict[str, Any]] = {}
    for path, sections in layers:
        for name, settings in sections.items():
            target = merged.setdefault(name, {})
            for key, value in settings.items():
                if key in target and target[key] != value:
                    logger.debug(
                        "%s.%s = %r from %s overrides %r",
                        name,
                        key,
                        value,
                        path,
                        target[key],
                    )
                target[key] = value
    return merged


def load_hierarchical_config(root: Path) -> dict[str, dict[str, Any]]:
    """Load and merge every config file that applies to *root*.

    Returns an empty dict when no file exists (zero-config).
    """
    paths = discover_config_files(root)
    if not paths:
        logger.debug("No config files found, using defaults")
        return {}

    layers = []
    for path in reversed(paths):
        logger.debug("Loading config: %s", path)
        layers.append((path, read_config_file(path)))
    return merge_config_layers(layers)


# ---------------------------------------------------------------------------
# Bootstrapping
# ---------------------------------------------------------------------------


def ensure_config(
    root: Path,
    id_prefix: str,
    remote: str,
    branch: str,
) -> Path:
    """Ensure ``.tbd/config.yml`` exists under *root*.

    An existing project config is returned unchanged.  Otherwise a config
    recording the given sync settings is written.

    Returns:
        Path to the config file (existing or newly created).
    """
    config_path = project_config_path(root)
    if config_path.exists():
        logger.debug("Config file already exists: %s", config_path)
        return config_path

    data = {
        "display": {"id_prefix": id_prefix},
        "sync": {"branch": branch, "remote": remote},
    }
    write_file_atomic(
        config_path,
        CONFIG_HEADER
        + yaml.safe_dump(data, sort_keys=True, default_flow_style=False),
    )
    logger.info("Created config: %s", config_path)
    return config_path
