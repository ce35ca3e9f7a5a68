# sigrid: Lightweight YAML settings loader for a workspace.

from __future__ import annotations

import logging
import pathlib
from typing import Any, Dict

import yaml

from .config import SIGRID_DIR

logger = logging.getLogger(__name__)


def load_settings(repo_root: pathlib.Path) -> Dict[str, Any]:
    """
    Load workspace settings from <root>/.sigrid/settings.yaml or settings.yml.

    Returns an empty dict {} when the settings file is missing, unreadable, or
    does not contain a mapping. The function never raises.
    """
    sigrid_dir = pathlib.Path(repo_root) / SIGRID_DIR
    candidates = [sigrid_dir / "settings.yaml", sigrid_dir / "settings.yml"]
    for p in candidates:
        try:
            if p.exists() and p.is_file():
                data = yaml.safe_load(p.read_text(encoding="utf-8"))
                if isinstance(data, dict):
                    return data
                # Non-mapping YAML is treated as empty settings.
                return {}
        except (OSError, yaml.YAMLError) as e:
            logger.warning("Could not read settings from %s: %s", p, e)
            continue
    return {}


def get_section(settings: Dict[str, Any], name: str) -> Dict[str, Any]:
    """Return settings[name] when it is a mapping, else {}."""
    section = (settings or {}).get(name)
    return section if isinstance(section, dict) else {}
