"""Novum Configuration — project-level .novumrc.json support.

Loads configuration from .novumrc.json (or novum.config.json) found by
walking up from the source directory. Two environment toggles override
the file at every decision point; they are re-read each time they are
consulted, never cached:

  NOVUM_NO_DIV_GUARD   disable the floating-point division-by-zero guard
  NOVUM_DEBUG          suppress the post-lowering optimization passes

Example .novumrc.json:
    {
      "division_guard": true,
      "optimize": true,
      "loop_passes": false,
      "module_name": "novum",
      "speed_level": 2
    }
"""

from __future__ import annotations

import os
import json
import logging
from dataclasses import dataclass
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

ENV_NO_DIV_GUARD = "NOVUM_NO_DIV_GUARD"
ENV_DEBUG = "NOVUM_DEBUG"

_TRUTHY = ("1", "true", "yes", "on")


def env_flag(name: str) -> bool:
    """Whether the environment variable *name* holds a truthy value."""
    return os.environ.get(name, "").strip().lower() in _TRUTHY


@dataclass
class CompilerConfig:
    """Compilation settings."""
    division_guard: bool = True
    optimize: bool = True
    # Adds loop-simplify and loop-rotate to the function pass pipeline
    loop_passes: bool = False
    module_name: str = "novum"
    speed_level: int = 2

    def division_guard_enabled(self) -> bool:
        return self.division_guard and not env_flag(ENV_NO_DIV_GUARD)

    def optimization_enabled(self) -> bool:
        return self.optimize and not env_flag(ENV_DEBUG)


# ---------------------------------------------------------------------------
# Config file names (in priority order)
# ---------------------------------------------------------------------------

_CONFIG_FILES = [
    ".novumrc.json",
    "novum.config.json",
]


def find_config(start_dir: str = ".") -> Optional[str]:
    """Find the nearest config file by walking up from start_dir."""
    current = os.path.abspath(start_dir)
    while True:
        for name in _CONFIG_FILES:
            path = os.path.join(current, name)
            if os.path.isfile(path):
                return path
        parent = os.path.dirname(current)
        if parent == current:
            break
        current = parent
    return None


def load_config(path: Optional[str] = None, start_dir: str = ".") -> CompilerConfig:
    """Load configuration from a file.

    If no path is given, searches for a config file starting from start_dir.
    If no config file is found, or it cannot be read, returns defaults.
    """
    if path is None:
        path = find_config(start_dir)

    if path is None:
        return CompilerConfig()

    try:
        with open(path, "r") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("ignoring unreadable config file %s: %s", path, e)
        return CompilerConfig()

    if not isinstance(data, dict):
        logger.warning("ignoring config file %s: top level is not an object", path)
        return CompilerConfig()

    logger.debug("loaded config from %s", path)
    return _dict_to_config(data)


def _dict_to_config(data: Dict[str, Any]) -> CompilerConfig:
    """Convert a parsed dict to CompilerConfig."""
    config = CompilerConfig()

    if "division_guard" in data:
        config.division_guard = bool(data["division_guard"])
    if "optimize" in data:
        config.optimize = bool(data["optimize"])
    if "loop_passes" in data:
        config.loop_passes = bool(data["loop_passes"])
    if "module_name" in data:
        config.module_name = str(data["module_name"])
    if "speed_level" in data:
        config.speed_level = min(3, max(0, int(data["speed_level"])))

    return config
