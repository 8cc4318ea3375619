"""Shared execution configuration.

Reads optional defaults from ~/.weft/configuration.json (the "execution"
section) and from WEFT_* environment variables. Arguments passed to
GraphRunner always take precedence over these defaults.

The per-run ``run_config`` mapping handed to nodes is a separate thing:
it is opaque to the engine and never read here.
"""

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_MAX_STEPS = 25

# ---------------------------------------------------------------------------
# Low-level config file access
# ---------------------------------------------------------------------------

WEFT_CONFIG_FILE = Path.home() / ".weft" / "configuration.json"


def get_weft_config() -> dict[str, Any]:
    """Load configuration from ~/.weft/configuration.json."""
    if not WEFT_CONFIG_FILE.exists():
        return {}
    try:
        with open(WEFT_CONFIG_FILE, encoding="utf-8-sig") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError) as e:
        logger.warning(f"Ignoring unreadable config file {WEFT_CONFIG_FILE}: {e}")
        return {}


def _setting(env_var: str, key: str, cast: type, default: Any, section: dict[str, Any]) -> Any:
    raw = os.environ.get(env_var)
    if raw is None:
        raw = section.get(key)
    if raw is None or raw == "":
        return default
    try:
        return cast(raw)
    except (TypeError, ValueError):
        logger.warning(f"Invalid value {raw!r} for {key}; using default {default!r}")
        return default


# ---------------------------------------------------------------------------
# ExecutionConfig
# ---------------------------------------------------------------------------


@dataclass
class ExecutionConfig:
    """
    Execution limits for a run.

    Constructing the dataclass directly uses the built-in defaults. Use
    load() to pick up ~/.weft/configuration.json and WEFT_* variables.
    """

    max_steps: int = DEFAULT_MAX_STEPS
    run_timeout: float | None = None
    node_timeout: float | None = None
    max_concurrency: int | None = None

    def __post_init__(self):
        if self.max_steps < 1:
            raise ValueError(f"max_steps must be at least 1, got {self.max_steps}")
        if self.max_concurrency is not None and self.max_concurrency < 1:
            raise ValueError(f"max_concurrency must be at least 1, got {self.max_concurrency}")

    @classmethod
    def load(cls) -> "ExecutionConfig":
        """Build a config from the config file and environment, reading the file once."""
        section = get_weft_config().get("execution", {})
        return cls(
            max_steps=_setting("WEFT_MAX_STEPS", "max_steps", int, DEFAULT_MAX_STEPS, section),
            run_timeout=_setting("WEFT_RUN_TIMEOUT", "run_timeout", float, None, section),
            node_timeout=_setting("WEFT_NODE_TIMEOUT", "node_timeout", float, None, section),
            max_concurrency=_setting(
                "WEFT_MAX_CONCURRENCY", "max_concurrency", int, None, section
            ),
        )
