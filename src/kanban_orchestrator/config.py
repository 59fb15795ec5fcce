"""Load engine settings from `.kanban/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from .constants import (
    DEFAULT_MAX_ERROR_OUTPUT,
    DEFAULT_PIPELINE_WORKERS,
    DEFAULT_SCRIPT_TIMEOUT_SECONDS,
    POSITION_GAP,
    POSITION_INITIAL,
    POSITION_SCALE,
    SCHEMA_VERSION,
)


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value > 0 else default


def _non_negative_int(raw: Any, default: int) -> int:
    try:
        value = int(raw)
    except (TypeError, ValueError):
        return default
    return value if value >= 0 else default


@dataclass(frozen=True)
class EngineConfig:
    """Immutable view over the `positions`, `hooks` and `board` config blocks."""

    position_gap: int = POSITION_GAP
    position_initial: int = POSITION_INITIAL
    position_scale: int = POSITION_SCALE
    script_timeout_seconds: int = DEFAULT_SCRIPT_TIMEOUT_SECONDS
    max_error_output: int = DEFAULT_MAX_ERROR_OUTPUT
    pipeline_workers: int = DEFAULT_PIPELINE_WORKERS
    entry_column_id: Optional[str] = None

    @classmethod
    def from_dict(cls, config: dict[str, Any]) -> "EngineConfig":
        """Build a config from the raw YAML mapping.

        Args:
            config: Parsed `config.yaml` contents. Missing or invalid values fall
                back to the defaults in `constants`.

        Returns:
            The resolved `EngineConfig`.
        """
        entry = _get_nested(config, "board", "entry_column_id")
        return cls(
            position_gap=_positive_int(_get_nested(config, "positions", "gap"), POSITION_GAP),
            position_initial=_non_negative_int(_get_nested(config, "positions", "initial"), POSITION_INITIAL),
            position_scale=_non_negative_int(_get_nested(config, "positions", "scale"), POSITION_SCALE),
            script_timeout_seconds=_positive_int(
                _get_nested(config, "hooks", "script_timeout_seconds"), DEFAULT_SCRIPT_TIMEOUT_SECONDS
            ),
            max_error_output=_positive_int(_get_nested(config, "hooks", "max_error_output"), DEFAULT_MAX_ERROR_OUTPUT),
            pipeline_workers=_positive_int(_get_nested(config, "hooks", "pipeline_workers"), DEFAULT_PIPELINE_WORKERS),
            entry_column_id=str(entry) if entry else None,
        )


def default_config() -> dict[str, Any]:
    return {
        "schema_version": SCHEMA_VERSION,
        "positions": {"gap": POSITION_GAP, "initial": POSITION_INITIAL, "scale": POSITION_SCALE},
        "hooks": {
            "script_timeout_seconds": DEFAULT_SCRIPT_TIMEOUT_SECONDS,
            "max_error_output": DEFAULT_MAX_ERROR_OUTPUT,
            "pipeline_workers": DEFAULT_PIPELINE_WORKERS,
        },
        "board": {"entry_column_id": None},
    }
