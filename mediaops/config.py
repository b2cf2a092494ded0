from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from mediaops.utils import load_config

_DEFAULT_MAX_WORKERS = 4
_DEFAULT_RETENTION_SECONDS = 3600.0
_DEFAULT_MAX_RECORDS = 1000
_ENV_PREFIX = "MEDIAOPS_"


def coerce_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.lower() in {"true", "1", "yes", "on"}
    if value is None:
        return default
    return bool(value)


def coerce_float(value: Any, default: float) -> float:
    try:
        return max(0.0, float(value))
    except (TypeError, ValueError):
        return default


def coerce_optional_float(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def coerce_int(value: Any, default: int, *, minimum: int = 1, maximum: int = 10_000) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        return default
    return max(minimum, min(parsed, maximum))


@dataclass(frozen=True)
class Settings:
    ffmpeg_binary: str = "ffmpeg"
    ffprobe_binary: str = "ffprobe"
    max_workers: int = _DEFAULT_MAX_WORKERS
    step_timeout: Optional[float] = None
    retention_seconds: float = _DEFAULT_RETENTION_SECONDS
    max_records: int = _DEFAULT_MAX_RECORDS
    use_static_ffmpeg: bool = True


def _lookup(key: str, stored: Mapping[str, Any], environ: Mapping[str, str]) -> Any:
    env_value = environ.get(f"{_ENV_PREFIX}{key.upper()}")
    if env_value not in (None, ""):
        return env_value
    return stored.get(key)


def load_settings(
    overrides: Optional[Mapping[str, Any]] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Resolve settings from overrides, ``MEDIAOPS_*`` variables and config.json."""

    environ = os.environ if environ is None else environ
    stored = dict(load_config() or {})
    explicit = {key: value for key, value in (overrides or {}).items() if value is not None}
    stored.update(explicit)
    if explicit:
        # explicit overrides beat the environment
        environ = {
            key: value
            for key, value in environ.items()
            if not key.startswith(_ENV_PREFIX) or key[len(_ENV_PREFIX):].lower() not in explicit
        }

    return Settings(
        ffmpeg_binary=str(_lookup("ffmpeg_binary", stored, environ) or "ffmpeg"),
        ffprobe_binary=str(_lookup("ffprobe_binary", stored, environ) or "ffprobe"),
        max_workers=coerce_int(_lookup("max_workers", stored, environ), _DEFAULT_MAX_WORKERS, maximum=64),
        step_timeout=coerce_optional_float(_lookup("step_timeout", stored, environ)),
        retention_seconds=coerce_float(
            _lookup("retention_seconds", stored, environ), _DEFAULT_RETENTION_SECONDS
        ),
        max_records=coerce_int(_lookup("max_records", stored, environ), _DEFAULT_MAX_RECORDS, maximum=1_000_000),
        use_static_ffmpeg=coerce_bool(_lookup("use_static_ffmpeg", stored, environ), True),
    )
