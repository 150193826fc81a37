"""Configuration loader for the test-run engine."""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

ENV_PREFIX = "TESTBRICK_"

DEFAULTS: Dict[str, Any] = {
    "locator_timeout_ms": 5000,
    "assertion_timeout_ms": 5000,
    "navigation_timeout_ms": 30000,
    "headless": True,
    "max_concurrent_runs": 4,
    "record_video": True,
    "video_dir": "videos",
    "viewport_width": 1280,
    "viewport_height": 720,
    "store_path": "",
    "catalog_path": "",
}


def _as_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in {"true", "1", "yes", "on"}


@dataclass(slots=True)
class RunConfig:
    locator_timeout_ms: int = DEFAULTS["locator_timeout_ms"]
    assertion_timeout_ms: int = DEFAULTS["assertion_timeout_ms"]
    navigation_timeout_ms: int = DEFAULTS["navigation_timeout_ms"]
    headless: bool = DEFAULTS["headless"]
    max_concurrent_runs: int = DEFAULTS["max_concurrent_runs"]
    record_video: bool = DEFAULTS["record_video"]
    video_dir: Path = field(default_factory=lambda: Path(DEFAULTS["video_dir"]))
    viewport_width: int = DEFAULTS["viewport_width"]
    viewport_height: int = DEFAULTS["viewport_height"]
    store_path: Optional[Path] = None
    catalog_path: Optional[Path] = None

    @classmethod
    def from_mapping(cls, mapping: Dict[str, Any]) -> "RunConfig":
        data = dict(DEFAULTS)
        data.update({key: value for key, value in mapping.items() if key in DEFAULTS})
        store_path = str(data["store_path"] or "").strip()
        catalog_path = str(data["catalog_path"] or "").strip()
        return cls(
            locator_timeout_ms=int(data["locator_timeout_ms"]),
            assertion_timeout_ms=int(data["assertion_timeout_ms"]),
            navigation_timeout_ms=int(data["navigation_timeout_ms"]),
            headless=_as_bool(data["headless"]),
            max_concurrent_runs=max(1, int(data["max_concurrent_runs"])),
            record_video=_as_bool(data["record_video"]),
            video_dir=Path(data["video_dir"]),
            viewport_width=int(data["viewport_width"]),
            viewport_height=int(data["viewport_height"]),
            store_path=Path(store_path) if store_path else None,
            catalog_path=Path(catalog_path) if catalog_path else None,
        )


def _load_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    with path.open("rb") as fh:
        return tomllib.load(fh)


def load_config(config_path: Path | None = None) -> RunConfig:
    """Load configuration from environment, optional TOML file, and defaults."""

    env_map: Dict[str, Any] = {}
    for key, value in os.environ.items():
        if key.startswith(ENV_PREFIX):
            env_map[key[len(ENV_PREFIX):].lower()] = value

    file_map: Dict[str, Any] = {}
    path = config_path or Path(os.getenv(f"{ENV_PREFIX}CONFIG", "config.toml"))
    if path.exists():
        file_map = _load_toml(path).get("runner", {})

    merged = {**file_map, **env_map}
    return RunConfig.from_mapping(merged)
