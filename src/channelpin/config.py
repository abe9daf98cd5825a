from __future__ import annotations

import json
import os
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from platformdirs import user_config_path, user_data_path

from .client import DEFAULT_TIMEOUT_S, ChannelpinError

APP_NAME = "channelpin"


class ConfigError(ChannelpinError):
    pass


@dataclass(frozen=True)
class Config:
    state_dir: str | None = None  # None -> platformdirs user data dir
    timeout_s: float = DEFAULT_TIMEOUT_S


def config_path(path_override: str | Path | None = None) -> Path:
    if path_override is not None:
        return Path(path_override).expanduser()
    if env := os.getenv("CHANNELPIN_CONFIG_PATH"):
        return Path(env).expanduser()
    return user_config_path(APP_NAME) / "config.json"


def default_state_dir() -> Path:
    return user_data_path(APP_NAME)


def resolve_state_dir(cfg: Config) -> Path:
    if cfg.state_dir:
        return Path(cfg.state_dir).expanduser()
    return default_state_dir()


def load_config(path_override: str | Path | None = None) -> Config:
    path = config_path(path_override)
    if not path.exists():
        return Config()

    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in config file {path}: {e}") from e
    if not isinstance(raw, dict):
        return Config()

    allowed = {f.name for f in Config.__dataclass_fields__.values()}  # type: ignore[attr-defined]
    filtered: dict[str, Any] = {k: v for k, v in raw.items() if k in allowed}
    if "timeout_s" in filtered:
        try:
            filtered["timeout_s"] = float(filtered["timeout_s"])
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid timeout_s in config file {path}: {filtered['timeout_s']!r}") from e
    return Config(**filtered)  # type: ignore[arg-type]


def save_config(cfg: Config, path_override: str | Path | None = None) -> Path:
    path = config_path(path_override)
    path.parent.mkdir(parents=True, exist_ok=True)

    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(asdict(cfg), indent=2, sort_keys=True) + "\n", encoding="utf-8")
    tmp.replace(path)
    return path


def merge_overrides(base: Config, *, state_dir: str | None = None, timeout_s: float | str | None = None) -> Config:
    # Env overrides config; explicit arguments override both.
    state_dir_final = state_dir or os.getenv("CHANNELPIN_STATE_DIR") or base.state_dir
    timeout_raw = timeout_s or os.getenv("CHANNELPIN_TIMEOUT_S") or base.timeout_s
    try:
        timeout_f = float(timeout_raw)
    except (TypeError, ValueError):
        timeout_f = base.timeout_s
    return Config(state_dir=state_dir_final, timeout_s=timeout_f)
