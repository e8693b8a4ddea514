from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator

from procusage.core.exceptions import ConfigError
from procusage.core.utils import default_instance_name, env_str

BackendName = Literal["psutil", "typeperf", "pdh"]
CpuScale = Literal["machine", "core"]

# env var -> SamplerConfig field
ENV_OVERRIDES: dict[str, str] = {
    "PROCUSAGE_BACKEND": "backend",
    "PROCUSAGE_MIN_REFRESH_INTERVAL": "min_refresh_interval_seconds",
    "PROCUSAGE_MAX_RESOLUTION_ATTEMPTS": "max_resolution_attempts",
    "PROCUSAGE_BASE_INSTANCE_NAME": "base_instance_name",
    "PROCUSAGE_CPU_SCALE": "cpu_scale",
    "PROCUSAGE_COMMAND_TIMEOUT": "command_timeout_seconds",
}


class SamplerConfig(BaseModel):
    backend: BackendName = "psutil"
    min_refresh_interval_seconds: float = 2.0
    max_resolution_attempts: int = 128
    base_instance_name: str = Field(default_factory=default_instance_name)
    cpu_scale: CpuScale = "machine"
    command_timeout_seconds: float = 10.0

    @field_validator("min_refresh_interval_seconds")
    @classmethod
    def _interval_non_negative(cls, v: float) -> float:
        if v < 0:
            raise ValueError("min_refresh_interval_seconds must be >= 0")
        return v

    @field_validator("max_resolution_attempts")
    @classmethod
    def _attempts_positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError("max_resolution_attempts must be >= 1")
        return v

    @field_validator("base_instance_name")
    @classmethod
    def _name_not_blank(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("base_instance_name must not be empty")
        if "#" in v:
            raise ValueError("base_instance_name must not contain an instance index")
        return v

    @field_validator("command_timeout_seconds")
    @classmethod
    def _timeout_positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("command_timeout_seconds must be > 0")
        return v


def load_yaml(path: Path) -> dict[str, Any]:
    try:
        with path.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {path}") from exc
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Failed reading config yaml: {path}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"Config yaml must be a mapping: {path}")
    return data


def env_overrides() -> dict[str, Any]:
    out: dict[str, Any] = {}
    for env_name, field_name in ENV_OVERRIDES.items():
        value = env_str(env_name)
        if value is not None:
            out[field_name] = value
    return out


def load_config(config_path: str | Path | None = None) -> SamplerConfig:
    load_dotenv(override=False)
    raw: dict[str, Any] = {}
    if config_path is not None:
        raw = load_yaml(Path(config_path))
        section = raw.get("sampler")
        if isinstance(section, dict):
            raw = section
    raw = {**raw, **env_overrides()}

    try:
        return SamplerConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc
