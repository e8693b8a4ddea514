from __future__ import annotations

from procusage.core.config import SamplerConfig
from procusage.core.exceptions import ConfigError
from procusage.sources.base import SnapshotSource
from procusage.sources.pdh import PdhCounterSource
from procusage.sources.psutil_source import PsutilSource
from procusage.sources.typeperf import TypeperfSource


def build_source(config: SamplerConfig) -> SnapshotSource:
    if config.backend == "psutil":
        return PsutilSource()
    if config.backend == "typeperf":
        return TypeperfSource(timeout_seconds=config.command_timeout_seconds)
    if config.backend == "pdh":
        return PdhCounterSource(base_instance_name=config.base_instance_name)
    raise ConfigError(f"Unknown backend: {config.backend}")
