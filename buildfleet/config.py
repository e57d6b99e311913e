"""TOML-based cloud configuration.

Loads ~/.buildfleet/defaults.toml (global) and buildfleet.toml (project),
merges them, and resolves the result into an immutable CloudConfig.

Example buildfleet.toml::

    [cloud]
    name = "gce"
    project = "my-project"
    instance_cap = 10

    [cloud.preemption]
    policy = "replace"
    monitor_interval = 15

    [logging]
    level = "DEBUG"

    [[configurations]]
    name_prefix = "agent"
    zone = "us-central1-a"
    num_executors = "2"
    labels = "linux docker"
    preemptible = true
    google_labels = { team = "ci" }
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any

from buildfleet.api.model import InstanceConfiguration
from buildfleet.core.exceptions import ConfigurationError
from buildfleet.observability.logging import LogConfig
from buildfleet.spec.preemption import Preemption, normalize_preemption

if TYPE_CHECKING:
    from buildfleet.client.base import ComputeClient
    from buildfleet.cloud import ComputeEngineCloud

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".buildfleet" / "defaults.toml"
PROJECT_CONFIG_NAME = "buildfleet.toml"

_CLOUD_KEYS = frozenset({"name", "project", "instance_cap", "terminate_on_close", "preemption"})


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_cfg = _read_toml((project_dir or Path.cwd()) / PROJECT_CONFIG_NAME)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("cloud", {})
    merged.setdefault("configurations", [])
    return merged


@dataclass(frozen=True, slots=True)
class CloudConfig:
    """Resolved, immutable cloud settings."""

    name: str = "gce"
    project: str | None = None
    instance_cap: int | None = None
    terminate_on_close: bool = True
    preemption: Preemption = Preemption()
    configurations: tuple[InstanceConfiguration, ...] = ()
    logging: LogConfig | None = None

    async def create_cloud(self, client: ComputeClient | None = None) -> ComputeEngineCloud:
        """Build the cloud, creating a GCEClient when none is given."""
        from buildfleet.cloud import ComputeEngineCloud

        if client is None:
            from buildfleet.client.gce import GCEClient

            client = gce = await GCEClient.create(self.project)
            project = gce.project
        elif self.project is None:
            raise ConfigurationError("A project is required when passing a client")
        else:
            project = self.project

        return ComputeEngineCloud(
            name=self.name,
            client=client,
            project=project,
            configurations=self.configurations,
            instance_cap=self.instance_cap,
            preemption=self.preemption,
            terminate_on_close=self.terminate_on_close,
            logging=self.logging or False,
        )


def parse_config(raw: RawConfig) -> CloudConfig:
    cloud = dict(raw.get("cloud", {}))
    unknown = set(cloud) - _CLOUD_KEYS
    if unknown:
        raise ConfigurationError(f"Unknown [cloud] keys: {', '.join(sorted(unknown))}")

    raw_configurations = raw.get("configurations", [])
    if not isinstance(raw_configurations, list):
        raise ConfigurationError("'configurations' must be an array of tables")

    raw_logging = raw.get("logging")
    try:
        logging = LogConfig.from_mapping(raw_logging) if raw_logging is not None else None
    except TypeError as e:
        raise ConfigurationError(f"Invalid [logging] section: {e}") from e

    try:
        preemption = normalize_preemption(cloud.pop("preemption", None))
    except TypeError as e:
        raise ConfigurationError(f"Invalid [cloud.preemption] section: {e}") from e

    return CloudConfig(
        preemption=preemption,
        configurations=tuple(InstanceConfiguration.from_mapping(c) for c in raw_configurations),
        logging=logging,
        **cloud,
    )


def resolve_cloud(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> CloudConfig:
    """Load, merge and parse the configuration files."""
    return parse_config(load_config(project_dir=project_dir, global_path=global_path))


__all__ = ["CloudConfig", "load_config", "parse_config", "resolve_cloud"]
