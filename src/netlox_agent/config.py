"""YAML configuration loader for the netlox agent."""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence

import yaml

from netlox_lb.config import ProviderSettings

STORE_TYPES = ("memory", "kubernetes")
POOL_PREFIXES = ("cidr-", "range-")


@dataclass
class StoreConfig:
    type: str = "memory"
    in_cluster: bool = True
    kubeconfig: Optional[Path] = None


@dataclass
class WatcherConfig:
    type: str
    path: Path
    interval: float = 5.0
    options: dict = field(default_factory=dict)


@dataclass
class AgentConfig:
    provider: ProviderSettings = field(default_factory=ProviderSettings)
    store: StoreConfig = field(default_factory=StoreConfig)
    pools: Dict[str, str] = field(default_factory=dict)
    watchers: Sequence[WatcherConfig] = field(default_factory=list)


def _parse_store(section: dict) -> StoreConfig:
    store_type = str(section.get("type", "memory"))
    if store_type not in STORE_TYPES:
        raise ValueError(f"Unsupported store type '{store_type}'")
    kubeconfig = section.get("kubeconfig")
    return StoreConfig(
        type=store_type,
        in_cluster=bool(section.get("in_cluster", kubeconfig is None)),
        kubeconfig=Path(kubeconfig) if kubeconfig else None,
    )


def _parse_pools(section: dict) -> Dict[str, str]:
    pools: Dict[str, str] = {}
    for key, value in section.items():
        key = str(key)
        if not key.startswith(POOL_PREFIXES):
            raise ValueError(f"pool key '{key}' must start with 'cidr-' or 'range-'")
        pools[key] = str(value)
    return pools


def _parse_watchers(entries: Iterable[dict]) -> List[WatcherConfig]:
    watchers: List[WatcherConfig] = []
    for entry in entries:
        options = entry.get("options", {})
        if not isinstance(options, dict):
            raise ValueError("watcher 'options' must be a mapping if provided")
        watchers.append(
            WatcherConfig(
                type=str(entry["type"]),
                path=Path(entry.get("path", ".")),
                interval=float(entry.get("interval", entry.get("poll_interval", 5.0))),
                options=options,
            )
        )
    return watchers


def _section(data: dict, name: str, kind: type):
    value = data.get(name)
    if value is None:
        return kind()
    if not isinstance(value, kind):
        raise ValueError(f"'{name}' section must be a {'list' if kind is list else 'mapping'}")
    return value


def load_config(path: Path) -> AgentConfig:
    data = yaml.safe_load(path.read_text())
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValueError("Agent configuration must be a mapping")

    return AgentConfig(
        provider=ProviderSettings.from_mapping(
            _section(data, "provider", dict), base=ProviderSettings.from_env()
        ),
        store=_parse_store(_section(data, "store", dict)),
        pools=_parse_pools(_section(data, "pools", dict)),
        watchers=_parse_watchers(_section(data, "watchers", list)),
    )
