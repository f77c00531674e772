"""Watcher implementations used by the netlox agent."""

from .cluster import KubernetesServiceWatcher, create_kubernetes_watcher  # noqa: F401
from .file import FileServiceWatcher  # noqa: F401
from .state import ServiceStateTracker  # noqa: F401

__all__ = [
    "FileServiceWatcher",
    "KubernetesServiceWatcher",
    "ServiceStateTracker",
    "create_kubernetes_watcher",
]
