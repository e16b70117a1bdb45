"""Watcher implementations used by the ovnkube agent."""

from .kube import ResourceWatcher  # noqa: F401

__all__ = ["ResourceWatcher"]
