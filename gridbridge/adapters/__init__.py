"""Adapters package - Bridge between the engine and the outside world.

Observer channels, the filesystem watcher, process discovery and
attribution of unbridged changes live here.
"""
from __future__ import annotations

__all__ = [
    "BroadcastHub",
    "ObserverChannel",
    "FilesystemWatcher",
    "ObserverCoordinator",
    "ProcessDiscovery",
]

from gridbridge.adapters.broadcast import BroadcastHub, ObserverChannel
from gridbridge.adapters.fs_watcher import FilesystemWatcher
from gridbridge.adapters.observer import ObserverCoordinator
from gridbridge.adapters.process_discovery import ProcessDiscovery
