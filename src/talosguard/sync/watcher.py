#!/usr/bin/env python3
"""
TALOSGUARD SYNC WATCHER
-----------------------
After a ``git push`` the cluster is expected to converge through ArgoCD.
The watcher polls ``argocd app list -o json`` until every app is synced,
one of them fails, or the deadline passes. A timeout is reported as a
probable failure: silence from ArgoCD is not success.

The watcher only observes. It produces a report and never a decision.
"""

import json
import time
import logging
import subprocess
from dataclasses import dataclass, field
from typing import Any, Callable, List, Optional

logger = logging.getLogger("talosguard.sync")

SYNCED = "synced"
FAILED = "failed"
TIMEOUT = "timeout"
UNAVAILABLE = "unavailable"

ARGOCD_LIST = ["argocd", "app", "list", "-o", "json"]


class SyncToolError(Exception):
    """The argocd CLI failed or returned something unreadable."""


@dataclass
class AppSyncStatus:
    app: str
    sync_status: str = "Unknown"
    health_status: str = "Unknown"
    message: Optional[str] = None

    @property
    def is_failed(self) -> bool:
        return self.sync_status == "Failed" or self.health_status == "Degraded"

    @property
    def is_pending(self) -> bool:
        return self.sync_status in ("Syncing", "OutOfSync")

    @property
    def is_settled(self) -> bool:
        return self.sync_status == "Synced" and self.health_status == "Healthy"


@dataclass
class SyncReport:
    outcome: str
    apps: List[AppSyncStatus] = field(default_factory=list)
    error: Optional[str] = None
    elapsed: float = 0.0

    @property
    def problem_apps(self) -> List[AppSyncStatus]:
        if self.outcome == FAILED:
            return [a for a in self.apps if a.is_failed]
        return [a for a in self.apps if not a.is_settled]


def _dig(data: Any, *keys: str) -> Any:
    for key in keys:
        if not isinstance(data, dict):
            return None
        data = data.get(key)
    return data


def parse_app_list(raw: str) -> List[AppSyncStatus]:
    """Decodes the JSON array printed by ``argocd app list -o json``."""
    try:
        apps = json.loads(raw)
    except json.JSONDecodeError as e:
        raise SyncToolError(f"argocd returned invalid JSON: {e}") from e
    if not isinstance(apps, list):
        raise SyncToolError("argocd returned a non-list document")

    statuses = []
    for app in apps:
        conditions = _dig(app, "status", "conditions")
        first = conditions[0] if isinstance(conditions, list) and conditions else None
        statuses.append(AppSyncStatus(
            app=_dig(app, "metadata", "name") or "unknown",
            sync_status=_dig(app, "status", "sync", "status") or "Unknown",
            health_status=_dig(app, "status", "health", "status") or "Unknown",
            message=_dig(first, "message"),
        ))
    return statuses


def fetch_argocd_status(timeout: float = 5.0) -> List[AppSyncStatus]:
    try:
        proc = subprocess.run(ARGOCD_LIST, capture_output=True, text=True, timeout=timeout)
    except FileNotFoundError as e:
        raise SyncToolError("argocd CLI not found") from e
    except subprocess.TimeoutExpired as e:
        raise SyncToolError(f"argocd app list timed out after {timeout:g}s") from e

    if proc.returncode != 0:
        raise SyncToolError(proc.stderr.strip() or f"argocd exited with status {proc.returncode}")
    return parse_app_list(proc.stdout)


class SyncWatcher:

    def __init__(self, fetch: Callable[[], List[AppSyncStatus]] = fetch_argocd_status,
                 timeout: float = 30.0, interval: float = 2.0,
                 clock: Callable[[], float] = time.monotonic,
                 sleep: Callable[[float], None] = time.sleep):
        self.fetch = fetch
        self.timeout = timeout
        self.interval = interval
        self._clock = clock
        self._sleep = sleep

    def watch(self) -> SyncReport:
        start = self._clock()
        last: List[AppSyncStatus] = []

        while self._clock() - start < self.timeout:
            try:
                apps = self.fetch()
            except SyncToolError as e:
                logger.warning(f"Could not check ArgoCD status: {e}")
                return SyncReport(UNAVAILABLE, last, error=str(e), elapsed=self._clock() - start)

            if any(a.is_failed for a in apps):
                return SyncReport(FAILED, apps, elapsed=self._clock() - start)
            if not any(a.is_pending for a in apps):
                return SyncReport(SYNCED, apps, elapsed=self._clock() - start)

            logger.debug(f"{sum(a.is_pending for a in apps)} apps still syncing")
            last = apps
            self._sleep(self.interval)

        return SyncReport(TIMEOUT, last, elapsed=self._clock() - start)
