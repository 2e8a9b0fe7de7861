#!/usr/bin/env python3
"""
TALOSGUARD CONFIG
-----------------
Runtime settings resolved from the environment of the hook process.
Every value has a working default; a malformed variable falls back to
the default instead of failing the invocation.
"""

import os
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

logger = logging.getLogger("talosguard.config")

BOOTSTRAP_ENV = "TALOS_GITOPS_BOOTSTRAP"
STATE_FILE_ENV = "TALOS_GITOPS_STATE_FILE"
HTTP_TIMEOUT_ENV = "TALOS_GITOPS_HTTP_TIMEOUT"
HELM_TEMPLATE_ENV = "TALOS_GITOPS_HELM_TEMPLATE"
LOG_LEVEL_ENV = "TALOS_GITOPS_LOG_LEVEL"

DEFAULT_STATE_FILE = "/tmp/talos-gitops-ops-session.json"


def _flag(environ: Mapping[str, str], name: str) -> bool:
    # Only the literal string "true" switches a flag on
    return environ.get(name) == "true"


def _seconds(environ: Mapping[str, str], name: str, default: float) -> float:
    raw = environ.get(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError:
        logger.warning(f"Ignoring {name}={raw!r}: not a number. Using {default}s")
        return default
    return value if value > 0 else default


@dataclass
class GuardConfig:
    bootstrap: bool = False
    state_file: Path = Path(DEFAULT_STATE_FILE)
    cache_ttl: float = 30.0
    http_timeout: float = 5.0
    helm_timeout: float = 10.0
    helm_template: bool = False
    sync_timeout: float = 30.0
    sync_poll_interval: float = 2.0
    log_level: str = "WARNING"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "GuardConfig":
        env = os.environ if environ is None else environ
        return cls(
            bootstrap=_flag(env, BOOTSTRAP_ENV),
            state_file=Path(env.get(STATE_FILE_ENV) or DEFAULT_STATE_FILE),
            http_timeout=_seconds(env, HTTP_TIMEOUT_ENV, 5.0),
            helm_template=_flag(env, HELM_TEMPLATE_ENV),
            log_level=(env.get(LOG_LEVEL_ENV) or "WARNING").upper(),
        )
