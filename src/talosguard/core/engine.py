#!/usr/bin/env python3
"""
TALOSGUARD ENGINE - The Orchestrator
------------------------------------
GuardEngine turns one tool event into exactly one Decision.

    command path:  repo check -> load session -> rule table -> save session
    edit path:     repo check -> parse YAML -> application / values checks
                   -> aggregate diagnostics into deny / ask / allow
    post-push:     repo check -> watch ArgoCD converge (report only)

The engine is fail-open on its own malformation: an event it cannot
read, or a working directory outside a GitOps repository, is allowed
without further checks. Only deliberately classified violations deny
or ask.
"""

import os
import time
import logging
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

from ruamel.yaml.error import YAMLError

from talosguard.context.detector import ContextDetector
from talosguard.core.config import GuardConfig
from talosguard.core.models import (
    AppDefinition, ClusterContext, Decision, HookEvent, ValidationError, ERROR, WARNING,
)
from talosguard.core.yamlio import load_document, is_mapping
from talosguard.rules.commands import classify_command, GIT_PUSH_PATTERN
from talosguard.state.session import SessionStore
from talosguard.sync.watcher import SyncReport, SyncWatcher
from talosguard.validator.application import ApplicationValidator
from talosguard.validator.helm import HelmTemplateValidator
from talosguard.validator.remote import RemoteChecker
from talosguard.validator.values import ValuesValidator

logger = logging.getLogger("talosguard.engine")

COMMAND_TOOLS = ("Bash",)
EDIT_TOOLS = ("Edit", "Write")
YAML_SUFFIXES = (".yaml", ".yml")


def is_yaml_path(file_path: str) -> bool:
    return file_path.endswith(YAML_SUFFIXES)


def decide(errors: List[ValidationError]) -> Decision:
    """
    Collapses a batch of diagnostics: any error denies (with fixes),
    otherwise any warning asks (without fixes), otherwise allow.
    """
    blocking = [e for e in errors if e.severity == ERROR]
    if blocking:
        lines = "\n".join(e.render(with_fix=True) for e in blocking)
        return Decision.deny(f"Validation errors:\n{lines}")

    warnings = [e for e in errors if e.severity == WARNING]
    if warnings:
        lines = "\n".join(e.render(with_fix=False) for e in warnings)
        return Decision.ask(f"Warnings:\n{lines}\n\nProceed anyway?")

    return Decision.allow()


def summarize(errors: List[ValidationError]) -> Dict[str, Any]:
    return {
        "total": len(errors),
        "errors": sum(1 for e in errors if e.severity == ERROR),
        "warnings": sum(1 for e in errors if e.severity == WARNING),
        "files": len({e.file for e in errors}),
        "summary_timestamp": time.strftime("%Y-%m-%d %H:%M:%S"),
    }


class GuardEngine:
    """
    Holds the long-lived collaborators of the guard. Tests build one
    with fakes; the CLI builds one from the environment.
    """

    def __init__(self, config: Optional[GuardConfig] = None,
                 detector: Optional[ContextDetector] = None,
                 store: Optional[SessionStore] = None,
                 remote: Optional[RemoteChecker] = None,
                 helm: Optional[HelmTemplateValidator] = None,
                 watcher: Optional[SyncWatcher] = None):
        self.config = config or GuardConfig()
        self.detector = detector or ContextDetector(ttl=self.config.cache_ttl)
        self.store = store or SessionStore(self.config.state_file)
        self.remote = remote or RemoteChecker(timeout=self.config.http_timeout)
        self.helm = helm or HelmTemplateValidator(timeout=self.config.helm_timeout)
        self.watcher = watcher or SyncWatcher(
            timeout=self.config.sync_timeout, interval=self.config.sync_poll_interval
        )
        self.application_validator = ApplicationValidator(self.remote)
        self.values_validator = ValuesValidator()

    @classmethod
    def from_env(cls) -> "GuardEngine":
        return cls(GuardConfig.from_env())

    # --- COMMAND PATH ---

    def handle_command(self, event: Optional[HookEvent], cwd: Any = None) -> Decision:
        if event is None or event.tool_name not in COMMAND_TOOLS:
            return Decision.allow()
        command = event.command
        # An empty command would match the default last_command of a fresh session
        if not command or not command.strip():
            return Decision.allow()

        if not self.detector.is_gitops_repo(cwd or os.getcwd()):
            return Decision.allow()

        state = self.store.load()
        decision = classify_command(command, state, bootstrap=self.config.bootstrap)
        # Saved whatever the decision; a failed save only weakens the next check
        self.store.save(state)

        if not decision.is_allow:
            logger.info(f"{decision.permission.upper()}: {command[:80]}")
        return decision

    # --- EDIT PATH ---

    def handle_edit(self, event: Optional[HookEvent], cwd: Any = None) -> Decision:
        if event is None or event.tool_name not in EDIT_TOOLS:
            return Decision.allow()
        file_path = event.file_path
        if not file_path or not is_yaml_path(file_path):
            return Decision.allow()

        if not self.detector.is_gitops_repo(cwd or os.getcwd()):
            return Decision.allow()

        context = self.detector.detect(cwd or os.getcwd())
        errors = self.validate_content(file_path, event.content, context)
        return decide(errors)

    def validate_content(self, file_path: str, content: str,
                         context: Optional[ClusterContext] = None) -> List[ValidationError]:
        """
        Runs the edit pipeline on ``content`` as the new body of
        ``file_path``. Diagnostics keep insertion order.
        """
        # --- PHASE 1: SYNTAX ---
        try:
            doc = load_document(content)
        except (YAMLError, ValueError) as e:
            # Everything downstream needs a parsed document
            return [ValidationError(file=file_path, severity=ERROR, message=f"Invalid YAML: {e}")]

        errors: List[ValidationError] = []

        # --- PHASE 2: APPLICATION MANIFESTS ---
        if "application" in file_path and is_mapping(doc) and doc.get("kind") == "Application":
            errors.extend(self.application_validator.validate(doc, file_path))

        # --- PHASE 3: HELM VALUES ---
        if "values" in file_path:
            app = context.app_for_path(file_path) if context else None
            errors.extend(self.values_validator.validate(doc, content, file_path, app))
            if self.config.helm_template and app is not None and app.chart.name:
                errors.extend(self._render_values(content, file_path, app))

        return errors

    def _render_values(self, content: str, file_path: str,
                       app: AppDefinition) -> List[ValidationError]:
        # helm reads values from disk; render the proposed content, not the old file
        tmp = tempfile.NamedTemporaryFile("w", suffix=".yaml", delete=False, encoding='utf-8')
        try:
            with tmp:
                tmp.write(content)
            return self.helm.validate(app.chart, tmp.name, app.namespace, display_path=file_path)
        finally:
            try:
                os.unlink(tmp.name)
            except OSError:
                pass

    def validate_file(self, path: Path) -> List[ValidationError]:
        """Validates a file already on disk, as if it were being written."""
        content = path.read_text(encoding='utf-8-sig')
        context = self.detector.detect(path.parent)
        return self.validate_content(str(path), content, context)

    # --- POST-PUSH ---

    def handle_post_command(self, event: Optional[HookEvent], cwd: Any = None) -> Optional[SyncReport]:
        """Watches ArgoCD after a git push. Returns None when nothing was watched."""
        if event is None or event.tool_name not in COMMAND_TOOLS:
            return None
        command = event.command
        if not command or not GIT_PUSH_PATTERN.search(command):
            return None
        if not self.detector.is_gitops_repo(cwd or os.getcwd()):
            return None

        logger.info("Waiting for ArgoCD sync...")
        # The push changed what the repo declares
        self.detector.invalidate()
        return self.watcher.watch()
