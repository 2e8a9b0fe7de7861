#!/usr/bin/env python3
"""
TALOSGUARD COMMAND RULES - The Gatekeeper
-----------------------------------------
Ordered rule table for shell commands issued inside a GitOps repository.
Cluster state must change through git: direct mutation tools are denied
(or confirmed in bootstrap mode), render/diff commands are recorded in
the session, and manual syncs are always confirmed.

Each rule pairs a pattern with an action. The first rule whose pattern
matches anywhere in the command decides; loop detection runs before the
table.
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional, Pattern, Tuple, Union

from talosguard.core.config import BOOTSTRAP_ENV
from talosguard.core.models import Decision, SessionState
from talosguard.state.session import record_command, LOOP_THRESHOLD

BOOTSTRAP_HINT = f"For bootstrap: export {BOOTSTRAP_ENV}=true"


def target_after(prefix: str) -> Callable[[str], Optional[str]]:
    """Extractor for the first whitespace-delimited token after ``prefix``."""
    pattern = re.compile(prefix + r'\s+(\S+)')

    def extract(command: str) -> Optional[str]:
        match = pattern.search(command)
        return match.group(1) if match else None

    return extract


@dataclass(frozen=True)
class BootstrapGate:
    """Deny outright, or ask for confirmation when bootstrap mode is on."""
    deny_reason: str
    bootstrap_reason: str

    def apply(self, command: str, state: SessionState, bootstrap: bool) -> Decision:
        if bootstrap:
            return Decision.ask(self.bootstrap_reason)
        return Decision.deny(self.deny_reason)


@dataclass(frozen=True)
class TrackTarget:
    """Allow, remembering the command's target app in a session bucket."""
    extract: Callable[[str], Optional[str]]
    bucket: str    # "validated_apps" or "diffed_apps"

    def apply(self, command: str, state: SessionState, bootstrap: bool) -> Decision:
        target = self.extract(command)
        if target:
            getattr(state, self.bucket).append(target)
        return Decision.allow()


@dataclass(frozen=True)
class SyncGate:
    """Manual sync is always confirmed; the wording depends on a prior diff."""
    extract: Callable[[str], Optional[str]]

    def apply(self, command: str, state: SessionState, bootstrap: bool) -> Decision:
        app = self.extract(command) or "unknown"
        if app not in state.diffed_apps:
            return Decision.ask(
                f"No 'argocd app diff {app}' in this session. Run diff first or proceed anyway?"
            )
        return Decision.ask(
            "Prefer 'git push' and let ArgoCD auto-sync. Proceed with manual sync?"
        )


@dataclass(frozen=True)
class Allow:
    def apply(self, command: str, state: SessionState, bootstrap: bool) -> Decision:
        return Decision.allow()


Action = Union[BootstrapGate, TrackTarget, SyncGate, Allow]


@dataclass(frozen=True)
class CommandRule:
    name: str
    pattern: Pattern
    action: Action

    def matches(self, command: str) -> bool:
        return self.pattern.search(command) is not None


COMMAND_RULES: Tuple[CommandRule, ...] = (
    CommandRule(
        "kubectl",
        # kubectl, /usr/bin/kubectl, sudo kubectl, $(kubectl ...), ... but not kubectl-foo
        re.compile(r'(?:^|[^\w.-])kubectl(?![\w.-])'),
        BootstrapGate(
            deny_reason=(
                "kubectl is blocked. Use omnictl, talosctl, or ArgoCD via git. "
                + BOOTSTRAP_HINT
            ),
            bootstrap_reason="Bootstrap mode: kubectl allowed. Proceed?",
        ),
    ),
    CommandRule(
        "helm-install",
        re.compile(r'\bhelm\s+(install|upgrade)\b'),
        BootstrapGate(
            deny_reason=(
                "helm install/upgrade is blocked. Use GitOps: edit values.yaml, "
                "git push, let ArgoCD sync. " + BOOTSTRAP_HINT
            ),
            bootstrap_reason="Bootstrap mode: helm install allowed. Proceed?",
        ),
    ),
    CommandRule(
        "helm-template",
        re.compile(r'\bhelm\s+template\b'),
        TrackTarget(target_after(r'helm\s+template'), "validated_apps"),
    ),
    CommandRule(
        "argocd-diff",
        re.compile(r'\bargocd\s+app\s+diff\b'),
        TrackTarget(target_after(r'argocd\s+app\s+diff'), "diffed_apps"),
    ),
    CommandRule(
        "argocd-sync",
        re.compile(r'\bargocd\s+app\s+sync\b'),
        SyncGate(target_after(r'argocd\s+app\s+sync')),
    ),
    # Edited YAML was validated when it was written; push is the happy path
    CommandRule("git-push", re.compile(r'\bgit\s+push\b'), Allow()),
)

GIT_PUSH_PATTERN = COMMAND_RULES[-1].pattern


def match_rule(command: str) -> Optional[CommandRule]:
    return next((rule for rule in COMMAND_RULES if rule.matches(command)), None)


def classify_command(command: str, state: SessionState, bootstrap: bool = False) -> Decision:
    """
    Decides one command and mutates ``state`` accordingly. The caller is
    responsible for persisting ``state`` whatever the decision.
    """
    if record_command(state, command):
        return Decision.deny(
            f"Loop detected: same command repeated {LOOP_THRESHOLD} times. "
            "Fix the underlying issue."
        )

    rule = match_rule(command)
    if rule is None:
        return Decision.allow()
    return rule.action.apply(command, state, bootstrap)
