#!/usr/bin/env python3
"""
TALOSGUARD CORE MODELS
----------------------
Defines the data structures shared by the detector, the session store,
the validators and the classification engine.

The cluster model (Node, ChartRef, AppDefinition, ClusterContext) is
derived from the GitOps repository on every detection pass and is
read-only once built. SessionState is the only structure that survives
between invocations.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Any

CONTROL_PLANE = "control-plane"
WORKER = "worker"

PSA_LEVELS = ("privileged", "baseline", "restricted")

# Versions that mean "whatever the repo serves"
UNPINNED_VERSIONS = ("HEAD", "latest", "*")

ERROR = "error"
WARNING = "warning"

ALLOW = "allow"
DENY = "deny"
ASK = "ask"

PRE_TOOL_USE = "PreToolUse"
POST_TOOL_USE = "PostToolUse"


@dataclass
class Node:
    """A cluster node discovered from a Talos machine patch."""
    name: str
    ip: str
    role: str = WORKER

    @property
    def is_control_plane(self) -> bool:
        return self.role == CONTROL_PLANE


@dataclass
class ChartRef:
    repo: str
    name: str
    version: str = "latest"

    @property
    def is_oci(self) -> bool:
        return self.repo.startswith("oci://")

    @property
    def is_pinned(self) -> bool:
        """False for the sentinel versions that skip the existence check."""
        return self.version not in UNPINNED_VERSIONS


@dataclass
class AppDefinition:
    """
    One ArgoCD Application discovered under apps/<name>/.

    Only the fields the guard reasons about are kept: where the chart
    comes from, where its values live, and the scheduling/security
    facts derived from the companion files.
    """
    name: str
    namespace: str
    chart: ChartRef
    values_path: Path
    has_tolerations: bool = False
    psa_level: Optional[str] = None    # privileged / baseline / restricted
    ignore_differences: bool = False


@dataclass
class ClusterContext:
    """
    Aggregate root of a detection pass.

    Invariant: every key of ``apps`` equals the ``name`` of the
    AppDefinition stored under it.
    """
    name: str
    repo_root: Path
    nodes: List[Node] = field(default_factory=list)
    apps: Dict[str, AppDefinition] = field(default_factory=dict)
    endpoint: Optional[str] = None
    domain: Optional[str] = None

    @property
    def control_plane_nodes(self) -> List[Node]:
        return [n for n in self.nodes if n.is_control_plane]

    def get_app(self, name: str) -> Optional[AppDefinition]:
        return self.apps.get(name)

    def app_names(self) -> List[str]:
        return list(self.apps.keys())

    def app_for_path(self, file_path: Any) -> Optional[AppDefinition]:
        """
        Finds the app owning a file, either because it is the app's
        values file or because it lives under apps/<name>/.
        """
        try:
            target = Path(file_path).resolve()
        except (TypeError, ValueError, OSError):
            return None

        for app in self.apps.values():
            try:
                if app.values_path.resolve() == target:
                    return app
            except OSError:
                continue

        apps_dir = (self.repo_root / "apps").resolve()
        try:
            rel = target.relative_to(apps_dir)
        except ValueError:
            return None
        return self.apps.get(rel.parts[0]) if rel.parts else None


@dataclass
class SessionState:
    """
    Cross-invocation memory, persisted as JSON with camelCase keys.
    """
    last_command: str = ""
    loop_count: int = 0
    validated_apps: List[str] = field(default_factory=list)
    diffed_apps: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "lastCommand": self.last_command,
            "loopCount": self.loop_count,
            "validatedApps": list(self.validated_apps),
            "diffedApps": list(self.diffed_apps),
        }

    @classmethod
    def from_dict(cls, data: Any) -> "SessionState":
        """Builds a state from a decoded blob, ignoring ill-typed fields."""
        if not isinstance(data, dict):
            return cls()

        last = data.get("lastCommand")
        count = data.get("loopCount")
        validated = data.get("validatedApps")
        diffed = data.get("diffedApps")

        return cls(
            last_command=last if isinstance(last, str) else "",
            loop_count=count if isinstance(count, int) and not isinstance(count, bool) else 0,
            validated_apps=[a for a in validated if isinstance(a, str)] if isinstance(validated, list) else [],
            diffed_apps=[a for a in diffed if isinstance(a, str)] if isinstance(diffed, list) else [],
        )


@dataclass
class ValidationError:
    """A single diagnostic produced by a validation pass. Never persisted."""
    file: str
    severity: str
    message: str
    line: Optional[int] = None
    fix: Optional[str] = None

    @property
    def is_error(self) -> bool:
        return self.severity == ERROR

    @property
    def location(self) -> str:
        return f"{self.file}:{self.line}" if self.line else self.file

    def render(self, with_fix: bool = True) -> str:
        text = f"{self.location}: {self.message}"
        if with_fix and self.fix:
            text += f" Fix: {self.fix}"
        return text


@dataclass(frozen=True)
class Decision:
    """Terminal outcome of one event: allow, deny(reason) or ask(reason)."""
    permission: str
    reason: Optional[str] = None

    @classmethod
    def allow(cls) -> "Decision":
        return cls(ALLOW)

    @classmethod
    def deny(cls, reason: str) -> "Decision":
        return cls(DENY, reason)

    @classmethod
    def ask(cls, reason: str) -> "Decision":
        return cls(ASK, reason)

    @property
    def is_allow(self) -> bool:
        return self.permission == ALLOW

    def to_hook_output(self, event_name: str = PRE_TOOL_USE) -> Dict[str, Any]:
        output: Dict[str, Any] = {
            "hookEventName": event_name,
            "permissionDecision": self.permission,
        }
        if self.reason:
            output["permissionDecisionReason"] = self.reason
        return {"hookSpecificOutput": output}


@dataclass
class HookEvent:
    """The tool invocation delivered by the calling agent framework."""
    tool_name: str
    tool_input: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, raw: Any) -> Optional["HookEvent"]:
        """
        Accepts a decoded JSON document. Anything that does not have the
        expected shape yields None so the caller can fail open.
        """
        if not isinstance(raw, dict):
            return None
        tool_name = raw.get("tool_name")
        tool_input = raw.get("tool_input")
        if not isinstance(tool_name, str) or not isinstance(tool_input, dict):
            return None
        return cls(tool_name=tool_name, tool_input=tool_input)

    def get_str(self, key: str) -> Optional[str]:
        value = self.tool_input.get(key)
        return value if isinstance(value, str) else None

    @property
    def command(self) -> Optional[str]:
        return self.get_str("command")

    @property
    def file_path(self) -> Optional[str]:
        return self.get_str("file_path")

    @property
    def content(self) -> str:
        """Full body for Write, replacement text for Edit."""
        return self.get_str("content") or self.get_str("new_string") or ""
