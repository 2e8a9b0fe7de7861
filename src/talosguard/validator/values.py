#!/usr/bin/env python3
"""
TALOSGUARD VALUES VALIDATOR - The Linter
----------------------------------------
Convention checks for helm values files. None of these can prove a file
wrong, so everything here is a warning: the operator is asked, not
blocked.

Rules:
  1. Tolerations on a Talos cluster must cover the control-plane taint.
  2. Known chart foot-guns, matched line by line.
  3. hostNetwork pods need a privileged namespace and a Recreate strategy.
"""

import re
from dataclasses import dataclass
from typing import Any, List, Optional, Pattern

from talosguard.core.models import AppDefinition, ValidationError, WARNING
from talosguard.core.yamlio import get_path, key_line, is_mapping

CONTROL_PLANE_TAINT = "node-role.kubernetes.io/control-plane"

TOLERATION_PATHS = (
    "tolerations",
    "global.tolerations",
    "controller.tolerations",
    "operator.tolerations",
    "operatorConfig.tolerations",
    "manager.tolerations",
    "server.tolerations",
    "agent.tolerations",
)

HOST_NETWORK = "hostNetwork: true"
# Charts that template their own Namespace may carry the PSA label in values
PRIVILEGED_ENFORCE = re.compile(r'pod-security\.kubernetes\.io/enforce:\s*["\']?privileged\b')


@dataclass(frozen=True)
class LineRule:
    pattern: Pattern
    message: str
    fix: str


LINE_RULES = (
    LineRule(
        re.compile(r'^\s*master:'),
        "Bitnami charts use 'primary:' not 'master:'",
        "Replace 'master:' with 'primary:'",
    ),
    LineRule(
        re.compile(r'cpu:\s*1000m'),
        "CPU value '1000m' will normalize to '1', may cause drift",
        "Use 'cpu: \"1\"' instead of 'cpu: 1000m'",
    ),
    LineRule(
        re.compile(r'existingSecretPasswordKey:'),
        "Many charts require the key to be exactly 'password'",
        "Check chart docs for required secret key name",
    ),
)


def _tolerates_control_plane(entry: Any) -> bool:
    return is_mapping(entry) and (
        entry.get("key") == CONTROL_PLANE_TAINT or entry.get("operator") == "Exists"
    )


class ValuesValidator:

    def validate(self, doc: Any, content: str, file_path: str,
                 app: Optional[AppDefinition] = None) -> List[ValidationError]:
        """
        ``doc`` is the parsed form of ``content``. ``app`` is the owning
        application, when the detector knows it.
        """
        errors: List[ValidationError] = []
        errors.extend(self.check_tolerations(doc, file_path))
        errors.extend(self.check_common_mistakes(content, file_path))
        errors.extend(self.check_host_network(content, file_path, app))
        return errors

    def check_tolerations(self, doc: Any, file_path: str) -> List[ValidationError]:
        errors = []
        for path in TOLERATION_PATHS:
            value = get_path(doc, path)
            if not isinstance(value, list):
                continue
            if any(_tolerates_control_plane(t) for t in value):
                continue
            errors.append(ValidationError(
                file=file_path,
                line=key_line(doc, path),
                severity=WARNING,
                message=f"Tolerations at {path} may be missing control-plane toleration",
                fix=f'Add: {{ key: "{CONTROL_PLANE_TAINT}", operator: "Exists", effect: "NoSchedule" }}',
            ))
        return errors

    def check_common_mistakes(self, content: str, file_path: str) -> List[ValidationError]:
        errors = []
        for line_no, line in enumerate(content.splitlines(), 1):
            for rule in LINE_RULES:
                if rule.pattern.search(line):
                    errors.append(ValidationError(
                        file=file_path,
                        line=line_no,
                        severity=WARNING,
                        message=rule.message,
                        fix=rule.fix,
                    ))
        return errors

    def check_host_network(self, content: str, file_path: str,
                           app: Optional[AppDefinition] = None) -> List[ValidationError]:
        if HOST_NETWORK not in content:
            return []

        errors = []
        privileged = bool(PRIVILEGED_ENFORCE.search(content)) or (
            app is not None and app.psa_level == "privileged"
        )
        if not privileged:
            errors.append(ValidationError(
                file=file_path,
                severity=WARNING,
                message="hostNetwork requires privileged PSA namespace",
                fix="Ensure namespace has pod-security.kubernetes.io/enforce: privileged",
            ))
        if "Recreate" not in content:
            errors.append(ValidationError(
                file=file_path,
                severity=WARNING,
                message="hostNetwork deployments should use Recreate strategy",
                fix="Add deploymentStrategy.type: Recreate",
            ))
        return errors
