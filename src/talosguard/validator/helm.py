#!/usr/bin/env python3
"""
TALOSGUARD HELM TEMPLATE CHECK
------------------------------
Renders a chart with a candidate values file through the ``helm`` CLI and
turns schema failures into diagnostics. helm is treated as a black box:
only its exit status and its error text are read.

A missing binary skips the check. A render that does not finish in time
becomes a warning.
"""

import re
import logging
import subprocess
from pathlib import Path
from typing import Callable, List, Union

from talosguard.core.models import ChartRef, ValidationError, ERROR, WARNING

logger = logging.getLogger("talosguard.helm")

SCHEMA_FAILURE = "values don't meet the specifications"
UNKNOWN_FIELD = re.compile(r'unknown field "([^"]+)"')
TYPE_MISMATCH = re.compile(r'expected (.+), got (.+)')


class HelmToolError(Exception):
    """helm could not be run to completion."""


def template_command(chart: ChartRef, values_path: Union[str, Path], namespace: str) -> List[str]:
    if chart.is_oci:
        cmd = ["helm", "template", "test", f"{chart.repo.rstrip('/')}/{chart.name}"]
    else:
        cmd = ["helm", "template", "test", chart.name, "--repo", chart.repo]
    if chart.is_pinned:
        cmd += ["--version", chart.version]
    return cmd + ["-f", str(values_path), "-n", namespace]


def parse_helm_errors(output: str, values_path: str) -> List[ValidationError]:
    """Maps helm's error text onto diagnostics; falls back to one generic error."""
    errors = []
    for line in output.splitlines():
        if SCHEMA_FAILURE in line:
            errors.append(ValidationError(
                file=values_path,
                severity=ERROR,
                message=line.strip(),
                fix="Check helm show values for correct schema",
            ))

        unknown = UNKNOWN_FIELD.search(line)
        if unknown:
            errors.append(ValidationError(
                file=values_path,
                severity=ERROR,
                message=f"Unknown field: {unknown.group(1)}",
                fix=f'Remove or rename field "{unknown.group(1)}"',
            ))

        mismatch = TYPE_MISMATCH.search(line)
        if mismatch:
            errors.append(ValidationError(
                file=values_path,
                severity=ERROR,
                message=f"Type mismatch: expected {mismatch.group(1)}, got {mismatch.group(2)}",
            ))

    if not errors:
        errors.append(ValidationError(
            file=values_path,
            severity=ERROR,
            message=f"Helm template failed: {output.strip()[:200]}",
        ))
    return errors


class HelmTemplateValidator:

    def __init__(self, timeout: float = 10.0,
                 runner: Callable[..., subprocess.CompletedProcess] = subprocess.run):
        self.timeout = timeout
        self._run = runner

    def render(self, chart: ChartRef, values_path: Union[str, Path], namespace: str) -> str:
        """
        Runs ``helm template``. Returns the combined output of a failed
        render, or an empty string on success.
        """
        cmd = template_command(chart, values_path, namespace)
        logger.debug(f"Running: {' '.join(cmd)}")
        try:
            proc = self._run(cmd, capture_output=True, text=True, timeout=self.timeout)
        except FileNotFoundError as e:
            raise HelmToolError("helm binary not found") from e
        except subprocess.TimeoutExpired as e:
            raise HelmToolError(f"helm template timed out after {self.timeout:g}s") from e

        if proc.returncode == 0:
            return ""
        output = (proc.stderr or "") + (proc.stdout or "")
        return output or f"helm exited with status {proc.returncode}"

    def validate(self, chart: ChartRef, values_path: Union[str, Path],
                 namespace: str, display_path: str = "") -> List[ValidationError]:
        shown = display_path or str(values_path)
        try:
            output = self.render(chart, values_path, namespace)
        except HelmToolError as e:
            if isinstance(e.__cause__, FileNotFoundError):
                logger.info(f"Skipping helm template check: {e}")
                return []
            return [ValidationError(
                file=shown,
                severity=WARNING,
                message=f"Could not verify chart schema: {e}",
            )]

        return parse_helm_errors(output, shown) if output else []
