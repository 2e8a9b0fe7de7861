#!/usr/bin/env python3
"""
TALOSGUARD APPLICATION VALIDATOR
--------------------------------
Checks an ArgoCD Application before it is written: every declared source
must point at something that exists, pinned chart versions must be
published, and charts known to render non-deterministic secrets should
carry ignoreDifferences.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, List

from talosguard.context.detector import application_sources, has_ignore_differences
from talosguard.core.models import ValidationError, WARNING
from talosguard.validator.remote import RemoteChecker, MAX_WORKERS

logger = logging.getLogger("talosguard.validator")

# Charts whose helm render regenerates secrets on every sync
NEEDS_IGNORE_DIFFERENCES = ("harbor", "argocd")

SSH_PREFIXES = ("git@", "ssh://")
HTTP_PREFIXES = ("http://", "https://")


class ApplicationValidator:

    def __init__(self, remote: RemoteChecker):
        self.remote = remote

    def validate(self, doc: Any, file_path: str) -> List[ValidationError]:
        sources = application_sources(doc)
        if not sources:
            return []

        errors: List[ValidationError] = []
        # Probes run concurrently but are reported in declaration order
        with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(sources))) as pool:
            for source_errors in pool.map(self._check_source, sources):
                errors.extend(source_errors)

        if not has_ignore_differences(doc):
            for chart in (str(s.get("chart")) for s in sources if s.get("chart")):
                if any(name in chart for name in NEEDS_IGNORE_DIFFERENCES):
                    errors.append(ValidationError(
                        file=file_path,
                        severity=WARNING,
                        message=f"{chart} chart typically needs ignoreDifferences for auto-generated secrets",
                        fix="Add ignoreDifferences for secrets that change on each helm render",
                    ))

        for error in errors:
            error.file = file_path
        return errors

    def _check_source(self, source: Any) -> List[ValidationError]:
        repo = str(source.get("repoURL") or "")
        if not repo or repo.startswith(SSH_PREFIXES):
            return []

        chart = source.get("chart")
        version = source.get("targetRevision")

        if repo.startswith("oci://"):
            found = [self.remote.validate_oci(repo)]
        elif chart:
            found = [self.remote.validate_chart_repo(repo)]
            if found[0] is None and version:
                found.append(self.remote.validate_chart_version(repo, str(chart), str(version)))
        elif repo.startswith(HTTP_PREFIXES):
            found = [self.remote.validate_git_repo(repo)]
        else:
            logger.debug(f"Not probing source with unrecognised repoURL {repo!r}")
            found = []

        return [e for e in found if e is not None]
