#!/usr/bin/env python3
"""
TALOSGUARD CONTEXT DETECTOR - The Cartographer
----------------------------------------------
Reconstructs a ClusterContext from the on-disk layout of a Talos/Omni
GitOps repository:

    omniconfig.yaml                    cluster name + Omni endpoint
    clusters/<cluster>/patches/*.yaml  node IPs and roles
    apps/<app>/*application*.yaml      ArgoCD Application per app
    apps/<app>/values.yaml             helm values
    apps/<app>/manifests/*namespace*   Namespace with PSA label
    apps/cloudflared/values.yaml       public domain

The context is advisory. Each gathering step tolerates missing or
malformed files and contributes whatever it could read; the only hard
failure is "no repository root found".
"""

import re
import time
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

from talosguard.core.models import (
    AppDefinition, ChartRef, ClusterContext, Node,
    CONTROL_PLANE, WORKER, PSA_LEVELS,
)
from talosguard.core.yamlio import read_document, is_mapping

logger = logging.getLogger("talosguard.detector")

REPO_MARKERS = ("omniconfig.yaml", "apps", ".talos-gitops-ops")
OMNI_CONFIG = "omniconfig.yaml"
PSA_ENFORCE_LABEL = "pod-security.kubernetes.io/enforce"

IPV4_PATTERN = re.compile(r'(\d+\.\d+\.\d+\.\d+)')
NODE_NAME_PATTERN = re.compile(r'^([^-]+)')
DOMAIN_PATTERN = re.compile(r'hostname:\s*[\w-]+\.([\w.-]+)')

YAML_SUFFIXES = (".yaml", ".yml")


def find_repo_root(start: Any) -> Optional[Path]:
    """
    Walks upward from ``start`` and returns the first directory holding
    any repository marker. The filesystem root itself is never a
    candidate.
    """
    try:
        candidate = Path(start).resolve()
    except (TypeError, OSError):
        return None

    while candidate != candidate.parent:
        for marker in REPO_MARKERS:
            try:
                if (candidate / marker).exists():
                    return candidate
            except OSError:
                continue
        candidate = candidate.parent
    return None


def _sources(spec: Any) -> List[Any]:
    """Normalises ``spec.sources`` / ``spec.source`` into a list of mappings."""
    if not is_mapping(spec):
        return []
    sources = spec.get("sources")
    if isinstance(sources, list) and sources:
        return [s for s in sources if is_mapping(s)]
    source = spec.get("source")
    return [source] if is_mapping(source) else []


def application_sources(doc: Any) -> List[Any]:
    """Sources of an Application document (empty for anything else)."""
    if not is_mapping(doc) or doc.get("kind") != "Application":
        return []
    return _sources(doc.get("spec"))


def has_ignore_differences(doc: Any) -> bool:
    spec = doc.get("spec") if is_mapping(doc) else None
    if not is_mapping(spec):
        return False
    entries = spec.get("ignoreDifferences")
    return isinstance(entries, list) and len(entries) > 0


class ContextDetector:
    """
    Owns the memoised ClusterContext. One instance is shared by every
    caller of a process; the cache is a single (value, timestamp) slot.
    """

    def __init__(self, ttl: float = 30.0, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self._clock = clock
        self._lock = threading.Lock()
        self._cached: Optional[ClusterContext] = None
        self._cached_at = 0.0

    # --- CACHE ---

    def invalidate(self) -> None:
        with self._lock:
            self._cached = None
            self._cached_at = 0.0

    def detect(self, start: Any = ".") -> Optional[ClusterContext]:
        """
        Returns the cached context while it is younger than the TTL,
        otherwise performs a fresh detection pass from ``start``.
        """
        with self._lock:
            if self._cached is not None and self._clock() - self._cached_at < self.ttl:
                return self._cached

            root = find_repo_root(start)
            if root is None:
                return None

            context = self._build(root)
            self._cached = context
            self._cached_at = self._clock()
            return context

    def is_gitops_repo(self, path: Any) -> bool:
        return find_repo_root(path) is not None

    def get_app(self, name: str, start: Any = ".") -> Optional[AppDefinition]:
        context = self.detect(start)
        return context.get_app(name) if context else None

    def get_app_names(self, start: Any = ".") -> List[str]:
        context = self.detect(start)
        return context.app_names() if context else []

    # --- DETECTION PASS ---

    def _build(self, root: Path) -> ClusterContext:
        logger.debug(f"Detecting cluster context under {root}")
        endpoint, cluster_name = self._parse_omni_config(root)
        apps = self._scan_apps(root)

        context = ClusterContext(
            name=cluster_name or "unknown",
            repo_root=root,
            nodes=self._scan_nodes(root),
            apps=apps,
            endpoint=endpoint,
            domain=self._detect_domain(root),
        )
        logger.debug(
            f"Context '{context.name}': {len(context.nodes)} nodes, {len(context.apps)} apps"
        )
        return context

    def _parse_omni_config(self, root: Path) -> Tuple[Optional[str], Optional[str]]:
        doc = read_document(root / OMNI_CONFIG)
        section = doc.get("context") if is_mapping(doc) else None
        if not is_mapping(section):
            return None, None

        url = section.get("url")
        cluster = section.get("cluster")
        return (
            str(url) if url else None,
            str(cluster) if cluster else None,
        )

    def _scan_nodes(self, root: Path) -> List[Node]:
        nodes: List[Node] = []
        for patch in sorted((root / "clusters").glob("*/patches/*")):
            if patch.suffix not in YAML_SUFFIXES or not patch.is_file():
                continue
            try:
                content = patch.read_text(encoding='utf-8', errors='ignore')
            except OSError as e:
                logger.debug(f"Skipping patch {patch}: {e}")
                continue

            ip_match = IPV4_PATTERN.search(content)
            name_match = NODE_NAME_PATTERN.match(patch.name)
            if not (ip_match and name_match):
                continue

            nodes.append(Node(
                name=name_match.group(1),
                ip=ip_match.group(1),
                role=CONTROL_PLANE if CONTROL_PLANE in content else WORKER,
            ))
        return nodes

    def _scan_apps(self, root: Path) -> Dict[str, AppDefinition]:
        apps: Dict[str, AppDefinition] = {}
        apps_dir = root / "apps"
        try:
            app_dirs = sorted(p for p in apps_dir.iterdir() if p.is_dir())
        except OSError:
            return apps

        for app_dir in app_dirs:
            app = self._parse_app_dir(root, app_dir)
            if app is not None:
                apps[app.name] = app
        return apps

    def _parse_app_dir(self, root: Path, app_dir: Path) -> Optional[AppDefinition]:
        try:
            manifest = next(
                (f for f in sorted(app_dir.iterdir()) if "application" in f.name and f.is_file()),
                None,
            )
        except OSError:
            return None
        if manifest is None:
            return None

        app = self._parse_application(root, manifest)
        if app is None:
            return None

        app.has_tolerations = self._has_tolerations(app.values_path)
        app.psa_level = self._parse_psa_level(app_dir / "manifests")
        return app

    def _parse_application(self, root: Path, manifest: Path) -> Optional[AppDefinition]:
        doc = read_document(manifest)
        sources = application_sources(doc)
        if not sources:
            return None

        helm_source = next(
            (s for s in sources
             if s.get("chart") or "helm" in str(s.get("repoURL") or "")),
            None,
        )
        if helm_source is None:
            return None

        spec = doc.get("spec")
        destination = spec.get("destination") if is_mapping(spec) else None
        namespace = destination.get("namespace") if is_mapping(destination) else None

        git_source = next((s for s in sources if s.get("path")), None)
        if git_source is not None:
            values_path = self._resolve_values_path(root, manifest, str(git_source.get("path")))
        else:
            values_path = manifest.parent / "values.yaml"

        # apps/<dir> is the identity the rest of the guard keys on,
        # whatever metadata.name the Application declares
        return AppDefinition(
            name=manifest.parent.name,
            namespace=str(namespace or "default"),
            chart=ChartRef(
                repo=str(helm_source.get("repoURL") or ""),
                name=str(helm_source.get("chart") or ""),
                version=str(helm_source.get("targetRevision") or "latest"),
            ),
            values_path=values_path,
            ignore_differences=has_ignore_differences(doc),
        )

    def _resolve_values_path(self, root: Path, manifest: Path, source_path: str) -> Path:
        # ArgoCD paths are repo-relative; older layouts made them relative to apps/
        candidates = [
            root / source_path / "values.yaml",
            manifest.parent.parent / source_path / "values.yaml",
        ]
        return next((c for c in candidates if c.is_file()), candidates[0])

    def _has_tolerations(self, values_path: Path) -> bool:
        try:
            return "tolerations:" in values_path.read_text(encoding='utf-8', errors='ignore')
        except OSError:
            return False

    def _parse_psa_level(self, manifests_dir: Path) -> Optional[str]:
        try:
            ns_file = next(
                (f for f in sorted(manifests_dir.iterdir()) if "namespace" in f.name and f.is_file()),
                None,
            )
        except OSError:
            return None
        if ns_file is None:
            return None

        doc = read_document(ns_file)
        if not is_mapping(doc) or doc.get("kind") != "Namespace":
            return None

        metadata = doc.get("metadata")
        labels = metadata.get("labels") if is_mapping(metadata) else None
        level = labels.get(PSA_ENFORCE_LABEL) if is_mapping(labels) else None
        return level if level in PSA_LEVELS else None

    def _detect_domain(self, root: Path) -> Optional[str]:
        try:
            content = (root / "apps" / "cloudflared" / "values.yaml").read_text(encoding='utf-8')
        except (OSError, UnicodeDecodeError) as e:
            logger.debug(f"No domain from cloudflared values: {e}")
            return None
        match = DOMAIN_PATTERN.search(content)
        return match.group(1) if match else None
