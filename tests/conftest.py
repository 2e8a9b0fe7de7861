import pytest
import requests
from pathlib import Path

from talosguard.context.detector import ContextDetector
from talosguard.core.config import GuardConfig
from talosguard.core.engine import GuardEngine
from talosguard.state.session import SessionStore
from talosguard.validator.remote import RemoteChecker

CILIUM_APPLICATION = """\
apiVersion: argoproj.io/v1alpha1
kind: Application
metadata:
  name: cilium
spec:
  destination:
    namespace: kube-system
  sources:
    - repoURL: https://helm.cilium.io
      chart: cilium
      targetRevision: 1.15.1
      helm:
        valueFiles:
          - $values/apps/cilium/values.yaml
    - repoURL: https://github.com/example/homelab.git
      path: apps/cilium
      ref: values
"""

CILIUM_VALUES = """\
operator:
  tolerations:
    - key: node-role.kubernetes.io/control-plane
      operator: Exists
      effect: NoSchedule
"""

GRAFANA_APPLICATION = """\
apiVersion: argoproj.io/v1alpha1
kind: Application
metadata:
  name: grafana
spec:
  destination:
    namespace: monitoring
  source:
    repoURL: https://grafana.github.io/helm-charts
    chart: grafana
    targetRevision: 7.3.0
  ignoreDifferences:
    - kind: Secret
      jsonPointers: [/data]
"""

MONITORING_NAMESPACE = """\
apiVersion: v1
kind: Namespace
metadata:
  name: monitoring
  labels:
    pod-security.kubernetes.io/enforce: privileged
"""

OMNICONFIG = """\
contexts:
  default: {}
context:
  url: https://homelab.omni.siderolabs.io
  cluster: homelab
"""

CONTROL_PLANE_PATCH = """\
machine:
  network:
    interfaces:
      - interface: eth0
        addresses: [192.168.1.10/24]
  nodeLabels:
    node-role.kubernetes.io/control-plane: ""
"""

WORKER_PATCH = """\
machine:
  network:
    interfaces:
      - interface: eth0
        addresses: [192.168.1.21/24]
"""

CLOUDFLARED_VALUES = """\
ingress:
  - hostname: grafana.lab.example.com
    service: http://grafana.monitoring
"""


def write(path: Path, content: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding='utf-8')
    return path


@pytest.fixture
def gitops_repo(tmp_path):
    """A small but complete Talos/Omni GitOps repository."""
    root = tmp_path / "homelab"
    write(root / "omniconfig.yaml", OMNICONFIG)
    write(root / "clusters" / "homelab" / "patches" / "cp1-network.yaml", CONTROL_PLANE_PATCH)
    write(root / "clusters" / "homelab" / "patches" / "worker1-network.yaml", WORKER_PATCH)
    write(root / "clusters" / "homelab" / "patches" / "README.md", "192.168.1.99")
    write(root / "apps" / "cilium" / "application.yaml", CILIUM_APPLICATION)
    write(root / "apps" / "cilium" / "values.yaml", CILIUM_VALUES)
    write(root / "apps" / "grafana" / "grafana-application.yaml", GRAFANA_APPLICATION)
    write(root / "apps" / "grafana" / "manifests" / "namespace.yaml", MONITORING_NAMESPACE)
    write(root / "apps" / "cloudflared" / "values.yaml", CLOUDFLARED_VALUES)
    return root


class FakeResponse:
    """A body that is an exception instance breaks off while streaming."""

    def __init__(self, status_code: int = 200, body="", chunk_size: int = 16):
        self.status_code = status_code
        self.body = body
        self.chunk_size = chunk_size
        self.closed = False

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def iter_content(self, chunk_size=1):
        if isinstance(self.body, Exception):
            raise self.body
        data = self.body.encode("utf-8")
        for start in range(0, len(data), self.chunk_size):
            yield data[start:start + self.chunk_size]

    def close(self):
        self.closed = True


class FakeSession:
    """
    Stand-in for requests.Session. ``routes`` maps a URL to a status code,
    a (status, body) pair, or an exception instance to raise.
    """

    def __init__(self, routes=None, default=404):
        self.routes = dict(routes or {})
        self.default = default
        self.calls = []

    def request(self, method, url, timeout=None, allow_redirects=True, stream=False):
        self.calls.append((method, url))
        route = self.routes.get(url, self.default)
        if isinstance(route, Exception):
            raise route
        if isinstance(route, tuple):
            return FakeResponse(*route)
        return FakeResponse(route)


@pytest.fixture
def fake_session():
    return FakeSession()


@pytest.fixture
def offline_session():
    """Every request times out."""
    return FakeSession(default=requests.Timeout("read timed out"))


@pytest.fixture
def state_file(tmp_path):
    return tmp_path / "state" / "session.json"


@pytest.fixture
def make_engine(state_file, fake_session):
    def factory(bootstrap: bool = False, session=None, **kwargs) -> GuardEngine:
        config = GuardConfig(bootstrap=bootstrap, state_file=state_file)
        return GuardEngine(
            config,
            detector=ContextDetector(ttl=30.0),
            store=SessionStore(state_file),
            remote=RemoteChecker(timeout=1.0, session=session or fake_session),
            **kwargs,
        )
    return factory
