"""
TALOSGUARD APPLICATION & REMOTE CHECK TESTS
-------------------------------------------
Source reachability, chart versions and OCI handling, with the network
replaced by a FakeSession.
"""

import itertools

import pytest
import requests

from talosguard.core.engine import decide
from talosguard.core.models import ASK, ERROR, WARNING
from talosguard.core.yamlio import load_document
from talosguard.validator.application import ApplicationValidator
from talosguard.validator.remote import RemoteChecker, extract_urls, index_url
from conftest import FakeSession

FILE = "apps/demo/application.yaml"

CILIUM_INDEX = """\
apiVersion: v1
entries:
  cilium:
    - name: cilium
      version: 1.15.1
    - name: cilium
      version: "1.14.6"
"""


def application(*sources, ignore_differences=False):
    lines = ["apiVersion: argoproj.io/v1alpha1", "kind: Application",
             "metadata:", "  name: demo", "spec:", "  sources:"]
    for source in sources:
        first = True
        for key, value in source.items():
            lines.append(f"    {'- ' if first else '  '}{key}: {value}")
            first = False
    if ignore_differences:
        lines += ["  ignoreDifferences:", "    - kind: Secret"]
    return load_document("\n".join(lines) + "\n")


def validate(doc, session):
    return ApplicationValidator(RemoteChecker(timeout=1.0, session=session)).validate(doc, FILE)


def test_index_url_joins_cleanly():
    assert index_url("https://charts.example.com") == "https://charts.example.com/index.yaml"
    assert index_url("https://charts.example.com/") == "https://charts.example.com/index.yaml"


def test_published_chart_version_passes():
    session = FakeSession({"https://helm.cilium.io/index.yaml": (200, CILIUM_INDEX)})
    doc = application({"repoURL": "https://helm.cilium.io", "chart": "cilium", "targetRevision": "1.15.1"})

    assert validate(doc, session) == []
    # Reachability and version share a single index fetch
    assert session.calls == [("GET", "https://helm.cilium.io/index.yaml")]


def test_quoted_version_in_index_matches():
    session = FakeSession({"https://helm.cilium.io/index.yaml": (200, CILIUM_INDEX)})
    doc = application({"repoURL": "https://helm.cilium.io", "chart": "cilium", "targetRevision": "1.14.6"})
    assert validate(doc, session) == []


def test_missing_chart_version_is_an_error():
    session = FakeSession({"https://helm.cilium.io/index.yaml": (200, CILIUM_INDEX)})
    doc = application({"repoURL": "https://helm.cilium.io", "chart": "cilium", "targetRevision": "1.15"})

    errors = validate(doc, session)

    assert len(errors) == 1
    assert errors[0].severity == ERROR
    assert errors[0].file == FILE
    assert errors[0].message == "Chart version not found: cilium@1.15"
    assert "helm search repo cilium --versions" in errors[0].fix


def test_unpinned_versions_skip_the_version_check():
    session = FakeSession({"https://helm.cilium.io/index.yaml": (200, "entries: {}\n")})
    for version in ("HEAD", "latest", "'*'"):
        doc = application({"repoURL": "https://helm.cilium.io", "chart": "cilium", "targetRevision": version})
        assert validate(doc, session) == []


def test_chart_repo_http_error_is_an_error():
    session = FakeSession({"https://charts.example.com/index.yaml": 404})
    doc = application({"repoURL": "https://charts.example.com", "chart": "app", "targetRevision": "1.0.0"})

    errors = validate(doc, session)

    assert [e.severity for e in errors] == [ERROR]
    assert "Helm repo unreachable: https://charts.example.com (HTTP 404)" == errors[0].message


def test_network_failure_only_warns(offline_session):
    doc = application(
        {"repoURL": "https://charts.example.com", "chart": "app", "targetRevision": "1.0.0"},
        {"repoURL": "https://github.com/example/homelab.git", "path": "apps/app"},
    )

    errors = validate(doc, offline_session)

    assert [e.severity for e in errors] == [WARNING, WARNING]
    assert all(e.message.startswith("Could not verify") for e in errors)


def test_malformed_oci_is_one_error_without_network():
    session = FakeSession()
    doc = application({"repoURL": "oci://ghcr.io", "chart": "app", "targetRevision": "1.0.0"})

    errors = validate(doc, session)

    assert len(errors) == 1
    assert errors[0].message == "Malformed OCI URL: oci://ghcr.io"
    assert session.calls == []


def test_well_formed_oci_passes_without_network():
    session = FakeSession()
    doc = application({"repoURL": "oci://ghcr.io/stefanprodan/charts", "chart": "podinfo",
                       "targetRevision": "6.5.4"})
    assert validate(doc, session) == []
    assert session.calls == []


def test_ssh_sources_are_not_probed():
    session = FakeSession()
    doc = application(
        {"repoURL": "git@github.com:example/homelab.git", "path": "apps/x"},
        {"repoURL": "ssh://git@github.com/example/homelab.git", "path": "apps/x"},
    )
    assert validate(doc, session) == []
    assert session.calls == []


def test_unreachable_git_repo_is_an_error():
    session = FakeSession({"https://github.com/example/gone.git": 404})
    doc = application({"repoURL": "https://github.com/example/gone.git", "path": "apps/x"})

    errors = validate(doc, session)

    assert [e.message for e in errors] == ["Git repo unreachable: https://github.com/example/gone.git (HTTP 404)"]
    assert session.calls == [("HEAD", "https://github.com/example/gone.git")]


def test_errors_follow_declaration_order():
    session = FakeSession({
        "https://a.example.com/index.yaml": 410,
        "https://b.example.com/index.yaml": 404,
    })
    doc = application(
        {"repoURL": "oci://bad", "chart": "x", "targetRevision": "1"},
        {"repoURL": "https://a.example.com", "chart": "a", "targetRevision": "1"},
        {"repoURL": "https://b.example.com", "chart": "b", "targetRevision": "1"},
    )

    errors = validate(doc, session)

    assert [e.message.split(":")[0] for e in errors] == [
        "Malformed OCI URL", "Helm repo unreachable", "Helm repo unreachable",
    ]
    assert "a.example.com" in errors[1].message
    assert "b.example.com" in errors[2].message


def test_problematic_chart_needs_ignore_differences():
    session = FakeSession({"https://helm.goharbor.io/index.yaml": (200, "version: 1.14.0\n")})
    source = {"repoURL": "https://helm.goharbor.io", "chart": "harbor", "targetRevision": "1.14.0"}

    errors = validate(application(source), session)
    assert [(e.severity, e.message.split()[0]) for e in errors] == [(WARNING, "harbor")]

    assert validate(application(source, ignore_differences=True), session) == []


def test_single_source_field_is_supported():
    session = FakeSession({"https://charts.example.com/index.yaml": 404})
    doc = load_document(
        "kind: Application\nspec:\n  source:\n"
        "    repoURL: https://charts.example.com\n    chart: app\n    targetRevision: 1.0.0\n"
    )
    assert len(validate(doc, session)) == 1


def test_validation_is_idempotent():
    session = FakeSession({"https://helm.cilium.io/index.yaml": (200, CILIUM_INDEX)})
    doc = application(
        {"repoURL": "oci://bad", "chart": "x", "targetRevision": "1"},
        {"repoURL": "https://helm.cilium.io", "chart": "cilium", "targetRevision": "9.9.9"},
    )
    assert validate(doc, session) == validate(doc, session)


def test_check_urls_keeps_input_order():
    session = FakeSession({"https://a.example.com": 200, "https://b.example.com": 503})
    checker = RemoteChecker(session=session)

    results = checker.check_urls(["https://b.example.com", "https://a.example.com", "https://c.example.com"])

    assert [(r.url, r.ok) for r in results] == [
        ("https://b.example.com", False),
        ("https://a.example.com", True),
        ("https://c.example.com", False),
    ]


def test_connection_error_marks_unreachable():
    session = FakeSession({"https://down.example.com": requests.ConnectionError("refused")})
    result = RemoteChecker(session=session).check_url("https://down.example.com")
    assert result.unreachable is True
    assert result.detail == "refused"


def test_extract_urls_deduplicates_and_trims():
    content = (
        "repoURL: https://helm.cilium.io,\n"
        "docs: (see https://docs.cilium.io/en/stable)\n"
        "again: https://helm.cilium.io\n"
    )
    assert extract_urls(content) == ["https://helm.cilium.io", "https://docs.cilium.io/en/stable"]


@pytest.mark.parametrize("status", [429, 500, 502, 503, 504])
def test_transient_registry_status_only_warns(status):
    session = FakeSession({"https://charts.example.com/index.yaml": status})
    doc = application({"repoURL": "https://charts.example.com", "chart": "app", "targetRevision": "1.0.0"})

    errors = validate(doc, session)

    assert [(e.severity, e.message) for e in errors] == [
        (WARNING, f"Could not verify helm repo https://charts.example.com: HTTP {status}"),
    ]
    assert decide(errors).permission == ASK


def test_transient_git_status_only_warns():
    session = FakeSession({"https://github.com/example/homelab.git": 503})
    doc = application({"repoURL": "https://github.com/example/homelab.git", "path": "apps/x"})
    assert [e.severity for e in validate(doc, session)] == [WARNING]


def test_broken_index_transfer_only_warns():
    session = FakeSession({
        "https://charts.example.com/index.yaml": (200, requests.exceptions.ChunkedEncodingError("cut")),
    })
    doc = application({"repoURL": "https://charts.example.com", "chart": "app", "targetRevision": "1.0.0"})

    errors = validate(doc, session)

    assert [(e.severity, e.message) for e in errors] == [
        (WARNING, "Could not verify helm repo https://charts.example.com: cut"),
    ]


def test_invalid_url_is_an_error():
    session = FakeSession({"https://charts.example.com/index.yaml": requests.exceptions.InvalidURL("bad host")})
    doc = application({"repoURL": "https://charts.example.com", "chart": "app", "targetRevision": "1.0.0"})

    errors = validate(doc, session)

    assert [e.severity for e in errors] == [ERROR]
    assert errors[0].message == "Helm repo unreachable: https://charts.example.com (bad host)"


def test_slow_index_download_is_cut_off():
    ticks = itertools.count(step=10.0)
    session = FakeSession({"https://charts.example.com/index.yaml": (200, CILIUM_INDEX)})
    checker = RemoteChecker(timeout=5.0, session=session, clock=lambda: next(ticks))

    fetched = checker.fetch_index("https://charts.example.com")

    assert fetched.text is None
    assert fetched.result.unreachable is True
    assert fetched.result.error == "download exceeded 5s"
    assert checker.validate_chart_repo("https://charts.example.com").severity == WARNING


def test_streamed_index_is_reassembled():
    session = FakeSession({"https://helm.cilium.io/index.yaml": (200, CILIUM_INDEX)})
    fetched = RemoteChecker(session=session).fetch_index("https://helm.cilium.io")
    assert fetched.text == CILIUM_INDEX
    assert fetched.result.ok is True
