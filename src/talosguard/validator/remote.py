#!/usr/bin/env python3
"""
TALOSGUARD REMOTE CHECK - The Scout
-----------------------------------
Bounded-timeout probes against chart registries and git remotes.

Three kinds of repository are recognised:
  * oci://registry/path   format check only, no network call
  * classic helm repos    index.yaml must be served; pinned versions must
                          appear in it
  * git remotes           the URL must answer

A 4xx answer or an unusable URL is a validation error. Timeouts,
connection failures, broken transfers, 5xx and 429 answers only
downgrade to a "could not verify" warning: a flaky network must never
deny an edit on its own.

The requests ``timeout`` bounds each socket read, not a whole download,
so index bodies are streamed against a wall-clock deadline.
"""

import re
import time
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

import requests
from requests.exceptions import InvalidSchema, InvalidURL, MissingSchema

from talosguard.core.models import ValidationError, ERROR, WARNING, UNPINNED_VERSIONS

logger = logging.getLogger("talosguard.remote")

OCI_PATTERN = re.compile(r'^oci://[\w.-]+/[\w./-]+$')
URL_PATTERN = re.compile(r'https?://[^\s"\'<>]+')
URL_TRAILING_JUNK = re.compile(r'[,;)}\]]+$')

DEFAULT_TIMEOUT = 5.0
MAX_WORKERS = 8
CHUNK_SIZE = 64 * 1024

# Malformed requests; retrying would not help
BAD_URL_ERRORS = (InvalidURL, MissingSchema, InvalidSchema)


def is_transient_status(status: int) -> bool:
    return status >= 500 or status == 429


@dataclass
class UrlCheckResult:
    url: str
    ok: bool
    status: Optional[int] = None
    error: Optional[str] = None
    # True when the failure is transient: no answer, a broken transfer, 5xx or 429
    unreachable: bool = False

    @property
    def detail(self) -> str:
        return self.error or f"HTTP {self.status}"


@dataclass
class _IndexFetch:
    text: Optional[str]
    result: UrlCheckResult


def index_url(repo_url: str) -> str:
    return repo_url + ("index.yaml" if repo_url.endswith("/") else "/index.yaml")


def extract_urls(content: str) -> List[str]:
    """Unique http(s) URLs found in free text, in order of appearance."""
    seen: Dict[str, None] = {}
    for raw in URL_PATTERN.findall(content):
        seen.setdefault(URL_TRAILING_JUNK.sub("", raw), None)
    return list(seen)


class RemoteChecker:
    """
    Network side of validation. A single instance memoises chart indexes
    so the reachability and version checks of one source share a fetch.
    """

    def __init__(self, timeout: float = DEFAULT_TIMEOUT,
                 session: Optional[requests.Session] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.timeout = timeout
        self.session = session or requests.Session()
        self._clock = clock
        self._indexes: Dict[str, _IndexFetch] = {}
        self._lock = threading.Lock()

    # --- RAW PROBES ---

    def _request(self, method: str, url: str, stream: bool = False) -> requests.Response:
        return self.session.request(
            method, url, timeout=self.timeout, allow_redirects=True, stream=stream
        )

    def _probe(self, method: str, url: str,
               stream: bool = False) -> Tuple[Optional[requests.Response], UrlCheckResult]:
        try:
            response = self._request(method, url, stream=stream)
        except BAD_URL_ERRORS as e:
            return None, UrlCheckResult(url, ok=False, error=str(e))
        except requests.RequestException as e:
            logger.info(f"{method} {url} did not answer: {e}")
            return None, UrlCheckResult(url, ok=False, error=str(e), unreachable=True)

        status = response.status_code
        return response, UrlCheckResult(
            url, ok=response.ok, status=status, unreachable=is_transient_status(status)
        )

    def _download(self, response: requests.Response, url: str) -> _IndexFetch:
        """Reads a streamed body, giving up once ``timeout`` seconds have passed."""
        deadline = self._clock() + self.timeout
        chunks: List[bytes] = []
        try:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                chunks.append(chunk)
                if self._clock() > deadline:
                    logger.info(f"GET {url} still streaming after {self.timeout:g}s")
                    return _IndexFetch(None, UrlCheckResult(
                        url, ok=False, status=response.status_code,
                        error=f"download exceeded {self.timeout:g}s", unreachable=True,
                    ))
        except requests.RequestException as e:
            logger.info(f"GET {url} broke off: {e}")
            return _IndexFetch(None, UrlCheckResult(
                url, ok=False, status=response.status_code, error=str(e), unreachable=True,
            ))
        finally:
            response.close()

        # Chart indexes are UTF-8 YAML whatever Content-Type claims
        text = b"".join(chunks).decode("utf-8", errors="replace")
        return _IndexFetch(text, UrlCheckResult(url, ok=True, status=response.status_code))

    def check_url(self, url: str) -> UrlCheckResult:
        """HEAD ``url`` and report whether it answered 2xx/3xx."""
        return self._probe("HEAD", url)[1]

    def check_urls(self, urls: List[str]) -> List[UrlCheckResult]:
        """Probes concurrently; results follow the order of ``urls``."""
        if not urls:
            return []
        with ThreadPoolExecutor(max_workers=min(MAX_WORKERS, len(urls))) as pool:
            return list(pool.map(self.check_url, urls))

    def fetch_index(self, repo_url: str) -> _IndexFetch:
        with self._lock:
            cached = self._indexes.get(repo_url)
        if cached is not None:
            return cached

        url = index_url(repo_url)
        response, result = self._probe("GET", url, stream=True)
        if response is None:
            fetched = _IndexFetch(None, result)
        elif result.ok:
            fetched = self._download(response, url)
        else:
            response.close()
            fetched = _IndexFetch(None, result)
        with self._lock:
            self._indexes.setdefault(repo_url, fetched)
        return fetched

    # --- VALIDATIONS ---

    def validate_oci(self, repo_url: str) -> Optional[ValidationError]:
        # Registries do not answer plain HEADs; check the shape only
        if OCI_PATTERN.match(repo_url):
            return None
        return ValidationError(
            file="",
            severity=ERROR,
            message=f"Malformed OCI URL: {repo_url}",
            fix="OCI URLs should be: oci://registry/path",
        )

    def validate_chart_repo(self, repo_url: str) -> Optional[ValidationError]:
        if repo_url.startswith("oci://"):
            return self.validate_oci(repo_url)

        result = self.fetch_index(repo_url).result
        if result.ok:
            return None
        if result.unreachable:
            return ValidationError(
                file="",
                severity=WARNING,
                message=f"Could not verify helm repo {repo_url}: {result.detail}",
            )
        return ValidationError(
            file="",
            severity=ERROR,
            message=f"Helm repo unreachable: {repo_url} ({result.detail})",
            fix="Check the repo URL is correct and accessible",
        )

    def validate_chart_version(self, repo_url: str, chart: str,
                               version: str) -> Optional[ValidationError]:
        """
        Looks for a ``version: <v>`` token in the repo index. This is a
        text search, not a structural lookup of ``entries.<chart>``.
        """
        if version in UNPINNED_VERSIONS or repo_url.startswith("oci://"):
            return None

        fetched = self.fetch_index(repo_url)
        if fetched.text is None:
            # Reported by validate_chart_repo already
            return None

        pattern = re.compile(
            r'version:\s*["\']?' + re.escape(version) + r'["\']?(?![\w.+-])', re.MULTILINE
        )
        if pattern.search(fetched.text):
            return None
        return ValidationError(
            file="",
            severity=ERROR,
            message=f"Chart version not found: {chart}@{version}",
            fix=f"Check available versions with: helm search repo {chart} --versions",
        )

    def validate_git_repo(self, repo_url: str) -> Optional[ValidationError]:
        result = self.check_url(repo_url)
        if result.ok:
            return None
        if result.unreachable:
            return ValidationError(
                file="",
                severity=WARNING,
                message=f"Could not verify git repo {repo_url}: {result.detail}",
            )
        return ValidationError(
            file="",
            severity=ERROR,
            message=f"Git repo unreachable: {repo_url} ({result.detail})",
        )
