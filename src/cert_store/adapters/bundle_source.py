"""
Bundle source adapters — where base trust bundles come from.

Implements the BundleSource port three ways:
  - EmbeddedBundleSource: the Mozilla bundle packaged with cert_store
  - StaticBundleSource: caller-supplied bytes (tests, offline imports)
  - HttpBundleSource: download via httpx, retried with tenacity on transient
    network errors only

`verify_bundle` is the sanity gate a downloaded bundle passes before it may
replace the current base bundle.
"""

from __future__ import annotations

import re
from datetime import datetime
from importlib import resources

import httpx
import structlog
from railway import ErrorCode, FailureDescription
from railway.result import Result
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from cert_store import __version__
from cert_store.adapters.certificate_validator import count_certificates
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import ORIGIN_EMBEDDED
from cert_store.domain.models import BundleVerification

log = structlog.get_logger()

DEFAULT_BUNDLE_URL = "https://curl.se/ca/cacert.pem"
MIN_CERT_COUNT = 100
MAX_DEGRADATION_PERCENT = 20.0

USER_AGENT = f"cert-store/{__version__} (certificate management tool)"

_EMBEDDED_RESOURCE = "mozilla-ca-bundle.pem"
_HEADER_WINDOW = 1024
_MOZILLA_DATE = re.compile(
    rb"Certificate data from Mozilla as of:\s+"
    rb"([A-Za-z]{3}\s+[A-Za-z]{3}\s+\d{1,2}\s+\d{2}:\d{2}:\d{2}\s+\d{4})\s+GMT"
)


def embedded_bundle() -> bytes:
    """The Mozilla CA bundle shipped inside the package."""
    return (resources.files("cert_store") / "assets" / _EMBEDDED_RESOURCE).read_bytes()


class EmbeddedBundleSource:
    """Serves the packaged bundle; origin is recorded as "embedded"."""

    origin = ORIGIN_EMBEDDED

    def fetch(self, ctx: OperationContext) -> Result[bytes]:
        return ctx.ensure_active("load embedded bundle").flat_map(
            lambda _: Result.from_computation(
                embedded_bundle, ErrorCode.IO_FAILURE, "embedded bundle is unavailable", operation="load embedded bundle"
            )
        )


class StaticBundleSource:
    def __init__(self, data: bytes, origin: str = ORIGIN_EMBEDDED) -> None:
        self._data = data
        self._origin = origin

    @property
    def origin(self) -> str:
        return self._origin

    def fetch(self, ctx: OperationContext) -> Result[bytes]:
        return ctx.ensure_active("load bundle").map(lambda _: self._data)


class HttpBundleSource:
    """
    Download a PEM bundle over HTTPS.

    Non-2xx responses, empty bodies and network errors that survive the
    retries become NETWORK_ERROR failures. The request timeout is capped by the
    context deadline.
    """

    def __init__(self, url: str = DEFAULT_BUNDLE_URL, timeout: float = 60.0) -> None:
        self._url = url
        self._timeout = timeout

    @property
    def origin(self) -> str:
        return self._url

    def fetch(self, ctx: OperationContext) -> Result[bytes]:
        return (
            ctx.ensure_active("download bundle")
            .flat_map(
                lambda _: Result.from_computation(
                    lambda: self._do_download(_effective_timeout(self._timeout, ctx)),
                    ErrorCode.NETWORK_ERROR,
                    "bundle download failed",
                    operation="download bundle",
                    path=self._url,
                )
            )
            .ensure(lambda data: len(data) > 0, _empty_body(self._url))
        )

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=0.1, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.NetworkError)),
        reraise=True,
    )
    def _do_download(self, timeout: float) -> bytes:
        """HTTP GET with retry — exceptions caught by from_computation."""
        with httpx.Client(timeout=timeout, follow_redirects=True) as client:
            response = client.get(self._url, headers={"User-Agent": USER_AGENT})
            response.raise_for_status()
            data = response.content
            log.info("bundle.downloaded", url=self._url, size_bytes=len(data))
            return data


def _effective_timeout(timeout: float, ctx: OperationContext) -> float:
    remaining = ctx.remaining()
    if remaining is None:
        return timeout
    return max(0.1, min(timeout, remaining))


def _empty_body(url: str) -> FailureDescription:
    return FailureDescription.create(ErrorCode.NETWORK_ERROR, "server returned an empty bundle", operation="download bundle", path=url)


def extract_bundle_version(data: bytes) -> str | None:
    """
    The Mozilla data date (`YYYY-MM-DD`) from a curl.se bundle header, if present.

    Only the first KiB is searched, which is where the header comment lives.
    """
    match = _MOZILLA_DATE.search(data[:_HEADER_WINDOW])
    if match is None:
        return None
    text = b" ".join(match.group(1).split()).decode("ascii")
    try:
        return datetime.strptime(text, "%a %b %d %H:%M:%S %Y").date().isoformat()
    except ValueError:
        return None


def verify_bundle(
    data: bytes,
    current_count: int = 0,
    min_count: int = MIN_CERT_COUNT,
    max_degradation_percent: float = MAX_DEGRADATION_PERCENT,
) -> Result[BundleVerification]:
    """
    Sanity-check a candidate base bundle.

    Fails with INVALID_FORMAT when it holds fewer than `min_count` parseable
    certificates. When `current_count` is known and the new count is more than
    `max_degradation_percent` lower, the verification succeeds with a warning;
    the caller decides whether that blocks the update.
    """
    count = count_certificates(data)
    if count < min_count:
        return Result.failure(
            ErrorCode.INVALID_FORMAT,
            f"bundle contains only {count} certificates, expected at least {min_count}",
            operation="verify bundle",
        )
    warning = None
    if current_count > 0:
        degradation = (current_count - count) / current_count * 100
        if degradation > max_degradation_percent:
            warning = (
                f"new bundle has {current_count - count} fewer certificates "
                f"({degradation:.1f}% decrease); this may indicate a problem"
            )
            log.warning("bundle.degraded", current=current_count, candidate=count, percent=round(degradation, 1))
    return Result.success(BundleVerification(cert_count=count, version=extract_bundle_version(data), warning=warning))
