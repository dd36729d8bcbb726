"""
Unit tests for the bundle source adapters and bundle verification.

Uses respx to mock httpx calls (never makes real HTTP requests); tenacity's
backoff is replaced with `wait_none` so retry tests run instantly.
"""

from __future__ import annotations

import httpx
import pytest
import respx
from railway import ErrorCode, ResultAssertions
from tenacity import wait_none

from cert_store.adapters.bundle_source import (
    USER_AGENT,
    EmbeddedBundleSource,
    HttpBundleSource,
    StaticBundleSource,
    embedded_bundle,
    extract_bundle_version,
    verify_bundle,
)
from cert_store.adapters.certificate_validator import count_certificates
from cert_store.domain.context import OperationContext
from tests.conftest import make_bundle

BUNDLE_URL = "https://bundles.example.com/cacert.pem"

CURL_HEADER = (
    b"##\n"
    b"## Bundle of CA Root Certificates\n"
    b"##\n"
    b"## Certificate data from Mozilla as of: Tue Sep  9 03:12:01 2025 GMT\n"
    b"##\n"
)


@pytest.fixture(autouse=True)
def _no_backoff(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(HttpBundleSource._do_download.retry, "wait", wait_none())


@pytest.fixture()
def source() -> HttpBundleSource:
    return HttpBundleSource(url=BUNDLE_URL, timeout=5)


class TestEmbeddedBundle:
    def test_packaged_bundle_is_a_real_ca_bundle(self) -> None:
        """
        GIVEN the bundle shipped inside the package
        WHEN its certificates are counted
        THEN there are at least 100 of them.
        """
        assert count_certificates(embedded_bundle()) >= 100

    def test_embedded_source_origin_and_bytes(self) -> None:
        """
        GIVEN the embedded source
        WHEN fetch is called
        THEN it returns the packaged bundle and reports origin "embedded".
        """
        source = EmbeddedBundleSource()

        data = ResultAssertions.assert_success(source.fetch(OperationContext.background()))

        assert source.origin == "embedded"
        assert data == embedded_bundle()

    def test_static_source_respects_cancellation(self) -> None:
        """Static bytes are not handed out on a cancelled context."""
        ctx = OperationContext.background()
        ctx.cancel()

        ResultAssertions.assert_failure(StaticBundleSource(b"x").fetch(ctx), ErrorCode.CANCELLED)


class TestHttpBundleSourceSuccess:
    @respx.mock
    def test_returns_body_bytes(self, source: HttpBundleSource) -> None:
        """
        GIVEN the server returns 200 with a PEM body
        WHEN fetch is called
        THEN the body bytes are returned unchanged and the origin is the URL.
        """
        respx.get(BUNDLE_URL).mock(return_value=httpx.Response(200, content=b"PEM DATA"))

        result = source.fetch(OperationContext.background())

        ResultAssertions.assert_success_value(result, b"PEM DATA")
        assert source.origin == BUNDLE_URL

    @respx.mock
    def test_sends_user_agent(self, source: HttpBundleSource) -> None:
        """
        GIVEN a server answering 200
        WHEN fetch is called
        THEN the request carries the cert-store User-Agent.
        """
        route = respx.get(BUNDLE_URL).mock(return_value=httpx.Response(200, content=b"x"))

        source.fetch(OperationContext.background())

        assert route.calls.last.request.headers["User-Agent"] == USER_AGENT

    @respx.mock
    def test_retries_transient_network_errors(self, source: HttpBundleSource) -> None:
        """
        GIVEN a connection timeout followed by a 200
        WHEN fetch is called
        THEN the retry succeeds after two calls.
        """
        route = respx.get(BUNDLE_URL).mock(
            side_effect=[httpx.ConnectTimeout("timed out"), httpx.Response(200, content=b"ok")]
        )

        ResultAssertions.assert_success_value(source.fetch(OperationContext.background()), b"ok")
        assert route.call_count == 2


class TestHttpBundleSourceFailure:
    @respx.mock
    def test_server_error(self, source: HttpBundleSource) -> None:
        """
        GIVEN the server returns 500
        WHEN fetch is called
        THEN it fails with NETWORK_ERROR, without retrying.
        """
        route = respx.get(BUNDLE_URL).mock(return_value=httpx.Response(500))

        ResultAssertions.assert_failure(source.fetch(OperationContext.background()), ErrorCode.NETWORK_ERROR)
        assert route.call_count == 1

    @respx.mock
    def test_network_failure_after_retries(self, source: HttpBundleSource) -> None:
        """
        GIVEN a server that refuses every connection
        WHEN fetch is called
        THEN it gives up after three attempts with NETWORK_ERROR naming the URL.
        """
        route = respx.get(BUNDLE_URL).mock(side_effect=httpx.ConnectError("refused"))

        result = source.fetch(OperationContext.background())

        error = ResultAssertions.assert_failure(result, ErrorCode.NETWORK_ERROR)
        assert error.path == BUNDLE_URL
        assert route.call_count == 3

    @respx.mock
    def test_empty_body(self, source: HttpBundleSource) -> None:
        """
        GIVEN a 200 response with an empty body
        WHEN fetch is called
        THEN it fails with NETWORK_ERROR.
        """
        respx.get(BUNDLE_URL).mock(return_value=httpx.Response(200, content=b""))

        ResultAssertions.assert_failure(source.fetch(OperationContext.background()), ErrorCode.NETWORK_ERROR)

    def test_cancelled_before_request(self, source: HttpBundleSource) -> None:
        """
        GIVEN a cancelled context
        WHEN fetch is called
        THEN it fails with CANCELLED.
        """
        ctx = OperationContext.background()
        ctx.cancel()

        ResultAssertions.assert_failure(source.fetch(ctx), ErrorCode.CANCELLED)


class TestExtractBundleVersion:
    def test_reads_mozilla_date(self) -> None:
        """
        GIVEN a curl bundle header
        WHEN the version is extracted
        THEN the Mozilla data date is returned as YYYY-MM-DD.
        """
        assert extract_bundle_version(CURL_HEADER + b"-----BEGIN CERTIFICATE-----\n") == "2025-09-09"

    def test_no_header(self) -> None:
        """A bundle without the Mozilla header has no version."""
        assert extract_bundle_version(b"-----BEGIN CERTIFICATE-----\n") is None

    def test_header_beyond_first_kib_is_ignored(self) -> None:
        """Only the first KiB is searched for the header."""
        assert extract_bundle_version(b"#" * 2048 + CURL_HEADER) is None


class TestVerifyBundle:
    def test_too_few_certificates(self) -> None:
        """
        GIVEN a bundle with 3 certificates and a minimum of 5
        WHEN verify_bundle is called
        THEN it fails with INVALID_FORMAT.
        """
        result = verify_bundle(make_bundle(3), min_count=5)

        ResultAssertions.assert_failure(result, ErrorCode.INVALID_FORMAT)
        ResultAssertions.assert_failure_message_contains(result, "only 3")

    def test_accepts_bundle_and_reads_version(self) -> None:
        """
        GIVEN a curl bundle with 3 certificates and a minimum of 3
        WHEN verify_bundle is called
        THEN it succeeds with the count, the version and no warning.
        """
        verification = ResultAssertions.assert_success(verify_bundle(CURL_HEADER + make_bundle(3), min_count=3))

        assert verification.cert_count == 3
        assert verification.version == "2025-09-09"
        assert verification.warning is None

    def test_warns_on_degradation(self) -> None:
        """
        GIVEN a current count of 10 and a candidate with 4 (60% fewer)
        WHEN verify_bundle is called with a 20% limit
        THEN it succeeds with a warning.
        """
        verification = ResultAssertions.assert_success(
            verify_bundle(make_bundle(4), current_count=10, min_count=1, max_degradation_percent=20)
        )

        assert verification.warning is not None
        assert "60.0%" in verification.warning

    def test_small_drop_has_no_warning(self) -> None:
        """
        GIVEN a current count of 10 and a candidate with 9
        WHEN verify_bundle is called with the default limit
        THEN no warning is set.
        """
        verification = verify_bundle(make_bundle(9), current_count=10, min_count=1).value()

        assert verification.warning is None
