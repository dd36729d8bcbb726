"""
Pipeline — refresh the base bundle from an upstream source.

The stages are connected via flat_map, forming a railway:

  source.fetch(ctx)
    → verify_bundle(data, current base count)
      → refuse a degraded bundle (unless allowed)
        → store.update_base_bundle(data, origin, version)

Each stage returns Result[T]. Failures short-circuit automatically, and the
store is only touched by the last stage, so a failed download or a bundle
that fails verification leaves the store exactly as it was.
"""

from __future__ import annotations

import structlog
from railway import ErrorCode
from railway.result import Result

from cert_store.adapters.bundle_source import MAX_DEGRADATION_PERCENT, MIN_CERT_COUNT, verify_bundle
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import Metadata
from cert_store.domain.models import BundleVerification
from cert_store.domain.ports import BundleSource
from cert_store.store import Store

log = structlog.get_logger()

_OPERATION = "refresh base bundle"


def _current_base_count(store: Store) -> int:
    """Certificates in the installed base bundle; 0 when unknown (skips the degradation check)."""
    return store.get_metadata().map(lambda record: record.base_bundle.cert_count).get_or_else(0)


def _reject_degraded(verification: BundleVerification, allow_degraded: bool) -> Result[BundleVerification]:
    if verification.warning is None:
        return Result.success(verification)
    if allow_degraded:
        log.warning("pipeline.degraded_bundle_accepted", warning=verification.warning)
        return Result.success(verification)
    return Result.failure(
        ErrorCode.INVALID_FORMAT,
        f"{verification.warning}; refusing to replace the base bundle (allow degraded bundles to override)",
        operation=_OPERATION,
    )


def run_bundle_refresh(
    source: BundleSource,
    store: Store,
    ctx: OperationContext,
    min_count: int = MIN_CERT_COUNT,
    max_degradation_percent: float = MAX_DEGRADATION_PERCENT,
    allow_degraded: bool = False,
) -> Result[Metadata]:
    """
    Execute the full base bundle refresh.

    Flow:
      1. Fetch candidate bytes from `source`
      2. Verify them (minimum count, degradation against the current base)
      3. Install them as the new base bundle and rebuild the combined bundle

    Returns Result[Metadata] with the updated record on success, or the
    failure of the first stage that failed.
    """
    return (
        ctx.ensure_active(_OPERATION)
        .flat_map(lambda _: store.get_metadata())
        .flat_map(lambda _: source.fetch(ctx))
        .flat_map(
            lambda data: verify_bundle(data, _current_base_count(store), min_count, max_degradation_percent)
            .flat_map(lambda verification: _reject_degraded(verification, allow_degraded))
            .flat_map(
                lambda verification: store.update_base_bundle(data, source.origin, ctx, version=verification.version)
            )
        )
        .map_failure(lambda err: err.with_operation(_OPERATION))
        .peek(
            lambda record: log.info(
                "pipeline.bundle_refreshed",
                source=record.base_bundle.source,
                version=record.base_bundle.version,
                certificates=record.base_bundle.cert_count,
            )
        )
    )
