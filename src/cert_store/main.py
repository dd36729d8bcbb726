"""
Application entry point — composition root for the `certstore` command.

This is the ONLY place where concrete adapters are instantiated; the store,
pipeline and doctor depend on Protocol ports.

Responsibilities:
  1. Configure structlog (stderr, so command output on stdout stays clean)
  2. Build the Store from validated settings
  3. Wire the bundle refresh pipeline for `bundle update` / `bundle watch`
  4. Hand control to the click command group
"""

from __future__ import annotations

import logging
import sys
from typing import Callable

import structlog
from railway.result import Result

from cert_store.adapters.bundle_source import EmbeddedBundleSource, HttpBundleSource
from cert_store.adapters.certificate_validator import X509CertificateValidator
from cert_store.adapters.file_lock import FileLocker
from cert_store.config import AppSettings
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import Metadata
from cert_store.pipeline import run_bundle_refresh
from cert_store.store import Store


def configure_structlog(log_level: str = "WARNING") -> None:
    """
    Configure structlog for human-readable console logging on stderr.

    Events below `log_level` are dropped by the filtering bound logger.
    """
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.StackInfoRenderer(),
            structlog.dev.set_exc_info,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper(), logging.WARNING)
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=False,
    )
    logging.basicConfig(level=getattr(logging, log_level.upper(), logging.WARNING), stream=sys.stderr)


def create_store(settings: AppSettings) -> Store:
    """Instantiate the Store with its production adapters."""
    return Store(
        root=settings.root,
        base_source=EmbeddedBundleSource(),
        validator=X509CertificateValidator(),
        locker=FileLocker(poll_interval=settings.lock.poll_interval_seconds),
        lock_timeout=settings.lock.timeout_seconds,
    )


def create_context(settings: AppSettings) -> OperationContext:
    return OperationContext.background().with_timeout(settings.operation_timeout_seconds)


def create_refresh(
    settings: AppSettings,
    store: Store,
    url: str | None = None,
    allow_degraded: bool = False,
) -> Callable[[], Result[Metadata]]:
    """
    Wire the refresh pipeline into a zero-argument callable.

    Each call gets a fresh operation context; the download timeout is added on
    top of the operation timeout since fetching dominates a refresh.
    """
    source = HttpBundleSource(url=url or settings.bundle.url, timeout=settings.http_timeout_seconds)

    def refresh() -> Result[Metadata]:
        ctx = OperationContext.background().with_timeout(
            settings.operation_timeout_seconds + settings.http_timeout_seconds
        )
        return run_bundle_refresh(
            source,
            store,
            ctx,
            min_count=settings.bundle.min_cert_count,
            max_degradation_percent=settings.bundle.max_degradation_percent,
            allow_degraded=allow_degraded,
        )

    return refresh


def main() -> None:
    """Run the `certstore` command line."""
    from cert_store.cli import cli  # cli imports the factories above

    cli(prog_name="certstore")


if __name__ == "__main__":
    main()
