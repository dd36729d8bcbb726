"""
Integration tests for concurrent mutations — threads and processes racing on
one store through the real file lock.

Each mutation appends an entry named after the catalog size it observed, so a
lost update shows up as a duplicate name (and therefore a short catalog).
"""

from __future__ import annotations

from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor

import pytest
from railway import ResultAssertions

from cert_store.adapters.file_lock import FileLocker
from cert_store.adapters.metadata_repository import JsonMetadataRepository
from cert_store.domain.context import OperationContext
from cert_store.domain.metadata import SOURCE_USER
from cert_store.store import Store
from tests.conftest import BASE_BUNDLE_SIZE, make_certificate_pem
from tests.workers import add_certificate_in_process, append_entry, increment_in_process

pytestmark = pytest.mark.integration

WORKERS = 12


class TestThreadedUpdates:
    def test_no_lost_updates_across_threads(self, initialized_store: Store) -> None:
        """
        GIVEN an initialized store
        WHEN 12 threads each run a locked update through their own repository
        THEN the catalog holds 12 distinct entries.
        """
        path = initialized_store.paths.metadata

        def run(_: int) -> bool:
            repository = JsonMetadataRepository(path, FileLocker(poll_interval=0.005), lock_timeout=30.0)
            return repository.update_locked(OperationContext.background(), append_entry).is_success()

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            outcomes = list(pool.map(run, range(WORKERS)))

        assert all(outcomes)
        names = [c.name for c in initialized_store.list_certificates().value()]
        assert sorted(names) == sorted(f"entry-{i}" for i in range(WORKERS))

    def test_threads_adding_certificates(self, initialized_store: Store) -> None:
        """
        GIVEN an initialized store
        WHEN 12 threads each add a differently named certificate
        THEN every add succeeds and the catalog and combined bundle hold all 12.
        """
        pems = {f"cert-{i}": make_certificate_pem(f"Thread CA {i}") for i in range(WORKERS)}

        def add(name: str) -> bool:
            return initialized_store.add_certificate(pems[name], name, OperationContext.background()).is_success()

        with ThreadPoolExecutor(max_workers=WORKERS) as pool:
            outcomes = list(pool.map(add, pems))

        assert all(outcomes)
        record = initialized_store.get_metadata().value()
        assert sorted(c.name for c in record.user_certificates) == sorted(pems)
        assert record.combined_bundle.cert_count == BASE_BUNDLE_SIZE + WORKERS


class TestMultiProcessUpdates:
    def test_no_lost_updates_across_processes(self, initialized_store: Store, process_pool: ProcessPoolExecutor) -> None:
        """
        GIVEN an initialized store
        WHEN 12 locked updates run in separate processes
        THEN every one succeeds and the catalog holds 12 distinct entries.
        """
        path = str(initialized_store.paths.metadata)

        outcomes = list(process_pool.map(increment_in_process, [path] * WORKERS))

        assert all(outcomes)
        names = {c.name for c in initialized_store.list_certificates().value()}
        assert names == {f"entry-{i}" for i in range(WORKERS)}

    def test_two_processes_add_different_names(self, initialized_store: Store, process_pool: ProcessPoolExecutor) -> None:
        """
        GIVEN an initialized store
        WHEN two processes add "alpha" and "beta" at the same time
        THEN both succeed and the catalog and combined bundle contain both.
        """
        root = str(initialized_store.paths.root)
        alpha, beta = make_certificate_pem("Alpha"), make_certificate_pem("Beta")

        futures = [
            process_pool.submit(add_certificate_in_process, root, alpha, "alpha"),
            process_pool.submit(add_certificate_in_process, root, beta, "beta"),
        ]

        assert [f.result() for f in futures] == ["ok", "ok"]
        record = ResultAssertions.assert_success(initialized_store.get_metadata())
        assert {c.name for c in record.user_certificates} == {"alpha", "beta"}
        assert SOURCE_USER in record.combined_bundle.sources
        combined = initialized_store.paths.combined_bundle.read_bytes()
        assert alpha in combined
        assert beta in combined
