"""Reconciliation of Consul service tags against a DNS provider zone."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Set

import requests

from consul_external_dns.consul import DEFAULT_WATCH_WAIT, ConsulClient
from consul_external_dns.dns import DNSProvider
from consul_external_dns.errors import DataError, ExternalDNSError, FatalError, TransientError
from consul_external_dns.lock import DEFAULT_RETRY_INTERVAL, Lock
from consul_external_dns.models import DnsRecord
from consul_external_dns.tags import DEFAULT_PREFIX, desired_records

logger = logging.getLogger(__name__)

DEFAULT_STATE_KEY = "dns_records"
DEFAULT_SYNC_INTERVAL = 1.0

# Errors that fail a single create/delete without ending the pass.
RECORD_ERRORS = (TransientError, DataError, requests.exceptions.RequestException)


@dataclass
class PassResult:
    """Outcome of one reconciliation pass."""

    state: Dict[str, DnsRecord]
    created: List[str] = field(default_factory=list)
    deleted: List[str] = field(default_factory=list)
    failures: int = 0
    cancelled: bool = False

    @property
    def ok(self) -> bool:
        return self.failures == 0 and not self.cancelled


class Reconciler:
    def __init__(
        self,
        *,
        consul: ConsulClient,
        dns_provider: DNSProvider,
        zone_id: str,
        lock: Lock,
        shutdown: threading.Event,
        state_key: str = DEFAULT_STATE_KEY,
        tag_prefix: str = DEFAULT_PREFIX,
        watch_wait: float = DEFAULT_WATCH_WAIT,
        retry_interval: float = DEFAULT_RETRY_INTERVAL,
        sync_interval: float = DEFAULT_SYNC_INTERVAL,
    ):
        self.consul = consul
        self.dns_provider = dns_provider
        self.zone_id = zone_id
        self.lock = lock
        self.shutdown = shutdown
        self.state_key = state_key
        self.tag_prefix = tag_prefix
        self.watch_wait = watch_wait
        self.retry_interval = retry_interval
        self.sync_interval = sync_interval
        self.watching = False

    def reconcile(self, desired: Set[DnsRecord], state: Dict[str, DnsRecord]) -> PassResult:
        """Create missing records and delete unwanted ones.

        ``state`` is not modified; the returned result carries the new state.
        A failed create or delete is logged and counted and the pass goes on,
        so the entry stays diverged and the next pass retries it. FatalError
        is not caught.
        """
        result = PassResult(state=dict(state))

        tracked: Set[DnsRecord] = set()
        to_delete: List[str] = []
        for record_id in sorted(state):
            record = state[record_id]
            if record not in desired:
                to_delete.append(record_id)
            elif record in tracked:
                logger.warning(f"Record {record} is tracked twice, removing duplicate {record_id}")
                to_delete.append(record_id)
            else:
                tracked.add(record)

        to_create = sorted(desired - tracked, key=str)

        for record in to_create:
            if self.shutdown.is_set():
                result.cancelled = True
                return result
            try:
                record_id = self.dns_provider.create_record(self.zone_id, record)
            except RECORD_ERRORS as e:
                result.failures += 1
                logger.error(f"Failed to create record {record}: {e}")
                continue
            result.state[record_id] = record
            result.created.append(record_id)

        for record_id in to_delete:
            if self.shutdown.is_set():
                result.cancelled = True
                return result
            record = state[record_id]
            try:
                self.dns_provider.delete_record(self.zone_id, record_id)
            except RECORD_ERRORS as e:
                result.failures += 1
                logger.error(f"Failed to delete record {record_id} ({record}): {e}")
                continue
            result.state.pop(record_id, None)
            result.deleted.append(record_id)

        return result

    def sync_once(self, desired: Set[DnsRecord]) -> Optional[PassResult]:
        """Run one pass under the lock.

        The state is reloaded from Consul after the lock is taken, since
        another instance may have reconciled in between. It is written back
        only if every operation succeeded, so a partial failure leaves the
        last known-good state in place.

        Returns:
            The pass result, or None if shutdown was requested while waiting
            for the lock
        """
        if not self.lock.acquire():
            return None
        try:
            state = self.consul.get_all(self.state_key)
            result = self.reconcile(desired, state)
            if result.ok:
                self.consul.put_all(self.state_key, result.state)
            elif result.cancelled:
                logger.warning("Shutdown requested mid-pass, not storing state")
            else:
                logger.warning(
                    f"{result.failures} operation(s) failed, not storing state; "
                    "the next pass will retry"
                )
            logger.info(
                f"Reconciled {len(desired)} wanted record(s): "
                f"{len(result.created)} created, {len(result.deleted)} deleted, "
                f"{result.failures} failed"
            )
            return result
        finally:
            self.lock.release()

    def run(self) -> None:
        """Watch Consul and reconcile on every change until shutdown.

        A watch that times out without a change is not an error; the pass is
        skipped unless the previous one did not complete. Every cycle ends
        with a ``sync_interval`` pause, so a watch that keeps returning at
        once can't turn this into a busy loop.
        """
        cursor: Optional[int] = None
        dirty = True
        while not self.shutdown.is_set():
            # Set before the shutdown check so a concurrent canceller either
            # sees the flag or is seen here.
            self.watching = True
            try:
                if self.shutdown.is_set():
                    break
                next_cursor, tag_groups = self.consul.fetch_service_tags(
                    cursor, wait=self.watch_wait
                )
            except TransientError as e:
                logger.warning(f"Failed to watch Consul services: {e}")
                self.shutdown.wait(self.retry_interval)
                continue
            finally:
                self.watching = False

            changed = next_cursor is None or next_cursor != cursor
            cursor = next_cursor
            if self.shutdown.is_set():
                break

            if not changed and not dirty:
                logger.debug("No catalog change")
                self.shutdown.wait(self.sync_interval)
                continue

            desired = desired_records(tag_groups, self.tag_prefix)
            try:
                result = self.sync_once(desired)
            except FatalError:
                raise
            except ExternalDNSError as e:
                logger.warning(f"Reconciliation pass failed, will retry: {e}")
                dirty = True
            else:
                if result is None:
                    break
                dirty = not result.ok

            self.shutdown.wait(self.sync_interval)

        logger.info("Reconciler stopped")

    def run_once(self) -> bool:
        """Reconcile against the current catalog once. Returns True on success."""
        _, tag_groups = self.consul.fetch_service_tags()
        result = self.sync_once(desired_records(tag_groups, self.tag_prefix))
        return result is not None and result.ok
