"""
Controller module for Quorum-DNS.

This module is responsible for driving every DNSRecord towards its desired
state. DNSRecordReconciler runs one convergence cycle for a record of this
cluster. Controller feeds record keys from store notifications and delayed
requeues to a pool of workers, never running two cycles for the same key at
once.
"""

import asyncio
import logging
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple

from quorum_dns.controller.accessor import LocalRecord, RecordAccessor
from quorum_dns.controller.reconciler import BaseReconciler, ReconcileResult
from quorum_dns.errors import (
    ProviderError,
    QuorumDNSError,
    RecordConflictError,
    RecordMissingError,
    ValidationError,
)
from quorum_dns.models.record import (
    CONDITION_TYPE_READY,
    CONDITION_TYPE_READY_FOR_DELEGATION,
    DNS_RECORD_FINALIZER,
    REASON_AWAITING_VALIDATION,
    REASON_DELEGATION_READY,
    REASON_DNS_PROVIDER_ERROR,
    REASON_PROVIDER_ENDPOINTS_DELETION,
    REASON_PROVIDER_ENDPOINTS_REMOVED,
    REASON_PROVIDER_ERROR,
    REASON_VALIDATION_ERROR,
    STATUS_FALSE,
    STATUS_TRUE,
    DNSRecord,
)
from quorum_dns.provider.provider import sanitize_error
from quorum_dns.store.record_store import RecordStore


class DNSRecordReconciler(BaseReconciler):
    """
    Reconciles the DNSRecords of this cluster.
    """

    async def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one convergence cycle for a record.

        Args:
            namespace: Record namespace
            name: Record name

        Returns:
            ReconcileResult: When to run the next cycle
        """
        reconcile_start = self.clock()
        try:
            record = await self.store.get(namespace, name)
        except RecordMissingError:
            return ReconcileResult()

        previous_hash = record.status.content_hash()
        accessor = LocalRecord(record)
        if not record.is_authoritative_record():
            accessor.set_status_group(self.group)

        if record.is_deleting():
            return await self._reconcile_delete(accessor, previous_hash)

        if DNS_RECORD_FINALIZER not in record.finalizers:
            record.finalizers.append(DNS_RECORD_FINALIZER)
            try:
                await self.store.update(record)
            except RecordConflictError:
                return ReconcileResult(requeue=True)
            self.logger.debug(f"Added finalizer to {record.key}")
            return ReconcileResult(requeue_after=self.randomized_validation_requeue())

        try:
            record.validate()
        except ValidationError as e:
            self.logger.error(f"Failed to validate {record.key}: {e}")
            accessor.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_VALIDATION_ERROR,
                f"validation of DNSRecord failed: {e}",
            )
            return await self._update_status(previous_hash, accessor, False, e, reconcile_start)

        if not accessor.has_owner_id_assigned():
            accessor.set_status_owner_id(record.spec.owner_id or record.uid_hash())

        if record.is_delegating():
            accessor.set_status_condition(
                CONDITION_TYPE_READY_FOR_DELEGATION,
                STATUS_TRUE,
                REASON_DELEGATION_READY,
                "Record is ready to be published by primary clusters",
            )
            if not self.is_primary():
                return await self._delegate_only(accessor, previous_hash)

        if not accessor.has_dns_zone_assigned():
            self.logger.info(f"Provider zone not assigned for root host {record.spec.root_host}, finding suitable zone")
            try:
                zone = await self.find_zone(accessor)
            except QuorumDNSError as e:
                accessor.set_status_condition(
                    CONDITION_TYPE_READY,
                    STATUS_FALSE,
                    REASON_DNS_PROVIDER_ERROR,
                    f"Unable to find suitable zone in provider: {sanitize_error(e)}",
                )
                return await self._update_status(previous_hash, accessor, False, e, reconcile_start)
            accessor.set_status_zone_id(zone.id)
            accessor.set_status_zone_domain_name(zone.dns_name)

        try:
            provider = self.get_provider(accessor)
        except ProviderError as e:
            accessor.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_DNS_PROVIDER_ERROR,
                f"The dns provider could not be loaded: {sanitize_error(e)}",
            )
            return await self._update_status(previous_hash, accessor, False, e, reconcile_start)

        adapter = await self.apply_group_adapter(accessor)
        adapter = await self.apply_health_adapter(adapter)

        if not adapter.is_active():
            self.logger.info(f"Record {record.key} is in inactive group {adapter.group}, not publishing")
            adapter.set_status_conditions(False)
            try:
                await adapter.finalize_reconciliation(provider)
            except QuorumDNSError as e:
                self.logger.error(f"Failed to update TXT registry entries of {record.key}: {e}")
                accessor.set_status_condition(
                    CONDITION_TYPE_READY,
                    STATUS_FALSE,
                    REASON_PROVIDER_ERROR,
                    f"The DNS provider failed to update the registry: {sanitize_error(e)}",
                )
                return await self._update_status(previous_hash, accessor, False, e, reconcile_start)
            accessor.set_status_observed_generation(record.generation)
            return await self.write_status(
                self.store, previous_hash, record, self.timing.inactive_group_requeue
            )

        premature, remaining = self.received_prematurely(record, reconcile_start)
        if premature and adapter.health_changed():
            self.logger.info(f"Health check results of {record.key} changed, not waiting {remaining:.1f}s")
            premature = False
        if premature:
            self.logger.debug(f"Skipping {record.key}, still valid for {remaining:.1f}s")
            return ReconcileResult(requeue_after=remaining)

        try:
            had_changes = await self.publish_record(adapter, provider)
            await adapter.finalize_reconciliation(provider)
        except QuorumDNSError as e:
            self.logger.error(f"Failed to publish {record.key}: {e}")
            accessor.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_PROVIDER_ERROR,
                f"The DNS provider failed to ensure the record: {sanitize_error(e)}",
            )
            return await self._update_status(previous_hash, accessor, False, e, reconcile_start)

        return await self._update_status(previous_hash, adapter, had_changes, None, reconcile_start)

    async def _reconcile_delete(self, accessor: RecordAccessor, previous_hash: str) -> ReconcileResult:
        record = accessor.record
        status = accessor.status

        if status.provider_endpoints_removed():
            if DNS_RECORD_FINALIZER in record.finalizers:
                record.finalizers.remove(DNS_RECORD_FINALIZER)
                try:
                    await self.store.update(record)
                except RecordConflictError:
                    return ReconcileResult(requeue=True)
                except RecordMissingError:
                    return ReconcileResult()
                self.logger.info(f"Removed finalizer from {record.key}")
            return ReconcileResult()

        ready = status.get_condition(CONDITION_TYPE_READY)
        if ready is not None and ready.reason == REASON_PROVIDER_ENDPOINTS_REMOVED:
            # Local cleanup is done, remote clusters still hold endpoints
            self.logger.info(f"Waiting for remote clusters to remove endpoints of {record.key}")
            return ReconcileResult(requeue_after=self.timing.deletion_requeue)

        if not status.provider_endpoints_deletion():
            accessor.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_PROVIDER_ENDPOINTS_DELETION,
                "DNS records are being deleted from provider",
            )
            return await self.write_status(self.store, previous_hash, record, self.timing.deletion_requeue)

        if accessor.has_dns_zone_assigned():
            try:
                provider = self.get_provider(accessor)
                had_changes = await self.delete_record(accessor, provider)
            except QuorumDNSError as e:
                self.logger.error(f"Failed to delete {record.key} from zone: {e}")
                accessor.set_status_condition(
                    CONDITION_TYPE_READY,
                    STATUS_FALSE,
                    REASON_PROVIDER_ERROR,
                    f"The DNS provider failed to delete the record: {sanitize_error(e)}",
                )
                return await self.write_status(
                    self.store, previous_hash, record, self.randomized_validation_requeue()
                )
            if had_changes:
                return ReconcileResult(requeue_after=self.randomized_validation_requeue())
        else:
            self.logger.info(f"DNS zone was never assigned to {record.key}, skipping zone cleanup")

        accessor.set_status_condition(
            CONDITION_TYPE_READY,
            STATUS_FALSE,
            REASON_PROVIDER_ENDPOINTS_REMOVED,
            "DNS records removed from provider",
        )
        accessor.set_status_zone_id("")
        accessor.set_status_zone_domain_name("")
        accessor.set_status_endpoints([])
        return await self.write_status(self.store, previous_hash, record, self.timing.deletion_requeue)

    async def _delegate_only(self, accessor: RecordAccessor, previous_hash: str) -> ReconcileResult:
        # Secondary clusters leave publishing to the remote reconcilers of primaries
        accessor.set_status_observed_generation(accessor.record.generation)
        return await self.write_status(self.store, previous_hash, accessor.record, self.timing.valid_for)

    def received_prematurely(self, record: DNSRecord, now: float) -> Tuple[bool, float]:
        """
        Whether a cycle started before the last observation expired.

        A changed generation or a failed last cycle is never premature.

        Args:
            record: Record being reconciled
            now: Start of the current cycle

        Returns:
            Tuple[bool, float]: Premature flag and seconds until expiry
        """
        status = record.status
        valid_for = status.valid_for or self.timing.valid_for
        expiry = status.queued_at + valid_for

        if record.generation != status.observed_generation:
            return False, valid_for

        ready = status.get_condition(CONDITION_TYPE_READY)
        if ready is None:
            return False, valid_for
        if ready.status == STATUS_FALSE and ready.reason != REASON_AWAITING_VALIDATION:
            return False, valid_for

        return now < expiry, max(expiry - now, 0.0)

    async def _update_status(
        self,
        previous_hash: str,
        accessor: RecordAccessor,
        had_changes: bool,
        error: Optional[Exception],
        reconcile_start: float,
    ) -> ReconcileResult:
        record = accessor.record
        status = accessor.status

        if error is not None:
            if status.content_hash() != previous_hash:
                try:
                    await self.store.update_status(record)
                except RecordConflictError:
                    return ReconcileResult(requeue=True)
            return ReconcileResult(requeue_after=self.randomized_validation_requeue())

        generation_changed = record.generation != status.observed_generation

        if had_changes:
            # Same generation but changes needed: someone else overwrote us
            if not generation_changed:
                status.write_counter += 1
                self.logger.debug(f"Changes needed on the same generation of {record.key}")
            requeue = self.randomized_validation_requeue()
        else:
            self.logger.info(f"All records of {record.key} are already up to date")
            ready = status.get_condition(CONDITION_TYPE_READY)
            if ready is None:
                requeue = self.timing.min_requeue
            elif ready.status == STATUS_FALSE and ready.reason == REASON_AWAITING_VALIDATION:
                requeue = self.exponential_requeue(self.timing.min_requeue)
            elif generation_changed:
                requeue = self.timing.min_requeue
            else:
                requeue = self.exponential_requeue(status.valid_for)

        accessor.set_status_conditions(had_changes)

        status.valid_for = requeue
        if generation_changed:
            status.write_counter = 0
        status.observed_generation = record.generation
        status.queued_at = reconcile_start

        return await self.write_status(self.store, previous_hash, record, requeue)


class Controller:
    """
    Work queue feeding record keys to a pool of reconcile workers.
    """

    def __init__(
        self,
        reconcile: Callable,
        workers: int = 1,
        max_backoff: float = 900.0,
        base_backoff: float = 1.0,
        name: str = "controller",
    ):
        """
        Initialize a Controller.

        Args:
            reconcile: Coroutine function called with the unpacked key
            workers: Number of concurrent workers
            max_backoff: Upper bound of the retry delay after failures
            base_backoff: First retry delay after a failure
            name: Name used in log messages
        """
        self.reconcile = reconcile
        self.workers = max(1, workers)
        self.max_backoff = max_backoff
        self.base_backoff = base_backoff
        self.name = name
        self.logger = logging.getLogger(f"quorum-dns.{name}")

        self.queue: Optional[asyncio.Queue] = None
        self._queued: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._timers: Dict[Hashable, asyncio.TimerHandle] = {}
        self._failures: Dict[Hashable, int] = {}
        self._sources: List[Tuple[RecordStore, Callable[[DNSRecord], Hashable]]] = []
        self._tasks: List[asyncio.Task] = []

    def watch(self, store: RecordStore, key_for: Optional[Callable[[DNSRecord], Hashable]] = None) -> None:
        """
        Enqueue records of a store whenever they change.

        Args:
            store: Store to watch
            key_for: Maps a record to its queue key, (namespace, name) by default
        """
        key_for = key_for or (lambda record: (record.namespace, record.name))
        self._sources.append((store, key_for))
        store.subscribe(lambda event, record: self.enqueue(key_for(record)))

    def _ensure_queue(self) -> asyncio.Queue:
        if self.queue is None:
            self.queue = asyncio.Queue()
        return self.queue

    def enqueue(self, key: Hashable) -> None:
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._ensure_queue().put_nowait(key)

    def enqueue_after(self, key: Hashable, delay: float) -> None:
        """
        Schedule a key, replacing any earlier schedule for it.

        Args:
            key: Queue key
            delay: Seconds to wait
        """
        timer = self._timers.pop(key, None)
        if timer is not None:
            timer.cancel()
        if delay <= 0:
            self.enqueue(key)
            return
        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.enqueue(key)

    async def start(self) -> None:
        """
        Enqueue every existing record and start the workers.
        """
        self._ensure_queue()
        for store, key_for in self._sources:
            for record in await store.list():
                self.enqueue(key_for(record))
        self._tasks = [asyncio.create_task(self._worker(i)) for i in range(self.workers)]
        self.logger.info(f"Started {self.name} with {self.workers} workers")

    async def run(self) -> None:
        await self.start()
        await asyncio.gather(*self._tasks)

    async def stop(self) -> None:
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        self.logger.info(f"Stopped {self.name}")

    async def wait_idle(self) -> None:
        """Wait until every queued key has been processed."""
        await self._ensure_queue().join()

    async def _worker(self, index: int) -> None:
        queue = self._ensure_queue()
        while True:
            key = await queue.get()
            self._queued.discard(key)
            self._processing.add(key)
            try:
                await self.process(key)
            finally:
                self._processing.discard(key)
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.enqueue(key)
                queue.task_done()

    async def process(self, key: Hashable) -> None:
        """
        Run one reconcile for a key and schedule the next one.

        Args:
            key: Queue key
        """
        try:
            result = await self.reconcile(*key)
        except Exception as e:
            self.logger.error(f"Error reconciling {key}: {e}", exc_info=True)
            failures = self._failures.get(key, 0) + 1
            self._failures[key] = failures
            delay = min(self.base_backoff * 2 ** (failures - 1), self.max_backoff)
            self.logger.debug(f"Retrying {key} in {delay:.1f}s after {failures} failures")
            self.enqueue_after(key, delay)
            return

        self._failures.pop(key, None)
        if result.requeue_after > 0:
            self.enqueue_after(key, result.requeue_after)
        elif result.requeue:
            self.enqueue_after(key, 0)
