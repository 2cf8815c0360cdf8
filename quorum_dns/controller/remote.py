"""
Remote reconciler module for Quorum-DNS.

Primary clusters publish the delegating records of their peers. The records
are read from the foreign cluster's store, their endpoints go into the
authoritative record of this cluster, and what this cluster observes is
written back into the record's status slot for this cluster.
"""

import logging
from typing import Dict

from quorum_dns.controller.accessor import RemoteRecord
from quorum_dns.controller.reconciler import BaseReconciler, ReconcileResult
from quorum_dns.errors import QuorumDNSError, RecordMissingError
from quorum_dns.models.record import (
    CONDITION_TYPE_READY,
    REASON_DNS_PROVIDER_ERROR,
    REASON_PROVIDER_ENDPOINTS_DELETION,
    REASON_PROVIDER_ENDPOINTS_REMOVED,
    REASON_PROVIDER_ERROR,
    STATUS_FALSE,
)
from quorum_dns.provider.provider import sanitize_error
from quorum_dns.store.record_store import RecordStore


class RemoteDNSRecordReconciler(BaseReconciler):
    """
    Reconciles delegating records that live in foreign clusters.
    """

    def __init__(self, cluster_id: str, remote_stores: Dict[str, RecordStore], *args, **kwargs):
        """
        Initialize a RemoteDNSRecordReconciler.

        Args:
            cluster_id: Identifier of this cluster, naming its status slot
            remote_stores: Stores of the foreign clusters by cluster id
            *args: Passed to BaseReconciler
            **kwargs: Passed to BaseReconciler
        """
        super().__init__(*args, **kwargs)
        self.cluster_id = cluster_id
        self.remote_stores = remote_stores
        self.logger = logging.getLogger("quorum-dns.controller.remote")

    async def reconcile(self, cluster: str, namespace: str, name: str) -> ReconcileResult:
        """
        Run one cycle for a record of a foreign cluster.

        Args:
            cluster: Foreign cluster id
            namespace: Record namespace
            name: Record name

        Returns:
            ReconcileResult: When to run the next cycle
        """
        remote_store = self.remote_stores.get(cluster)
        if remote_store is None:
            self.logger.warning(f"Unknown remote cluster {cluster}, skipping {namespace}/{name}")
            return ReconcileResult()

        try:
            record = await remote_store.get(namespace, name)
        except RecordMissingError:
            return ReconcileResult()

        if not record.is_delegating():
            self.logger.debug(f"Skipping remote record {cluster}/{record.key} that is not delegating")
            return ReconcileResult()

        previous_hash = record.status.content_hash()
        accessor = RemoteRecord(record, self.cluster_id)

        if record.is_deleting():
            return await self._reconcile_delete(remote_store, accessor, previous_hash)

        if not record.status.ready_for_delegation():
            self.logger.info(f"Remote record {cluster}/{record.key} not ready for delegation, skipping")
            return ReconcileResult()

        if not accessor.has_dns_zone_assigned():
            try:
                zone = await self.find_zone(accessor)
            except QuorumDNSError as e:
                accessor.set_status_condition(
                    CONDITION_TYPE_READY,
                    STATUS_FALSE,
                    REASON_DNS_PROVIDER_ERROR,
                    f"Unable to find suitable zone in provider: {sanitize_error(e)}",
                )
                return await self._write_error(remote_store, previous_hash, accessor)
            accessor.set_status_zone_id(zone.id)
            accessor.set_status_zone_domain_name(zone.dns_name)

        try:
            provider = self.get_provider(accessor)
        except QuorumDNSError as e:
            accessor.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_DNS_PROVIDER_ERROR,
                f"The dns provider could not be loaded: {sanitize_error(e)}",
            )
            return await self._write_error(remote_store, previous_hash, accessor)

        adapter = await self.apply_group_adapter(accessor)
        adapter = await self.apply_health_adapter(adapter)
        if not adapter.is_active():
            adapter.set_status_conditions(False)
            try:
                await adapter.finalize_reconciliation(provider)
            except QuorumDNSError as e:
                self.logger.error(f"Failed to update TXT registry entries of {cluster}/{record.key}: {e}")
                accessor.set_status_condition(
                    CONDITION_TYPE_READY,
                    STATUS_FALSE,
                    REASON_PROVIDER_ERROR,
                    f"The DNS provider failed to update the registry: {sanitize_error(e)}",
                )
                return await self._write_error(remote_store, previous_hash, accessor)
            accessor.set_status_observed_generation(record.generation)
            return await self.write_status(remote_store, previous_hash, record, self.timing.inactive_group_requeue)

        try:
            had_changes = await self.publish_record(adapter, provider)
            await adapter.finalize_reconciliation(provider)
        except QuorumDNSError as e:
            self.logger.error(f"Failed to publish remote record {cluster}/{record.key}: {e}")
            accessor.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_PROVIDER_ERROR,
                f"The DNS provider failed to ensure the record: {sanitize_error(e)}",
            )
            return await self._write_error(remote_store, previous_hash, accessor)

        adapter.set_status_conditions(had_changes)
        accessor.set_status_observed_generation(record.generation)
        requeue = self.randomized_validation_requeue() if had_changes else self.timing.valid_for
        return await self.write_status(remote_store, previous_hash, record, requeue)

    async def _reconcile_delete(
        self, remote_store: RecordStore, accessor: RemoteRecord, previous_hash: str
    ) -> ReconcileResult:
        record = accessor.record
        status = accessor.status

        ready = status.get_condition(CONDITION_TYPE_READY)
        if ready is not None and ready.reason == REASON_PROVIDER_ENDPOINTS_REMOVED:
            return ReconcileResult()

        if not status.provider_endpoints_deletion():
            accessor.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_PROVIDER_ENDPOINTS_DELETION,
                "DNS records are being deleted from provider",
            )
            return await self.write_status(remote_store, previous_hash, record, self.timing.deletion_requeue)

        if accessor.has_dns_zone_assigned():
            try:
                provider = self.get_provider(accessor)
                await self.delete_record(accessor, provider)
            except QuorumDNSError as e:
                self.logger.error(f"Failed to delete remote record {record.key} from zone: {e}")
                accessor.set_status_condition(
                    CONDITION_TYPE_READY,
                    STATUS_FALSE,
                    REASON_PROVIDER_ERROR,
                    f"The DNS provider failed to delete the record: {sanitize_error(e)}",
                )
                return await self._write_error(remote_store, previous_hash, accessor)
        else:
            self.logger.info(f"DNS zone was never assigned to remote record {record.key}, skipping zone cleanup")

        accessor.set_status_condition(
            CONDITION_TYPE_READY,
            STATUS_FALSE,
            REASON_PROVIDER_ENDPOINTS_REMOVED,
            "DNS records removed from provider",
        )
        accessor.set_status_zone_id("")
        accessor.set_status_zone_domain_name("")
        accessor.set_status_endpoints([])
        return await self.write_status(remote_store, previous_hash, record, self.timing.deletion_requeue)

    async def _write_error(self, remote_store: RecordStore, previous_hash: str, accessor: RemoteRecord) -> ReconcileResult:
        return await self.write_status(
            remote_store, previous_hash, accessor.record, self.randomized_validation_requeue()
        )

    async def write_status(self, store, previous_hash, record, requeue_after) -> ReconcileResult:
        # Origin and remote clusters race on the same status, back off briefly
        result = await super().write_status(store, previous_hash, record, requeue_after)
        if result.requeue:
            return ReconcileResult(requeue_after=self.timing.conflict_requeue)
        return result
