"""
Reconciler base module for Quorum-DNS.

This module holds what the local and remote reconcilers share: requeue
timing, provider selection, building and applying a plan through the
ownership registry, the active-group lookup and status writes.
"""

import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, List, Optional

from quorum_dns.controller.accessor import GroupAdapter, HealthAdapter, RecordAccessor
from quorum_dns.controller.healthchecks import HealthCheckSource
from quorum_dns.controller.plan import Plan
from quorum_dns.errors import ProviderError, RecordConflictError
from quorum_dns.groups.active_groups import DnsPythonTXTResolver, TXTResolver, get_active_groups
from quorum_dns.models.group import Groups
from quorum_dns.models.models import Zone
from quorum_dns.models.record import DNSRecord
from quorum_dns.provider.authoritative import AuthoritativeRecordProvider
from quorum_dns.provider.provider import Provider, is_benign_delete_error
from quorum_dns.registry.group_registry import GroupRegistry
from quorum_dns.registry.labels import ProvenanceCodec
from quorum_dns.registry.txt_registry import (
    DEFAULT_TXT_PREFIX,
    DEFAULT_WILDCARD_REPLACEMENT,
    MANAGED_RECORD_TYPES,
    TXTRegistry,
)
from quorum_dns.store.record_store import RecordStore

DELEGATION_ROLE_PRIMARY = "primary"
DELEGATION_ROLE_SECONDARY = "secondary"
DELEGATION_ROLES = [DELEGATION_ROLE_PRIMARY, DELEGATION_ROLE_SECONDARY]


@dataclass(frozen=True)
class ReconcileTiming:
    """
    Requeue intervals in seconds.

    Attributes:
        max_requeue: Upper bound for the exponential requeue
        valid_for: How long a stable record stays valid before it is checked again
        min_requeue: Base interval right after a write
        validation_variance: Relative jitter applied to the validation requeue
        inactive_group_requeue: Interval for records of an inactive group
        deletion_requeue: Interval between the steps of a deletion
        conflict_requeue: Delay before retrying a conflicting remote status write
    """

    max_requeue: float = 900.0
    valid_for: float = 840.0
    min_requeue: float = 5.0
    validation_variance: float = 0.5
    inactive_group_requeue: float = 15.0
    deletion_requeue: float = 1.0
    conflict_requeue: float = 1.0


@dataclass
class ReconcileResult:
    """
    Outcome of one reconcile cycle.

    A positive requeue_after schedules the next cycle. requeue without a delay
    runs the next cycle right away, as after a status write conflict.
    """

    requeue_after: float = 0.0
    requeue: bool = False


def randomize_duration(variance: float, duration: float) -> float:
    """
    Jitter a duration by a relative variance, never going below one second.

    Args:
        variance: Relative variance, 0.5 for +/-50%
        duration: Duration in seconds

    Returns:
        float: Randomized duration in seconds
    """
    duration = max(duration, 1.0)
    return random.uniform(duration * (1.0 - variance), duration * (1.0 + variance))


class BaseReconciler:
    """
    Shared plumbing for reconcilers publishing DNSRecords.
    """

    def __init__(
        self,
        store: RecordStore,
        provider: Provider,
        timing: Optional[ReconcileTiming] = None,
        txt_prefix: str = DEFAULT_TXT_PREFIX,
        txt_wildcard_replacement: str = DEFAULT_WILDCARD_REPLACEMENT,
        encrypt_txt: bool = False,
        encryption_key: Optional[str] = None,
        group: str = "",
        resolver: Optional[TXTResolver] = None,
        nameservers: Optional[List[str]] = None,
        delegation_role: str = DELEGATION_ROLE_PRIMARY,
        health_checks: Optional[HealthCheckSource] = None,
        clock: Callable[[], float] = time.time,
    ):
        """
        Initialize a reconciler.

        Args:
            store: Store of this cluster's records
            provider: DNS provider for non-delegating records
            timing: Requeue intervals
            txt_prefix: Prefix for TXT registry records
            txt_wildcard_replacement: Replacement for a leading wildcard in TXT names
            encrypt_txt: Whether to encrypt TXT registry records
            encryption_key: Key for TXT encryption
            group: Failover group of this cluster, empty for ungrouped
            resolver: Resolver for the active groups record
            nameservers: Nameservers queried first for the active groups record
            delegation_role: primary or secondary
            health_checks: Source of health check results, none means no record is checked
            clock: Time source
        """
        if delegation_role not in DELEGATION_ROLES:
            raise ValueError(f"unknown delegation role {delegation_role}, must be one of {DELEGATION_ROLES}")

        self.store = store
        self.provider = provider
        self.timing = timing or ReconcileTiming()
        self.txt_prefix = txt_prefix
        self.txt_wildcard_replacement = txt_wildcard_replacement
        self.encrypt_txt = encrypt_txt
        self.encryption_key = encryption_key
        self.codec = ProvenanceCodec(encrypt_txt, encryption_key)
        self.group = group
        self.resolver = resolver or DnsPythonTXTResolver()
        self.nameservers = list(nameservers or [])
        self.delegation_role = delegation_role
        self.health_checks = health_checks
        self.clock = clock
        self.logger = logging.getLogger("quorum-dns.controller")

    def is_primary(self) -> bool:
        return self.delegation_role == DELEGATION_ROLE_PRIMARY

    def randomized_validation_requeue(self) -> float:
        return randomize_duration(self.timing.validation_variance, self.timing.min_requeue)

    def exponential_requeue(self, last: float) -> float:
        """
        Double the last requeue interval, capped at max_requeue.

        Args:
            last: Previous interval in seconds

        Returns:
            float: Next interval in seconds
        """
        if last <= 0:
            return self.randomized_validation_requeue()
        return min(last * 2, self.timing.max_requeue)

    async def find_zone(self, accessor: RecordAccessor) -> Zone:
        """
        Find the zone a record publishes into.

        Delegating records publish into their authoritative record, which is
        created on the way if it does not exist.

        Args:
            accessor: Record accessor

        Returns:
            Zone: Zone for the record's root host
        """
        provider = self.provider
        if accessor.is_delegating():
            provider = AuthoritativeRecordProvider(self.store, accessor.record)
        return await provider.zone_for_host(accessor.spec.root_host)

    def get_provider(self, accessor: RecordAccessor) -> Provider:
        """
        Provider scoped to the zone assigned to a record.

        Args:
            accessor: Record accessor with owner and zone assigned

        Returns:
            Provider: Scoped provider

        Raises:
            ProviderError: If the record has no owner or zone yet
        """
        missing = []
        if not accessor.has_owner_id_assigned():
            missing.append("has no ownerID assigned")
        if not accessor.has_dns_zone_assigned():
            missing.append("has no DNSZone assigned")
        if missing:
            raise ProviderError(", ".join(missing))

        if accessor.is_delegating():
            return AuthoritativeRecordProvider(self.store, accessor.record)
        return self.provider.for_zone(Zone(id=accessor.zone_id, dns_name=accessor.zone_domain_name))

    def _registry(self, accessor: RecordAccessor, provider: Provider):
        registry = TXTRegistry(
            provider,
            accessor.owner_id,
            txt_prefix=self.txt_prefix,
            txt_wildcard_replacement=self.txt_wildcard_replacement,
            encrypt_txt=self.encrypt_txt,
            encryption_key=self.encryption_key,
            managed_types=list(MANAGED_RECORD_TYPES),
        )
        if accessor.is_authoritative_record():
            return registry
        return GroupRegistry(registry, accessor.group)

    async def apply_changes(self, accessor: RecordAccessor, provider: Provider, is_delete: bool) -> bool:
        """
        Plan the record against the zone and apply the result.

        Args:
            accessor: Record accessor
            provider: Provider scoped to the record's zone
            is_delete: Whether the record's endpoints should be removed

        Returns:
            bool: Whether any change was written

        Raises:
            PlanError: If the plan could not be calculated cleanly
        """
        registry = self._registry(accessor, provider)
        spec_endpoints = [] if is_delete else accessor.get_endpoints()

        zone_endpoints = await registry.records()
        spec_endpoints = registry.adjust_endpoints(spec_endpoints)
        status_endpoints = registry.adjust_endpoints(accessor.status.endpoints)

        self.logger.debug(
            f"Planning {accessor.key}: {len(zone_endpoints)} zone, {len(spec_endpoints)} spec "
            f"and {len(status_endpoints)} status endpoints"
        )

        plan = Plan(
            current=zone_endpoints,
            previous=status_endpoints,
            desired=spec_endpoints,
            policies=["sync"],
            domain_filter=[accessor.zone_domain_name],
            managed_types=list(MANAGED_RECORD_TYPES),
            owner_id=registry.owner_id,
            root_host=accessor.spec.root_host,
        ).calculate()

        error = plan.error()
        if error is not None:
            raise error

        had_changes = plan.changes.has_changes()
        if had_changes:
            self.logger.info(f"Applying changes for {accessor.key}: {plan.changes}")
            await registry.apply_changes(plan.changes)

        # Only what reached the zone becomes the previous state of the next plan
        accessor.set_status_domain_owners(plan.owners)
        accessor.set_status_endpoints(spec_endpoints)
        return had_changes

    async def delete_record(self, accessor: RecordAccessor, provider: Provider) -> bool:
        """
        Remove the record's endpoints from its zone.

        Errors saying the records are already gone are ignored.

        Args:
            accessor: Record accessor
            provider: Provider scoped to the record's zone

        Returns:
            bool: Whether any change was written
        """
        try:
            had_changes = await self.apply_changes(accessor, provider, is_delete=True)
        except ProviderError as e:
            if is_benign_delete_error(e):
                self.logger.info(f"Records of {accessor.key} already gone from zone, continuing: {e}")
                return False
            raise
        self.logger.info(f"Deleted {accessor.key} from zone {accessor.zone_domain_name}")
        return had_changes

    async def publish_record(self, accessor: RecordAccessor, provider: Provider) -> bool:
        had_changes = await self.apply_changes(accessor, provider, is_delete=False)
        self.logger.info(f"Published {accessor.key} to zone {accessor.zone_domain_name} (changes: {had_changes})")
        return had_changes

    async def apply_group_adapter(self, accessor: RecordAccessor) -> GroupAdapter:
        """
        Wrap an accessor with the active groups of its zone.

        Ungrouped records skip the lookup.

        Args:
            accessor: Record accessor with a zone assigned

        Returns:
            GroupAdapter: Group aware accessor
        """
        active_groups = Groups()
        if accessor.group:
            active_groups = await get_active_groups(self.resolver, accessor.zone_domain_name, self.nameservers)
            accessor.set_status_active_groups(active_groups)
        return GroupAdapter(
            accessor,
            active_groups,
            codec=self.codec,
            txt_prefix=self.txt_prefix,
            txt_wildcard_replacement=self.txt_wildcard_replacement,
        )

    async def apply_health_adapter(self, accessor) -> HealthAdapter:
        """
        Wrap an accessor with the health check results of its record.

        Args:
            accessor: Record accessor, possibly already group aware

        Returns:
            HealthAdapter: Accessor publishing healthy endpoints only
        """
        results = []
        if self.health_checks is not None:
            results = await self.health_checks.results(accessor.record)
        return HealthAdapter(accessor, results)

    async def write_status(
        self, store: RecordStore, previous_hash: str, record: DNSRecord, requeue_after: float
    ) -> ReconcileResult:
        """
        Write a record's status when it changed during the cycle.

        Args:
            store: Store holding the record
            previous_hash: Status hash taken at the start of the cycle
            record: Record carrying the new status
            requeue_after: Requeue interval to return on success

        Returns:
            ReconcileResult: requeue_after, or an immediate requeue on a write conflict
        """
        if record.status.content_hash() != previous_hash:
            try:
                await store.update_status(record)
            except RecordConflictError as e:
                self.logger.debug(f"Conflict writing status of {record.key}, requeueing: {e}")
                return ReconcileResult(requeue=True)
        self.logger.debug(f"Requeue {record.key} in {requeue_after:.1f}s")
        return ReconcileResult(requeue_after=requeue_after)
