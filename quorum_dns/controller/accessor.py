"""
Record accessor module for Quorum-DNS.

Reconcilers work on a record through an accessor rather than on the record
itself. A LocalRecord reads and writes the record's own status. A
RemoteRecord reads the record of a foreign cluster but keeps everything this
cluster observes in its own slot of remote_record_statuses. A GroupAdapter
wraps either of them and adds the active-group behaviour, and a HealthAdapter
leaves out what failed its health checks.
"""

import logging
from typing import Dict, List, Optional

from quorum_dns.controller.healthchecks import HealthCheckResult, remove_unhealthy_endpoints, unhealthy_addresses
from quorum_dns.models.group import Groups
from quorum_dns.models.models import (
    GROUP_LABEL_KEY,
    OWNER_LABEL_KEY,
    RECORD_TYPE_TXT,
    Changes,
    Endpoint,
    split_labels,
)
from quorum_dns.models.record import (
    CONDITION_TYPE_ACTIVE,
    CONDITION_TYPE_HEALTHY,
    CONDITION_TYPE_READY,
    REASON_AWAITING_VALIDATION,
    REASON_HEALTHY,
    REASON_IN_ACTIVE_GROUP,
    REASON_IN_INACTIVE_GROUP,
    REASON_NOT_IN_ACTIVE_GROUP,
    REASON_PARTIALLY_HEALTHY,
    REASON_PROVIDER_SUCCESS,
    REASON_UNHEALTHY,
    STATUS_FALSE,
    STATUS_TRUE,
    WILDCARD_PREFIX,
    Condition,
    DNSRecord,
    RecordSpec,
    RecordStatus,
)
from quorum_dns.registry.group_registry import txt_records_to_registry_map
from quorum_dns.registry.labels import ProvenanceCodec
from quorum_dns.registry.txt_registry import (
    DEFAULT_TXT_PREFIX,
    DEFAULT_WILDCARD_REPLACEMENT,
    MANAGED_RECORD_TYPES,
)


class RecordAccessor:
    """
    Base accessor over a DNSRecord and the status a reconciler maintains for it.
    """

    def __init__(self, record: DNSRecord):
        self.record = record

    @property
    def status(self) -> RecordStatus:
        return self.record.status

    @property
    def spec(self) -> RecordSpec:
        return self.record.spec

    @property
    def key(self) -> str:
        return self.record.key

    @property
    def generation(self) -> int:
        return self.record.generation

    @property
    def owner_id(self) -> str:
        return self.status.owner_id

    @property
    def root_host(self) -> str:
        return self.record.get_root_host()

    @property
    def zone_id(self) -> str:
        return self.status.zone_id

    @property
    def zone_domain_name(self) -> str:
        return self.status.zone_domain_name

    @property
    def group(self) -> str:
        return self.status.group

    def is_deleting(self) -> bool:
        return self.record.is_deleting()

    def is_delegating(self) -> bool:
        return self.record.is_delegating()

    def is_authoritative_record(self) -> bool:
        return self.record.is_authoritative_record()

    def is_active(self) -> bool:
        return True

    def get_endpoints(self) -> List[Endpoint]:
        return self.spec.endpoints

    def has_dns_zone_assigned(self) -> bool:
        return bool(self.status.zone_id and self.status.zone_domain_name)

    def has_owner_id_assigned(self) -> bool:
        return bool(self.owner_id)

    def set_status_condition(self, condition_type: str, status: str, reason: str, message: str) -> None:
        self.status.set_condition(
            Condition(
                type=condition_type,
                status=status,
                reason=reason,
                message=message,
                observed_generation=self.record.generation,
            )
        )

    def clear_status_condition(self, condition_type: str) -> None:
        self.status.remove_condition(condition_type)

    def set_status_zone_id(self, zone_id: str) -> None:
        self.status.zone_id = zone_id

    def set_status_zone_domain_name(self, domain_name: str) -> None:
        self.status.zone_domain_name = domain_name

    def set_status_owner_id(self, owner_id: str) -> None:
        self.status.owner_id = owner_id

    def set_status_domain_owners(self, owners: List[str]) -> None:
        self.status.domain_owners = list(owners)

    def set_status_endpoints(self, endpoints: List[Endpoint]) -> None:
        self.status.endpoints = [ep.deep_copy() for ep in endpoints]

    def set_status_observed_generation(self, generation: int) -> None:
        self.status.observed_generation = generation

    def set_status_group(self, group: str) -> None:
        self.status.group = group

    def set_status_active_groups(self, groups: Groups) -> None:
        self.status.active_groups = str(groups)

    def set_status_conditions(self, had_changes: bool) -> None:
        """
        Set the Ready condition after a successful publish.

        Args:
            had_changes: Whether the publish wrote anything to the provider
        """
        if had_changes:
            self.set_status_condition(
                CONDITION_TYPE_READY,
                STATUS_FALSE,
                REASON_AWAITING_VALIDATION,
                "Awaiting validation",
            )
            return
        self.set_status_condition(
            CONDITION_TYPE_READY,
            STATUS_TRUE,
            REASON_PROVIDER_SUCCESS,
            "Provider ensured the dns record",
        )

    async def finalize_reconciliation(self, provider) -> None:
        return None


class LocalRecord(RecordAccessor):
    """Accessor for a record owned by this cluster."""


class RemoteRecord(RecordAccessor):
    """
    Accessor for a record that lives in a foreign cluster.

    The owner ID is the one the origin cluster assigned. Everything else this
    cluster records goes into remote_record_statuses[cluster_id].
    """

    def __init__(self, record: DNSRecord, cluster_id: str):
        super().__init__(record)
        self.cluster_id = cluster_id
        self._status = record.status.remote_record_statuses.setdefault(cluster_id, RecordStatus())

    @property
    def status(self) -> RecordStatus:
        return self._status

    @property
    def owner_id(self) -> str:
        return self.record.status.owner_id

    @property
    def group(self) -> str:
        return self.record.status.group


class GroupAdapter:
    """
    Wraps an accessor with failover group behaviour.

    A record is active when it has no group, when its group is in the active
    list, or when no groups are active at all. Attributes not defined here are
    read from the wrapped accessor.
    """

    def __init__(
        self,
        accessor: RecordAccessor,
        active_groups: Groups,
        codec: Optional[ProvenanceCodec] = None,
        txt_prefix: str = DEFAULT_TXT_PREFIX,
        txt_wildcard_replacement: str = DEFAULT_WILDCARD_REPLACEMENT,
    ):
        self.accessor = accessor
        self.active_groups = active_groups
        self.codec = codec or ProvenanceCodec()
        self.txt_prefix = txt_prefix
        self.txt_wildcard_replacement = txt_wildcard_replacement
        self.logger = logging.getLogger("quorum-dns.groups")

    def __getattr__(self, name):
        return getattr(self.accessor, name)

    def is_active(self) -> bool:
        if not self.accessor.group:
            return True
        if not self.active_groups:
            return True
        return self.active_groups.has_group(self.accessor.group)

    def set_status_conditions(self, had_changes: bool) -> None:
        """
        Set Ready as the wrapped accessor does, then the Active condition.

        Ungrouped records carry no Active condition. Records of an inactive
        group also report Ready False since they publish nothing.

        Args:
            had_changes: Whether the publish wrote anything to the provider
        """
        self.accessor.set_status_conditions(had_changes)

        if not self.accessor.group:
            self.accessor.clear_status_condition(CONDITION_TYPE_ACTIVE)
            return

        if self.is_active():
            self.accessor.set_status_condition(
                CONDITION_TYPE_ACTIVE,
                STATUS_TRUE,
                REASON_IN_ACTIVE_GROUP,
                "Group is included in active groups",
            )
            return

        self.accessor.set_status_condition(
            CONDITION_TYPE_ACTIVE,
            STATUS_FALSE,
            REASON_NOT_IN_ACTIVE_GROUP,
            "Group is not included in active groups",
        )
        self.accessor.set_status_condition(
            CONDITION_TYPE_READY,
            STATUS_FALSE,
            REASON_IN_INACTIVE_GROUP,
            "No further actions to take while in inactive group",
        )

    async def finalize_reconciliation(self, provider) -> None:
        """
        Bring the zone in line with the active groups after a cycle.

        Inactive records rewrite the group label of their own provenance
        entries. Active records remove what inactive groups left behind.

        Args:
            provider: Provider scoped to the record's zone
        """
        if not self.accessor.group:
            return

        if not self.is_active():
            self.logger.info(f"Record {self.accessor.key} is inactive, updating its TXT registry entries")
            await self.update_inactive_group_txt_records(provider)
            return

        self.logger.info(f"Record {self.accessor.key} is active, unpublishing inactive groups")
        await self.unpublish_inactive_groups(provider)

    def _decode_target(self, target: str) -> Optional[Dict[str, str]]:
        decoded = self.codec.decode(target)
        if not decoded:
            return None
        labels: Dict[str, str] = {}
        for entry in decoded:
            labels.update(entry)
        return labels

    async def update_inactive_group_txt_records(self, provider) -> None:
        """
        Rewrite this owner's TXT entries so they carry the current group label.

        Args:
            provider: Provider scoped to the record's zone
        """
        changes = Changes()
        owner_id = self.accessor.owner_id
        group = self.accessor.group

        for ep in await provider.records():
            if ep.record_type != RECORD_TYPE_TXT:
                continue

            owned = False
            targets = []
            for target in ep.targets:
                labels = self._decode_target(target)
                if labels is None:
                    targets.append(target)
                    continue

                if owner_id not in split_labels(labels.get(OWNER_LABEL_KEY)):
                    targets.append(target)
                    continue

                owned = True
                if labels.get(GROUP_LABEL_KEY, "") == group:
                    targets.append(target)
                else:
                    labels[GROUP_LABEL_KEY] = group
                    targets.append(self.codec.serialize(labels))

            if owned and targets != ep.targets:
                changes.update_old.append(ep.deep_copy())
                updated = ep.deep_copy()
                updated.targets = targets
                changes.update_new.append(updated)

        if changes.has_changes():
            self.logger.info(f"Updating {len(changes.update_new)} TXT records with group {group}")
            await provider.apply_changes(changes)

    async def unpublish_inactive_groups(self, provider) -> None:
        """
        Remove targets and provenance entries of inactive groups from the zone.

        Hosts left with no active or ungrouped owner are deleted outright,
        otherwise only the targets claimed solely by inactive groups are
        removed. Provenance entries of inactive groups are deleted in a second
        batch once the records are gone.

        Args:
            provider: Provider scoped to the record's zone
        """
        if not self.accessor.group or not self.is_active() or not self.active_groups:
            return

        zone_endpoints = await provider.records()
        registry_map = txt_records_to_registry_map(
            zone_endpoints, self.codec, self.txt_prefix, self.txt_wildcard_replacement
        )

        changes = Changes()
        for ep in zone_endpoints:
            if ep.record_type not in MANAGED_RECORD_TYPES:
                continue
            host = registry_map.hosts.get(ep.dnsname)
            if host is None:
                continue

            if not host.has_any_group(self.active_groups) and not host.ungrouped_owners:
                changes.delete.append(ep)
                continue

            inactive_targets = host.get_other_groups_targets(self.active_groups)
            targets = [t for t in ep.targets if t not in inactive_targets]
            if not targets:
                changes.delete.append(ep)
            elif targets != ep.targets:
                changes.update_old.append(ep.deep_copy())
                updated = ep.deep_copy()
                updated.targets = targets
                changes.update_new.append(updated)

        if changes.has_changes():
            self.logger.info(f"Unpublishing inactive group records: {changes}")
            await provider.apply_changes(changes)

        txt_changes = Changes()
        for ep in zone_endpoints:
            if ep.record_type != RECORD_TYPE_TXT:
                continue
            labels: Dict[str, str] = {}
            for target in ep.targets:
                labels.update(self._decode_target(target) or {})
            group = labels.get(GROUP_LABEL_KEY)
            if group is None or self.active_groups.has_group(group):
                continue
            txt_changes.delete.append(ep)

        if txt_changes.has_changes():
            self.logger.info(f"Removing {len(txt_changes.delete)} TXT records of inactive groups")
            await provider.apply_changes(txt_changes)


class HealthAdapter:
    """
    Wraps an accessor with the health check results of its record.

    Unhealthy targets are left out of the endpoints the record publishes and
    the Healthy condition reports what the checks found. Records without
    results and wildcard records publish every endpoint and carry no Healthy
    condition. Attributes not defined here are read from the wrapped accessor.
    """

    def __init__(self, accessor, results: List[HealthCheckResult]):
        self.accessor = accessor
        self.results = list(results)

    def __getattr__(self, name):
        return getattr(self.accessor, name)

    def is_health_checked(self) -> bool:
        return bool(self.results) and not self.accessor.spec.root_host.startswith(WILDCARD_PREFIX)

    def get_endpoints(self) -> List[Endpoint]:
        endpoints = self.accessor.get_endpoints()
        if not self.is_health_checked():
            return endpoints
        return remove_unhealthy_endpoints(endpoints, self.results)

    def healthy_condition(self) -> Optional[Condition]:
        """
        Healthy condition matching the current results.

        Returns:
            Optional[Condition]: None when the record is not health checked
        """
        if not self.is_health_checked():
            return None

        unhealthy = unhealthy_addresses(self.results)
        if not unhealthy:
            return Condition(
                type=CONDITION_TYPE_HEALTHY,
                status=STATUS_TRUE,
                reason=REASON_HEALTHY,
                message="All health checks succeeded",
            )

        reason = REASON_UNHEALTHY
        if len(unhealthy) < len({r.address for r in self.results}):
            reason = REASON_PARTIALLY_HEALTHY
        return Condition(
            type=CONDITION_TYPE_HEALTHY,
            status=STATUS_FALSE,
            reason=reason,
            message=f"Not healthy addresses: {', '.join(unhealthy)}",
        )

    def health_changed(self) -> bool:
        """Whether the results disagree with the Healthy condition in the status."""
        expected = self.healthy_condition()
        current = self.accessor.status.get_condition(CONDITION_TYPE_HEALTHY)
        if expected is None or current is None:
            return (expected is None) != (current is None)
        return (expected.status, expected.reason, expected.message) != (
            current.status,
            current.reason,
            current.message,
        )

    def set_status_conditions(self, had_changes: bool) -> None:
        self.accessor.set_status_conditions(had_changes)

        condition = self.healthy_condition()
        if condition is None:
            self.accessor.clear_status_condition(CONDITION_TYPE_HEALTHY)
            return
        self.accessor.set_status_condition(condition.type, condition.status, condition.reason, condition.message)
