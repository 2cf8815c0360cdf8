"""
Group registry module for Quorum-DNS.

This module is responsible for attaching failover group metadata to the
provenance an owner writes, and for compiling the provenance found in a zone
into a per-host view of groups, owners and the targets each of them claims.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from quorum_dns.models.group import Groups, validate_group
from quorum_dns.models.models import (
    GROUP_LABEL_KEY,
    OWNER_LABEL_KEY,
    RECORD_TYPE_TXT,
    TARGETS_DELIMITER,
    TARGETS_LABEL_KEY,
    Changes,
    Endpoint,
    split_labels,
)
from quorum_dns.registry.labels import VERSION_KEY, ProvenanceCodec
from quorum_dns.registry.txt_registry import (
    DEFAULT_TXT_PREFIX,
    DEFAULT_WILDCARD_REPLACEMENT,
    AffixNameMapper,
)


class GroupRegistry:
    """
    Registry decorator that stamps group and target labels on endpoints.
    """

    def __init__(self, registry, group: str = ""):
        """
        Initialize a GroupRegistry.

        Args:
            registry: Wrapped registry
            group: Group of the owner, empty for ungrouped
        """
        self.registry = registry
        self.group = validate_group(group)

    @property
    def owner_id(self) -> str:
        return self.registry.owner_id

    async def records(self) -> List[Endpoint]:
        return await self.registry.records()

    async def apply_changes(self, changes: Changes) -> None:
        await self.registry.apply_changes(changes)

    def adjust_endpoints(self, endpoints: List[Endpoint]) -> List[Endpoint]:
        """
        Adjust endpoints through the wrapped registry, then set group labels.

        Args:
            endpoints: Desired endpoints

        Returns:
            List[Endpoint]: Adjusted endpoints
        """
        adjusted = self.registry.adjust_endpoints(endpoints)
        for ep in adjusted:
            if self.group:
                ep.labels[GROUP_LABEL_KEY] = self.group
                ep.labels[TARGETS_LABEL_KEY] = TARGETS_DELIMITER.join(ep.targets)
            else:
                ep.labels.pop(GROUP_LABEL_KEY, None)
                ep.labels.pop(TARGETS_LABEL_KEY, None)
        return adjusted


def _split_targets(value: Optional[str]) -> List[str]:
    if not value:
        return []
    return [t for t in value.split(TARGETS_DELIMITER) if t]


@dataclass
class RegistryOwner:
    owner_id: str
    labels: Dict[str, str] = field(default_factory=dict)

    def targets(self) -> List[str]:
        return _split_targets(self.labels.get(TARGETS_LABEL_KEY))


@dataclass
class RegistryGroup:
    group_id: str
    owners: Dict[str, RegistryOwner] = field(default_factory=dict)

    def owner_ids(self) -> List[str]:
        return sorted(self.owners)

    def targets(self) -> List[str]:
        targets = set()
        for owner in self.owners.values():
            targets.update(owner.targets())
        return sorted(targets)


@dataclass
class RegistryHost:
    """
    All provenance found in a zone for one host.

    Owners whose provenance carries a group label are kept under that group;
    the rest are ungrouped owners.
    """

    host: str
    groups: Dict[str, RegistryGroup] = field(default_factory=dict)
    ungrouped_owners: Dict[str, RegistryOwner] = field(default_factory=dict)

    def group_ids(self) -> Groups:
        return Groups(self.groups)

    def has_group(self, group: str) -> bool:
        return group in self.groups

    def has_any_group(self, groups: Groups) -> bool:
        return any(self.has_group(g) for g in groups)

    def get_groups_targets(self, groups: Groups) -> List[str]:
        """
        Targets claimed by the given groups.

        Args:
            groups: Groups to include

        Returns:
            List[str]: Sorted unique targets
        """
        targets = set()
        for group_id in groups:
            group = self.groups.get(group_id)
            if group:
                targets.update(group.targets())
        return sorted(targets)

    def get_other_groups_targets(self, groups: Groups) -> List[str]:
        """
        Targets claimed by any group not in the given set.

        Args:
            groups: Groups to exclude

        Returns:
            List[str]: Sorted unique targets
        """
        targets = set()
        for group in self.groups.values():
            if not groups.has_group(group.group_id):
                targets.update(group.targets())
        return sorted(targets)


@dataclass
class RegistryMap:
    hosts: Dict[str, RegistryHost] = field(default_factory=dict)

    def get_hosts(self) -> List[str]:
        return sorted(self.hosts)


def txt_records_to_registry_map(
    endpoints: List[Endpoint],
    codec: ProvenanceCodec,
    prefix: str = DEFAULT_TXT_PREFIX,
    wildcard_replacement: str = DEFAULT_WILDCARD_REPLACEMENT,
) -> RegistryMap:
    """
    Compile the TXT provenance in a zone into a per-host registry map.

    Args:
        endpoints: Every record in the zone
        codec: Codec used to decode provenance
        prefix: TXT record name prefix
        wildcard_replacement: Replacement used for wildcard TXT names

    Returns:
        RegistryMap: Hosts with their grouped and ungrouped owners
    """
    logger = logging.getLogger("quorum-dns.registry.group")
    mapper = AffixNameMapper(prefix, wildcard_replacement)
    registry_map = RegistryMap()

    for ep in endpoints:
        if ep.record_type != RECORD_TYPE_TXT:
            continue

        for target in ep.targets:
            for labels in codec.decode(target):
                labels = dict(labels)
                version = labels.pop(VERSION_KEY, "")
                host_name, _ = mapper.to_endpoint_name(ep.dnsname, version)
                owners = split_labels(labels.get(OWNER_LABEL_KEY))
                if not host_name or not owners:
                    logger.debug(f"Skipping TXT record {ep.dnsname} with no owner or host")
                    continue

                host = registry_map.hosts.setdefault(host_name, RegistryHost(host=host_name))
                group_id = labels.get(GROUP_LABEL_KEY, "")
                for owner_id in owners:
                    owner = RegistryOwner(owner_id=owner_id, labels=labels)
                    if group_id:
                        group = host.groups.setdefault(group_id, RegistryGroup(group_id=group_id))
                        group.owners[owner_id] = owner
                    else:
                        host.ungrouped_owners[owner_id] = owner

    return registry_map
