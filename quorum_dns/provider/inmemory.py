"""
In-memory provider module for Quorum-DNS.

This module is responsible for a DNS backend that keeps zones in process
memory. It validates change batches the way a real DNS API does, which makes
it suitable both for tests and for running the engine without a cloud vendor.
"""

import logging
from typing import Dict, List, Optional, Set

from quorum_dns.errors import (
    InvalidChangeBatchError,
    RecordAlreadyExistsError,
    RecordNotFoundError,
    ZoneNotFoundError,
)
from quorum_dns.models.models import Changes, Endpoint, EndpointKey, Zone
from quorum_dns.provider.provider import Provider


class InMemoryClient:
    """
    Shared zone storage. Several providers may use the same client.
    """

    def __init__(self, zones: Optional[List[str]] = None):
        self.zones: Dict[str, Dict[EndpointKey, Endpoint]] = {}
        self.logger = logging.getLogger("quorum-dns.provider.inmemory")
        for zone in zones or []:
            self.create_zone(zone)

    def create_zone(self, zone: str) -> None:
        zone = zone.lower().rstrip(".")
        if zone in self.zones:
            raise InvalidChangeBatchError(f"specified zone already exists: {zone}")
        self.zones[zone] = {}

    def delete_zone(self, zone: str) -> None:
        if self.zones.pop(zone, None) is None:
            raise ZoneNotFoundError(f"specified zone not found: {zone}")

    def records(self, zone: str) -> List[Endpoint]:
        if zone not in self.zones:
            raise ZoneNotFoundError(f"specified zone not found: {zone}")
        return [ep.deep_copy() for ep in self.zones[zone].values()]

    def apply_changes(self, zone: str, changes: Changes) -> None:
        """
        Validate and apply a change batch to one zone.

        Args:
            zone: Zone name
            changes: Changes for this zone

        Raises:
            ZoneNotFoundError: If the zone does not exist
            RecordAlreadyExistsError: If a create targets an existing record
            RecordNotFoundError: If an update or delete targets a missing record
            InvalidChangeBatchError: If a record appears twice in the batch
        """
        self._validate(zone, changes)
        records = self.zones[zone]
        for ep in changes.create:
            records[ep.key] = ep.deep_copy()
        for ep in changes.update_new:
            records[ep.key] = ep.deep_copy()
        for ep in changes.delete:
            records.pop(ep.key, None)

    def _validate(self, zone: str, changes: Changes) -> None:
        if zone not in self.zones:
            raise ZoneNotFoundError(f"specified zone not found: {zone}")
        records = self.zones[zone]
        mesh: Set[EndpointKey] = set()

        def add_to_mesh(ep: Endpoint) -> None:
            if ep.key in mesh:
                raise InvalidChangeBatchError(f"invalid batch request, duplicate record {ep.dnsname} {ep.record_type}")
            mesh.add(ep.key)

        for ep in changes.create:
            if ep.key in records:
                raise RecordAlreadyExistsError(f"record already exists: {ep.dnsname} {ep.record_type}")
            add_to_mesh(ep)
        for ep in changes.update_new:
            if ep.key not in records:
                raise RecordNotFoundError(f"record {ep.dnsname} {ep.record_type} was not found")
            add_to_mesh(ep)
        for ep in changes.update_old:
            if ep.key not in records:
                raise RecordNotFoundError(f"record {ep.dnsname} {ep.record_type} was not found")
        for ep in changes.delete:
            if ep.key not in records:
                raise RecordNotFoundError(f"record {ep.dnsname} {ep.record_type} was not found")
            add_to_mesh(ep)


class InMemoryProvider(Provider):
    """
    Provider backed by an InMemoryClient, optionally limited to some zones.
    """

    name = "inmemory"

    def __init__(self, client: Optional[InMemoryClient] = None, zone_filter: Optional[List[str]] = None):
        """
        Initialize an InMemoryProvider.

        Args:
            client: Zone storage, a new empty client if omitted
            zone_filter: Zone names this provider may see; all zones if omitted
        """
        self.client = client or InMemoryClient()
        self.zone_filter = [z.lower().rstrip(".") for z in zone_filter] if zone_filter else None
        self.logger = logging.getLogger("quorum-dns.provider.inmemory")

    def _zone_names(self) -> List[str]:
        names = sorted(self.client.zones)
        if self.zone_filter is not None:
            names = [n for n in names if n in self.zone_filter]
        return names

    async def zones(self) -> List[Zone]:
        return [Zone(id=name, dns_name=name) for name in self._zone_names()]

    async def records(self) -> List[Endpoint]:
        endpoints = []
        for name in self._zone_names():
            endpoints.extend(self.client.records(name))
        return endpoints

    def _zone_of(self, dnsname: str, zone_names: List[str]) -> Optional[str]:
        name = dnsname.lower().rstrip(".")
        best = None
        for zone in zone_names:
            if name == zone or name.endswith("." + zone):
                if best is None or len(zone) > len(best):
                    best = zone
        return best

    async def apply_changes(self, changes: Changes) -> None:
        """
        Split a change batch per zone and apply it.

        Args:
            changes: Changes to apply
        """
        zone_names = self._zone_names()
        per_zone: Dict[str, Changes] = {}

        def bucket(ep: Endpoint) -> Optional[Changes]:
            zone = self._zone_of(ep.dnsname, zone_names)
            if zone is None:
                self.logger.warning(f"Skipping {ep.dnsname}: no zone matches")
                return None
            return per_zone.setdefault(zone, Changes())

        for ep in changes.create:
            target = bucket(ep)
            if target is not None:
                target.create.append(ep)
        for old, new in zip(changes.update_old, changes.update_new):
            target = bucket(new)
            if target is not None:
                target.update_old.append(old)
                target.update_new.append(new)
        for ep in changes.delete:
            target = bucket(ep)
            if target is not None:
                target.delete.append(ep)

        for zone, zone_changes in per_zone.items():
            self.logger.debug(f"Applying {zone_changes} to zone {zone}")
            self.client.apply_changes(zone, zone_changes)

    def for_zone(self, zone: Zone) -> "InMemoryProvider":
        return InMemoryProvider(self.client, zone_filter=[zone.id])
