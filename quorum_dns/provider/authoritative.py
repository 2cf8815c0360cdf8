"""
Authoritative record provider module for Quorum-DNS.

Delegating records do not write to a DNS zone directly. Instead they publish
into the endpoints of a single authoritative DNSRecord shared by every
delegating record for the same root host. The authoritative record then
holds the union of all contributions and is itself published to the real
provider like any other record.
"""

import logging
from typing import Dict, List

from quorum_dns.errors import ProviderError, RecordMissingError, ZoneNotFoundError
from quorum_dns.models.models import Changes, Endpoint, Zone
from quorum_dns.models.record import (
    AUTHORITATIVE_RECORD_HASH_LABEL,
    AUTHORITATIVE_RECORD_LABEL,
    DNSRecord,
    RecordSpec,
)
from quorum_dns.provider.provider import Provider, find_zone_for_host
from quorum_dns.store.record_store import RecordStore
from quorum_dns.utils.hashing import hash_root_host


def authoritative_record_name(root_host: str) -> str:
    return f"authoritative-record-{hash_root_host(root_host)}"


def authoritative_record_for(record: DNSRecord) -> DNSRecord:
    """
    The authoritative record expected for a delegating record.

    The name and labels derive from the root host without its wildcard
    prefix; the spec keeps the root host as submitted.

    Args:
        record: Delegating record

    Returns:
        DNSRecord: Unsaved authoritative record
    """
    root_hash = hash_root_host(record.get_root_host())
    return DNSRecord(
        name=authoritative_record_name(record.get_root_host()),
        namespace=record.namespace,
        labels={
            AUTHORITATIVE_RECORD_LABEL: "true",
            AUTHORITATIVE_RECORD_HASH_LABEL: root_hash,
        },
        spec=RecordSpec(root_host=record.spec.root_host),
    )


class EndpointProvider(Provider):
    """
    Provider that exposes the spec endpoints of DNSRecords as zones.

    Each record selected by the label selector is a zone whose id is the
    record name and whose DNS name is its root host.
    """

    name = "endpoint"

    def __init__(self, store: RecordStore, namespace: str, label_selector: Dict[str, str], zone_id: str = ""):
        self.store = store
        self.namespace = namespace
        self.label_selector = label_selector
        self.zone_id = zone_id
        self.logger = logging.getLogger("quorum-dns.provider.endpoint")

    async def zones(self) -> List[Zone]:
        records = await self.store.list(namespace=self.namespace, labels=self.label_selector)
        return [Zone(id=r.name, dns_name=r.get_root_host()) for r in records]

    async def zone_for_host(self, host: str) -> Zone:
        return find_zone_for_host(host, await self.zones(), deny_apex=False)

    async def _zone_record(self) -> DNSRecord:
        if not self.zone_id:
            raise ProviderError("no zone id specified for endpoint provider")
        return await self.store.get(self.namespace, self.zone_id)

    async def records(self) -> List[Endpoint]:
        record = await self._zone_record()
        return [ep.deep_copy() for ep in record.spec.endpoints]

    async def apply_changes(self, changes: Changes) -> None:
        """
        Write changes into the spec endpoints of the zone record.

        Args:
            changes: Changes to apply
        """
        record = await self._zone_record()
        endpoints = {ep.key: ep for ep in record.spec.endpoints}
        for ep in changes.create + changes.update_new:
            endpoints[ep.key] = ep.deep_copy()
        for ep in changes.delete:
            endpoints.pop(ep.key, None)

        record.spec.endpoints = sorted(endpoints.values(), key=lambda ep: ep.key)
        await self.store.update(record)

    def for_zone(self, zone: Zone) -> "EndpointProvider":
        return EndpointProvider(self.store, self.namespace, self.label_selector, zone_id=zone.id)


class AuthoritativeRecordProvider(EndpointProvider):
    """
    EndpointProvider bound to the authoritative record of one delegating record.
    """

    name = "authoritative"

    def __init__(self, store: RecordStore, record: DNSRecord):
        """
        Initialize an AuthoritativeRecordProvider.

        Args:
            store: Store holding the authoritative record
            record: Delegating record publishing through this provider
        """
        expected = authoritative_record_for(record)
        super().__init__(store, record.namespace, dict(expected.labels), zone_id=expected.name)
        self.record = record
        self.expected = expected
        self.logger = logging.getLogger("quorum-dns.provider.authoritative")

    async def ensure_authoritative_record(self) -> DNSRecord:
        """
        Get or create the authoritative record, restoring its labels if needed.

        Returns:
            DNSRecord: The authoritative record
        """
        try:
            existing = await self.store.get(self.namespace, self.expected.name)
        except RecordMissingError:
            created = await self.store.create(self.expected)
            self.logger.info(f"Created authoritative record {created.key}")
            return created

        missing = {k: v for k, v in self.expected.labels.items() if existing.labels.get(k) != v}
        if missing:
            existing.labels.update(missing)
            existing = await self.store.update(existing)
        return existing

    async def zone_for_host(self, host: str) -> Zone:
        authoritative = await self.ensure_authoritative_record()
        if not authoritative.status.zone_domain_name:
            raise ZoneNotFoundError("authoritative zone does not yet have a zone domain name set")
        return Zone(id=authoritative.name, dns_name=authoritative.status.zone_domain_name)

    async def records(self) -> List[Endpoint]:
        try:
            return await super().records()
        except RecordMissingError:
            return []

    async def apply_changes(self, changes: Changes) -> None:
        await self.ensure_authoritative_record()
        await super().apply_changes(changes)

        if not self.record.is_deleting():
            return

        try:
            authoritative = await self.store.get(self.namespace, self.expected.name)
        except RecordMissingError:
            return
        if not authoritative.spec.endpoints:
            try:
                await self.store.delete(self.namespace, authoritative.name)
            except RecordMissingError:
                return
            self.logger.info(f"Deleted authoritative record {authoritative.key}")

    def for_zone(self, zone: Zone) -> "AuthoritativeRecordProvider":
        return self
