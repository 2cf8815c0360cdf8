"""
TXT registry module for Quorum-DNS.

This module is responsible for tracking which owners manage each DNS record
using paired TXT records. Every managed record has one TXT record per owner,
named after a hash of the owner id, holding that owner's provenance labels.
Reading the zone rebuilds the owner set of each record from those TXT records.
"""

import logging
from typing import Dict, List, Optional, Tuple

from quorum_dns.models.models import (
    OWNER_LABEL_KEY,
    RECORD_TYPE_A,
    RECORD_TYPE_AAAA,
    RECORD_TYPE_CNAME,
    RECORD_TYPE_TXT,
    SUPPORTED_RECORD_TYPES,
    Changes,
    Endpoint,
    EndpointKey,
    ensure_label,
    filter_endpoints_by_owner_id,
    split_labels,
)
from quorum_dns.registry.labels import FORMAT_VERSION, VERSION_KEY, ProvenanceCodec
from quorum_dns.utils.hashing import to_base36_hash_len

DEFAULT_TXT_PREFIX = "kuadrant-"
DEFAULT_WILDCARD_REPLACEMENT = "wildcard"

# Marks an owned endpoint whose own TXT record is missing
PROVIDER_SPECIFIC_FORCE_UPDATE = "txt/force-update"

MANAGED_RECORD_TYPES = [RECORD_TYPE_A, RECORD_TYPE_AAAA, RECORD_TYPE_CNAME]

AFFIX_SEPARATOR = "-"


def is_managed_record(record_type: str, managed_types: List[str], excluded_types: List[str]) -> bool:
    """
    Check whether a record type is handled by the engine.

    Args:
        record_type: Record type to check
        managed_types: Types the engine manages
        excluded_types: Types explicitly excluded

    Returns:
        bool: True if the type is managed and not excluded
    """
    return record_type in managed_types and record_type not in excluded_types


class AffixNameMapper:
    """
    Maps endpoint names to TXT record names and back.

    Current format: ``<prefix><hash8(owner)>-<type>-<dnsname>``.
    Legacy format: ``<prefix><type>-<dnsname>`` with no version label.
    """

    def __init__(self, prefix: str = DEFAULT_TXT_PREFIX, wildcard_replacement: str = DEFAULT_WILDCARD_REPLACEMENT):
        self.prefix = prefix.lower()
        self.wildcard_replacement = wildcard_replacement.lower()

    def to_txt_name(self, dnsname: str, owner_id: str, record_type: str) -> str:
        """
        Build the TXT record name for an endpoint.

        Args:
            dnsname: Endpoint name
            owner_id: Owner of the TXT record
            record_type: Endpoint record type

        Returns:
            str: TXT record name
        """
        if dnsname.startswith("*") and self.wildcard_replacement:
            dnsname = self.wildcard_replacement + dnsname[1:]
        return (
            f"{self.prefix}{to_base36_hash_len(owner_id, 8)}{AFFIX_SEPARATOR}"
            f"{record_type.lower()}{AFFIX_SEPARATOR}{dnsname}"
        )

    def to_endpoint_name(self, txt_name: str, version: str) -> Tuple[str, str]:
        """
        Recover the endpoint name and record type from a TXT record name.

        Args:
            txt_name: TXT record name
            version: Version label found in the TXT record

        Returns:
            Tuple[str, str]: Endpoint name and record type; empty name if unmapped
        """
        name = txt_name.lower()
        if not name.startswith(self.prefix):
            return "", ""
        name = name[len(self.prefix):]

        if version == FORMAT_VERSION:
            parts = name.split(AFFIX_SEPARATOR, 2)
            if len(parts) != 3:
                return "", ""
            record_type = self._record_type(parts[1])
            return self._restore_wildcard(parts[2]), record_type

        # Legacy records carry the type as the first dash-separated token
        head, _, rest = name.partition(AFFIX_SEPARATOR)
        record_type = self._record_type(head)
        if record_type and rest:
            return self._restore_wildcard(rest), record_type
        return self._restore_wildcard(name), ""

    def _record_type(self, token: str) -> str:
        for record_type in SUPPORTED_RECORD_TYPES:
            if token == record_type.lower():
                return record_type
        return ""

    def _restore_wildcard(self, dnsname: str) -> str:
        if not self.wildcard_replacement:
            return dnsname
        first, dot, rest = dnsname.partition(".")
        if first == self.wildcard_replacement:
            return "*" + dot + rest
        return dnsname


class TXTRegistry:
    """
    Registry that tracks DNS record ownership using TXT records.
    """

    def __init__(
        self,
        provider,
        owner_id: str,
        txt_prefix: str = DEFAULT_TXT_PREFIX,
        txt_wildcard_replacement: str = DEFAULT_WILDCARD_REPLACEMENT,
        encrypt_txt: bool = False,
        encryption_key: Optional[str] = None,
        managed_types: Optional[List[str]] = None,
        excluded_types: Optional[List[str]] = None,
    ):
        """
        Initialize a TXTRegistry.

        Args:
            provider: DNS provider
            owner_id: Owner ID written into TXT records
            txt_prefix: Prefix for TXT records
            txt_wildcard_replacement: Replacement for a leading wildcard in TXT names
            encrypt_txt: Whether to encrypt TXT records
            encryption_key: Encryption key for TXT records
            managed_types: Record types paired with TXT records
            excluded_types: Record types never managed
        """
        self.provider = provider
        self._owner_id = owner_id
        self.mapper = AffixNameMapper(txt_prefix, txt_wildcard_replacement)
        self.codec = ProvenanceCodec(encrypt_txt, encryption_key)
        self.managed_types = managed_types or list(MANAGED_RECORD_TYPES)
        self.excluded_types = excluded_types or []
        self.txt_records_map: Dict[EndpointKey, Endpoint] = {}
        self.logger = logging.getLogger("quorum-dns.registry.txt")

    @property
    def owner_id(self) -> str:
        return self._owner_id

    async def records(self) -> List[Endpoint]:
        """
        Returns all records in the provider zone with ownership labels applied.

        TXT records that carry valid provenance are folded into the labels of
        the endpoint they describe. TXT records without valid provenance are
        returned as ordinary records.

        Returns:
            List[Endpoint]: List of endpoints
        """
        # Get all records from provider
        records = await self.provider.records()

        endpoints: List[Endpoint] = []
        label_map: Dict[EndpointKey, Dict[str, Dict[str, str]]] = {}
        self.txt_records_map = {}

        for record in records:
            if record.record_type != RECORD_TYPE_TXT:
                endpoints.append(record)
                continue

            decoded = []
            for target in record.targets:
                decoded.extend(self.codec.decode(target))

            # Not a registry record; keep it as is
            if not decoded:
                endpoints.append(record)
                continue

            for labels in decoded:
                self._index_provenance(record, labels, label_map)

            self.txt_records_map[record.key] = record

        for ep in endpoints:
            labels_for_key = label_map.get(ep.key)
            # Legacy records do not encode the record type
            if labels_for_key is None:
                labels_for_key = label_map.get(EndpointKey(ep.dnsname, "", ep.set_identifier))
            if labels_for_key is not None:
                self._apply_owner_labels(ep, labels_for_key)

            if ep.is_owned_by(self.owner_id) and is_managed_record(
                ep.record_type, self.managed_types, self.excluded_types
            ):
                if self.generate_txt_record(ep).key not in self.txt_records_map:
                    self.logger.debug(f"TXT record missing for owned endpoint {ep.dnsname}, forcing update")
                    ep.provider_specific[PROVIDER_SPECIFIC_FORCE_UPDATE] = "true"

        return endpoints

    def _index_provenance(
        self,
        record: Endpoint,
        labels: Dict[str, str],
        label_map: Dict[EndpointKey, Dict[str, Dict[str, str]]],
    ) -> None:
        labels = dict(labels)
        version = labels.pop(VERSION_KEY, "")
        name, record_type = self.mapper.to_endpoint_name(record.dnsname, version)
        if not name:
            self.logger.debug(f"TXT record {record.dnsname} does not map to an endpoint")
            return

        key = EndpointKey(name, record_type, record.set_identifier)
        owners = split_labels(labels.pop(OWNER_LABEL_KEY, ""))
        per_owner = label_map.setdefault(key, {})

        if len(owners) == 1:
            per_owner[owners[0]] = labels
            return

        # Old format lists every owner in one entry; newer entries take precedence
        for owner in owners:
            per_owner.setdefault(owner, dict(labels))

    def _apply_owner_labels(self, ep: Endpoint, labels_for_key: Dict[str, Dict[str, str]]) -> None:
        owner_value = ""
        for owner in sorted(labels_for_key):
            owner_value = ensure_label(owner_value, owner)
            if owner == self.owner_id:
                for key, value in labels_for_key[owner].items():
                    ep.labels[key] = value
        if owner_value:
            ep.labels[OWNER_LABEL_KEY] = owner_value

    def generate_txt_record(self, ep: Endpoint) -> Endpoint:
        """
        Build the TXT record this owner keeps for an endpoint.

        Args:
            ep: Managed endpoint

        Returns:
            Endpoint: Paired TXT record
        """
        labels = {VERSION_KEY: FORMAT_VERSION}
        for key, value in ep.labels.items():
            labels[key] = value
        labels[OWNER_LABEL_KEY] = self.owner_id

        provider_specific = {
            k: v for k, v in ep.provider_specific.items() if k != PROVIDER_SPECIFIC_FORCE_UPDATE
        }
        return Endpoint(
            dnsname=self.mapper.to_txt_name(ep.dnsname, self.owner_id, ep.record_type),
            targets=[self.codec.serialize(labels)],
            record_type=RECORD_TYPE_TXT,
            record_ttl=ep.record_ttl,
            set_identifier=ep.set_identifier,
            provider_specific=provider_specific,
        )

    def adjust_endpoints(self, endpoints: List[Endpoint]) -> List[Endpoint]:
        """
        Stamp this owner onto desired endpoints and let the provider adjust them.

        Args:
            endpoints: Desired endpoints

        Returns:
            List[Endpoint]: Adjusted copies
        """
        adjusted = []
        for ep in endpoints:
            ep = ep.deep_copy()
            if is_managed_record(ep.record_type, self.managed_types, self.excluded_types):
                ep.labels[OWNER_LABEL_KEY] = self.owner_id
            adjusted.append(ep)
        return self.provider.adjust_endpoints(adjusted)

    async def apply_changes(self, changes: Changes) -> None:
        """
        Apply changes to the provider, keeping TXT records in step.

        Args:
            changes: Changes to apply
        """
        filtered = Changes(
            create=[self._strip(ep) for ep in changes.create],
            update_old=[self._strip(ep) for ep in changes.update_old],
            update_new=[self._strip(ep) for ep in changes.update_new],
            # never delete endpoints owned by someone else
            delete=[self._strip(ep) for ep in filter_endpoints_by_owner_id(self.owner_id, changes.delete)],
        )

        txt_creates: Dict[EndpointKey, Endpoint] = {}
        txt_update_old: List[Endpoint] = []
        txt_update_new: List[Endpoint] = []
        txt_deletes: List[Endpoint] = []

        for ep in filtered.create:
            ep.labels[OWNER_LABEL_KEY] = self.owner_id
            txt = self.generate_txt_record(ep)
            existing = self.txt_records_map.get(txt.key)
            if existing is not None:
                # stale TXT left behind by a record removed out of band
                txt_update_old.append(existing)
                txt_update_new.append(txt)
            else:
                txt_creates[txt.key] = txt

        for ep in filtered.delete:
            txt = self.generate_txt_record(ep)
            if txt.key in self.txt_records_map:
                txt_deletes.append(txt)

        for old, new in zip(filtered.update_old, filtered.update_new):
            txt = self.generate_txt_record(new)
            existing = self.txt_records_map.get(txt.key)
            if not new.is_owned_by(self.owner_id):
                # this owner released the endpoint
                if existing is not None:
                    txt_deletes.append(existing)
                continue
            if existing is not None:
                txt_update_old.append(existing)
                txt_update_new.append(txt)
            else:
                txt_creates[txt.key] = txt

        filtered.create.extend(txt_creates.values())
        filtered.update_old.extend(txt_update_old)
        filtered.update_new.extend(txt_update_new)
        filtered.delete.extend(txt_deletes)

        if filtered.has_changes():
            self.logger.info(f"Applying changes for owner {self.owner_id}: {filtered}")
        await self.provider.apply_changes(filtered)

        # keep the TXT index current until the next read
        for txt in list(txt_creates.values()) + txt_update_new:
            self.txt_records_map[txt.key] = txt
        for txt in txt_deletes:
            self.txt_records_map.pop(txt.key, None)

    @staticmethod
    def _strip(ep: Endpoint) -> Endpoint:
        ep = ep.deep_copy()
        ep.provider_specific.pop(PROVIDER_SPECIFIC_FORCE_UPDATE, None)
        return ep
