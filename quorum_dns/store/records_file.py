"""
Records file module for Quorum-DNS.

This module reads DNSRecords from a YAML file and seeds a record store with
them. A file looks like:

    records:
      - name: app
        namespace: default
        root_host: app.example.com
        owner_id: cluster-a
        delegate: false
        endpoints:
          - dnsname: app.example.com
            record_type: A
            record_ttl: 60
            targets: [127.0.0.1]
"""

import logging
from pathlib import Path
from typing import List, Union

import yaml

from quorum_dns.errors import RecordExistsError
from quorum_dns.models.models import SUPPORTED_RECORD_TYPES, Endpoint
from quorum_dns.models.record import DNSRecord, RecordSpec
from quorum_dns.store.record_store import RecordStore

DEFAULT_NAMESPACE = "default"

logger = logging.getLogger("quorum-dns.store.records-file")


def _endpoint_from_dict(data: dict) -> Endpoint:
    """
    Build an endpoint from its YAML mapping.

    Args:
        data: Endpoint mapping

    Returns:
        Endpoint: Parsed endpoint

    Raises:
        ValueError: If the record type is unsupported or a field is missing
    """
    record_type = str(data.get("record_type", "A")).upper()
    if record_type not in SUPPORTED_RECORD_TYPES:
        raise ValueError(f"unsupported record type {record_type}")

    dnsname = data.get("dnsname")
    if not dnsname:
        raise ValueError("endpoint is missing dnsname")

    targets = data.get("targets") or []
    if isinstance(targets, str):
        targets = [targets]

    ttl = data.get("record_ttl")
    return Endpoint(
        dnsname=dnsname,
        targets=[str(t) for t in targets],
        record_type=record_type,
        record_ttl=int(ttl) if ttl is not None else None,
        set_identifier=data.get("set_identifier", "") or "",
        provider_specific={str(k): str(v) for k, v in (data.get("provider_specific") or {}).items()},
    )


def records_from_dicts(items: List[dict]) -> List[DNSRecord]:
    """
    Build DNSRecords from their YAML mappings.

    Args:
        items: Record mappings

    Returns:
        List[DNSRecord]: Parsed records

    Raises:
        ValueError: If a record is malformed
    """
    records = []
    for item in items:
        name = item.get("name")
        root_host = item.get("root_host")
        if not name or not root_host:
            raise ValueError(f"record needs a name and a root_host: {item}")

        spec = RecordSpec(
            root_host=root_host,
            endpoints=[_endpoint_from_dict(ep) for ep in item.get("endpoints") or []],
            owner_id=item.get("owner_id", "") or "",
            delegate=bool(item.get("delegate", False)),
        )
        records.append(
            DNSRecord(
                name=name,
                namespace=item.get("namespace", DEFAULT_NAMESPACE),
                spec=spec,
                labels={str(k): str(v) for k, v in (item.get("labels") or {}).items()},
            )
        )
    return records


def load_records(path: Union[str, Path]) -> List[DNSRecord]:
    """
    Read DNSRecords from a YAML records file.

    Args:
        path: Path to the file

    Returns:
        List[DNSRecord]: Records in file order
    """
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}
    records = records_from_dicts(data.get("records") or [])
    logger.info(f"Loaded {len(records)} records from {path}")
    return records


async def seed_store(store: RecordStore, records: List[DNSRecord]) -> int:
    """
    Create records in a store, skipping those that already exist.

    Args:
        store: Store to fill
        records: Records to create

    Returns:
        int: Number of records created
    """
    created = 0
    for record in records:
        try:
            await store.create(record)
        except RecordExistsError:
            logger.debug(f"Record {record.key} already exists, skipping")
            continue
        created += 1
    return created
