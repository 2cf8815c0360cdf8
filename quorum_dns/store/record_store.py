"""
Record store module for Quorum-DNS.

This module is responsible for persisting DNSRecord resources. A store plays
the role of one cluster: the local cluster the controller runs in, or a
foreign cluster whose delegating records are mirrored to this one.

Writes use optimistic concurrency: every write must carry the resource
version it was based on, and a stale version is rejected.
"""

import copy
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import asdict
from typing import Callable, Dict, List, Optional

from quorum_dns.errors import RecordConflictError, RecordExistsError, RecordMissingError
from quorum_dns.models.record import DNSRecord

EVENT_ADDED = "ADDED"
EVENT_MODIFIED = "MODIFIED"
EVENT_DELETED = "DELETED"

Listener = Callable[[str, DNSRecord], None]


class RecordStore(ABC):
    """
    Storage for DNSRecord resources.
    """

    @abstractmethod
    async def get(self, namespace: str, name: str) -> DNSRecord:
        """
        Fetch a record.

        Raises:
            RecordMissingError: If the record does not exist
        """

    @abstractmethod
    async def list(self, namespace: Optional[str] = None, labels: Optional[Dict[str, str]] = None) -> List[DNSRecord]:
        """
        List records, optionally restricted to a namespace and matching labels.
        """

    @abstractmethod
    async def create(self, record: DNSRecord) -> DNSRecord:
        """
        Create a record.

        Raises:
            RecordExistsError: If a record with the same name exists
        """

    @abstractmethod
    async def update(self, record: DNSRecord) -> DNSRecord:
        """
        Update metadata and spec of a record. Status is left untouched.

        Raises:
            RecordMissingError: If the record does not exist
            RecordConflictError: If the record changed since it was read
        """

    @abstractmethod
    async def update_status(self, record: DNSRecord) -> DNSRecord:
        """
        Update the status of a record. Spec and metadata are left untouched.

        Raises:
            RecordMissingError: If the record does not exist
            RecordConflictError: If the record changed since it was read
        """

    @abstractmethod
    async def delete(self, namespace: str, name: str) -> None:
        """
        Request deletion of a record.

        Records holding finalizers are only marked for deletion.

        Raises:
            RecordMissingError: If the record does not exist
        """

    @abstractmethod
    def subscribe(self, listener: Listener) -> None:
        """
        Register a listener called with (event, record) after every change.
        """


class InMemoryRecordStore(RecordStore):
    """
    RecordStore keeping records in process memory.
    """

    def __init__(self, name: str = "local"):
        self.name = name
        self._records: Dict[str, DNSRecord] = {}
        self._listeners: List[Listener] = []
        self._version = 0
        self.logger = logging.getLogger(f"quorum-dns.store.{name}")

    @staticmethod
    def _key(namespace: str, name: str) -> str:
        return f"{namespace}/{name}"

    def _next_version(self) -> int:
        self._version += 1
        return self._version

    def _notify(self, event: str, record: DNSRecord) -> None:
        for listener in self._listeners:
            listener(event, copy.deepcopy(record))

    def _stored(self, namespace: str, name: str) -> DNSRecord:
        stored = self._records.get(self._key(namespace, name))
        if stored is None:
            raise RecordMissingError(f"dnsrecord {namespace}/{name} not found")
        return stored

    def _check_version(self, stored: DNSRecord, record: DNSRecord) -> None:
        if record.resource_version != stored.resource_version:
            raise RecordConflictError(
                f"the object {record.key} has been modified; please apply your changes to the latest version"
            )

    async def get(self, namespace: str, name: str) -> DNSRecord:
        return copy.deepcopy(self._stored(namespace, name))

    async def list(self, namespace: Optional[str] = None, labels: Optional[Dict[str, str]] = None) -> List[DNSRecord]:
        result = []
        for key in sorted(self._records):
            record = self._records[key]
            if namespace is not None and record.namespace != namespace:
                continue
            if labels and any(record.labels.get(k) != v for k, v in labels.items()):
                continue
            result.append(copy.deepcopy(record))
        return result

    async def create(self, record: DNSRecord) -> DNSRecord:
        key = self._key(record.namespace, record.name)
        if key in self._records:
            raise RecordExistsError(f"dnsrecord {key} already exists")

        stored = copy.deepcopy(record)
        stored.uid = stored.uid or str(uuid.uuid4())
        stored.generation = 1
        stored.resource_version = self._next_version()
        stored.deletion_timestamp = None
        self._records[key] = stored
        self.logger.debug(f"Created dnsrecord {key}")
        self._notify(EVENT_ADDED, stored)
        return copy.deepcopy(stored)

    async def update(self, record: DNSRecord) -> DNSRecord:
        stored = self._stored(record.namespace, record.name)
        self._check_version(stored, record)

        if asdict(stored.spec) != asdict(record.spec):
            stored.generation += 1
        stored.spec = copy.deepcopy(record.spec)
        stored.labels = dict(record.labels)
        stored.finalizers = list(record.finalizers)
        stored.resource_version = self._next_version()

        if stored.is_deleting() and not stored.finalizers:
            return self._remove(stored)

        self._notify(EVENT_MODIFIED, stored)
        return copy.deepcopy(stored)

    async def update_status(self, record: DNSRecord) -> DNSRecord:
        stored = self._stored(record.namespace, record.name)
        self._check_version(stored, record)

        stored.status = copy.deepcopy(record.status)
        stored.resource_version = self._next_version()
        self._notify(EVENT_MODIFIED, stored)
        return copy.deepcopy(stored)

    async def delete(self, namespace: str, name: str) -> None:
        stored = self._stored(namespace, name)
        if not stored.finalizers:
            self._remove(stored)
            return
        if not stored.is_deleting():
            stored.deletion_timestamp = time.time()
            stored.resource_version = self._next_version()
            self.logger.debug(f"Marked dnsrecord {stored.key} for deletion")
            self._notify(EVENT_MODIFIED, stored)

    def _remove(self, stored: DNSRecord) -> DNSRecord:
        del self._records[stored.key]
        self.logger.debug(f"Removed dnsrecord {stored.key}")
        self._notify(EVENT_DELETED, stored)
        return copy.deepcopy(stored)

    def subscribe(self, listener: Listener) -> None:
        self._listeners.append(listener)
