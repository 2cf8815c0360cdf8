"""
Shared fixtures and helpers for quorum-dns tests.

The in-memory provider stands in for a DNS vendor and in-memory record stores
stand in for clusters, so whole convergence scenarios run in process.
"""

from typing import Iterable, List, Optional

import pytest

from quorum_dns.controller.controller import DNSRecordReconciler
from quorum_dns.controller.reconciler import ReconcileTiming
from quorum_dns.groups.active_groups import StaticTXTResolver
from quorum_dns.models.models import RECORD_TYPE_A, Endpoint
from quorum_dns.models.record import DNSRecord, RecordSpec
from quorum_dns.provider.inmemory import InMemoryClient, InMemoryProvider
from quorum_dns.store.record_store import InMemoryRecordStore

ZONE = "example.com"


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_endpoint(dnsname: str, *targets: str, record_type: str = RECORD_TYPE_A, ttl: Optional[int] = None, **labels) -> Endpoint:
    return Endpoint(
        dnsname=dnsname,
        targets=list(targets),
        record_type=record_type,
        record_ttl=ttl,
        labels=dict(labels),
    )


def make_record(
    name: str,
    root_host: str,
    endpoints: Iterable[Endpoint] = (),
    owner_id: str = "",
    delegate: bool = False,
    namespace: str = "default",
) -> DNSRecord:
    return DNSRecord(
        name=name,
        namespace=namespace,
        spec=RecordSpec(root_host=root_host, endpoints=list(endpoints), owner_id=owner_id, delegate=delegate),
    )


def zone_records(client: InMemoryClient, zone: str = ZONE, record_type: Optional[str] = None) -> List[Endpoint]:
    records = client.records(zone)
    if record_type is not None:
        records = [ep for ep in records if ep.record_type == record_type]
    return sorted(records, key=lambda ep: ep.key)


async def drive(reconciler, store: InMemoryRecordStore, clock: FakeClock, rounds: int = 8) -> None:
    """
    Reconcile every record of a store for a number of rounds.

    The clock moves past any validity window between rounds so no cycle is
    skipped as premature.
    """
    for _ in range(rounds):
        for record in await store.list():
            await reconciler.reconcile(record.namespace, record.name)
        clock.advance(10_000)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def timing():
    return ReconcileTiming()


@pytest.fixture
def dns_client():
    """Shared DNS backend holding the example.com zone."""
    return InMemoryClient([ZONE])


@pytest.fixture
def provider(dns_client):
    return InMemoryProvider(dns_client)


@pytest.fixture
def resolver():
    return StaticTXTResolver()


@pytest.fixture
def store():
    return InMemoryRecordStore(name="local")


@pytest.fixture
def reconciler(store, provider, timing, resolver, clock):
    return DNSRecordReconciler(store, provider, timing=timing, resolver=resolver, clock=clock)
