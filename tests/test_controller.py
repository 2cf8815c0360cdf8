"""Tests for controller/controller.py: convergence of local records"""

import pytest

from conftest import ZONE, drive, make_endpoint, make_record, zone_records
from quorum_dns.controller.reconciler import ReconcileTiming, randomize_duration
from quorum_dns.errors import ProviderError, RecordMissingError
from quorum_dns.models.models import RECORD_TYPE_A, RECORD_TYPE_TXT, Changes
from quorum_dns.models.record import (
    CONDITION_TYPE_READY,
    DNS_RECORD_FINALIZER,
    REASON_AWAITING_VALIDATION,
    REASON_DNS_PROVIDER_ERROR,
    REASON_PROVIDER_ENDPOINTS_DELETION,
    REASON_PROVIDER_ERROR,
    REASON_PROVIDER_SUCCESS,
    REASON_VALIDATION_ERROR,
    STATUS_FALSE,
    STATUS_TRUE,
)
from quorum_dns.utils.hashing import to_base36_hash_len

HOST = f"app.{ZONE}"


def ready(record):
    return record.status.get_condition(CONDITION_TYPE_READY)


def a_records(dns_client):
    return zone_records(dns_client, record_type=RECORD_TYPE_A)


# ===== Timing helpers =====


class TestRandomizeDuration:
    """Tests for randomize_duration."""

    def test_stays_within_variance(self):
        for _ in range(50):
            assert 2.5 <= randomize_duration(0.5, 5) <= 7.5

    def test_never_below_one_second(self):
        """Should treat durations under a second as one second."""
        for _ in range(50):
            assert randomize_duration(0.5, 0.1) >= 0.5


class TestExponentialRequeue:
    """Tests for BaseReconciler.exponential_requeue."""

    def test_doubles_up_to_max(self, reconciler):
        assert reconciler.exponential_requeue(5) == 10
        assert reconciler.exponential_requeue(840) == ReconcileTiming().max_requeue


# ===== Single owner =====


class TestSingleOwner:
    """A single record converging against an empty zone."""

    @pytest.mark.asyncio
    async def test_adds_finalizer_before_publishing(self, reconciler, store, dns_client):
        """Should only add the finalizer in the first cycle."""
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))

        result = await reconciler.reconcile("default", "app")

        record = await store.get("default", "app")
        assert record.finalizers == [DNS_RECORD_FINALIZER]
        assert result.requeue_after > 0
        assert zone_records(dns_client) == []

    @pytest.mark.asyncio
    async def test_publishes_and_validates(self, reconciler, store, dns_client, clock):
        """Should publish, await validation, then report Ready."""
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))

        await drive(reconciler, store, clock, rounds=2)
        record = await store.get("default", "app")
        assert ready(record).reason == REASON_AWAITING_VALIDATION
        assert record.status.zone_id == ZONE
        assert record.status.zone_domain_name == ZONE
        assert record.status.owner_id == record.uid_hash()

        await drive(reconciler, store, clock, rounds=1)
        record = await store.get("default", "app")
        assert ready(record).status == STATUS_TRUE
        assert ready(record).reason == REASON_PROVIDER_SUCCESS
        assert record.status.observed_generation == record.generation
        assert record.status.domain_owners == [record.uid_hash()]

        assert [ep.targets for ep in a_records(dns_client)] == [["1.1.1.1"]]
        txt_names = [ep.dnsname for ep in zone_records(dns_client, record_type=RECORD_TYPE_TXT)]
        assert txt_names == [f"kuadrant-{to_base36_hash_len(record.uid_hash(), 8)}-a-{HOST}"]

    @pytest.mark.asyncio
    async def test_spec_owner_id_wins(self, reconciler, store, clock):
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")], owner_id="team-a"))

        await drive(reconciler, store, clock, rounds=2)

        record = await store.get("default", "app")
        assert record.status.owner_id == "team-a"

    @pytest.mark.asyncio
    async def test_requeue_grows_while_stable(self, reconciler, store, clock):
        """Should back off exponentially once the record is stable."""
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))
        await drive(reconciler, store, clock, rounds=3)
        first = (await store.get("default", "app")).status.valid_for

        await drive(reconciler, store, clock, rounds=1)
        second = (await store.get("default", "app")).status.valid_for

        assert first == 10
        assert second == 20

    @pytest.mark.asyncio
    async def test_premature_cycle_is_skipped(self, reconciler, store, dns_client, clock):
        """Should not touch the provider before the last observation expires."""
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))
        await drive(reconciler, store, clock, rounds=3)
        record = await store.get("default", "app")
        clock.now = record.status.queued_at + 1

        # out of band change the skipped cycle must not notice
        dns_client.apply_changes(ZONE, Changes(delete=a_records(dns_client)))
        result = await reconciler.reconcile("default", "app")

        assert 0 < result.requeue_after <= record.status.valid_for
        assert a_records(dns_client) == []

    @pytest.mark.asyncio
    async def test_spec_change_is_never_premature(self, reconciler, store, dns_client, clock):
        """Should publish a new generation straight away."""
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))
        await drive(reconciler, store, clock, rounds=3)
        record = await store.get("default", "app")
        clock.now = record.status.queued_at + 1

        record.spec.endpoints = [make_endpoint(HOST, "3.3.3.3")]
        await store.update(record)
        await reconciler.reconcile("default", "app")

        assert [ep.targets for ep in a_records(dns_client)] == [["3.3.3.3"]]
        record = await store.get("default", "app")
        assert record.status.write_counter == 0


# ===== Shared ownership =====


class TestSharedOwnership:
    """Two owners publishing the same host."""

    async def _setup(self, store):
        await store.create(make_record("app-a", HOST, [make_endpoint(HOST, "1.1.1.1")], owner_id="a"))
        await store.create(make_record("app-b", HOST, [make_endpoint(HOST, "2.2.2.2")], owner_id="b"))

    @pytest.mark.asyncio
    async def test_union_of_targets(self, reconciler, store, dns_client, clock):
        """Should publish the union of both owners' targets."""
        await self._setup(store)

        await drive(reconciler, store, clock)

        assert [ep.targets for ep in a_records(dns_client)] == [["1.1.1.1", "2.2.2.2"]]
        for name in ("app-a", "app-b"):
            record = await store.get("default", name)
            assert ready(record).status == STATUS_TRUE
            assert record.status.domain_owners == ["a", "b"]

    @pytest.mark.asyncio
    async def test_write_counter_counts_overwrites(self, reconciler, store, dns_client, clock):
        """Should count cycles that had to rewrite an unchanged generation."""
        await self._setup(store)
        await drive(reconciler, store, clock)

        # someone strips this owner's target from the zone
        current = a_records(dns_client)[0]
        overwritten = current.deep_copy()
        overwritten.targets = ["2.2.2.2"]
        dns_client.apply_changes(ZONE, Changes(update_old=[current], update_new=[overwritten]))
        clock.advance(10_000)
        await reconciler.reconcile("default", "app-a")

        record = await store.get("default", "app-a")
        assert record.status.write_counter == 1
        assert ready(record).reason == REASON_AWAITING_VALIDATION
        assert [ep.targets for ep in a_records(dns_client)] == [["1.1.1.1", "2.2.2.2"]]

    @pytest.mark.asyncio
    async def test_deleting_one_owner_keeps_the_other(self, reconciler, store, dns_client, clock):
        """Should remove only the deleted owner's targets and provenance."""
        await self._setup(store)
        await drive(reconciler, store, clock)

        await store.delete("default", "app-a")
        await drive(reconciler, store, clock)

        with pytest.raises(RecordMissingError):
            await store.get("default", "app-a")
        assert [ep.targets for ep in a_records(dns_client)] == [["2.2.2.2"]]
        txt_names = [ep.dnsname for ep in zone_records(dns_client, record_type=RECORD_TYPE_TXT)]
        assert txt_names == [f"kuadrant-{to_base36_hash_len('b', 8)}-a-{HOST}"]
        record = await store.get("default", "app-b")
        assert record.status.domain_owners == ["b"]


# ===== Deletion =====


class TestDeletion:
    """Tests for the deletion state machine."""

    @pytest.mark.asyncio
    async def test_deletion_steps(self, reconciler, store, dns_client, clock):
        """Should mark deletion, clean the zone, then release the finalizer."""
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))
        await drive(reconciler, store, clock, rounds=3)

        await store.delete("default", "app")
        await reconciler.reconcile("default", "app")
        record = await store.get("default", "app")
        assert ready(record).reason == REASON_PROVIDER_ENDPOINTS_DELETION
        assert a_records(dns_client)

        await drive(reconciler, store, clock)

        with pytest.raises(RecordMissingError):
            await store.get("default", "app")
        assert zone_records(dns_client) == []

    @pytest.mark.asyncio
    async def test_record_without_zone_is_released(self, reconciler, store, clock):
        """Should release a record that never got a zone."""
        await store.create(make_record("app", "app.unknown.org", [make_endpoint("app.unknown.org", "1.1.1.1")]))
        await drive(reconciler, store, clock, rounds=2)

        await store.delete("default", "app")
        await drive(reconciler, store, clock, rounds=4)

        with pytest.raises(RecordMissingError):
            await store.get("default", "app")

    @pytest.mark.asyncio
    async def test_failed_deletion_is_reported_and_retried(self, reconciler, store, dns_client, clock, monkeypatch):
        """Should report a provider error on Ready and keep the record until removal succeeds."""
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))
        await drive(reconciler, store, clock, rounds=3)

        def exploding_apply(zone, changes):
            raise ProviderError("provider exploded\nstatus code: 500, request id: abc-123")

        monkeypatch.setattr(dns_client, "apply_changes", exploding_apply)
        await store.delete("default", "app")
        await drive(reconciler, store, clock, rounds=2)

        record = await store.get("default", "app")
        assert ready(record).status == STATUS_FALSE
        assert ready(record).reason == REASON_PROVIDER_ERROR
        assert ready(record).message == "The DNS provider failed to delete the record: provider exploded"
        assert DNS_RECORD_FINALIZER in record.finalizers
        assert a_records(dns_client)

        monkeypatch.undo()
        await drive(reconciler, store, clock)

        with pytest.raises(RecordMissingError):
            await store.get("default", "app")
        assert zone_records(dns_client) == []
        with pytest.raises(RecordMissingError):
            await store.get("default", "app")


# ===== Errors =====


class TestReconcileErrors:
    """Tests for failures surfaced through conditions."""

    @pytest.mark.asyncio
    async def test_validation_error(self, reconciler, store, dns_client, clock):
        """Should refuse endpoints outside the root host."""
        await store.create(make_record("app", HOST, [make_endpoint("other.example.net", "1.1.1.1")]))

        await drive(reconciler, store, clock, rounds=2)

        record = await store.get("default", "app")
        assert ready(record).status == STATUS_FALSE
        assert ready(record).reason == REASON_VALIDATION_ERROR
        assert zone_records(dns_client) == []

    @pytest.mark.asyncio
    async def test_no_matching_zone(self, reconciler, store, clock):
        await store.create(make_record("app", "app.unknown.org", [make_endpoint("app.unknown.org", "1.1.1.1")]))

        await drive(reconciler, store, clock, rounds=2)

        record = await store.get("default", "app")
        assert ready(record).reason == REASON_DNS_PROVIDER_ERROR
        assert ready(record).message.startswith("Unable to find suitable zone in provider")

    @pytest.mark.asyncio
    async def test_apex_root_host_is_rejected(self, reconciler, store, dns_client, clock):
        """Should not publish records at the apex of a zone."""
        await store.create(make_record("apex", ZONE, [make_endpoint(ZONE, "1.1.1.1")]))

        result = None
        for _ in range(2):
            result = await reconciler.reconcile("default", "apex")

        record = await store.get("default", "apex")
        assert ready(record).reason == REASON_DNS_PROVIDER_ERROR
        assert "apex domain not allowed" in ready(record).message
        assert result.requeue_after > 0
        assert zone_records(dns_client) == []

    @pytest.mark.asyncio
    async def test_unowned_record_conflict(self, reconciler, store, dns_client, clock):
        """Should report a provider error instead of taking over an unowned record."""
        dns_client.apply_changes(ZONE, Changes(create=[make_endpoint(HOST, "9.9.9.9")]))
        await store.create(make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1")]))

        await drive(reconciler, store, clock, rounds=2)

        record = await store.get("default", "app")
        assert ready(record).reason == "ProviderError"
        assert "owner conflict" in ready(record).message
        assert [ep.targets for ep in a_records(dns_client)] == [["9.9.9.9"]]

    @pytest.mark.asyncio
    async def test_missing_record(self, reconciler):
        result = await reconciler.reconcile("default", "missing")
        assert result.requeue_after == 0
        assert not result.requeue
