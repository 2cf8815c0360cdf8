"""Tests for controller/healthchecks.py and the HealthAdapter"""

import os

import pytest

from conftest import ZONE, drive, make_endpoint, make_record, zone_records
from quorum_dns.controller.accessor import HealthAdapter, LocalRecord
from quorum_dns.controller.controller import DNSRecordReconciler
from quorum_dns.controller.healthchecks import (
    FileHealthCheckSource,
    HealthCheckResult,
    StaticHealthCheckSource,
    remove_unhealthy_endpoints,
    results_from_dict,
)
from quorum_dns.models.models import RECORD_TYPE_A, RECORD_TYPE_CNAME
from quorum_dns.models.record import (
    CONDITION_TYPE_HEALTHY,
    CONDITION_TYPE_READY,
    REASON_HEALTHY,
    REASON_PARTIALLY_HEALTHY,
    REASON_UNHEALTHY,
    STATUS_FALSE,
    STATUS_TRUE,
)

HOST = f"app.{ZONE}"


def result(address, healthy):
    return HealthCheckResult(address=address, healthy=healthy)


def healthy(record):
    return record.status.get_condition(CONDITION_TYPE_HEALTHY)


def a_targets(dns_client):
    return [ep.targets for ep in zone_records(dns_client, record_type=RECORD_TYPE_A)]


# ===== Endpoint filtering =====


class TestRemoveUnhealthyEndpoints:
    """Tests for remove_unhealthy_endpoints."""

    def test_without_results(self):
        endpoints = [make_endpoint(HOST, "1.1.1.1")]
        assert remove_unhealthy_endpoints(endpoints, []) == endpoints

    def test_drops_unhealthy_targets(self):
        """Should keep the healthy targets of an endpoint."""
        endpoint = make_endpoint(HOST, "1.1.1.1", "2.2.2.2")

        filtered = remove_unhealthy_endpoints([endpoint], [result("1.1.1.1", True), result("2.2.2.2", False)])

        assert [ep.targets for ep in filtered] == [["1.1.1.1"]]
        assert endpoint.targets == ["1.1.1.1", "2.2.2.2"]

    def test_publishes_everything_when_all_unhealthy(self):
        """Should fall back to every endpoint when no checked address is healthy."""
        endpoints = [make_endpoint(HOST, "1.1.1.1", "2.2.2.2")]

        filtered = remove_unhealthy_endpoints(endpoints, [result("1.1.1.1", False), result("2.2.2.2", False)])

        assert [ep.targets for ep in filtered] == [["1.1.1.1", "2.2.2.2"]]

    def test_unchecked_addresses_are_kept(self):
        endpoints = [make_endpoint(HOST, "1.1.1.1", "2.2.2.2")]

        filtered = remove_unhealthy_endpoints(endpoints, [result("1.1.1.1", None), result("2.2.2.2", False)])

        assert [ep.targets for ep in filtered] == [["1.1.1.1"]]

    def test_drops_endpoints_pointing_at_removed_names(self):
        """Should drop a CNAME whose only target lost all of its addresses."""
        eu_lb = f"eu.lb.{HOST}"
        us_lb = f"us.lb.{HOST}"
        endpoints = [
            make_endpoint(eu_lb, "1.1.1.1"),
            make_endpoint(us_lb, "2.2.2.2"),
            make_endpoint(f"eu.{HOST}", eu_lb, record_type=RECORD_TYPE_CNAME),
            make_endpoint(f"us.{HOST}", us_lb, record_type=RECORD_TYPE_CNAME),
        ]

        filtered = remove_unhealthy_endpoints(endpoints, [result("1.1.1.1", False), result("2.2.2.2", True)])

        assert [ep.dnsname for ep in filtered] == [us_lb, f"us.{HOST}"]


# ===== Result sources =====


class TestStaticHealthCheckSource:
    """Tests for StaticHealthCheckSource."""

    @pytest.mark.asyncio
    async def test_set_health_replaces_address(self):
        source = StaticHealthCheckSource()
        record = make_record("app", HOST)

        source.set_health(record.key, "1.1.1.1", True)
        source.set_health(record.key, "1.1.1.1", False)

        assert await source.results(record) == [result("1.1.1.1", False)]
        assert await source.results(make_record("other", HOST)) == []


class TestFileHealthCheckSource:
    """Tests for FileHealthCheckSource."""

    @pytest.mark.asyncio
    async def test_reads_results_and_reloads(self, tmp_path):
        """Should read results per record and pick up a rewritten file."""
        path = tmp_path / "health.yaml"
        path.write_text("results:\n  default/app:\n    - address: 1.1.1.1\n      healthy: true\n")
        os.utime(path, (1, 1))
        source = FileHealthCheckSource(path)
        record = make_record("app", HOST)

        assert await source.results(record) == [result("1.1.1.1", True)]

        path.write_text("results:\n  default/app:\n    - address: 1.1.1.1\n      healthy: false\n")
        os.utime(path, (2, 2))

        assert await source.results(record) == [result("1.1.1.1", False)]

    @pytest.mark.asyncio
    async def test_missing_file(self, tmp_path):
        source = FileHealthCheckSource(tmp_path / "missing.yaml")
        assert await source.results(make_record("app", HOST)) == []

    def test_result_needs_address(self):
        with pytest.raises(ValueError):
            results_from_dict({"default/app": [{"healthy": True}]})


# ===== Health adapter =====


class TestHealthAdapter:
    """Tests for the Healthy condition of a HealthAdapter."""

    def _adapter(self, results, root_host=HOST):
        record = make_record("app", root_host, [make_endpoint(root_host, "1.1.1.1", "2.2.2.2")])
        return HealthAdapter(LocalRecord(record), results)

    def test_all_healthy(self):
        adapter = self._adapter([result("1.1.1.1", True), result("2.2.2.2", True)])

        adapter.set_status_conditions(False)

        condition = healthy(adapter.record)
        assert condition.status == STATUS_TRUE
        assert condition.reason == REASON_HEALTHY

    def test_partially_healthy(self):
        """Should name the failing addresses."""
        adapter = self._adapter([result("1.1.1.1", True), result("2.2.2.2", False)])

        adapter.set_status_conditions(False)

        condition = healthy(adapter.record)
        assert condition.status == STATUS_FALSE
        assert condition.reason == REASON_PARTIALLY_HEALTHY
        assert condition.message == "Not healthy addresses: 2.2.2.2"
        assert [ep.targets for ep in adapter.get_endpoints()] == [["1.1.1.1"]]

    def test_all_unhealthy(self):
        adapter = self._adapter([result("1.1.1.1", False), result("2.2.2.2", False)])

        adapter.set_status_conditions(False)

        assert healthy(adapter.record).reason == REASON_UNHEALTHY
        assert [ep.targets for ep in adapter.get_endpoints()] == [["1.1.1.1", "2.2.2.2"]]

    def test_unchecked_record_has_no_healthy_condition(self):
        """Should remove a stale Healthy condition once the checks are gone."""
        adapter = self._adapter([result("1.1.1.1", True)])
        adapter.set_status_conditions(False)

        unchecked = HealthAdapter(adapter.accessor, [])
        unchecked.set_status_conditions(False)

        assert healthy(adapter.record) is None
        assert adapter.record.status.get_condition(CONDITION_TYPE_READY).status == STATUS_TRUE

    def test_wildcard_record_is_not_checked(self):
        adapter = self._adapter([result("1.1.1.1", False), result("2.2.2.2", True)], root_host=f"*.{HOST}")

        assert not adapter.is_health_checked()
        assert [ep.targets for ep in adapter.get_endpoints()] == [["1.1.1.1", "2.2.2.2"]]

    def test_health_changed(self):
        """Should notice when results disagree with the stored condition."""
        adapter = self._adapter([result("1.1.1.1", True), result("2.2.2.2", True)])
        assert adapter.health_changed()

        adapter.set_status_conditions(False)
        assert not adapter.health_changed()

        changed = HealthAdapter(adapter.accessor, [result("1.1.1.1", True), result("2.2.2.2", False)])
        assert changed.health_changed()


# ===== Reconciling with health checks =====


class TestHealthCheckedReconcile:
    """A record whose addresses are health checked."""

    @pytest.fixture
    def health(self):
        return StaticHealthCheckSource()

    @pytest.fixture
    def checked(self, store, provider, timing, resolver, clock, health):
        return DNSRecordReconciler(store, provider, timing=timing, resolver=resolver, clock=clock, health_checks=health)

    async def _setup(self, store, health, first=True, second=True):
        record = make_record("app", HOST, [make_endpoint(HOST, "1.1.1.1", "2.2.2.2")])
        health.set_health(record.key, "1.1.1.1", first)
        health.set_health(record.key, "2.2.2.2", second)
        await store.create(record)

    @pytest.mark.asyncio
    async def test_unhealthy_target_is_not_published(self, checked, store, dns_client, clock, health):
        """Should publish only the healthy address and report it."""
        await self._setup(store, health, second=False)

        await drive(checked, store, clock, rounds=3)

        record = await store.get("default", "app")
        assert a_targets(dns_client) == [["1.1.1.1"]]
        assert [ep.targets for ep in record.status.endpoints] == [["1.1.1.1"]]
        assert healthy(record).reason == REASON_PARTIALLY_HEALTHY
        assert record.status.get_condition(CONDITION_TYPE_READY).status == STATUS_TRUE

    @pytest.mark.asyncio
    async def test_recovered_target_is_published_again(self, checked, store, dns_client, clock, health):
        await self._setup(store, health, second=False)
        await drive(checked, store, clock, rounds=3)

        health.set_health("default/app", "2.2.2.2", True)
        await drive(checked, store, clock, rounds=3)

        record = await store.get("default", "app")
        assert a_targets(dns_client) == [["1.1.1.1", "2.2.2.2"]]
        assert healthy(record).status == STATUS_TRUE

    @pytest.mark.asyncio
    async def test_all_unhealthy_publishes_everything(self, checked, store, dns_client, clock, health):
        await self._setup(store, health, first=False, second=False)

        await drive(checked, store, clock, rounds=3)

        record = await store.get("default", "app")
        assert a_targets(dns_client) == [["1.1.1.1", "2.2.2.2"]]
        assert healthy(record).reason == REASON_UNHEALTHY

    @pytest.mark.asyncio
    async def test_health_change_is_never_premature(self, checked, store, dns_client, clock, health):
        """Should reconcile before the record expires when a check starts failing."""
        await self._setup(store, health)
        await drive(checked, store, clock, rounds=3)
        record = await store.get("default", "app")
        clock.now = record.status.queued_at + 1

        result = await checked.reconcile("default", "app")
        assert 0 < result.requeue_after <= record.status.valid_for
        assert a_targets(dns_client) == [["1.1.1.1", "2.2.2.2"]]

        health.set_health("default/app", "2.2.2.2", False)
        await checked.reconcile("default", "app")

        record = await store.get("default", "app")
        assert a_targets(dns_client) == [["1.1.1.1"]]
        assert healthy(record).reason == REASON_PARTIALLY_HEALTHY
