"""
Health check results module for Quorum-DNS.

Health checks are executed elsewhere. The controller only consumes their
latest results: which addresses of a record answered and which did not.
Unhealthy addresses are left out of what a record publishes, unless every
checked address is unhealthy, in which case everything is published.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Set, Union

import yaml

from quorum_dns.models.models import Endpoint
from quorum_dns.models.record import DNSRecord

logger = logging.getLogger("quorum-dns.healthchecks")


@dataclass(frozen=True)
class HealthCheckResult:
    """
    Latest result of the health check of one address.

    Attributes:
        address: Target address that was checked
        healthy: None until the first check completed
        host: Host name sent with the check
    """

    address: str
    healthy: Optional[bool] = None
    host: str = ""


class HealthCheckSource(ABC):
    """
    Reports the health check results of a record.
    """

    @abstractmethod
    async def results(self, record: DNSRecord) -> List[HealthCheckResult]:
        """
        Results of the checks belonging to a record.

        Args:
            record: Record the checks were created for

        Returns:
            List[HealthCheckResult]: One result per checked address, empty when the record is not checked
        """


class StaticHealthCheckSource(HealthCheckSource):
    """
    HealthCheckSource answering from a fixed map of record key to results.
    """

    def __init__(self, results: Optional[Dict[str, List[HealthCheckResult]]] = None):
        self._results: Dict[str, List[HealthCheckResult]] = {
            key: list(value) for key, value in (results or {}).items()
        }

    def set(self, record_key: str, results: Iterable[HealthCheckResult]) -> None:
        self._results[record_key] = list(results)

    def set_health(self, record_key: str, address: str, healthy: Optional[bool]) -> None:
        """
        Replace the result for one address of a record.

        Args:
            record_key: namespace/name of the record
            address: Checked address
            healthy: New health, None for not checked yet
        """
        current = [r for r in self._results.get(record_key, []) if r.address != address]
        current.append(HealthCheckResult(address=address, healthy=healthy))
        self._results[record_key] = current

    def clear(self, record_key: str) -> None:
        self._results.pop(record_key, None)

    async def results(self, record: DNSRecord) -> List[HealthCheckResult]:
        return list(self._results.get(record.key, []))


def results_from_dict(data: Dict[str, List[dict]]) -> Dict[str, List[HealthCheckResult]]:
    """
    Build health check results from their YAML mapping.

    Args:
        data: Results per record key

    Returns:
        Dict[str, List[HealthCheckResult]]: Parsed results per record key

    Raises:
        ValueError: If a result has no address
    """
    parsed = {}
    for record_key, items in data.items():
        results = []
        for item in items or []:
            address = item.get("address")
            if not address:
                raise ValueError(f"health check result of {record_key} is missing an address: {item}")
            healthy = item.get("healthy")
            results.append(
                HealthCheckResult(
                    address=str(address),
                    healthy=None if healthy is None else bool(healthy),
                    host=item.get("host", "") or "",
                )
            )
        parsed[str(record_key)] = results
    return parsed


class FileHealthCheckSource(HealthCheckSource):
    """
    HealthCheckSource reading the results a health checker writes to a YAML file.

    The file is read again whenever its modification time changes. A file
    looks like:

        results:
          default/app:
            - address: 127.0.0.1
              healthy: true
            - address: 127.0.0.2
              healthy: false
    """

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._mtime: Optional[float] = None
        self._results: Dict[str, List[HealthCheckResult]] = {}

    def _reload(self) -> None:
        try:
            mtime = self.path.stat().st_mtime
        except FileNotFoundError:
            if self._mtime is not None:
                logger.warning(f"Health check results file {self.path} disappeared, no record is checked")
            self._mtime = None
            self._results = {}
            return
        if mtime == self._mtime:
            return

        with open(self.path, "r") as f:
            data = yaml.safe_load(f) or {}
        self._results = results_from_dict(data.get("results") or {})
        self._mtime = mtime
        logger.info(f"Loaded health check results of {len(self._results)} records from {self.path}")

    async def results(self, record: DNSRecord) -> List[HealthCheckResult]:
        self._reload()
        return list(self._results.get(record.key, []))


def unhealthy_addresses(results: Iterable[HealthCheckResult]) -> List[str]:
    """Sorted addresses whose last check failed."""
    return sorted({r.address for r in results if r.healthy is False})


def remove_unhealthy_endpoints(
    endpoints: List[Endpoint], results: List[HealthCheckResult]
) -> List[Endpoint]:
    """
    Drop unhealthy targets from endpoints.

    Endpoints left without targets are dropped, and so are endpoints whose
    targets only name dropped endpoints. When every checked address is
    unhealthy the endpoints are returned unchanged.

    Args:
        endpoints: Endpoints a record wants published
        results: Health check results of the record

    Returns:
        List[Endpoint]: Endpoints that should be published, trimmed ones copied
    """
    unhealthy: Set[str] = set(unhealthy_addresses(results))
    if not unhealthy:
        return list(endpoints)
    if len(unhealthy) == len({r.address for r in results}):
        logger.info(f"Every checked address is unhealthy, publishing all of {sorted(unhealthy)}")
        return list(endpoints)

    removed_names: Set[str] = set()
    healthy = []
    for ep in endpoints:
        targets = [t for t in ep.targets if t not in unhealthy]
        if not targets:
            removed_names.add(ep.dnsname)
            continue
        if targets != ep.targets:
            ep = ep.deep_copy()
            ep.targets = targets
        healthy.append(ep)

    # Endpoints pointing only at removed names go too, up the chain
    removed = True
    while removed:
        removed = False
        kept = []
        for ep in healthy:
            if all(t in removed_names for t in ep.targets):
                removed_names.add(ep.dnsname)
                removed = True
                continue
            kept.append(ep)
        healthy = kept

    return healthy
