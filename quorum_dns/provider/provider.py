"""
Provider interface for Quorum-DNS.

This module defines the capability every DNS backend exposes to the engine,
plus the zone selection and error sanitizing helpers shared by all of them.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import List

from quorum_dns.errors import (
    ApexDomainNotAllowedError,
    MultipleZonesFoundError,
    ZoneNotFoundError,
)
from quorum_dns.models.models import Changes, Endpoint, Zone

# Substrings of provider errors that mean the records are already gone
BENIGN_DELETE_ERRORS = ("not found", "notFound", "no endpoints")

_STATUS_CODE_RE = re.compile(r"status code: [^\s]+")
_REQUEST_ID_RE = re.compile(r"request id: [^\s]+")

logger = logging.getLogger("quorum-dns.provider")


class Provider(ABC):
    """
    A DNS backend able to list and change records in its zones.
    """

    name: str = "provider"

    @abstractmethod
    async def records(self) -> List[Endpoint]:
        """
        List every record visible to this provider.

        Returns:
            List[Endpoint]: Records, including TXT registry records
        """

    @abstractmethod
    async def apply_changes(self, changes: Changes) -> None:
        """
        Apply a batch of changes. Application is not guaranteed to be atomic.

        Args:
            changes: Changes to apply
        """

    @abstractmethod
    async def zones(self) -> List[Zone]:
        """
        List the zones this provider can write to.

        Returns:
            List[Zone]: Zones
        """

    async def zone_for_host(self, host: str) -> Zone:
        """
        Find the zone that should hold records for a host.

        Args:
            host: Host name

        Returns:
            Zone: Best matching zone
        """
        return find_zone_for_host(host, await self.zones(), deny_apex=True)

    def adjust_endpoints(self, endpoints: List[Endpoint]) -> List[Endpoint]:
        return endpoints

    def for_zone(self, zone: Zone) -> "Provider":
        """
        A view of this provider restricted to one zone.

        Args:
            zone: Zone to restrict to

        Returns:
            Provider: Provider scoped to the zone
        """
        return self


def is_apex_domain(host: str, zones: List[Zone]) -> bool:
    host = host.lower()
    return any(zone.dns_name.lower() == host for zone in zones)


def find_zone_for_host(host: str, zones: List[Zone], deny_apex: bool = True) -> Zone:
    """
    Find the most specific zone for a host by walking up its parent domains.

    Args:
        host: Host name, possibly a wildcard
        zones: Candidate zones
        deny_apex: Whether a host equal to a zone name is rejected

    Returns:
        Zone: The zone with the longest matching suffix

    Raises:
        ZoneNotFoundError: If no zone matches or the host is a top level domain
        ApexDomainNotAllowedError: If the host is the apex of a zone
        MultipleZonesFoundError: If several zones share the best matching name
    """
    logger.debug(f"Finding most suitable zone for {host} from {len(zones)} possible zones")
    original = host.lower()
    if not zones:
        raise ZoneNotFoundError(f"no valid zone for host: {host}")

    if deny_apex and is_apex_domain(original, zones):
        raise ApexDomainNotAllowedError(f"apex domain not allowed: {host}")

    current = original
    # A host is never the apex of its own zone when apex records are denied
    if deny_apex:
        _, _, current = current.partition(".")

    while current and "." in current:
        matches = [zone for zone in zones if zone.dns_name.lower() == current]
        if len(matches) > 1:
            raise MultipleZonesFoundError(f"multiple zones found for host: {host}")
        if matches:
            return matches[0]
        _, _, current = current.partition(".")

    # Single label names are top level domains
    raise ZoneNotFoundError(f"no valid zone for host: {host}")


def sanitize_error(err: Exception) -> str:
    """
    Remove request specific data from a provider error message.

    Args:
        err: Provider error

    Returns:
        str: Message that stays stable across identical failures
    """
    message = str(err).replace("\n", " ").replace("\t", " ")
    message = _STATUS_CODE_RE.sub("", message)
    message = _REQUEST_ID_RE.sub("", message)
    return message.strip()


def is_benign_delete_error(err: Exception) -> bool:
    message = str(err)
    return any(fragment in message for fragment in BENIGN_DELETE_ERRORS)
