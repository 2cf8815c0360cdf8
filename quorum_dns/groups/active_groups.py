"""
Active groups module for Quorum-DNS.

The set of currently live failover groups is published as a TXT record at
kuadrant-active-groups.<zone>, holding text such as
"groups=us-east&&us-west;version=1". This module resolves and parses it.
"""

import logging
from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

import dns.asyncresolver
import dns.exception
import dns.resolver

from quorum_dns.models.group import Groups
from quorum_dns.models.models import LABEL_DELIMITER

ACTIVE_GROUPS_TXT_RECORD_NAME = "kuadrant-active-groups"
TXT_RECORD_KEYS_SEPARATOR = ";"
TXT_RECORD_GROUP_KEY = "groups"

DEFAULT_DNS_PORT = 53
NAMESERVER_TIMEOUT = 3.0

logger = logging.getLogger("quorum-dns.groups")


class TXTResolver(ABC):
    """
    Looks up the TXT values of a host.
    """

    @abstractmethod
    async def lookup_txt(self, host: str, nameservers: Optional[List[str]] = None) -> List[str]:
        """
        Resolve TXT values for a host.

        Args:
            host: Host to query
            nameservers: Servers to ask first, the system resolver otherwise

        Returns:
            List[str]: TXT values, one string per record
        """


def split_nameserver(nameserver: str) -> Tuple[str, int]:
    """
    Split a nameserver address into host and port, defaulting to port 53.

    Args:
        nameserver: Address such as "10.0.0.1", "10.0.0.1:5353" or "[::1]:53"

    Returns:
        Tuple[str, int]: Host and port
    """
    if nameserver.startswith("["):
        host, _, rest = nameserver[1:].partition("]")
        port = rest.lstrip(":")
        return host, int(port) if port else DEFAULT_DNS_PORT
    if nameserver.count(":") == 1:
        host, port = nameserver.split(":")
        return host, int(port)
    return nameserver, DEFAULT_DNS_PORT


class DnsPythonTXTResolver(TXTResolver):
    """
    TXTResolver backed by dnspython.

    Configured nameservers are tried in order, each with a short timeout. When
    none of them answers, the system resolver is used.
    """

    def __init__(self, timeout: float = NAMESERVER_TIMEOUT):
        self.timeout = timeout
        self.logger = logging.getLogger("quorum-dns.groups.resolver")

    @staticmethod
    def _values(answer) -> List[str]:
        return [b"".join(rdata.strings).decode() for rdata in answer]

    async def lookup_txt(self, host: str, nameservers: Optional[List[str]] = None) -> List[str]:
        self.logger.debug(f"Looking up TXT record {host} using nameservers {nameservers or []}")

        for nameserver in nameservers or []:
            address, port = split_nameserver(nameserver)
            resolver = dns.asyncresolver.Resolver(configure=False)
            resolver.nameservers = [address]
            resolver.port = port
            resolver.lifetime = self.timeout
            try:
                values = self._values(await resolver.resolve(host, "TXT"))
            except dns.exception.DNSException as e:
                self.logger.info(f"Failed to resolve TXT record {host} from {address}:{port}: {e}")
                continue
            if values:
                self.logger.debug(f"Resolved TXT record {host} from {address}:{port}: {values}")
                return values

        try:
            answer = await dns.asyncresolver.resolve(host, "TXT")
        except (dns.resolver.NXDOMAIN, dns.resolver.NoAnswer):
            return []
        return self._values(answer)


class StaticTXTResolver(TXTResolver):
    """
    TXTResolver answering from a fixed map of host to values.
    """

    def __init__(self, records: Optional[Dict[str, List[str]]] = None):
        self.records: Dict[str, List[str]] = dict(records or {})
        self.queries: List[str] = []

    def set(self, host: str, values: List[str]) -> None:
        self.records[host] = list(values)

    async def lookup_txt(self, host: str, nameservers: Optional[List[str]] = None) -> List[str]:
        self.queries.append(host)
        return list(self.records.get(host, []))


def active_groups_host(zone_domain_name: str) -> str:
    return f"{ACTIVE_GROUPS_TXT_RECORD_NAME}.{zone_domain_name}"


def parse_active_groups(values: List[str]) -> Groups:
    """
    Parse the active groups TXT values.

    Args:
        values: TXT values, joined before parsing

    Returns:
        Groups: Active groups in the order listed, without duplicates
    """
    groups = Groups()
    for pair in "".join(values).split(TXT_RECORD_KEYS_SEPARATOR):
        sections = pair.split("=")
        if len(sections) != 2:
            logger.info(f"Skipping badly formed data in the active groups TXT record: {pair!r}")
            continue
        key, value = sections
        if key.strip() != TXT_RECORD_GROUP_KEY:
            continue
        for group in value.split(LABEL_DELIMITER):
            group = group.strip()
            if group:
                groups.add(group)
    return groups


async def get_active_groups(
    resolver: TXTResolver, zone_domain_name: str, nameservers: Optional[List[str]] = None
) -> Groups:
    """
    Resolve the active groups declared for a zone.

    Args:
        resolver: TXT resolver
        zone_domain_name: Zone the active groups record lives in
        nameservers: Servers to ask first

    Returns:
        Groups: Active groups; empty when the lookup fails or nothing is declared
    """
    host = active_groups_host(zone_domain_name)
    try:
        values = await resolver.lookup_txt(host, nameservers)
    except (dns.exception.DNSException, OSError) as e:
        logger.error(f"Error looking up active groups at {host}: {e}")
        return Groups()

    groups = parse_active_groups(values)
    logger.debug(f"Got active groups for {zone_domain_name}: {groups}")
    return groups
