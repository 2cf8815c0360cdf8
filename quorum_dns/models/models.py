"""
Data models for Quorum-DNS.
"""

import copy
from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional

# Record types
RECORD_TYPE_A = "A"
RECORD_TYPE_AAAA = "AAAA"
RECORD_TYPE_CNAME = "CNAME"
RECORD_TYPE_TXT = "TXT"
RECORD_TYPE_NS = "NS"
RECORD_TYPE_SRV = "SRV"
RECORD_TYPE_MX = "MX"

SUPPORTED_RECORD_TYPES = [
    RECORD_TYPE_A,
    RECORD_TYPE_AAAA,
    RECORD_TYPE_CNAME,
    RECORD_TYPE_TXT,
    RECORD_TYPE_NS,
    RECORD_TYPE_SRV,
    RECORD_TYPE_MX,
]

# Label keys
OWNER_LABEL_KEY = "owner"
GROUP_LABEL_KEY = "group"
TARGETS_LABEL_KEY = "targets"

# Separates owner ids (and other ids) inside a single label value
LABEL_DELIMITER = "&&"

# Separates targets inside the targets label
TARGETS_DELIMITER = ";"


def split_labels(value: Optional[str]) -> List[str]:
    """
    Split a delimited label value into its items.

    Args:
        value: Label value such as "a&&b"

    Returns:
        List[str]: Non-empty items in order
    """
    if not value:
        return []
    return [item for item in value.split(LABEL_DELIMITER) if item]


def ensure_label(value: Optional[str], item: str) -> str:
    """
    Add an item to a delimited label value if it is not already present.

    Args:
        value: Existing label value
        item: Item to add

    Returns:
        str: Label value containing the item
    """
    items = split_labels(value)
    if item and item not in items:
        items.append(item)
    return LABEL_DELIMITER.join(items)


class EndpointKey(NamedTuple):
    """Identity of a record inside a zone."""

    dnsname: str
    record_type: str
    set_identifier: str = ""


@dataclass
class Endpoint:
    """
    Represents a DNS endpoint (record) managed by Quorum-DNS.
    """

    dnsname: str
    targets: List[str]
    record_type: str
    record_ttl: Optional[int] = None
    set_identifier: str = ""
    provider_specific: Dict[str, str] = field(default_factory=dict)
    labels: Dict[str, str] = field(default_factory=dict)

    @property
    def key(self) -> EndpointKey:
        """
        Identity of this endpoint.

        Returns:
            EndpointKey: Name, type and set identifier
        """
        return EndpointKey(self.dnsname, self.record_type, self.set_identifier)

    def owners(self) -> List[str]:
        """
        Owners recorded on this endpoint.

        Returns:
            List[str]: Owner ids from the owner label
        """
        return split_labels(self.labels.get(OWNER_LABEL_KEY))

    def is_owned_by(self, owner_id: str) -> bool:
        return owner_id in self.owners()

    def same_targets(self, other: "Endpoint") -> bool:
        return sorted(self.targets) == sorted(other.targets)

    def deep_copy(self) -> "Endpoint":
        return copy.deepcopy(self)

    def __str__(self) -> str:
        return f"{self.dnsname} {self.record_ttl or 0} IN {self.record_type} {self.set_identifier} {self.targets}"


@dataclass
class Changes:
    """
    Represents changes to be applied to DNS records.
    """

    create: List[Endpoint] = field(default_factory=list)
    update_old: List[Endpoint] = field(default_factory=list)
    update_new: List[Endpoint] = field(default_factory=list)
    delete: List[Endpoint] = field(default_factory=list)

    def has_changes(self) -> bool:
        """
        Check if there are any changes to be applied.

        Returns:
            bool: True if there are changes, False otherwise
        """
        return bool(self.create or self.update_new or self.delete)

    def __str__(self) -> str:
        return (
            f"create={len(self.create)} update={len(self.update_new)} "
            f"delete={len(self.delete)}"
        )


@dataclass(frozen=True)
class Zone:
    """A hosted zone known to a provider."""

    id: str
    dns_name: str


def filter_endpoints_by_owner_id(owner_id: str, endpoints: List[Endpoint]) -> List[Endpoint]:
    """
    Keep only the endpoints carrying the given owner.

    Args:
        owner_id: Owner id to keep
        endpoints: Endpoints to filter

    Returns:
        List[Endpoint]: Endpoints owned by owner_id
    """
    return [ep for ep in endpoints if ep.is_owned_by(owner_id)]
