"""
DNS record resource model for Quorum-DNS.

A DNSRecord is the desired-state resource one owner submits for a root host.
Its RecordStatus is the durable memory the convergence controller relies on:
the endpoints last written, the owners seen for the root host, the validity
interval and the conditions reported back to the submitter.
"""

import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

from quorum_dns.errors import ValidationError
from quorum_dns.models.models import Endpoint
from quorum_dns.utils.hashing import canonical_hash, to_base36_hash_len

WILDCARD_PREFIX = "*."

# Finalizer guarding provider cleanup
DNS_RECORD_FINALIZER = "quorum-dns/dns-record"

# Labels on authoritative records
AUTHORITATIVE_RECORD_LABEL = "quorum-dns/authoritative-record"
AUTHORITATIVE_RECORD_HASH_LABEL = "quorum-dns/authoritative-record-hash"

# Condition types
CONDITION_TYPE_READY = "Ready"
CONDITION_TYPE_READY_FOR_DELEGATION = "ReadyForDelegation"
CONDITION_TYPE_ACTIVE = "Active"
CONDITION_TYPE_HEALTHY = "Healthy"

# Condition reasons
REASON_PROVIDER_SUCCESS = "ProviderSuccess"
REASON_AWAITING_VALIDATION = "AwaitingValidation"
REASON_PROVIDER_ENDPOINTS_DELETION = "ProviderEndpointsDeletion"
REASON_PROVIDER_ENDPOINTS_REMOVED = "ProviderEndpointsRemoved"
REASON_DNS_PROVIDER_ERROR = "DNSProviderError"
REASON_PROVIDER_ERROR = "ProviderError"
REASON_VALIDATION_ERROR = "ValidationError"
REASON_IN_ACTIVE_GROUP = "InActiveGroup"
REASON_NOT_IN_ACTIVE_GROUP = "NotInActiveGroup"
REASON_IN_INACTIVE_GROUP = "InInactiveGroup"
REASON_DELEGATION_READY = "DelegationReady"
REASON_HEALTHY = "AllChecksPassed"
REASON_PARTIALLY_HEALTHY = "SomeChecksPassed"
REASON_UNHEALTHY = "HealthChecksFailed"

STATUS_TRUE = "True"
STATUS_FALSE = "False"
STATUS_UNKNOWN = "Unknown"


@dataclass
class Condition:
    """A typed status condition on a record."""

    type: str
    status: str
    reason: str = ""
    message: str = ""
    observed_generation: int = 0
    last_transition_time: float = 0.0


def set_condition(conditions: List[Condition], new: Condition, now: Optional[float] = None) -> None:
    """
    Add or replace a condition in place.

    The transition time only moves when the status value changes.

    Args:
        conditions: Condition list to modify
        new: Condition to set
        now: Timestamp to use for a transition
    """
    now = time.time() if now is None else now
    for existing in conditions:
        if existing.type != new.type:
            continue
        if existing.status != new.status:
            existing.status = new.status
            existing.last_transition_time = now
        existing.reason = new.reason
        existing.message = new.message
        existing.observed_generation = new.observed_generation
        return
    if not new.last_transition_time:
        new.last_transition_time = now
    conditions.append(new)


def find_condition(conditions: List[Condition], condition_type: str) -> Optional[Condition]:
    for condition in conditions:
        if condition.type == condition_type:
            return condition
    return None


def remove_condition(conditions: List[Condition], condition_type: str) -> None:
    conditions[:] = [c for c in conditions if c.type != condition_type]


@dataclass
class RecordStatus:
    """
    Durable status of a DNSRecord.

    Attributes:
        observed_generation: Spec generation last processed
        endpoints: Endpoints written during the last successful publish
        domain_owners: Owners of the root host seen at the last publish
        write_counter: Consecutive publish cycles that produced changes
        valid_for: Seconds the last observation is considered valid
        queued_at: Timestamp of the last processed cycle
        remote_record_statuses: Status slots written by foreign clusters
    """

    observed_generation: int = 0
    endpoints: List[Endpoint] = field(default_factory=list)
    domain_owners: List[str] = field(default_factory=list)
    write_counter: int = 0
    valid_for: float = 0.0
    queued_at: float = 0.0
    zone_id: str = ""
    zone_domain_name: str = ""
    owner_id: str = ""
    conditions: List[Condition] = field(default_factory=list)
    remote_record_statuses: Dict[str, "RecordStatus"] = field(default_factory=dict)
    group: str = ""
    active_groups: str = ""

    def get_condition(self, condition_type: str) -> Optional[Condition]:
        return find_condition(self.conditions, condition_type)

    def set_condition(self, condition: Condition, now: Optional[float] = None) -> None:
        set_condition(self.conditions, condition, now)

    def remove_condition(self, condition_type: str) -> None:
        remove_condition(self.conditions, condition_type)

    def get_remote_record_status(self, cluster_id: str) -> "RecordStatus":
        """
        Status slot for a cluster.

        Args:
            cluster_id: Foreign cluster identifier

        Returns:
            RecordStatus: The slot, or an empty status when none was written
        """
        return self.remote_record_statuses.get(cluster_id, RecordStatus())

    def set_remote_record_status(self, cluster_id: str, status: "RecordStatus") -> None:
        self.remote_record_statuses[cluster_id] = status

    def ready_for_delegation(self) -> bool:
        condition = self.get_condition(CONDITION_TYPE_READY_FOR_DELEGATION)
        return condition is not None and condition.status == STATUS_TRUE

    def provider_endpoints_removed(self) -> bool:
        """
        Whether provider cleanup has finished here and in every remote slot.

        Returns:
            bool: True when no slot is still holding endpoints
        """
        ready = self.get_condition(CONDITION_TYPE_READY)
        if ready is not None and ready.reason != REASON_PROVIDER_ENDPOINTS_REMOVED:
            return False
        return all(
            status.provider_endpoints_removed()
            for status in self.remote_record_statuses.values()
        )

    def provider_endpoints_deletion(self) -> bool:
        """
        Whether removal of the endpoints from the provider has started.

        A provider error keeps the removal going, so a failed attempt is
        retried without marking the deletion again.

        Returns:
            bool: True when the endpoints may be removed now
        """
        ready = self.get_condition(CONDITION_TYPE_READY)
        return ready is None or ready.reason in (REASON_PROVIDER_ENDPOINTS_DELETION, REASON_PROVIDER_ERROR)

    def content_hash(self) -> str:
        """
        Digest of the whole status, used to skip no-op status writes.

        Returns:
            str: Hex digest
        """
        return canonical_hash(asdict(self))


@dataclass
class RecordSpec:
    """Desired state submitted by one owner."""

    root_host: str
    endpoints: List[Endpoint] = field(default_factory=list)
    owner_id: str = ""
    delegate: bool = False


@dataclass
class DNSRecord:
    """
    A desired-state resource for one root host.
    """

    name: str
    namespace: str
    spec: RecordSpec
    uid: str = ""
    generation: int = 1
    resource_version: int = 0
    labels: Dict[str, str] = field(default_factory=dict)
    finalizers: List[str] = field(default_factory=list)
    deletion_timestamp: Optional[float] = None
    status: RecordStatus = field(default_factory=RecordStatus)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    def get_root_host(self) -> str:
        """
        Root host without a leading wildcard label.

        Returns:
            str: Root host
        """
        root = self.spec.root_host
        if root.startswith(WILDCARD_PREFIX):
            return root[len(WILDCARD_PREFIX):]
        return root

    def is_deleting(self) -> bool:
        return bool(self.deletion_timestamp)

    def is_delegating(self) -> bool:
        return self.spec.delegate

    def is_authoritative_record(self) -> bool:
        return AUTHORITATIVE_RECORD_LABEL in self.labels

    def uid_hash(self) -> str:
        return to_base36_hash_len(self.uid, 8)

    def has_dns_zone_assigned(self) -> bool:
        return bool(self.status.zone_id and self.status.zone_domain_name)

    def has_owner_id_assigned(self) -> bool:
        return bool(self.status.owner_id)

    def validate(self) -> None:
        """
        Check that every endpoint lives under the root host.

        Raises:
            ValidationError: If an endpoint is outside the root host
        """
        root = self.get_root_host()
        for ep in self.spec.endpoints:
            if not ep.dnsname.endswith(root):
                raise ValidationError(
                    f"invalid endpoint discovered {ep.dnsname} all endpoints should be "
                    f"equal to or end with the rootHost {root}"
                )
