"""
Plan module for Quorum-DNS.

This module is responsible for calculating the changes needed to move the
records of a zone from their current state to the state one owner desires,
while preserving whatever other owners contributed to the same names.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from quorum_dns.errors import (
    InvalidTargetError,
    MultiplePlanErrors,
    OwnerConflictError,
    PlanError,
    RecordTypeConflictError,
    UnknownPolicyError,
)
from quorum_dns.models.models import (
    LABEL_DELIMITER,
    OWNER_LABEL_KEY,
    RECORD_TYPE_A,
    RECORD_TYPE_AAAA,
    RECORD_TYPE_CNAME,
    Changes,
    Endpoint,
    filter_endpoints_by_owner_id,
)
from quorum_dns.models.record import WILDCARD_PREFIX
from quorum_dns.registry.txt_registry import MANAGED_RECORD_TYPES, is_managed_record

# Record types whose targets are merged across owners
MERGEABLE_RECORD_TYPES = [RECORD_TYPE_A, RECORD_TYPE_AAAA, RECORD_TYPE_CNAME]


def normalize_dns_name(dnsname: str) -> str:
    """
    Canonical form of a DNS name: trimmed, lower case, trailing dot.

    Args:
        dnsname: DNS name

    Returns:
        str: Normalized DNS name
    """
    name = dnsname.strip().lower()
    if not name.endswith("."):
        name += "."
    return name


class DomainFilter:
    """
    Matches DNS names against a list of domains.

    A name matches a domain when it equals the domain or is a subdomain of it.
    An empty filter matches everything.
    """

    def __init__(self, domains: Optional[List[str]] = None):
        self.domains = [d.strip().lower().rstrip(".") for d in (domains or []) if d.strip()]

    def is_configured(self) -> bool:
        return bool(self.domains)

    def match(self, dnsname: str) -> bool:
        if not self.domains:
            return True
        name = dnsname.strip().lower().rstrip(".")
        for domain in self.domains:
            if name == domain or name.endswith("." + domain):
                return True
        return False

    def __repr__(self) -> str:
        return f"DomainFilter({self.domains!r})"


# ===== Policies =====


def sync_policy(changes: Changes) -> Changes:
    """Allows create, update and delete."""
    return changes


def upsert_only_policy(changes: Changes) -> Changes:
    """Allows create and update, never delete."""
    return Changes(create=changes.create, update_old=changes.update_old, update_new=changes.update_new)


def create_only_policy(changes: Changes) -> Changes:
    """Allows create only."""
    return Changes(create=changes.create)


POLICIES = {
    "sync": sync_policy,
    "upsert-only": upsert_only_policy,
    "create-only": create_only_policy,
}


def policy_for(name: str):
    """
    Look up a plan policy by name.

    Args:
        name: Policy name

    Returns:
        Callable[[Changes], Changes]: The policy

    Raises:
        UnknownPolicyError: If no policy has this name
    """
    try:
        return POLICIES[name]
    except KeyError:
        raise UnknownPolicyError(f"unknown policy {name!r}, expected one of {sorted(POLICIES)}") from None


# ===== Plan table =====


@dataclass
class _DomainEndpoints:
    current: Optional[Endpoint] = None
    previous: Optional[Endpoint] = None
    candidates: List[Endpoint] = field(default_factory=list)


@dataclass
class _PlanTableRow:
    current: List[Endpoint] = field(default_factory=list)
    previous: List[Endpoint] = field(default_factory=list)
    candidates: List[Endpoint] = field(default_factory=list)
    records: Dict[str, _DomainEndpoints] = field(default_factory=dict)


class _PlanTable:
    """Rows of current, previous and desired records keyed by name and set identifier."""

    def __init__(self):
        self.rows: Dict[Tuple[str, str], _PlanTableRow] = {}

    def _entry(self, ep: Endpoint) -> Tuple[_PlanTableRow, _DomainEndpoints]:
        key = (normalize_dns_name(ep.dnsname), ep.set_identifier)
        row = self.rows.setdefault(key, _PlanTableRow())
        return row, row.records.setdefault(ep.record_type, _DomainEndpoints())

    def add_current(self, ep: Endpoint) -> None:
        row, records = self._entry(ep)
        row.current.append(ep)
        records.current = ep

    def add_previous(self, ep: Endpoint) -> None:
        row, records = self._entry(ep)
        row.previous.append(ep)
        records.previous = ep

    def add_candidate(self, ep: Endpoint) -> None:
        row, records = self._entry(ep)
        row.candidates.append(ep)
        records.candidates.append(ep)


def _resolve_candidates(candidates: List[Endpoint]) -> Endpoint:
    """Merge every candidate for one name and type into a single endpoint."""
    resolved = candidates[0].deep_copy()
    for other in candidates[1:]:
        resolved.targets = resolved.targets + other.targets
    resolved.targets = sorted(set(resolved.targets))
    return resolved


@dataclass
class _EndpointUpdate:
    current: Endpoint
    desired: Endpoint
    previous: Optional[Endpoint] = None
    is_delete: bool = False

    def should_update(self) -> bool:
        return (
            _should_update_owner(self.desired, self.current)
            or _should_update_ttl(self.desired, self.current)
            or _target_changed(self.desired, self.current)
            or _should_update_provider_specific(self.desired, self.current)
        )


def _should_update_owner(desired: Endpoint, current: Endpoint) -> bool:
    desired_owners = set(desired.owners())
    current_owners = set(current.owners())
    if desired_owners and current_owners:
        return desired_owners != current_owners
    return False


def _should_update_ttl(desired: Endpoint, current: Endpoint) -> bool:
    if not desired.record_ttl:
        return False
    return desired.record_ttl != current.record_ttl


def _target_changed(desired: Endpoint, current: Endpoint) -> bool:
    return not desired.same_targets(current)


def _should_update_provider_specific(desired: Endpoint, current: Endpoint) -> bool:
    return desired.provider_specific != current.provider_specific


def _remove_targets(targets: List[str], ep: Endpoint) -> None:
    ep.targets = [t for t in ep.targets if t not in targets]


def _merge_targets(desired: Endpoint, current: Endpoint) -> None:
    desired.targets = sorted(set(desired.targets) | set(current.targets))


def _join_owners(owners: List[str]) -> str:
    return LABEL_DELIMITER.join(sorted(set(owners)))


class _ManagedRecordSetChanges:
    def __init__(self, owner_id: str, root_domain_filter: DomainFilter, logger: logging.Logger):
        self.owner_id = owner_id
        self.root_domain_filter = root_domain_filter
        self.creates: List[Endpoint] = []
        self.deletes: List[Endpoint] = []
        self.updates: List[_EndpointUpdate] = []
        self.dns_name_owners: Dict[str, List[str]] = {}
        self.errors: List[PlanError] = []
        self.logger = logger

    def calculate(self) -> Changes:
        changes = Changes(delete=list(self.deletes))

        for ep in self.creates:
            try:
                self._validate_targets(ep)
            except InvalidTargetError as e:
                self.errors.append(e)
                continue
            changes.create.append(ep)

        for update in self.updates:
            self._calculate_desired(update)
            if not update.should_update():
                continue
            if not update.is_delete:
                try:
                    self._validate_targets(update.desired)
                except InvalidTargetError as e:
                    self.errors.append(e)
                    continue
            changes.update_old.append(update.current)
            changes.update_new.append(update.desired)

        return changes

    def _validate_targets(self, ep: Endpoint) -> None:
        """
        Reject CNAME targets that point at unknown names inside the root host.

        Raises:
            InvalidTargetError: If a target matches the root host but is not managed
        """
        if ep.record_type != RECORD_TYPE_CNAME or not self.root_domain_filter.is_configured():
            return
        for target in ep.targets:
            if self.root_domain_filter.match(target) and normalize_dns_name(target) not in self.dns_name_owners:
                raise InvalidTargetError(
                    f"invalid target, endpoint '{ep.dnsname}' has target '{target}' that matches the "
                    f"root host filters {self.root_domain_filter.domains} but does not exist in the "
                    f"list of local or remote endpoints"
                )

    def _calculate_desired(self, update: _EndpointUpdate) -> None:
        if not self.owner_id:
            self.logger.debug(f"Skipping merge for {update.desired.dnsname}, no owner id set for plan")
            return

        # Routing variants only ever hold a single target
        if update.current.set_identifier:
            self.logger.debug(f"Skipping merge for {update.desired.dnsname}, has set identifier")
            return

        # On release drop what this owner wrote before, unless nothing would remain
        if update.is_delete and update.previous is not None:
            desired_copy = update.desired.deep_copy()
            _remove_targets(update.previous.targets, desired_copy)
            if desired_copy.targets:
                update.desired.targets = desired_copy.targets

        current_copy = update.current.deep_copy()
        desired_copy = update.desired.deep_copy()

        if update.current.record_type not in MERGEABLE_RECORD_TYPES:
            return

        # Stale values this owner wrote previously are removed before merging
        if update.previous is not None:
            _remove_targets(update.previous.targets, current_copy)
        _merge_targets(desired_copy, current_copy)

        if update.current.record_type == RECORD_TYPE_CNAME and len(desired_copy.targets) > 1:
            self._drop_unshared_cname_targets(desired_copy)

        update.desired = desired_copy

    def _drop_unshared_cname_targets(self, desired: Endpoint) -> None:
        """Remove managed CNAME targets that will have no owner in common with the endpoint."""
        endpoint_owners = self.dns_name_owners.get(normalize_dns_name(desired.dnsname))
        for target in list(desired.targets):
            target_owners = self.dns_name_owners.get(normalize_dns_name(target))
            if target_owners is None:
                continue
            if not target_owners:
                self.logger.debug(f"Removing target {target} of {desired.dnsname}, it has no owners")
                _remove_targets([target], desired)
                continue
            if endpoint_owners is not None and not set(endpoint_owners) & set(target_owners):
                self.logger.debug(f"Removing target {target} of {desired.dnsname}, no mutual owner")
                _remove_targets([target], desired)


class Plan:
    """
    Converts current, previous and desired records into a set of changes.

    Calling calculate() returns a new Plan with changes, owners and errors populated.
    """

    def __init__(
        self,
        current: List[Endpoint],
        previous: List[Endpoint],
        desired: List[Endpoint],
        policies: Optional[List[str]] = None,
        domain_filter: Optional[List[str]] = None,
        managed_types: Optional[List[str]] = None,
        excluded_types: Optional[List[str]] = None,
        owner_id: str = "",
        root_host: Optional[str] = None,
    ):
        """
        Initialize a Plan.

        Args:
            current: Records currently in the zone, with ownership labels
            previous: Records this owner wrote during its last successful publish
            desired: Records this owner wants
            policies: Names of the policies applied to the changes
            domain_filter: Domains the plan may touch
            managed_types: Record types considered by the plan
            excluded_types: Record types never considered
            owner_id: Owner calculating the plan
            root_host: Root host of the record set being managed
        """
        self.current = current
        self.previous = previous
        self.desired = desired
        self.policies = policies if policies is not None else ["sync"]
        self.domain_filter = domain_filter or []
        self.managed_types = managed_types or list(MANAGED_RECORD_TYPES)
        self.excluded_types = excluded_types or []
        self.owner_id = owner_id
        self.root_host = root_host

        self.changes: Optional[Changes] = None
        self.owners: List[str] = []
        self.errors: List[PlanError] = []
        self.logger = logging.getLogger("quorum-dns.plan")

    def error(self) -> Optional[PlanError]:
        """
        All errors of a calculated plan as a single error.

        Returns:
            Optional[PlanError]: None, the only error, or a MultiplePlanErrors
        """
        if not self.errors:
            return None
        if len(self.errors) == 1:
            return self.errors[0]
        return MultiplePlanErrors(self.errors)

    def _filter_records(self, records: List[Endpoint], filters: List[DomainFilter]) -> List[Endpoint]:
        filtered = []
        for record in records:
            if not all(f.match(record.dnsname) for f in filters):
                self.logger.debug(f"Ignoring record {record.dnsname} that does not match domain filter")
                continue
            if is_managed_record(record.record_type, self.managed_types, self.excluded_types):
                filtered.append(record)
        return filtered

    def calculate(self) -> "Plan":
        """
        Compute the changes needed to move current state towards desired state.

        Returns:
            Plan: A copy of this plan with changes, owners and errors populated

        Raises:
            UnknownPolicyError: If a policy name is not known
        """
        policies = [policy_for(name) for name in self.policies]

        filters = [DomainFilter(self.domain_filter)]
        root_domain_filter = DomainFilter()
        if self.root_host:
            root_name = self.root_host[len(WILDCARD_PREFIX):] if self.root_host.startswith(WILDCARD_PREFIX) else self.root_host
            root_domain_filter = DomainFilter([root_name])
            filters.append(root_domain_filter)

        table = _PlanTable()
        for ep in self._filter_records(self.current, filters):
            table.add_current(ep)
        for ep in self._filter_records(self.previous, filters):
            table.add_previous(ep)
        for ep in self._filter_records(self.desired, filters):
            table.add_candidate(ep)

        managed = _ManagedRecordSetChanges(self.owner_id, root_domain_filter, self.logger)
        errors: List[PlanError] = []

        for key in sorted(table.rows):
            dnsname, _ = key
            row = table.rows[key]
            owners = managed.dns_name_owners.setdefault(dnsname, [])

            # Name not taken
            if not row.current:
                for records in row.records.values():
                    if records.candidates:
                        managed.creates.append(_resolve_candidates(records.candidates))
                        if self.owner_id:
                            owners.append(self.owner_id)

            # Name released by this owner or held by others
            elif not row.candidates:
                for records in row.records.values():
                    if records.current is None:
                        continue
                    remaining = [o for o in records.current.owners() if o != self.owner_id] if self.owner_id else []
                    if not remaining:
                        managed.deletes.append(records.current)
                        continue
                    candidate = records.current.deep_copy()
                    candidate.labels[OWNER_LABEL_KEY] = _join_owners(remaining)
                    managed.updates.append(
                        _EndpointUpdate(current=records.current, desired=candidate, previous=records.previous, is_delete=True)
                    )
                    owners.extend(remaining)

            # Name taken
            else:
                unwanted_current: Optional[Endpoint] = None
                new_types: List[Endpoint] = []
                for records in row.records.values():
                    if records.current is not None and not records.candidates:
                        unwanted_current = records.current
                    elif records.current is None and records.candidates:
                        new_types.append(_resolve_candidates(records.candidates))
                    elif records.current is not None:
                        update = self._update_for(records, errors)
                        if update is not None:
                            managed.updates.append(update)
                            owners.extend(update.desired.owners())

                if unwanted_current is not None and new_types:
                    errors.append(
                        RecordTypeConflictError(
                            f"record type conflict, cannot update endpoint '{unwanted_current.dnsname}' "
                            f"with record type '{new_types[0].record_type}' when endpoint already exists "
                            f"with record type '{unwanted_current.record_type}'"
                        )
                    )
                else:
                    # Types this owner does not want stay, and so do their owners
                    for records in row.records.values():
                        if records.current is not None and not records.candidates:
                            owners.extend(records.current.owners())
                    if new_types:
                        # Additional record type next to compatible existing ones
                        managed.creates.extend(new_types)
                        if self.owner_id:
                            owners.append(self.owner_id)

            managed.dns_name_owners[dnsname] = sorted(set(owners))

        changes = managed.calculate()
        errors.extend(managed.errors)

        for policy in policies:
            changes = policy(changes)

        # Never delete records this owner has no claim over
        if self.owner_id:
            changes.delete = filter_endpoints_by_owner_id(self.owner_id, changes.delete)

        plan = Plan(
            current=self.current,
            previous=self.previous,
            desired=self.desired,
            policies=self.policies,
            domain_filter=self.domain_filter,
            managed_types=self.managed_types,
            excluded_types=self.excluded_types,
            owner_id=self.owner_id,
            root_host=self.root_host,
        )
        plan.changes = changes
        plan.errors = errors

        if self.root_host:
            surviving = set()
            for names_owners in managed.dns_name_owners.values():
                surviving.update(names_owners)
            plan.owners = sorted(surviving)
            self.logger.debug(f"Plan for {self.root_host}: owners={plan.owners} changes={changes}")

        return plan

    def _update_for(self, records: _DomainEndpoints, errors: List[PlanError]) -> Optional[_EndpointUpdate]:
        candidate = _resolve_candidates(records.candidates)
        current = records.current
        current_owners = current.owners()

        if current_owners:
            # Owned records are only updated by owned records
            if not self.owner_id:
                errors.append(
                    OwnerConflictError(
                        f"owner conflict, cannot update endpoint '{candidate.dnsname}' with no owner "
                        f"when existing endpoint is already owned"
                    )
                )
                return None
            owners = current_owners + [self.owner_id]
        else:
            if self.owner_id:
                errors.append(
                    OwnerConflictError(
                        f"owner conflict, cannot update endpoint '{candidate.dnsname}' with owner "
                        f"when existing endpoint is not owned"
                    )
                )
                return None
            owners = []

        labels = dict(current.labels)
        labels.update(candidate.labels)
        if owners:
            labels[OWNER_LABEL_KEY] = _join_owners(owners)
        else:
            labels.pop(OWNER_LABEL_KEY, None)
        candidate.labels = labels

        return _EndpointUpdate(current=current, desired=candidate, previous=records.previous)
