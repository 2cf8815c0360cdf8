"""
Exceptions for Quorum-DNS.

Every error raised by the reconciliation engine derives from QuorumDNSError so
callers can tell engine failures apart from programming errors.
"""

from typing import List


class QuorumDNSError(Exception):
    """Base class for all Quorum-DNS errors."""


# ===== Plan errors =====


class PlanError(QuorumDNSError):
    """A plan could not be calculated cleanly."""


class OwnerConflictError(PlanError):
    """An owned record and an unowned record compete for the same name."""


class RecordTypeConflictError(PlanError):
    """A desired record type clashes with a different existing type."""


class InvalidTargetError(PlanError):
    """A CNAME target points at a managed host with no current owner."""


class UnknownPolicyError(PlanError):
    """The requested plan policy does not exist."""


class MultiplePlanErrors(PlanError):
    """Several plan errors were collected during one calculation."""

    def __init__(self, errors: List[PlanError]):
        self.errors = list(errors)
        super().__init__("; ".join(str(e) for e in self.errors))


# ===== Provider errors =====


class ProviderError(QuorumDNSError):
    """A DNS provider rejected or failed a request."""


class ZoneNotFoundError(ProviderError):
    """No hosted zone matches the requested host."""


class ApexDomainNotAllowedError(ProviderError):
    """The requested host is the apex of its zone."""


class MultipleZonesFoundError(ProviderError):
    """More than one zone matches the requested host equally well."""


class RecordNotFoundError(ProviderError):
    """A change referenced a record the provider does not have."""


class RecordAlreadyExistsError(ProviderError):
    """A create referenced a record the provider already has."""


class InvalidChangeBatchError(ProviderError):
    """A change batch is internally inconsistent."""


# ===== Registry errors =====


class RegistryError(QuorumDNSError):
    """The ownership registry is misconfigured."""


class ProvenanceDecodeError(RegistryError):
    """A single provenance segment could not be decoded."""


# ===== Record store errors =====


class StoreError(QuorumDNSError):
    """The record store could not complete a request."""


class RecordMissingError(StoreError):
    """The requested record does not exist in the store."""


class RecordConflictError(StoreError):
    """A write was based on a stale resource version."""


class RecordExistsError(StoreError):
    """A record with the same namespace and name already exists."""


# ===== Other errors =====


class ValidationError(QuorumDNSError):
    """A record failed validation against its root host."""


class InvalidGroupError(QuorumDNSError):
    """A group name contains forbidden characters or is too long."""
