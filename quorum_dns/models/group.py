"""
Failover group model for Quorum-DNS.
"""

from typing import Iterable, List

from quorum_dns.errors import InvalidGroupError
from quorum_dns.models.models import LABEL_DELIMITER

MAX_GROUP_NAME_LENGTH = 16
INVALID_GROUP_CHARACTERS = ";&, \"'"


def validate_group(name: str) -> str:
    """
    Validate a group name.

    An empty name is valid and means ungrouped.

    Args:
        name: Group name

    Returns:
        str: The validated name

    Raises:
        InvalidGroupError: If the name is too long or has forbidden characters
    """
    if not name:
        return ""
    if len(name) > MAX_GROUP_NAME_LENGTH:
        raise InvalidGroupError(
            f"group name exceeds maximum length of {MAX_GROUP_NAME_LENGTH} characters"
        )
    if any(ch in INVALID_GROUP_CHARACTERS for ch in name):
        raise InvalidGroupError(
            f"group name cannot contain any of these characters: {INVALID_GROUP_CHARACTERS}"
        )
    return name


class Groups:
    """An ordered set of group names."""

    def __init__(self, groups: Iterable[str] = ()):
        self._groups: List[str] = []
        for group in groups:
            self.add(group)

    def add(self, group: str) -> None:
        if group and group not in self._groups:
            self._groups.append(group)

    def has_group(self, group: str) -> bool:
        return group in self._groups

    def __iter__(self):
        return iter(self._groups)

    def __len__(self) -> int:
        return len(self._groups)

    def __bool__(self) -> bool:
        return bool(self._groups)

    def __eq__(self, other) -> bool:
        if isinstance(other, Groups):
            return self._groups == other._groups
        return NotImplemented

    def __str__(self) -> str:
        return ",".join(self._groups)

    def __repr__(self) -> str:
        return f"Groups({self._groups!r})"

    def to_label(self) -> str:
        return LABEL_DELIMITER.join(self._groups)
