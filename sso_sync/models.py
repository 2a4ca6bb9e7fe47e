"""
In-memory representations of source and target identities.

Source records come from the source directory (read-only ground truth); target
records mirror what the SCIM store holds or should hold.
"""

from dataclasses import dataclass, replace
from typing import Optional

MEMBER_TYPE_USER = 'USER'
MEMBER_TYPE_GROUP = 'GROUP'


@dataclass(frozen=True)
class SourceUser:
    primary_email: str
    given_name: str = ''
    family_name: str = ''
    suspended: bool = False


@dataclass(frozen=True)
class SourceGroup:
    name: str
    email: str
    dn: Optional[str] = None


@dataclass(frozen=True)
class Member:
    """A group member reference as returned by the source directory."""
    email: Optional[str]
    type: str = MEMBER_TYPE_USER
    dn: Optional[str] = None


@dataclass(frozen=True)
class TargetUser:
    """User record in the target store. ``username`` is the primary email."""
    username: str
    given_name: str = ''
    family_name: str = ''
    active: bool = True
    id: Optional[str] = None

    @classmethod
    def from_source(cls, user: SourceUser) -> 'TargetUser':
        """Build the target record a source user should map to."""
        return cls(
            username=user.primary_email,
            given_name=user.given_name,
            family_name=user.family_name,
            active=not user.suspended,
        )

    def with_id(self, user_id: Optional[str]) -> 'TargetUser':
        return replace(self, id=user_id)


@dataclass(frozen=True)
class TargetGroup:
    display_name: str
    id: Optional[str] = None

    def with_id(self, group_id: Optional[str]) -> 'TargetGroup':
        return replace(self, id=group_id)
