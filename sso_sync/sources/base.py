"""
Source directory interface.

The reconciliation engine reads the source side exclusively through this abstract
class, so any directory that can list users, groups and group members can drive a sync.
"""

from abc import ABC, abstractmethod
from typing import List, Optional

from sso_sync.models import Member, SourceGroup, SourceUser


class SourceDirectory(ABC):
    """
    Abstract base class for source directories.

    Implementations return fully paginated results; the engine never pages itself.
    """

    @abstractmethod
    def list_users(self, query: str = '') -> List[SourceUser]:
        """
        List non-deleted users matching the query.

        Args:
            query: Directory specific filter expression, empty for all users

        Returns:
            List of users
        """
        pass

    @abstractmethod
    def list_deleted_users(self) -> List[SourceUser]:
        """List users marked as deleted in the source directory."""
        pass

    @abstractmethod
    def list_groups(self, query: str = '') -> List[SourceGroup]:
        """
        List groups matching the query.

        Args:
            query: Directory specific filter expression, empty for all groups

        Returns:
            List of groups
        """
        pass

    @abstractmethod
    def list_group_members(self, group: SourceGroup) -> List[Member]:
        """List the direct members of a group, users and nested groups alike."""
        pass

    @abstractmethod
    def email_query(self, email: str) -> str:
        """Build the query that selects exactly the user with this email."""
        pass

    def get_user(self, email: str) -> Optional[SourceUser]:
        """
        Resolve a member address to a full user record.

        Returns:
            The first matching user, or None when the query resolves to nobody
        """
        users = self.list_users(self.email_query(email))
        return users[0] if users else None
