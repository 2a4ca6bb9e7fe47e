"""
Target store interface.

The target is conformed to the source. Lookups raise NotFoundError when the entity
does not exist, and create_user raises ConflictError when it already does.
"""

from abc import ABC, abstractmethod
from typing import List

from sso_sync.models import TargetGroup, TargetUser


class TargetStore(ABC):
    """
    Abstract base class for target identity stores.

    There is no bulk membership listing: membership is only observable one
    (user, group) pair at a time through is_member.
    """

    @abstractmethod
    def find_user_by_email(self, email: str) -> TargetUser:
        pass

    @abstractmethod
    def create_user(self, user: TargetUser) -> TargetUser:
        pass

    @abstractmethod
    def update_user(self, user: TargetUser) -> TargetUser:
        """Replace the whole user record identified by ``user.id``."""
        pass

    @abstractmethod
    def delete_user(self, user: TargetUser) -> None:
        pass

    @abstractmethod
    def list_users(self) -> List[TargetUser]:
        pass

    @abstractmethod
    def find_group_by_name(self, name: str) -> TargetGroup:
        pass

    @abstractmethod
    def create_group(self, group: TargetGroup) -> TargetGroup:
        pass

    @abstractmethod
    def delete_group(self, group: TargetGroup) -> None:
        pass

    @abstractmethod
    def list_groups(self) -> List[TargetGroup]:
        pass

    @abstractmethod
    def is_member(self, user: TargetUser, group: TargetGroup) -> bool:
        pass

    @abstractmethod
    def add_member(self, user: TargetUser, group: TargetGroup) -> None:
        pass

    @abstractmethod
    def remove_member(self, user: TargetUser, group: TargetGroup) -> None:
        pass

    def close(self) -> None:
        """Release any transport resources."""
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
