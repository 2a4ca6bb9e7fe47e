"""
Filter policy deciding which users and groups take part in a sync run.

Matching is exact string equality against the configured lists.
"""

from typing import Any, Dict, Iterable, Optional


class FilterPolicy:
    """Ignore-list and include-list predicates for users and groups."""

    def __init__(self, ignore_users: Optional[Iterable[str]] = None,
                 ignore_groups: Optional[Iterable[str]] = None,
                 include_groups: Optional[Iterable[str]] = None):
        self.ignore_users = frozenset(ignore_users or ())
        self.ignore_groups = frozenset(ignore_groups or ())
        self.include_groups = frozenset(include_groups or ())

    @classmethod
    def from_config(cls, sync_config: Dict[str, Any]) -> 'FilterPolicy':
        return cls(
            ignore_users=sync_config.get('ignore_users'),
            ignore_groups=sync_config.get('ignore_groups'),
            include_groups=sync_config.get('include_groups'),
        )

    def include_user(self, email: str) -> bool:
        return email not in self.ignore_users

    def include_group(self, email: str) -> bool:
        """
        Check whether a group participates in the sync.

        An empty include-list means every group that is not ignored is included.
        """
        if email in self.ignore_groups:
            return False
        if self.include_groups and email not in self.include_groups:
            return False
        return True
