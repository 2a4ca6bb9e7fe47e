"""
Snapshot collection for both sides of a sync.

The collector pulls users, groups and group membership from the source directory
and the target store into plain in-memory structures that the diff engine can
compare. Snapshots are rebuilt from scratch on every run.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sso_sync.context import SyncContext, run_operation
from sso_sync.errors import NotFoundError
from sso_sync.filters import FilterPolicy
from sso_sync.logging_setup import audit_logger
from sso_sync.models import (
    MEMBER_TYPE_GROUP, SourceGroup, SourceUser, TargetGroup, TargetUser
)
from sso_sync.sources.base import SourceDirectory
from sso_sync.targets.base import TargetStore

logger = logging.getLogger(__name__)


@dataclass
class SourceSnapshot:
    users: List[SourceUser] = field(default_factory=list)
    groups: List[SourceGroup] = field(default_factory=list)
    # group name -> member users
    group_members: Dict[str, List[SourceUser]] = field(default_factory=dict)


@dataclass
class TargetSnapshot:
    users: List[TargetUser] = field(default_factory=list)
    groups: List[TargetGroup] = field(default_factory=list)
    # group display name -> member users
    group_members: Dict[str, List[TargetUser]] = field(default_factory=dict)


class SnapshotCollector:
    """
    Builds source and target snapshots through the two collaborator interfaces.

    Any failure while fetching is fatal for the run and is raised as an OperationError
    naming the fetch and the entity it was for.
    """

    def __init__(self, source: SourceDirectory, target: TargetStore, policy: FilterPolicy):
        self.source = source
        self.target = target
        self.policy = policy

    def purge_deleted_users(self, ctx: SyncContext) -> int:
        """
        Delete target users whose source counterpart is marked deleted.

        A user already absent from the target counts as converged.

        Returns:
            Number of target users deleted
        """
        logger.debug("Fetching deleted source users")
        deleted_users = run_operation(ctx, 'list deleted users', '*', self.source.list_deleted_users)
        logger.info(f"Deleted source users retrieved: count={len(deleted_users)}")

        removed = 0
        for user in deleted_users:
            email = user.primary_email
            try:
                target_user = run_operation(ctx, 'find user', email,
                                            lambda: self.target.find_user_by_email(email),
                                            expected=(NotFoundError,))
                logger.info(f"Deleting user deleted in source: email={user.primary_email} id={target_user.id}")
                run_operation(ctx, 'delete user', email, lambda: self.target.delete_user(target_user),
                              expected=(NotFoundError,))
            except NotFoundError:
                logger.debug(f"User already deleted: email={email}")
                continue
            audit_logger.log_target_operation('delete user', user.primary_email, success=True)
            removed += 1
        return removed

    def collect_source(self, ctx: SyncContext, group_query: str,
                       user_query: Optional[str] = None) -> SourceSnapshot:
        """
        Build the source snapshot.

        Args:
            ctx: Run context
            group_query: Source query selecting the groups to sync
            user_query: Optional query selecting extra users to sync even when they
                belong to no synced group

        Returns:
            Snapshot with unique users, filtered groups and their resolved members
        """
        logger.info(f"Fetching source groups: query={group_query!r}")
        source_groups = run_operation(ctx, 'list groups', group_query or '*',
                                      lambda: self.source.list_groups(group_query))
        groups = [
            group for group in source_groups
            if self._keep_group(group)
        ]
        logger.info(f"Source groups retrieved: count={len(groups)}")

        unique_users: Dict[str, SourceUser] = {}
        group_members: Dict[str, List[SourceUser]] = {}

        for group in groups:
            members = self._resolve_members(ctx, group)
            group_members[group.name] = members
            for user in members:
                unique_users.setdefault(user.primary_email, user)
            logger.info(f"Group members resolved: group={group.name} count={len(members)}")

        if user_query:
            logger.info(f"Fetching source users: query={user_query!r}")
            query_users = run_operation(ctx, 'list users', user_query,
                                        lambda: self.source.list_users(user_query))
            for user in query_users:
                if not self.policy.include_user(user.primary_email):
                    logger.debug(f"Ignoring user: email={user.primary_email}")
                    continue
                unique_users.setdefault(user.primary_email, user)

        logger.info(f"Source snapshot built: users={len(unique_users)} groups={len(groups)}")
        return SourceSnapshot(
            users=list(unique_users.values()),
            groups=groups,
            group_members=group_members,
        )

    def collect_target(self, ctx: SyncContext) -> TargetSnapshot:
        """
        Build the target snapshot.

        The target exposes no bulk membership listing, so every (group, user) pair
        is probed with is_member: groups x users calls.
        """
        logger.info("Fetching target groups")
        groups = run_operation(ctx, 'list target groups', '*', self.target.list_groups)
        logger.info(f"Target groups retrieved: count={len(groups)}")

        logger.info("Fetching target users")
        users = run_operation(ctx, 'list target users', '*', self.target.list_users)
        logger.info(f"Target users retrieved: count={len(users)}")

        group_members: Dict[str, List[TargetUser]] = {}
        for group in groups:
            members = []
            for user in users:
                key = f"{user.username} -> {group.display_name}"
                if run_operation(ctx, 'check membership', key, lambda: self.target.is_member(user, group)):
                    logger.debug(f"User is a member: user={user.username} group={group.display_name}")
                    members.append(user)
            group_members[group.display_name] = members
            logger.info(f"Target group members probed: group={group.display_name} count={len(members)}")

        return TargetSnapshot(users=users, groups=groups, group_members=group_members)

    def _keep_group(self, group: SourceGroup) -> bool:
        if not self.policy.include_group(group.email):
            logger.debug(f"Ignoring group based on configuration: group={group.email}")
            return False
        return True

    def _resolve_members(self, ctx: SyncContext, group: SourceGroup) -> List[SourceUser]:
        """Resolve member references of one group to full user records."""
        members = run_operation(ctx, 'list group members', group.name,
                                lambda: self.source.list_group_members(group))
        logger.debug(f"Group members retrieved from source: group={group.name} count={len(members)}")

        resolved = []
        for member in members:
            if member.type == MEMBER_TYPE_GROUP:
                logger.debug(f"Ignoring group address: id={member.email or member.dn}")
                continue
            if not member.email:
                logger.debug(f"Ignoring member without email: id={member.dn}")
                continue
            if not self.policy.include_user(member.email):
                logger.debug(f"Ignoring user: id={member.email}")
                continue

            email = member.email
            user = run_operation(ctx, 'find source user', email, lambda: self.source.get_user(email))
            if user is None:
                logger.debug(f"Ignoring unknown user: email={member.email}")
                continue
            resolved.append(user)
        return resolved
