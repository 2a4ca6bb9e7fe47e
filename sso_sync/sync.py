"""
Synchronization entry points.

Two modes are available, selected by ``sync.method``:

``groups`` (default)
    Full reconciliation: snapshot both sides, diff them and apply the result
    through the ordered pipeline, including deletion of stale users and groups.

``users_groups``
    Two independent passes. The user pass creates and updates target users one by
    one and records them in the context's user index; the group pass then creates
    missing groups and reconciles their members against that index. Nothing is
    deleted except users marked deleted in the source.
"""

import logging
from typing import Any, Dict, Optional

from sso_sync.apply import ApplyPipeline, ApplyResult
from sso_sync.context import SyncContext, run_operation
from sso_sync.diff import compute_diff
from sso_sync.errors import ConflictError, NotFoundError, SyncError
from sso_sync.filters import FilterPolicy
from sso_sync.logging_setup import audit_logger
from sso_sync.models import TargetGroup, TargetUser
from sso_sync.snapshot import SnapshotCollector
from sso_sync.sources.base import SourceDirectory
from sso_sync.targets.base import TargetStore

logger = logging.getLogger(__name__)

DEFAULT_SYNC_METHOD = 'groups'
USERS_GROUPS_SYNC_METHOD = 'users_groups'
SYNC_METHODS = (DEFAULT_SYNC_METHOD, USERS_GROUPS_SYNC_METHOD)


class Synchronizer:
    """Runs sync passes of one source directory into one target store."""

    def __init__(self, sync_config: Dict[str, Any], source: SourceDirectory, target: TargetStore):
        """
        Args:
            sync_config: The ``sync`` configuration section
            source: Source directory collaborator
            target: Target store collaborator
        """
        self.sync_config = sync_config
        self.source = source
        self.target = target
        self.policy = FilterPolicy.from_config(sync_config)
        self.collector = SnapshotCollector(source, target, self.policy)

    def run(self, ctx: SyncContext) -> ApplyResult:
        """Run the sync mode selected in configuration."""
        method = self.sync_config.get('method', DEFAULT_SYNC_METHOD)
        user_match = self.sync_config.get('user_match', '')
        group_match = self.sync_config.get('group_match', '')

        logger.info(f"Starting synchronization: sync_method={method}")
        if method == DEFAULT_SYNC_METHOD:
            return self.run_sync(ctx, group_match, user_match)
        if method == USERS_GROUPS_SYNC_METHOD:
            result = self.sync_users(ctx, user_match)
            group_result = self.sync_groups(ctx, group_match)
            result.groups_created += group_result.groups_created
            result.members_added += group_result.members_added
            result.members_removed += group_result.members_removed
            return result
        raise SyncError(f"Unknown sync method: {method}")

    def run_sync(self, ctx: SyncContext, query: str = '', user_query: Optional[str] = None) -> ApplyResult:
        """
        Full reconciliation of users, groups and memberships.

        Args:
            ctx: Run context
            query: Source query selecting the groups to sync
            user_query: Optional source query for users to sync outside of groups

        Returns:
            Counters of applied changes
        """
        purged = self.collector.purge_deleted_users(ctx)

        ctx.source = self.collector.collect_source(ctx, query, user_query)
        ctx.target = self.collector.collect_target(ctx)

        diff = compute_diff(ctx.source, ctx.target)
        result = ApplyPipeline(self.target).apply(ctx, diff, ctx.source)
        result.users_deleted += purged
        logger.info("Sync completed")
        return result

    def sync_users(self, ctx: SyncContext, query: str = '') -> ApplyResult:
        """
        Independent user pass.

        Creates missing target users and updates existing ones whose active flag
        disagrees with the source, recording every target user in ``ctx.user_index``.
        """
        result = ApplyResult()
        result.users_deleted = self.collector.purge_deleted_users(ctx)

        source_users = run_operation(ctx, 'list users', query or '*',
                                     lambda: self.source.list_users(query))
        logger.info(f"Active source users retrieved: count={len(source_users)}")

        for user in source_users:
            email = user.primary_email
            if not self.policy.include_user(email):
                logger.debug(f"Ignoring user based on configuration: email={email}")
                continue

            try:
                existing = run_operation(ctx, 'find user', email,
                                         lambda: self.target.find_user_by_email(email),
                                         expected=(NotFoundError,))
            except NotFoundError:
                existing = None

            if existing is not None:
                ctx.user_index[existing.username] = existing
                # Equal flags mean the two sides disagree: active is the inverse of suspended
                if existing.active == user.suspended:
                    logger.info(f"Mismatch active/suspended, updating user: email={email} id={existing.id}")
                    updated = TargetUser.from_source(user).with_id(existing.id)
                    run_operation(ctx, 'update user', email, lambda: self.target.update_user(updated))
                    ctx.user_index[existing.username] = updated
                    audit_logger.log_target_operation('update user', email, success=True)
                    result.users_updated += 1
                continue

            logger.info(f"Creating user: email={email} suspended={user.suspended}")
            try:
                created = run_operation(ctx, 'create user', email,
                                        lambda: self.target.create_user(TargetUser.from_source(user)),
                                        expected=(ConflictError,))
            except ConflictError:
                logger.warning(f"User already exists: email={email}")
                result.users_conflicted += 1
                continue
            ctx.user_index[created.username] = created
            audit_logger.log_target_operation('create user', email, success=True)
            result.users_created += 1

        return result

    def sync_groups(self, ctx: SyncContext, query: str = '') -> ApplyResult:
        """
        Independent group pass.

        Target groups are keyed by the source group's email. Membership is checked
        for every user the preceding user pass recorded in ``ctx.user_index``.
        """
        result = ApplyResult()

        source_groups = run_operation(ctx, 'list groups', query or '*',
                                      lambda: self.source.list_groups(query))
        logger.info(f"Source groups retrieved: count={len(source_groups)}")

        for source_group in source_groups:
            if not self.policy.include_group(source_group.email):
                logger.debug(f"Ignoring group based on configuration: group={source_group.email}")
                continue

            group = self._find_or_create_group(ctx, source_group.email, result)

            source_members = run_operation(ctx, 'list group members', source_group.email,
                                           lambda: self.source.list_group_members(source_group))
            member_emails = {member.email for member in source_members
                             if member.email in ctx.user_index}
            logger.info(f"Start group user sync: group={group.display_name} members={len(member_emails)}")

            for user in ctx.user_index.values():
                key = f"{user.username} -> {group.display_name}"
                present = run_operation(ctx, 'check membership', key,
                                        lambda: self.target.is_member(user, group))

                if user.username in member_emails:
                    if not present:
                        logger.info(f"Adding user to group: user={user.username} group={group.display_name}")
                        run_operation(ctx, 'add member', key, lambda: self.target.add_member(user, group))
                        audit_logger.log_target_operation('add member', key, success=True)
                        result.members_added += 1
                elif present:
                    logger.warning(f"Removing user from group: user={user.username} group={group.display_name}")
                    run_operation(ctx, 'remove member', key, lambda: self.target.remove_member(user, group))
                    audit_logger.log_target_operation('remove member', key, success=True)
                    result.members_removed += 1

        return result

    def _find_or_create_group(self, ctx: SyncContext, name: str, result: ApplyResult) -> TargetGroup:
        try:
            return run_operation(ctx, 'find group', name, lambda: self.target.find_group_by_name(name),
                                 expected=(NotFoundError,))
        except NotFoundError:
            pass

        logger.info(f"Creating group: group={name}")
        created = run_operation(ctx, 'create group', name,
                                lambda: self.target.create_group(TargetGroup(display_name=name)))
        audit_logger.log_target_operation('create group', name, success=True)
        result.groups_created += 1
        return created
