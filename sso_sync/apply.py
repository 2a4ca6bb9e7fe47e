"""
Apply pipeline: executes diff results against the target store.

Phases run in a fixed order because each one relies on the state the previous
ones converged:

    1) delete users deleted in the source
    2) update users changed in the source
    3) add users added in the source
    4) add groups added in the source, with their initial members
    5) reconcile members of groups present on both sides
    6) delete groups deleted in the source

A fatal error aborts the remaining phases. Nothing already applied is rolled back.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Dict

from sso_sync.context import SyncContext, run_operation
from sso_sync.diff import DiffResult
from sso_sync.errors import (
    ConflictError, InconsistentStateError, NotFoundError, OperationError
)
from sso_sync.logging_setup import audit_logger
from sso_sync.snapshot import SourceSnapshot
from sso_sync.targets.base import TargetStore

logger = logging.getLogger(__name__)


@dataclass
class ApplyResult:
    users_deleted: int = 0
    users_updated: int = 0
    users_created: int = 0
    users_conflicted: int = 0
    groups_created: int = 0
    groups_deleted: int = 0
    members_added: int = 0
    members_removed: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)

    @property
    def changes(self) -> int:
        return (self.users_deleted + self.users_updated + self.users_created
                + self.groups_created + self.groups_deleted
                + self.members_added + self.members_removed)


class ApplyPipeline:
    """Applies one DiffResult to the target store, exactly once."""

    def __init__(self, target: TargetStore):
        self.target = target

    def apply(self, ctx: SyncContext, diff: DiffResult, source: SourceSnapshot) -> ApplyResult:
        """
        Run all six phases in order.

        Args:
            ctx: Run context, checked for cancellation before every target call
            diff: Operation sets produced by the diff engine
            source: Source snapshot, needed for the member lists of groups

        Returns:
            Counters of applied changes

        Raises:
            OperationError: On the first fatal failure, naming operation and key
            SyncCancelled: If the context was cancelled
        """
        result = ApplyResult()
        logger.info(f"Changes to be applied: add_users={len(diff.users.add)} "
                    f"delete_users={len(diff.users.delete)} update_users={len(diff.users.update)} "
                    f"add_groups={len(diff.groups.add)} delete_groups={len(diff.groups.delete)} "
                    f"equal_groups={len(diff.groups.equal)}")

        self._delete_users(ctx, diff, result)
        self._update_users(ctx, diff, result)
        self._add_users(ctx, diff, result)
        self._add_groups(ctx, diff, source, result)
        self._reconcile_members(ctx, diff, source, result)
        self._delete_groups(ctx, diff, result)

        logger.info(f"Apply completed: {result.as_dict()}")
        return result

    def _delete_users(self, ctx: SyncContext, diff: DiffResult, result: ApplyResult):
        logger.debug("Deleting target users deleted in source")
        for user in diff.users.delete:
            try:
                current = run_operation(ctx, 'find user', user.username,
                                        lambda: self.target.find_user_by_email(user.username),
                                        expected=(NotFoundError,))
            except NotFoundError:
                logger.info(f"User already deleted: user={user.username}")
                continue

            logger.warning(f"Deleting user: user={user.username} id={current.id}")
            try:
                run_operation(ctx, 'delete user', user.username, lambda: self.target.delete_user(current),
                              expected=(NotFoundError,))
            except NotFoundError:
                logger.info(f"User already deleted: user={user.username}")
                continue
            audit_logger.log_target_operation('delete user', user.username, success=True)
            result.users_deleted += 1

    def _update_users(self, ctx: SyncContext, diff: DiffResult, result: ApplyResult):
        logger.debug("Updating target users updated in source")
        for user in diff.users.update:
            current = self._resolve_user(ctx, 'find user', user.username)
            logger.info(f"Updating user: user={user.username} id={current.id} active={user.active}")
            run_operation(ctx, 'update user', user.username,
                          lambda: self.target.update_user(user.with_id(current.id)))
            audit_logger.log_target_operation('update user', user.username, success=True)
            result.users_updated += 1

    def _add_users(self, ctx: SyncContext, diff: DiffResult, result: ApplyResult):
        logger.debug("Creating target users added in source")
        for user in diff.users.add:
            logger.info(f"Creating user: user={user.username}")
            try:
                run_operation(ctx, 'create user', user.username, lambda: self.target.create_user(user),
                              expected=(ConflictError,))
            except ConflictError:
                logger.warning(f"User already exists: user={user.username}")
                result.users_conflicted += 1
                continue
            audit_logger.log_target_operation('create user', user.username, success=True)
            result.users_created += 1

    def _add_groups(self, ctx: SyncContext, diff: DiffResult, source: SourceSnapshot,
                    result: ApplyResult):
        logger.debug("Creating target groups added in source")
        for group in diff.groups.add:
            name = group.display_name
            logger.info(f"Creating group: group={name}")
            created = run_operation(ctx, 'create group', name, lambda: self.target.create_group(group))
            audit_logger.log_target_operation('create group', name, success=True)
            result.groups_created += 1

            for member in source.group_members.get(name, []):
                user = self._resolve_user(ctx, 'find group member', member.primary_email)
                key = f"{user.username} -> {name}"
                logger.info(f"Adding user to group: user={user.username} group={name}")
                run_operation(ctx, 'add member', key, lambda: self.target.add_member(user, created))
                audit_logger.log_target_operation('add member', key, success=True)
                result.members_added += 1

    def _reconcile_members(self, ctx: SyncContext, diff: DiffResult, source: SourceSnapshot,
                           result: ApplyResult):
        logger.debug("Validating members of groups present in source and target")
        for group in diff.groups.equal:
            name = group.display_name
            for member in source.group_members.get(name, []):
                user = self._resolve_user(ctx, 'find group member', member.primary_email)
                key = f"{user.username} -> {name}"
                is_member = run_operation(ctx, 'check membership', key,
                                          lambda: self.target.is_member(user, group))
                if is_member:
                    continue
                logger.info(f"Adding user to group: user={user.username} group={name}")
                run_operation(ctx, 'add member', key, lambda: self.target.add_member(user, group))
                audit_logger.log_target_operation('add member', key, success=True)
                result.members_added += 1

            for user in diff.membership.delete.get(name, ()):
                key = f"{user.username} -> {name}"
                logger.warning(f"Removing user from group: user={user.username} group={name}")
                # Users deleted in the first phase drop out of their groups with them
                try:
                    run_operation(ctx, 'remove member', key, lambda: self.target.remove_member(user, group),
                                  expected=(NotFoundError,))
                except NotFoundError:
                    logger.info(f"Member already removed: user={user.username} group={name}")
                    continue
                audit_logger.log_target_operation('remove member', key, success=True)
                result.members_removed += 1

    def _delete_groups(self, ctx: SyncContext, diff: DiffResult, result: ApplyResult):
        logger.debug("Deleting target groups deleted in source")
        for group in diff.groups.delete:
            name = group.display_name
            try:
                current = run_operation(ctx, 'find group', name,
                                        lambda: self.target.find_group_by_name(name),
                                        expected=(NotFoundError,))
            except NotFoundError:
                logger.info(f"Group already deleted: group={name}")
                continue

            logger.warning(f"Deleting group: group={name} id={current.id}")
            run_operation(ctx, 'delete group', name, lambda: self.target.delete_group(current))
            audit_logger.log_target_operation('delete group', name, success=True)
            result.groups_deleted += 1

    def _resolve_user(self, ctx: SyncContext, operation: str, email: str):
        """
        Re-resolve a user by email right before acting on it.

        A user the earlier phases should have converged but the target cannot find
        is an inconsistent state and aborts the run.
        """
        try:
            return run_operation(ctx, operation, email, lambda: self.target.find_user_by_email(email),
                                 expected=(NotFoundError,))
        except NotFoundError as e:
            logger.error(f"User missing from target: email={email}")
            raise OperationError(operation, email,
                                 InconsistentStateError(f"user {email} not found in target")) from e
