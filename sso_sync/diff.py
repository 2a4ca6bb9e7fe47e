"""
Diff engine: pure classification of users, groups and memberships.

Nothing in this module performs I/O. Given two snapshots it decides what must be
added, deleted, updated or left alone in the target.
"""

import logging
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Tuple

from sso_sync.models import SourceGroup, SourceUser, TargetGroup, TargetUser

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserOperations:
    add: Tuple[TargetUser, ...] = ()
    delete: Tuple[TargetUser, ...] = ()
    update: Tuple[TargetUser, ...] = ()
    equal: Tuple[TargetUser, ...] = ()

    @property
    def empty(self) -> bool:
        """True when nothing has to change on the target."""
        return not (self.add or self.delete or self.update)


@dataclass(frozen=True)
class GroupOperations:
    add: Tuple[TargetGroup, ...] = ()
    delete: Tuple[TargetGroup, ...] = ()
    equal: Tuple[TargetGroup, ...] = ()

    @property
    def empty(self) -> bool:
        return not (self.add or self.delete)


@dataclass(frozen=True)
class MembershipOperations:
    # group display name -> target users to remove from / already in that group
    delete: Mapping[str, Tuple[TargetUser, ...]] = field(default_factory=lambda: MappingProxyType({}))
    equal: Mapping[str, Tuple[TargetUser, ...]] = field(default_factory=lambda: MappingProxyType({}))


@dataclass(frozen=True)
class DiffResult:
    users: UserOperations
    groups: GroupOperations
    membership: MembershipOperations


def user_needs_update(target_user: TargetUser, source_user: SourceUser) -> bool:
    """
    Check whether a target user differs from its source counterpart.

    Compared in order: active flag, given name, family name. ``active`` equal to
    ``suspended`` means the two sides disagree.
    """
    return (target_user.active == source_user.suspended
            or target_user.given_name != source_user.given_name
            or target_user.family_name != source_user.family_name)


def get_user_operations(target_users: Iterable[TargetUser],
                        source_users: Iterable[SourceUser]) -> UserOperations:
    """
    Classify users keyed by primary email (source) and username (target).

    Returns:
        UserOperations; update records carry the source's current attributes
    """
    target_users = list(target_users)
    source_users = list(source_users)
    logger.info(f"Getting user operations: target_users={len(target_users)} source_users={len(source_users)}")

    target_map = {user.username: user for user in target_users}
    source_keys = {user.primary_email for user in source_users}

    add: List[TargetUser] = []
    update: List[TargetUser] = []
    equal: List[TargetUser] = []
    delete: List[TargetUser] = []

    for source_user in source_users:
        target_user = target_map.get(source_user.primary_email)
        if target_user is None:
            logger.debug(f"User not found in target, will be added: user={source_user.primary_email}")
            add.append(TargetUser.from_source(source_user))
        elif user_needs_update(target_user, source_user):
            logger.debug(f"User attributes mismatch, will be updated: user={source_user.primary_email} "
                         f"suspended={source_user.suspended}")
            update.append(TargetUser.from_source(source_user))
        else:
            equal.append(target_user)

    for target_user in target_users:
        if target_user.username not in source_keys:
            logger.debug(f"User not found in source, will be deleted: user={target_user.username}")
            delete.append(TargetUser(
                username=target_user.username,
                given_name=target_user.given_name,
                family_name=target_user.family_name,
                active=target_user.active,
            ))

    logger.info(f"User operations determined: add={len(add)} delete={len(delete)} "
                f"update={len(update)} equal={len(equal)}")
    return UserOperations(add=tuple(add), delete=tuple(delete), update=tuple(update), equal=tuple(equal))


def get_group_operations(target_groups: Iterable[TargetGroup],
                         source_groups: Iterable[SourceGroup]) -> GroupOperations:
    """
    Classify groups keyed by display name.

    Groups have no mutable attributes besides membership, so there is no update set.
    Equal groups are the target's records, carrying the target id.
    """
    target_groups = list(target_groups)
    source_groups = list(source_groups)
    logger.info(f"Getting group operations: target_groups={len(target_groups)} source_groups={len(source_groups)}")

    target_map = {group.display_name: group for group in target_groups}
    source_keys = {group.name for group in source_groups}

    add: List[TargetGroup] = []
    equal: List[TargetGroup] = []
    for source_group in source_groups:
        if source_group.name in target_map:
            equal.append(target_map[source_group.name])
        else:
            logger.debug(f"Group not found in target, will be added: group={source_group.name}")
            add.append(TargetGroup(display_name=source_group.name))

    delete = [
        TargetGroup(display_name=group.display_name)
        for group in target_groups
        if group.display_name not in source_keys
    ]

    logger.info(f"Group operations determined: add={len(add)} delete={len(delete)} equal={len(equal)}")
    return GroupOperations(add=tuple(add), delete=tuple(delete), equal=tuple(equal))


def get_membership_operations(source_members: Mapping[str, Iterable[SourceUser]],
                              target_members: Mapping[str, Iterable[TargetUser]]) -> MembershipOperations:
    """
    Classify target group members against the source member sets.

    Members present in the source but missing from the target are not listed here;
    the apply pipeline adds them while walking the source members.
    """
    source_sets = {
        name: {user.primary_email for user in users}
        for name, users in source_members.items()
    }

    delete: Dict[str, List[TargetUser]] = {}
    equal: Dict[str, List[TargetUser]] = {}
    for group_name, users in target_members.items():
        wanted = source_sets.get(group_name, set())
        for user in users:
            if user.username in wanted:
                equal.setdefault(group_name, []).append(user)
            else:
                logger.debug(f"User in target group but not in source group, will be removed: "
                             f"user={user.username} group={group_name}")
                delete.setdefault(group_name, []).append(user)

    logger.info(f"Membership operations determined: groups_with_removals={len(delete)} "
                f"groups_with_matches={len(equal)}")
    return MembershipOperations(
        delete=MappingProxyType({name: tuple(users) for name, users in delete.items()}),
        equal=MappingProxyType({name: tuple(users) for name, users in equal.items()}),
    )


def compute_diff(source, target) -> DiffResult:
    """
    Diff a SourceSnapshot against a TargetSnapshot.

    Membership is only meaningful for groups present on both sides; the apply
    pipeline consults it for equal groups only.
    """
    return DiffResult(
        users=get_user_operations(target.users, source.users),
        groups=get_group_operations(target.groups, source.groups),
        membership=get_membership_operations(source.group_members, target.group_members),
    )
