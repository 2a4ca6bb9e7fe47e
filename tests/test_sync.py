#!/usr/bin/env python3
"""
Unit tests for the synchronization entry points.

Covers mode selection, the full reconciliation and the two independent passes
of the users_groups mode.
"""

import os
import sys
import unittest

# Add parent directory to path to import sso_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sso_sync.context import SyncContext
from sso_sync.errors import OperationError, SyncCancelled, SyncError, TransportError
from sso_sync.models import TargetGroup
from sso_sync.sync import Synchronizer
from tests.fakes import FakeSource, FakeTarget, source_group, source_user, target_user


def sync_config(**overrides):
    config = {
        'method': 'groups',
        'user_match': '',
        'group_match': '',
        'ignore_users': [],
        'ignore_groups': [],
        'include_groups': [],
    }
    config.update(overrides)
    return config


class TestRunSync(unittest.TestCase):
    """Default mode: full reconciliation."""

    def test_full_reconciliation(self):
        source = FakeSource(users=[source_user('a@x.com')], groups=[source_group('G')],
                            members={'G': ['a@x.com']}, deleted=[source_user('old@x.com')])
        target = FakeTarget(users=[target_user('old@x.com')])

        result = Synchronizer(sync_config(), source, target).run_sync(SyncContext())

        self.assertEqual(result.users_deleted, 1)
        self.assertEqual(result.users_created, 1)
        self.assertEqual(set(target.users), {'a@x.com'})
        self.assertEqual(target.member_names('G'), {'a@x.com'})

    def test_snapshots_are_kept_on_context(self):
        source = FakeSource(users=[source_user('a@x.com')], groups=[source_group('G')],
                            members={'G': ['a@x.com']})
        ctx = SyncContext()

        Synchronizer(sync_config(), source, FakeTarget()).run_sync(ctx)

        self.assertEqual([u.primary_email for u in ctx.source.users], ['a@x.com'])
        self.assertEqual(ctx.target.users, [])

    def test_run_uses_configured_matches(self):
        source = FakeSource(users=[source_user('a@x.com'), source_user('solo@x.com')],
                            groups=[source_group('G')], members={'G': ['a@x.com']},
                            user_queries={'(title=*)': ['solo@x.com']})
        target = FakeTarget()
        config = sync_config(group_match='(cn=G*)', user_match='(title=*)')

        Synchronizer(config, source, target).run(SyncContext())

        self.assertIn(('list_groups', '(cn=G*)'), source.calls)
        self.assertEqual(set(target.users), {'a@x.com', 'solo@x.com'})

    def test_ignored_user_is_not_synced(self):
        source = FakeSource(users=[source_user('a@x.com'), source_user('admin@x.com')],
                            groups=[source_group('G')], members={'G': ['a@x.com', 'admin@x.com']})
        target = FakeTarget()

        Synchronizer(sync_config(ignore_users=['admin@x.com']), source, target).run(SyncContext())

        self.assertEqual(set(target.users), {'a@x.com'})

    def test_unknown_method(self):
        synchronizer = Synchronizer(sync_config(method='everything'), FakeSource(), FakeTarget())
        with self.assertRaises(SyncError):
            synchronizer.run(SyncContext())

    def test_cancelled_before_start(self):
        ctx = SyncContext()
        ctx.cancel()
        target = FakeTarget()

        with self.assertRaises(SyncCancelled):
            Synchronizer(sync_config(), FakeSource(), target).run(ctx)
        self.assertEqual(target.calls, [])


class TestSyncUsers(unittest.TestCase):
    """users_groups mode: the user pass."""

    def test_missing_users_are_created_and_indexed(self):
        source = FakeSource(users=[source_user('a@x.com'), source_user('b@x.com', suspended=True)])
        target = FakeTarget()
        ctx = SyncContext()

        result = Synchronizer(sync_config(), source, target).sync_users(ctx)

        self.assertEqual(result.users_created, 2)
        self.assertFalse(target.users['b@x.com'].active)
        self.assertEqual(set(ctx.user_index), {'a@x.com', 'b@x.com'})
        self.assertIsNotNone(ctx.user_index['a@x.com'].id)

    def test_existing_consistent_user_is_left_alone(self):
        source = FakeSource(users=[source_user('a@x.com', given='New')])
        target = FakeTarget(users=[target_user('a@x.com', given='Old', active=True)])
        ctx = SyncContext()

        result = Synchronizer(sync_config(), source, target).sync_users(ctx)

        # Only the active flag is compared in this pass; names are not
        self.assertEqual(result.users_updated, 0)
        self.assertEqual(target.users['a@x.com'].given_name, 'Old')
        self.assertIn('a@x.com', ctx.user_index)

    def test_update_when_active_equals_suspended(self):
        # active == suspended is the literal mismatch check of this pass: an active
        # target user whose source is suspended is updated, and so is an inactive
        # target user whose source is not suspended.
        source = FakeSource(users=[source_user('s@x.com', given='S', suspended=True),
                                   source_user('r@x.com', given='R', suspended=False)])
        target = FakeTarget(users=[target_user('s@x.com', active=True),
                                   target_user('r@x.com', active=False)])

        result = Synchronizer(sync_config(), source, target).sync_users(SyncContext())

        self.assertEqual(result.users_updated, 2)
        self.assertFalse(target.users['s@x.com'].active)
        self.assertTrue(target.users['r@x.com'].active)
        self.assertEqual(target.users['s@x.com'].given_name, 'S')

    def test_no_update_when_active_differs_from_suspended(self):
        source = FakeSource(users=[source_user('s@x.com', suspended=True)])
        target = FakeTarget(users=[target_user('s@x.com', active=False)])

        result = Synchronizer(sync_config(), source, target).sync_users(SyncContext())

        self.assertEqual(result.users_updated, 0)
        self.assertEqual(target.calls, [])

    def test_ignored_users_are_skipped(self):
        source = FakeSource(users=[source_user('admin@x.com')])
        target = FakeTarget()
        ctx = SyncContext()

        Synchronizer(sync_config(ignore_users=['admin@x.com']), source, target).sync_users(ctx)

        self.assertEqual(target.users, {})
        self.assertEqual(ctx.user_index, {})

    def test_deleted_users_are_purged(self):
        source = FakeSource(deleted=[source_user('gone@x.com')])
        target = FakeTarget(users=[target_user('gone@x.com')])

        result = Synchronizer(sync_config(), source, target).sync_users(SyncContext())

        self.assertEqual(result.users_deleted, 1)
        self.assertEqual(target.users, {})

    def test_lookup_failure_is_fatal(self):
        source = FakeSource(users=[source_user('a@x.com')])
        target = FakeTarget(fail_on={'find_user_by_email': TransportError("HTTP 503", 503)})

        with self.assertRaises(OperationError) as cm:
            Synchronizer(sync_config(), source, target).sync_users(SyncContext())
        self.assertEqual((cm.exception.operation, cm.exception.key), ('find user', 'a@x.com'))


class TestSyncGroups(unittest.TestCase):
    """users_groups mode: the group pass."""

    def setUp(self):
        self.users = [source_user('a@x.com'), source_user('b@x.com'), source_user('c@x.com')]

    def run_both_passes(self, source, target, **config):
        ctx = SyncContext()
        synchronizer = Synchronizer(sync_config(method='users_groups', **config), source, target)
        synchronizer.sync_users(ctx)
        return synchronizer.sync_groups(ctx), ctx

    def test_groups_are_keyed_by_email(self):
        source = FakeSource(users=self.users, groups=[source_group('Engineering', 'eng@x.com')],
                            members={'Engineering': ['a@x.com']})
        target = FakeTarget()

        result, _ = self.run_both_passes(source, target)

        self.assertEqual(set(target.groups), {'eng@x.com'})
        self.assertEqual(result.groups_created, 1)
        self.assertEqual(target.member_names('eng@x.com'), {'a@x.com'})

    def test_members_are_reconciled_against_user_index(self):
        source = FakeSource(users=self.users, groups=[source_group('G', 'g@x.com')],
                            members={'G': ['a@x.com', 'b@x.com']})
        target = FakeTarget(users=[target_user('b@x.com'), target_user('c@x.com')],
                            groups=[TargetGroup('g@x.com')], members={'g@x.com': {'b@x.com', 'c@x.com'}})

        result, _ = self.run_both_passes(source, target)

        self.assertEqual(target.member_names('g@x.com'), {'a@x.com', 'b@x.com'})
        self.assertEqual(result.members_added, 1)
        self.assertEqual(result.members_removed, 1)
        self.assertEqual(result.groups_created, 0)

    def test_stale_groups_are_not_deleted(self):
        source = FakeSource(users=self.users, groups=[], members={})
        target = FakeTarget(groups=[TargetGroup('old@x.com')])

        self.run_both_passes(source, target)

        self.assertIn('old@x.com', target.groups)

    def test_group_pass_without_user_pass_touches_no_members(self):
        source = FakeSource(users=self.users, groups=[source_group('G', 'g@x.com')],
                            members={'G': ['a@x.com']})
        target = FakeTarget(users=[target_user('a@x.com')])

        result = Synchronizer(sync_config(), source, target).sync_groups(SyncContext())

        self.assertEqual(result.groups_created, 1)
        self.assertEqual(result.members_added, 0)

    def test_excluded_groups_are_skipped(self):
        source = FakeSource(users=self.users,
                            groups=[source_group('G', 'g@x.com'), source_group('H', 'h@x.com')],
                            members={'G': ['a@x.com'], 'H': ['b@x.com']})
        target = FakeTarget()

        self.run_both_passes(source, target, include_groups=['g@x.com'])

        self.assertEqual(set(target.groups), {'g@x.com'})

    def test_run_merges_both_passes(self):
        source = FakeSource(users=self.users, groups=[source_group('G', 'g@x.com')],
                            members={'G': ['a@x.com', 'b@x.com', 'c@x.com']})
        target = FakeTarget()

        result = Synchronizer(sync_config(method='users_groups'), source, target).run(SyncContext())

        self.assertEqual(result.users_created, 3)
        self.assertEqual(result.groups_created, 1)
        self.assertEqual(result.members_added, 3)


def test_run_dispatches_to_selected_mode(mocker):
    synchronizer = Synchronizer(sync_config(method='users_groups'), FakeSource(), FakeTarget())
    run_sync = mocker.spy(synchronizer, 'run_sync')
    sync_users = mocker.spy(synchronizer, 'sync_users')
    sync_groups = mocker.spy(synchronizer, 'sync_groups')

    synchronizer.run(SyncContext())

    run_sync.assert_not_called()
    sync_users.assert_called_once()
    sync_groups.assert_called_once()


if __name__ == '__main__':
    unittest.main()
