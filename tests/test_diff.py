#!/usr/bin/env python3
"""
Unit tests for the diff engine.

The diff engine performs no I/O, so these tests work on plain snapshot values.
"""

import os
import sys
import unittest
from itertools import chain

# Add parent directory to path to import sso_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sso_sync.diff import (
    compute_diff, get_group_operations, get_membership_operations, get_user_operations,
    user_needs_update
)
from sso_sync.models import SourceGroup, TargetGroup, TargetUser
from sso_sync.snapshot import SourceSnapshot, TargetSnapshot
from tests.fakes import source_group, source_user, target_user


class TestUserNeedsUpdate(unittest.TestCase):
    """Attribute comparison between a target user and its source counterpart."""

    def test_matching_user(self):
        self.assertFalse(user_needs_update(target_user('a@x.com', active=True),
                                           source_user('a@x.com', suspended=False)))

    def test_active_flag_mismatch(self):
        self.assertTrue(user_needs_update(target_user('a@x.com', active=True),
                                          source_user('a@x.com', suspended=True)))
        self.assertTrue(user_needs_update(target_user('a@x.com', active=False),
                                          source_user('a@x.com', suspended=False)))

    def test_suspended_and_inactive_match(self):
        self.assertFalse(user_needs_update(target_user('a@x.com', active=False),
                                           source_user('a@x.com', suspended=True)))

    def test_name_mismatch(self):
        self.assertTrue(user_needs_update(target_user('a@x.com', given='Ann'),
                                          source_user('a@x.com', given='Anne')))
        self.assertTrue(user_needs_update(target_user('a@x.com', family='Lee'),
                                          source_user('a@x.com', family='Li')))


class TestUserOperations(unittest.TestCase):
    """Classification of users into add, delete, update and equal."""

    def test_source_only_user_is_added(self):
        ops = get_user_operations([], [source_user('a@x.com', 'Ann', 'Lee')])

        self.assertEqual(len(ops.add), 1)
        added = ops.add[0]
        self.assertEqual(added.username, 'a@x.com')
        self.assertEqual((added.given_name, added.family_name), ('Ann', 'Lee'))
        self.assertTrue(added.active)
        self.assertIsNone(added.id)
        self.assertEqual(ops.delete + ops.update + ops.equal, ())

    def test_suspended_source_user_is_added_inactive(self):
        ops = get_user_operations([], [source_user('a@x.com', suspended=True)])
        self.assertFalse(ops.add[0].active)

    def test_target_only_user_is_deleted(self):
        existing = target_user('b@x.com').with_id('u-1')
        ops = get_user_operations([existing], [])

        self.assertEqual([user.username for user in ops.delete], ['b@x.com'])
        self.assertIsNone(ops.delete[0].id)
        self.assertEqual(ops.add + ops.update + ops.equal, ())

    def test_suspended_user_is_updated_to_inactive(self):
        ops = get_user_operations([target_user('c@x.com', active=True).with_id('u-3')],
                                  [source_user('c@x.com', suspended=True)])

        self.assertEqual(len(ops.update), 1)
        self.assertFalse(ops.update[0].active)
        self.assertEqual(ops.add + ops.delete + ops.equal, ())

    def test_update_carries_source_attributes(self):
        ops = get_user_operations([target_user('c@x.com', given='Old').with_id('u-3')],
                                  [source_user('c@x.com', given='New')])
        self.assertEqual(ops.update[0].given_name, 'New')

    def test_equal_user_keeps_target_record(self):
        existing = target_user('d@x.com').with_id('u-4')
        ops = get_user_operations([existing], [source_user('d@x.com')])

        self.assertEqual(ops.equal, (existing,))
        self.assertTrue(ops.empty)

    def test_every_key_classified_exactly_once(self):
        targets = [
            target_user('keep@x.com').with_id('1'),
            target_user('change@x.com', given='Old').with_id('2'),
            target_user('stale@x.com').with_id('3'),
        ]
        sources = [
            source_user('keep@x.com'),
            source_user('change@x.com', given='New'),
            source_user('new@x.com'),
        ]
        ops = get_user_operations(targets, sources)

        keys = [user.username for user in chain(ops.add, ops.delete, ops.update, ops.equal)]
        self.assertEqual(sorted(keys), sorted({'keep@x.com', 'change@x.com', 'stale@x.com', 'new@x.com'}))
        self.assertEqual(len(keys), len(set(keys)))


class TestGroupOperations(unittest.TestCase):
    """Classification of groups keyed by display name."""

    def test_classification(self):
        targets = [TargetGroup('Both', id='g-1'), TargetGroup('Stale', id='g-2')]
        sources = [source_group('Both'), source_group('New')]

        ops = get_group_operations(targets, sources)

        self.assertEqual([g.display_name for g in ops.add], ['New'])
        self.assertEqual([g.display_name for g in ops.delete], ['Stale'])
        self.assertEqual(ops.equal, (TargetGroup('Both', id='g-1'),))
        self.assertIsNone(ops.add[0].id)

    def test_empty_sides(self):
        ops = get_group_operations([], [])
        self.assertTrue(ops.empty)
        self.assertEqual(ops.equal, ())

    def test_group_keyed_by_name_not_email(self):
        ops = get_group_operations([TargetGroup('Engineering', id='g-1')],
                                   [SourceGroup(name='Engineering', email='eng@x.com')])
        self.assertTrue(ops.empty)
        self.assertEqual(len(ops.equal), 1)


class TestMembershipOperations(unittest.TestCase):
    """Membership classification for groups present on both sides."""

    def test_target_only_member_is_deleted(self):
        a, b = source_user('a@x.com'), source_user('b@x.com')
        tb, tc = target_user('b@x.com').with_id('b'), target_user('c@x.com').with_id('c')

        ops = get_membership_operations({'G': [a, b]}, {'G': [tb, tc]})

        self.assertEqual(ops.delete['G'], (tc,))
        self.assertEqual(ops.equal['G'], (tb,))

    def test_group_missing_from_source_removes_all_members(self):
        member = target_user('b@x.com').with_id('b')
        ops = get_membership_operations({}, {'G': [member]})
        self.assertEqual(ops.delete['G'], (member,))

    def test_result_is_read_only(self):
        ops = get_membership_operations({}, {'G': [target_user('b@x.com')]})
        with self.assertRaises(TypeError):
            ops.delete['H'] = ()


class TestComputeDiff(unittest.TestCase):
    """Whole-snapshot diffs."""

    def test_converged_snapshots_are_empty(self):
        user = source_user('a@x.com', 'Ann', 'Lee')
        group = source_group('G')
        existing = TargetUser.from_source(user).with_id('u-1')

        source = SourceSnapshot(users=[user], groups=[group], group_members={'G': [user]})
        target = TargetSnapshot(users=[existing], groups=[TargetGroup('G', id='g-1')],
                                group_members={'G': [existing]})

        diff = compute_diff(source, target)

        self.assertTrue(diff.users.empty)
        self.assertTrue(diff.groups.empty)
        self.assertEqual(dict(diff.membership.delete), {})

    def test_identical_inputs_give_identical_results(self):
        source = SourceSnapshot(users=[source_user('a@x.com')], groups=[source_group('G')],
                                group_members={'G': [source_user('a@x.com')]})
        target = TargetSnapshot(users=[target_user('b@x.com').with_id('b')])

        self.assertEqual(compute_diff(source, target), compute_diff(source, target))


if __name__ == '__main__':
    unittest.main()
