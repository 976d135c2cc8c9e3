#!/usr/bin/env python3
"""
Unit tests for dynamic group materialization.
"""

import os
import sys
import unittest
from unittest.mock import Mock

# Add parent directory to path to import identity_sync modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.context import SyncOrchestrator
from identity_sync.identities import ExternalIdentityRef, MembershipMode
from identity_sync.policy import GroupPolicy, SyncPolicy, UserPolicy
from identity_sync.providers.base import ProviderLookupError
from identity_sync.providers.memory import InMemoryIdentityProvider
from identity_sync.store import InMemoryStore


class TestGroupMaterializer(unittest.TestCase):
    """Test cases for GroupMaterializer.ensure_groups."""

    def setUp(self):
        """Set up test fixtures."""
        self.provider = InMemoryIdentityProvider('P')
        self.provider.add_group('g3')
        self.provider.add_group('g2', ['g3'], properties={'description': 'second'})
        self.provider.add_group('g1', ['g2'], properties={'description': 'first'})
        self.store = InMemoryStore()
        policy = SyncPolicy('P',
                            user=UserPolicy(membership_nesting_depth=2, dynamic_membership=True),
                            group=GroupPolicy(dynamic_groups=True))
        self.context = SyncOrchestrator(policy, self.provider, self.store, clock=lambda: 500.0)
        self.materializer = self.context.materializer

    def test_creates_placeholders_up_to_depth(self):
        """Groups within the depth bound are created without members."""
        self.materializer.ensure_groups([self.provider.ref('g1')], 2)

        g1 = self.store.get_record('g1')
        g2 = self.store.get_record('g2')
        self.assertTrue(g1.is_group)
        self.assertTrue(g2.is_group)
        self.assertIsNone(self.store.get_record('g3'))
        self.assertEqual(self.store.declared_members(g1), [])
        self.assertEqual(self.store.declared_members(g2), [])
        self.assertEqual(g1.properties, {'description': 'first'})
        self.assertEqual(g1.last_synced, 500.0)
        self.assertEqual(g1.mode, MembershipMode.DYNAMIC)

    def test_existing_group_attributes_are_updated(self):
        """An existing placeholder receives the current attributes."""
        existing = self.store.create_group('g1', 'old name', self.provider.ref('g1'), MembershipMode.DYNAMIC)
        existing.properties = {'description': 'outdated'}

        self.materializer.ensure_groups([self.provider.ref('g1')], 1)

        self.assertIs(self.store.get_record('g1'), existing)
        self.assertEqual(existing.principal_name, 'g1')
        self.assertEqual(existing.properties, {'description': 'first'})

    def test_foreign_references_are_skipped(self):
        """Only groups of the configured provider are materialized."""
        self.provider.resolve = Mock(wraps=self.provider.resolve)
        self.materializer.ensure_groups([ExternalIdentityRef('g1', 'Q')], 3)

        self.provider.resolve.assert_not_called()
        self.assertEqual(list(self.store.iter_records()), [])

    def test_lookup_failure_aborts_materialization(self):
        """A provider failure propagates out of the whole call."""
        original = self.provider.resolve

        def failing_resolve(ref):
            if ref.external_id == 'g2':
                raise ProviderLookupError('timeout')
            return original(ref)

        self.provider.resolve = Mock(side_effect=failing_resolve)

        with self.assertRaises(ProviderLookupError):
            self.materializer.ensure_groups([self.provider.ref('g1')], 3)

    def test_local_user_with_group_id_is_not_touched(self):
        """A local user that shares the group's id is left alone."""
        user = self.store.create_user('g1', 'g1', self.provider.ref('g1'), MembershipMode.DYNAMIC)

        self.materializer.ensure_groups([self.provider.ref('g1')], 2)

        self.assertIs(self.store.get_record('g1'), user)
        self.assertFalse(user.is_group)
        self.assertIsNone(self.store.get_record('g2'))


if __name__ == '__main__':
    unittest.main()
