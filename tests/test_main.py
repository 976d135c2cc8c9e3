#!/usr/bin/env python3
"""
Unit tests for the sync job runner.

Jobs run against the in-memory provider and a store snapshot in a temporary
directory; logging setup is patched out.
"""

import os
import sys
import shutil
import tempfile
import unittest
from unittest.mock import patch

import yaml

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from identity_sync.identities import MembershipMode
from identity_sync.main import SyncJob
from identity_sync.providers.base import ProviderConnectionError, ProviderLookupError
from identity_sync.providers.memory import InMemoryIdentityProvider
from identity_sync.store import InMemoryStore, StoreError


class TestSyncJob(unittest.TestCase):
    """Test cases for SyncJob."""

    def setUp(self):
        """Set up test fixtures."""
        self.temp_dir = tempfile.mkdtemp(prefix='identity_sync_job_')
        self.store_path = os.path.join(self.temp_dir, 'store.yaml')
        self.config = {
            'provider_type': 'memory',
            'sync': {
                'provider': 'test',
                'user': {'membership_nesting_depth': 2, 'dynamic_membership': True},
            },
            'memory': {
                'groups': [
                    {'id': 'staff'},
                    {'id': 'devs', 'groups': ['staff']},
                ],
                'users': [
                    {'id': 'alice', 'groups': ['devs'], 'properties': {'mail': 'alice@example.com'}},
                    {'id': 'bob'},
                ],
            },
            'store': {'path': self.store_path},
            'logging': {'log_dir': self.temp_dir},
        }

        patcher = patch('identity_sync.main.setup_logging')
        patcher.start()
        self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def write_config(self) -> str:
        path = os.path.join(self.temp_dir, 'config.yaml')
        with open(path, 'w') as f:
            yaml.safe_dump(self.config, f)
        return path

    def write_legacy_snapshot(self):
        """Store alice as a legacy user that is a member of the local group devs."""
        with open(self.store_path, 'w') as f:
            yaml.safe_dump({
                'records': [
                    {'id': 'alice', 'principal_name': 'alice', 'external_id': 'alice;test', 'last_synced': 1.0},
                    {'id': 'devs', 'group': True, 'principal_name': 'devs', 'external_id': 'devs;test',
                     'last_synced': 1.0},
                ],
                'memberships': {'devs': ['alice']},
            }, f)

    def test_sync_all_users(self):
        """All external users are synced and the snapshot is saved."""
        job = SyncJob(self.write_config())

        self.assertEqual(job.run(mode='users'), 0)

        self.assertEqual(job.sync_stats['identities_processed'], 2)
        self.assertEqual(job.sync_stats['status_counts']['add'], 2)
        store = InMemoryStore.load(self.store_path)
        self.assertEqual(store.get_record('alice').external_principal_names, {'devs', 'staff'})
        self.assertEqual(store.get_record('bob').external_principal_names, set())

    def test_unknown_user_counts_as_failure(self):
        job = SyncJob(self.write_config())

        self.assertEqual(job.run(mode='users', user_ids=['alice', 'ghost']), 1)

        self.assertEqual(job.sync_stats['identities_processed'], 1)
        self.assertEqual(job.sync_stats['identities_failed'], 1)
        self.assertIn('ghost', job.failures[0])

    def test_resync_updates_local_records(self):
        """Re-sync forces an update and deletes records whose identity is gone."""
        config_path = self.write_config()
        SyncJob(config_path).run(mode='users')

        self.config['memory']['users'] = [{'id': 'alice', 'groups': ['staff']}]
        job = SyncJob(self.write_config())

        self.assertEqual(job.run(mode='resync'), 0)

        self.assertEqual(job.sync_stats['status_counts']['update'], 1)
        self.assertEqual(job.sync_stats['status_counts']['delete'], 1)
        store = InMemoryStore.load(self.store_path)
        self.assertEqual(store.get_record('alice').external_principal_names, {'staff'})
        self.assertIsNone(store.get_record('bob'))

    def test_convert_legacy_records(self):
        """Legacy snapshot records are converted and their groups cleaned up."""
        self.write_legacy_snapshot()
        job = SyncJob(self.write_config())

        self.assertEqual(job.run(mode='convert'), 0)

        self.assertEqual(job.sync_stats['converted'], 1)
        store = InMemoryStore.load(self.store_path)
        alice = store.get_record('alice')
        self.assertEqual(alice.mode, MembershipMode.DYNAMIC)
        self.assertEqual(alice.external_principal_names, {'devs'})
        self.assertIsNone(store.get_record('devs'))

    def test_failed_conversion_is_rolled_back(self):
        """A store failure after the legacy groups were cleared restores them."""
        self.write_legacy_snapshot()
        job = SyncJob(self.write_config())

        with patch.object(InMemoryStore, 'convert_to_dynamic', side_effect=StoreError('write failed')):
            self.assertEqual(job.run(mode='convert'), 1)

        self.assertEqual(job.sync_stats['converted'], 0)
        store = InMemoryStore.load(self.store_path)
        alice = store.get_record('alice')
        self.assertEqual(alice.mode, MembershipMode.LEGACY)
        self.assertEqual([g.id for g in store.declared_member_of(alice)], ['devs'])

    def test_failed_migration_is_retried_on_next_run(self):
        """
        Enforced migration that fails while materializing groups keeps the
        record in legacy mode, so the next run migrates and cleans it up.
        """
        self.write_legacy_snapshot()
        self.config['sync']['group'] = {'dynamic_groups': True}
        config_path = self.write_config()

        resolve = InMemoryIdentityProvider.resolve
        calls = []

        def resolve_then_fail(provider, ref):
            # names are collected with two lookups, materialization fails on the third
            calls.append(ref)
            if len(calls) > 2:
                raise ProviderLookupError('directory unavailable')
            return resolve(provider, ref)

        job = SyncJob(config_path)
        with patch.object(InMemoryIdentityProvider, 'resolve', resolve_then_fail):
            self.assertEqual(job.run(mode='users', user_ids=['alice']), 1)

        self.assertEqual(len(calls), 3)
        store = InMemoryStore.load(self.store_path)
        alice = store.get_record('alice')
        self.assertEqual(alice.mode, MembershipMode.LEGACY)
        self.assertIsNone(alice.external_principal_names)
        self.assertEqual([g.id for g in store.declared_member_of(alice)], ['devs'])

        job = SyncJob(config_path)
        self.assertEqual(job.run(mode='users', user_ids=['alice']), 0)

        store = InMemoryStore.load(self.store_path)
        alice = store.get_record('alice')
        self.assertEqual(alice.mode, MembershipMode.DYNAMIC)
        self.assertEqual(alice.external_principal_names, {'devs', 'staff'})
        self.assertEqual(store.declared_member_of(alice), [])
        self.assertTrue(store.get_record('staff').is_group)

    def test_sync_groups(self):
        self.config['sync']['group'] = {'dynamic_groups': True}
        job = SyncJob(self.write_config())

        self.assertEqual(job.run(mode='groups', group_names=['devs', 'ghost']), 1)

        self.assertEqual(job.sync_stats['status_counts']['add'], 1)
        self.assertIn('ghost', job.failures[0])
        store = InMemoryStore.load(self.store_path)
        devs = store.get_record('devs')
        self.assertTrue(devs.is_group)
        self.assertEqual(store.declared_members(devs), [])

    def test_convert_requires_dynamic_membership(self):
        self.config['sync']['user']['dynamic_membership'] = False
        job = SyncJob(self.write_config())
        self.assertEqual(job.run(mode='convert'), 2)

    def test_missing_configuration(self):
        job = SyncJob(os.path.join(self.temp_dir, 'absent.yaml'))
        self.assertEqual(job.run(), 2)

    @patch('identity_sync.main.LdapIdentityProvider')
    def test_provider_connection_failure(self, mock_provider):
        """An unreachable directory aborts the job with its own exit code."""
        self.config['provider_type'] = 'ldap'
        self.config['ldap'] = {
            'server_url': 'ldap://ldap.example.com',
            'bind_dn': 'cn=service,dc=example,dc=com',
            'bind_password': 'secret',
        }
        mock_provider.return_value.connect.side_effect = ProviderConnectionError('unreachable')
        job = SyncJob(self.write_config())

        self.assertEqual(job.run(), 3)
        self.assertFalse(os.path.exists(self.store_path))

    def test_health_check(self):
        health = SyncJob(self.write_config()).health_check()

        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(set(health['checks']), {'configuration', 'provider', 'store'})

    def test_health_check_with_invalid_configuration(self):
        del self.config['sync']['provider']
        health = SyncJob(self.write_config()).health_check()

        self.assertEqual(health['status'], 'unhealthy')
        self.assertEqual(health['checks']['configuration']['status'], 'fail')


if __name__ == '__main__':
    unittest.main()
