"""
Job runner for Identity Sync.

This module wires configuration, logging, the identity provider and the local
store together and runs one sync job: syncing external users, re-syncing the
local records, or converting legacy records to dynamic membership.
"""

import sys
import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from identity_sync.config import load_config, ConfigurationError
from identity_sync.context import SyncOrchestrator, create_sync_context
from identity_sync.default_sync import SyncError
from identity_sync.identities import SyncStatus
from identity_sync.logging_setup import setup_logging
from identity_sync.policy import build_policy
from identity_sync.providers.base import ProviderConnectionError, ProviderLookupError
from identity_sync.providers.ldap_provider import LdapIdentityProvider
from identity_sync.providers.memory import InMemoryIdentityProvider
from identity_sync.store import InMemoryStore, StoreError

logger = logging.getLogger(__name__)


class SyncJob:
    """
    Runs one synchronization job.

    Failures of individual identities are counted and logged; the job carries
    on with the next identity. Retry of failed identities is left to the next run.
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize sync job.

        Args:
            config_path: Path to configuration file
        """
        self.config_path = config_path
        self.config = None
        self.provider = None
        self.store = None
        self.context = None

        self.sync_stats = {
            'identities_processed': 0,
            'identities_failed': 0,
            'converted': 0,
            'status_counts': {status.value: 0 for status in SyncStatus},
            'start_time': None,
            'end_time': None,
            'runtime_seconds': 0
        }
        self.failures: List[str] = []

    def run(self, mode: str = 'users', user_ids: Optional[Iterable[str]] = None,
            group_names: Iterable[str] = ()) -> int:
        """
        Run the job.

        Args:
            mode: 'users' (sync user_ids, or all external users when None),
                'groups' (sync group_names), 'resync' (re-sync every local
                record) or 'convert'
            user_ids: Explicit user ids for mode 'users'
            group_names: External group names for mode 'groups'

        Returns:
            Exit code (0 for success, non-zero for failure)
        """
        try:
            self.sync_stats['start_time'] = datetime.now()

            self._load_configuration()
            setup_logging(self.config.get('logging', {}))
            logger.info(f"Starting Identity Sync job: mode={mode}")

            self._connect_provider()
            self._load_store()
            self.context = create_sync_context(build_policy(self.config), self.provider, self.store)

            if mode == 'users':
                self.sync_users(user_ids)
            elif mode == 'groups':
                self.sync_groups(group_names)
            elif mode == 'resync':
                self.resync_records()
            elif mode == 'convert':
                self.convert_records()
            else:
                raise ValueError(f"Unknown job mode: {mode}")

            self.store.dump(self.config['store']['path'])

            self.sync_stats['end_time'] = datetime.now()
            self.sync_stats['runtime_seconds'] = (
                self.sync_stats['end_time'] - self.sync_stats['start_time']
            ).total_seconds()
            self._log_sync_summary()

            if self.sync_stats['identities_failed'] > 0:
                logger.warning(f"Sync completed with {self.sync_stats['identities_failed']} failures")
                return 1
            logger.info("Sync completed successfully")
            return 0

        except ConfigurationError as e:
            logger.error(f"Configuration error: {e}")
            return 2
        except ProviderConnectionError as e:
            logger.error(f"Provider connection error: {e}")
            return 3
        except Exception as e:
            logger.error(f"Unexpected error: {e}", exc_info=True)
            return 4
        finally:
            self._cleanup()

    def _load_configuration(self):
        """Load and validate configuration."""
        try:
            self.config = load_config(self.config_path)
        except ConfigurationError:
            raise
        except Exception as e:
            raise ConfigurationError(f"Failed to load configuration: {e}")

    def _connect_provider(self):
        """Create the configured identity provider and connect to it."""
        provider_name = self.config['sync']['provider']
        if self.config.get('provider_type', 'ldap') == 'memory':
            self.provider = InMemoryIdentityProvider.from_config(provider_name, self.config.get('memory', {}))
            return

        error_config = self.config.get('error_handling', {})
        provider = LdapIdentityProvider(provider_name, self.config['ldap'])
        provider.connect(
            max_retries=error_config.get('max_retries', 3),
            retry_wait=error_config.get('retry_wait_seconds', 5)
        )
        self.provider = provider

    def _load_store(self):
        self.store = InMemoryStore.load(self.config['store']['path'])

    def sync_users(self, user_ids: Optional[Iterable[str]] = None):
        """Sync the given external users, or every user the provider lists."""
        if user_ids is None:
            identities = self.provider.list_users()
            for identity in identities:
                self._record(identity.id, lambda identity=identity: self.context.sync(identity))
            return

        for user_id in user_ids:
            def sync_one(user_id=user_id):
                identity = self.provider.get_user(user_id)
                if identity is None:
                    raise SyncError(f"External user not found: {user_id}")
                return self.context.sync(identity)
            self._record(user_id, sync_one)

    def sync_groups(self, names: Iterable[str]):
        """Sync the external groups with the given principal names."""
        for name in names:
            def sync_one(name=name):
                identity = self.provider.get_group(name)
                if identity is None:
                    raise SyncError(f"External group not found: {name}")
                return self.context.sync(identity)
            self._record(name, sync_one)

    def resync_records(self):
        """Re-sync every local record that belongs to the configured provider."""
        for record in self.store.iter_records():
            if self.store.get_record(record.id) is None:
                # removed as an orphan earlier in this run
                continue
            self._record(record.id, lambda record_id=record.id: self.context.sync_id(record_id))

    def convert_records(self):
        """Convert all legacy user records to dynamic membership."""
        if not isinstance(self.context, SyncOrchestrator):
            raise ConfigurationError("Conversion requires sync.user.dynamic_membership to be enabled")

        for record_id in [record.id for record in self.store.iter_records()]:
            try:
                with self.store.transaction():
                    # refetched, a failed conversion replaces the record objects
                    record = self.store.get_record(record_id)
                    if record is None or record.is_group:
                        continue
                    converted = self.context.convert_to_dynamic_membership(record)
            except StoreError as e:
                self._fail(record_id, e)
                continue
            if converted:
                self.sync_stats['converted'] += 1
                logger.info(f"Converted {record_id} to dynamic membership")
            self.sync_stats['identities_processed'] += 1

    def _record(self, identity_id: str, operation):
        """Run one identity's sync as a store transaction, counting its outcome."""
        try:
            with self.store.transaction():
                result = operation()
        except (SyncError, ProviderLookupError, StoreError) as e:
            self._fail(identity_id, e)
            return
        self.sync_stats['identities_processed'] += 1
        self.sync_stats['status_counts'][result.status.value] += 1
        logger.info(f"{identity_id}: {result.status.value}")

    def _fail(self, identity_id: str, error: Exception):
        self.sync_stats['identities_failed'] += 1
        message = f"Failed to sync {identity_id}: {error}"
        self.failures.append(message)
        logger.error(message)

    def _log_sync_summary(self):
        """Log final synchronization statistics."""
        stats = self.sync_stats
        minutes, seconds = divmod(stats['runtime_seconds'], 60)
        runtime = f"{int(minutes)}m {seconds:.1f}s" if minutes else f"{seconds:.2f} seconds"
        counts = ', '.join(f"{status}={count}" for status, count in stats['status_counts'].items() if count)

        logger.info("=== Sync Summary ===")
        logger.info(f"Runtime: {runtime}")
        logger.info(f"Processed: {stats['identities_processed']}, failed: {stats['identities_failed']}, "
                    f"converted: {stats['converted']}")
        logger.info(f"Outcomes: {counts or 'none'}")

    def health_check(self) -> Dict[str, Any]:
        """
        Check that the configuration, the provider and the store snapshot are usable.

        Returns:
            Dictionary with the overall status and one entry per check
        """
        checks = {}
        if _run_check(checks, 'configuration', self._check_configuration):
            try:
                _run_check(checks, 'provider', self._check_provider)
            finally:
                self._cleanup()
            _run_check(checks, 'store', self._check_store)

        healthy = all(check['status'] == 'pass' for check in checks.values())
        return {
            'status': 'healthy' if healthy else 'unhealthy',
            'timestamp': datetime.now().isoformat(),
            'checks': checks
        }

    def _check_configuration(self) -> str:
        self._load_configuration()
        policy = build_policy(self.config)
        return f"Configuration valid for provider {policy.provider_name}"

    def _check_provider(self) -> str:
        self._connect_provider()
        return f"Provider {self.provider.name} reachable"

    def _check_store(self) -> str:
        self._load_store()
        return f"Store snapshot {self.config['store']['path']} readable"

    def _cleanup(self):
        """Clean up resources."""
        if self.provider:
            self.provider.close()


def _run_check(checks: Dict[str, Dict[str, str]], name: str, check) -> bool:
    """Run one health check, recording pass or fail under ``name``."""
    try:
        message = check()
    except Exception as e:
        checks[name] = {'status': 'fail', 'message': f"{type(e).__name__}: {e}"}
        return False
    checks[name] = {'status': 'pass', 'message': message}
    return True


def main():
    """Main entry point for the application."""
    import argparse
    import json

    parser = argparse.ArgumentParser(description='Identity Sync Application')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    group = parser.add_mutually_exclusive_group()
    group.add_argument('--user', '-u', action='append', dest='users', metavar='ID',
                       help='Sync the given external user (repeatable)')
    group.add_argument('--group', '-g', action='append', dest='groups', metavar='NAME',
                       help='Sync the given external group (repeatable)')
    group.add_argument('--all-users', action='store_true', help='Sync all external users')
    group.add_argument('--resync', action='store_true', help='Re-sync all local records')
    group.add_argument('--convert', action='store_true',
                       help='Convert legacy records to dynamic membership')
    group.add_argument('--health-check', action='store_true',
                       help='Perform health check instead of sync')

    args = parser.parse_args()

    job = SyncJob(config_path=args.config)

    if args.health_check:
        health_status = job.health_check()
        print(json.dumps(health_status, indent=2))
        sys.exit(0 if health_status['status'] == 'healthy' else 1)

    if args.resync:
        exit_code = job.run(mode='resync')
    elif args.convert:
        exit_code = job.run(mode='convert')
    elif args.users:
        exit_code = job.run(mode='users', user_ids=args.users)
    elif args.groups:
        exit_code = job.run(mode='groups', group_names=args.groups)
    elif args.all_users:
        exit_code = job.run(mode='users')
    else:
        parser.error('one of --user, --group, --all-users, --resync, --convert or --health-check is required')
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
