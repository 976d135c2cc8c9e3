"""
Dynamic membership sync context.

Entry point of the dynamic sync engine. Users are synced through the default
path with membership replaced by flattened principal names; groups are only
materialized when they already exist locally or dynamic groups are enabled.
"""

import logging
from enum import Enum

from identity_sync.cleaner import MembershipCleaner
from identity_sync.default_sync import DefaultSyncContext, SyncError, InvalidIdentityKind
from identity_sync.identities import (
    ExternalIdentity,
    IdentityKind,
    LocalPrincipalRecord,
    MembershipMode,
    SyncResult,
    SyncStatus,
)
from identity_sync.logging_setup import audit_logger, create_sync_logger
from identity_sync.materializer import GroupMaterializer
from identity_sync.policy import SyncPolicy
from identity_sync.providers.base import IdentityProvider, ProviderLookupError
from identity_sync.resolver import MembershipResolver
from identity_sync.store import LocalStore, StoreError

logger = logging.getLogger(__name__)


class SyncTarget(Enum):
    USER = 'user'
    GROUP = 'group'
    FOREIGN_GROUP = 'foreign_group'


class SyncOrchestrator(DefaultSyncContext):
    """
    Sync context storing group membership as principal names on users.

    Records synced before dynamic membership was enabled keep the legacy path
    until policy enforces dynamic sync or they are converted explicitly.
    """

    record_mode = MembershipMode.DYNAMIC

    def __init__(self, policy: SyncPolicy, provider: IdentityProvider, store: LocalStore, clock=None):
        super().__init__(policy, provider, store, clock)
        self.materializer = GroupMaterializer(self)
        self.cleaner = MembershipCleaner(self)
        self.resolver = MembershipResolver(self, self.materializer, self.cleaner)

    def classify(self, identity: ExternalIdentity) -> SyncTarget:
        """
        Raises:
            InvalidIdentityKind: If the identity is neither user nor group
        """
        kind = self._identity_kind(identity)
        if kind is IdentityKind.USER:
            return SyncTarget.USER
        if self.is_same_idp(identity.external_id):
            return SyncTarget.GROUP
        return SyncTarget.FOREIGN_GROUP

    def sync(self, identity: ExternalIdentity) -> SyncResult:
        target = self.classify(identity)
        if target is SyncTarget.USER:
            return super().sync(identity)
        if target is SyncTarget.FOREIGN_GROUP:
            return self._foreign_result(identity)

        log = create_sync_logger(__name__, identity.id)
        try:
            return self.sync_external_group(identity, log)
        except (StoreError, ProviderLookupError) as e:
            raise SyncError(f"Failed to sync group {identity.id}: {e}") from e

    def sync_external_group(self, identity: ExternalIdentity, log=None) -> SyncResult:
        """
        Sync a group of the configured provider.

        Returns:
            UPDATE or NOP for a group that exists locally, ADD for a newly
            created dynamic group, NOP when the group is not materialized
        """
        log = log or logger
        group = self.store.get_record(identity.id)
        if group is not None:
            # existing groups stay consistent whatever the dynamic groups setting
            return self.update_identity(identity, group, log)

        if self.policy.has_dynamic_groups:
            log.debug(f"ExternalGroup {identity.external_id}: synchronizing as dynamic group {identity.id}")
            group = self.create_group(identity)
            audit_logger.log_group_created(group.id, identity.external_id)
            self.sync_group(identity, group, log)
            return self._result(group, SyncStatus.ADD)

        log.debug(f"ExternalGroup {identity.external_id}: not synchronized as local group")
        return SyncResult(identity.id, identity.external_id, True, -1, SyncStatus.NOP)

    def convert_to_dynamic_membership(self, record: LocalPrincipalRecord) -> bool:
        """
        Convert a legacy user record to dynamic membership.

        Returns:
            False for groups and records not in legacy mode, True after conversion

        Raises:
            StoreError: If the local store fails
        """
        if record.is_group or not record.is_legacy:
            return False

        log = create_sync_logger(__name__, record.id)
        principal_names = self.cleaner.clear(record, log)
        self.store.convert_to_dynamic(record, principal_names)
        audit_logger.log_conversion(record.id, len(principal_names))
        return True

    def sync_membership(self, external, record, depth, log=None):
        self.resolver.sync_membership(external, record, depth, log)

    def legacy_sync_membership(self, external, record, depth, log=None):
        self._materialize_membership(external, record, depth, log or logger)

    def apply_membership(self, record, group_ids, log=None):
        (log or logger).debug(f"Dynamic membership sync enabled, omitting auto-membership for {record.id}")


def create_sync_context(policy: SyncPolicy, provider: IdentityProvider, store: LocalStore,
                        clock=None) -> DefaultSyncContext:
    """
    Create the sync context matching the policy.

    Returns:
        SyncOrchestrator when dynamic membership is enabled for users,
        DefaultSyncContext otherwise
    """
    if provider.name != policy.provider_name:
        raise SyncError(f"Provider {provider.name} does not match configured provider {policy.provider_name}")
    if policy.user.dynamic_membership:
        return SyncOrchestrator(policy, provider, store, clock)
    return DefaultSyncContext(policy, provider, store, clock)


__all__ = ['SyncOrchestrator', 'SyncTarget', 'create_sync_context', 'SyncError', 'InvalidIdentityKind']
