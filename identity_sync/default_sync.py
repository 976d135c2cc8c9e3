"""
Default sync path for Identity Sync.

This module contains the full synchronization algorithm: external users and
groups are created or updated as local records, their attributes copied
through the configured property mapping, and group membership materialized
as local group objects with member lists (the legacy membership mode).
"""

import time
import logging
from typing import Callable, Dict, Iterable, Optional, Union

from identity_sync.identities import (
    ExternalIdentity,
    ExternalIdentityRef,
    IdentityKind,
    LocalPrincipalRecord,
    MembershipMode,
    SyncResult,
    SyncStatus,
)
from identity_sync.logging_setup import create_sync_logger
from identity_sync.policy import SyncPolicy
from identity_sync.providers.base import IdentityProvider, ProviderLookupError
from identity_sync.store import LocalStore, StoreError

logger = logging.getLogger(__name__)


class SyncError(Exception):
    """Base exception for sync errors."""
    pass


class InvalidIdentityKind(SyncError, ValueError):
    """Raised when an identity is neither a user nor a group."""
    pass


class DefaultSyncContext:
    """
    Synchronizes external identities into the local store.

    Records created here start in LEGACY membership mode. Subclasses change
    how membership is represented by overriding sync_membership,
    apply_membership and record_mode.
    """

    record_mode = MembershipMode.LEGACY

    def __init__(self, policy: SyncPolicy, provider: IdentityProvider, store: LocalStore,
                 clock: Optional[Callable[[], float]] = None):
        """
        Initialize sync context.

        Args:
            policy: Sync policy for the configured provider
            provider: Identity provider to resolve references against
            store: Local store to mirror identities into
            clock: Source of the current time in seconds, defaults to time.time
        """
        self.policy = policy
        self.provider = provider
        self.store = store
        self.clock = clock or time.time

    def sync(self, identity: ExternalIdentity) -> SyncResult:
        """
        Synchronize one external identity.

        Args:
            identity: User or group snapshot from the provider

        Returns:
            Outcome of the sync

        Raises:
            InvalidIdentityKind: If the identity is neither user nor group
            SyncError: If the provider or the store fails
        """
        kind = self._identity_kind(identity)
        if not self.is_same_idp(identity.external_id):
            return self._foreign_result(identity)

        log = create_sync_logger(__name__, identity.id)
        try:
            record = self.store.get_record(identity.id)
            if record is None:
                if kind is IdentityKind.GROUP:
                    record = self.create_group(identity)
                    self.sync_group(identity, record, log)
                else:
                    record = self.create_user(identity)
                    self.sync_user(identity, record, log)
                log.info(f"Added {kind.value} {identity.id}")
                return self._result(record, SyncStatus.ADD)
            return self.update_identity(identity, record, log)
        except (StoreError, ProviderLookupError) as e:
            raise SyncError(f"Failed to sync {kind.value} {identity.id}: {e}") from e

    def sync_id(self, identity_id: str) -> SyncResult:
        """
        Re-synchronize an existing local record by id.

        The external identity is looked up again; if the provider no longer
        knows it, the local record is removed.

        Raises:
            SyncError: If the provider or the store fails
        """
        record = self.store.get_record(identity_id)
        if record is None:
            logger.debug(f"No local record {identity_id}, nothing to sync")
            return SyncResult(identity_id, None, False, -1, SyncStatus.NOP)
        if not self.is_same_idp(record):
            return SyncResult(identity_id, record.external_id, record.is_group, -1, SyncStatus.FOREIGN)

        log = create_sync_logger(__name__, identity_id)
        try:
            identity = self.provider.resolve(record.external_id)
            if identity is None:
                self.store.remove_record(identity_id)
                log.info(f"External identity {record.external_id} no longer exists, removed local record")
                return SyncResult(identity_id, record.external_id, record.is_group, -1, SyncStatus.DELETE)
            if identity.is_group != record.is_group:
                raise SyncError(f"Local record {identity_id} and {record.external_id} differ in type")
            if record.is_group:
                self.sync_group(identity, record, log)
            else:
                self.sync_user(identity, record, log)
            return self._result(record, SyncStatus.UPDATE)
        except (StoreError, ProviderLookupError) as e:
            raise SyncError(f"Failed to sync {identity_id}: {e}") from e

    def update_identity(self, identity: ExternalIdentity, record: LocalPrincipalRecord, log=None) -> SyncResult:
        """Refresh an existing record unless it was synced within its expiration time."""
        log = log or logger
        if record.is_group != identity.is_group:
            raise SyncError(f"Local record {record.id} exists with a different principal type")
        if not self.is_same_idp(record):
            log.warning(f"Local record {record.id} belongs to another provider")
            return SyncResult(record.id, record.external_id, record.is_group, -1, SyncStatus.FOREIGN)

        expiration = self.policy.group.expiration_time if record.is_group else self.policy.user.expiration_time
        if not self.is_expired(record, expiration):
            log.debug(f"Record {record.id} synced recently, skipping")
            return self._result(record, SyncStatus.NOP)

        if record.is_group:
            self.sync_group(identity, record, log)
        else:
            self.sync_user(identity, record, log)
        return self._result(record, SyncStatus.UPDATE)

    def sync_user(self, identity: ExternalIdentity, record: LocalPrincipalRecord, log=None):
        self.sync_properties(identity, record, self.policy.user.property_mapping)
        self.sync_membership(identity, record, self.policy.user.membership_nesting_depth, log)
        self.apply_membership(record, self.policy.user.auto_membership, log)
        record.last_synced = self.clock()

    def sync_group(self, identity: ExternalIdentity, record: LocalPrincipalRecord, log=None):
        """Sync the non-membership attributes of a group."""
        self.sync_properties(identity, record, self.policy.group.property_mapping)
        self.apply_membership(record, self.policy.group.auto_membership, log)
        record.last_synced = self.clock()

    def sync_properties(self, identity: ExternalIdentity, record: LocalPrincipalRecord,
                        mapping: Dict[str, str]):
        """
        Copy external attributes onto the record.

        Args:
            identity: Source identity
            record: Target record
            mapping: Local property name to external property name; when empty,
                all external properties are copied under their own names
        """
        record.principal_name = identity.principal_name
        if not mapping:
            record.properties = dict(identity.properties)
            return
        for local_name, external_name in mapping.items():
            value = identity.properties.get(external_name)
            if value is None:
                record.properties.pop(local_name, None)
            else:
                record.properties[local_name] = value

    def sync_membership(self, external: ExternalIdentity, record: LocalPrincipalRecord, depth: int, log=None):
        """Materialize the declared groups of ``external`` as local groups containing ``record``."""
        self._materialize_membership(external, record, depth, log or logger)

    def _materialize_membership(self, external: ExternalIdentity, record: LocalPrincipalRecord,
                                depth: int, log):
        if depth <= 0:
            return

        declared = {}
        for ref in external.declared_groups:
            if not self.is_same_idp(ref):
                log.debug(f"Ignoring group {ref} from another provider")
                continue
            external_group = self.get_external_group(ref, log)
            if external_group is None:
                continue
            group = self.store.get_record(external_group.id)
            if group is None:
                group = self.create_group(external_group)
                self.sync_group(external_group, group, log)
            elif not group.is_group or not self.is_same_idp(group):
                log.warning(f"Local record {group.id} is not a group of this provider, skipping membership")
                continue
            self.store.add_member(group, record)
            declared[group.id] = group
            self._materialize_membership(external_group, group, depth - 1, log)

        for group in self.store.declared_member_of(record):
            if group.id not in declared and self.is_same_idp(group):
                self.store.remove_member(group, record)
                log.debug(f"Removed {record.id} from group {group.id}")

    def apply_membership(self, record: LocalPrincipalRecord, group_ids: Iterable[str], log=None):
        """Add the record to the configured auto-membership groups."""
        log = log or logger
        for group_id in sorted(group_ids):
            group = self.store.get_record(group_id)
            if group is None or not group.is_group:
                log.warning(f"Auto-membership group {group_id} does not exist")
                continue
            self.store.add_member(group, record)

    def create_user(self, identity: ExternalIdentity) -> LocalPrincipalRecord:
        return self.store.create_user(identity.id, identity.principal_name, identity.external_id,
                                      self.record_mode)

    def create_group(self, identity: ExternalIdentity) -> LocalPrincipalRecord:
        return self.store.create_group(identity.id, identity.principal_name, identity.external_id,
                                       self.record_mode)

    def get_external_group(self, ref: ExternalIdentityRef, log=None) -> Optional[ExternalIdentity]:
        """
        Resolve a reference that is expected to point at a group.

        Returns:
            The group, or None for foreign, unknown or non-group references

        Raises:
            ProviderLookupError: If the provider cannot be queried
        """
        log = log or logger
        if not self.is_same_idp(ref):
            return None
        identity = self.provider.resolve(ref)
        if identity is None or not identity.is_group:
            log.debug(f"Not an external group ({ref}), ignoring")
            return None
        return identity

    def is_same_idp(self, target: Union[ExternalIdentityRef, LocalPrincipalRecord, ExternalIdentity, None]) -> bool:
        """Check whether a reference, record or identity belongs to the configured provider."""
        if target is None:
            return False
        ref = target if isinstance(target, ExternalIdentityRef) else target.external_id
        return ref is not None and ref.provider_name == self.policy.provider_name

    def is_expired(self, record: LocalPrincipalRecord, expiration_time: float) -> bool:
        if record.last_synced is None:
            return True
        return self.clock() - record.last_synced >= expiration_time

    def _identity_kind(self, identity) -> IdentityKind:
        kind = getattr(identity, 'kind', None)
        if not isinstance(kind, IdentityKind):
            raise InvalidIdentityKind(f"Identity must be user or group but was: {identity!r}")
        return kind

    def _foreign_result(self, identity: ExternalIdentity) -> SyncResult:
        return SyncResult(identity.id, identity.external_id, identity.is_group, -1, SyncStatus.FOREIGN)

    def _result(self, record: LocalPrincipalRecord, status: SyncStatus) -> SyncResult:
        last_synced = record.last_synced if record.last_synced is not None else -1
        return SyncResult(record.id, record.external_id, record.is_group, last_synced, status)
