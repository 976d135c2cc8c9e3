"""
Removal of legacy group memberships.

Used when a record moves from the legacy membership mode to dynamic
membership: group memberships written by the legacy sync path are unwound,
and groups of the configured provider that are left without members are
deleted.
"""

import logging
from typing import Dict, Set

from identity_sync.identities import LocalPrincipalRecord
from identity_sync.logging_setup import audit_logger
from identity_sync.store import StoreError

logger = logging.getLogger(__name__)


class MembershipCleaner:
    """Strips synced and auto-membership group memberships from a record."""

    def __init__(self, context):
        """
        Args:
            context: Sync context providing store, policy and provider checks
        """
        self.context = context

    def clear(self, record: LocalPrincipalRecord, log=None) -> Set[str]:
        """
        Remove the record's legacy memberships and delete orphaned groups.

        Args:
            record: User or group whose memberships are cleared
            log: Logger of the current sync invocation

        Returns:
            Principal names of the same-provider groups the record was found in,
            directly or through nested membership
        """
        log = log or logger
        principal_names = set()
        to_remove: Dict[str, LocalPrincipalRecord] = {}

        self._clear(record, principal_names, to_remove, log)

        for group in to_remove.values():
            try:
                self.context.store.remove_record(group.id)
                audit_logger.log_group_removed(group.id, True)
                log.info(f"Removed orphaned group {group.id}")
            except StoreError as e:
                audit_logger.log_group_removed(group.id, False)
                log.error(f"Failed to remove orphaned group {group.id}: {e}")
        return principal_names

    def _clear(self, record: LocalPrincipalRecord, principal_names: Set[str],
               to_remove: Dict[str, LocalPrincipalRecord], log):
        store = self.context.store
        auto_membership = self.context.policy.auto_membership_for(record)

        for group in store.declared_member_of(record):
            if self.context.is_same_idp(group):
                principal_names.add(group.principal_name)
                store.remove_member(group, record)
                audit_logger.log_membership_removed(record.id, group.id)
                self._clear(group, principal_names, to_remove, log)
                if self._is_orphaned(group):
                    to_remove[group.id] = group
            elif group.id in auto_membership:
                store.remove_member(group, record)
                audit_logger.log_membership_removed(record.id, group.id)
                self._clear(group, principal_names, to_remove, log)
            else:
                # not written by sync, left in place
                log.debug(f"Keeping membership of {record.id} in unmanaged group {group.id}")

    def _is_orphaned(self, group: LocalPrincipalRecord) -> bool:
        if self.context.policy.has_dynamic_groups:
            return False
        return not self.context.store.declared_members(group)
