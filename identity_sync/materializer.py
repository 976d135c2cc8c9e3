"""
Creation of dynamic group placeholders.

With dynamic groups enabled, every group a user is declared in (up to the
nesting depth) exists locally as a group carrying the synced attributes but
never a member list.
"""

import logging
from typing import Iterable

from identity_sync.identities import ExternalIdentityRef
from identity_sync.logging_setup import audit_logger

logger = logging.getLogger(__name__)


class GroupMaterializer:
    """Creates and updates memberless local groups for external groups."""

    def __init__(self, context):
        self.context = context

    def ensure_groups(self, refs: Iterable[ExternalIdentityRef], depth: int, log=None):
        """
        Create or update placeholders for the referenced groups and their parents.

        Args:
            refs: Declared group references
            depth: Remaining nesting depth, at least 1
            log: Logger of the current sync invocation

        Raises:
            ProviderLookupError: If any group cannot be fetched; the whole call is aborted
        """
        log = log or logger
        store = self.context.store

        for ref in refs:
            if not self.context.is_same_idp(ref):
                continue
            external_group = self.context.get_external_group(ref, log)
            if external_group is None:
                continue

            group = store.get_record(external_group.id)
            if group is None:
                group = self.context.create_group(external_group)
                audit_logger.log_group_created(group.id, ref)
                log.debug(f"Created dynamic group {group.id}")
            elif not group.is_group or not self.context.is_same_idp(group):
                log.warning(f"Local record {group.id} is not a group of this provider, not materializing")
                continue

            self.context.sync_group(external_group, group, log)
            if depth > 1:
                self.ensure_groups(external_group.declared_groups, depth - 1, log)
