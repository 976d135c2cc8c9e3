"""
Dynamic membership resolution.

Instead of adding a user to local group objects, the names of all groups the
user belongs to (directly or through nesting, up to a depth bound) are stored
on the user as its external principal names.
"""

import logging
from typing import Iterable, Set

from identity_sync.identities import ExternalIdentity, ExternalIdentityRef, LocalPrincipalRecord
from identity_sync.providers.base import ProviderLookupError

logger = logging.getLogger(__name__)


class MembershipResolver:
    """
    Computes and stores the flattened group principal names of users.

    Depth strictly decreases on every hop, so nested group cycles terminate
    without tracking visited groups. A group reachable along several paths is
    expanded once per path.
    """

    def __init__(self, context, materializer, cleaner):
        """
        Args:
            context: Sync context providing provider, store, policy and the legacy membership path
            materializer: GroupMaterializer used when dynamic groups are enabled
            cleaner: MembershipCleaner used when migrating legacy records
        """
        self.context = context
        self.materializer = materializer
        self.cleaner = cleaner

    def sync_membership(self, external: ExternalIdentity, record: LocalPrincipalRecord, depth: int, log=None):
        """
        Synchronize the membership of a user record.

        Legacy records keep the legacy membership path unless dynamic sync is
        enforced by policy, in which case they are migrated here.

        Args:
            external: External user being synced
            record: Local record of that user
            depth: Maximum number of nested group hops to resolve
            log: Logger of the current sync invocation

        Raises:
            ProviderLookupError: If materializing dynamic groups fails
            StoreError: If the local store fails
        """
        log = log or logger
        if record.is_group:
            return

        policy = self.context.policy
        was_legacy = record.is_legacy
        if was_legacy and not policy.enforce_dynamic_sync:
            log.debug(f"{record.id} was synced before dynamic membership, using legacy membership sync")
            self.context.legacy_sync_membership(external, record, depth, log)
            return

        names = self.collect_principal_names(set(), external.declared_groups, depth, log) if depth > 0 else set()
        if was_legacy:
            self.context.store.convert_to_dynamic(record, names)
        else:
            self.context.store.set_external_principal_names(record, names)
        log.debug(f"Set {len(names)} external principal names on {record.id}")

        if policy.has_dynamic_groups and depth > 0:
            self.materializer.ensure_groups(external.declared_groups, depth, log)

        if was_legacy:
            self.cleaner.clear(record, log)

    def collect_principal_names(self, principal_names: Set[str], refs: Iterable[ExternalIdentityRef],
                                depth: int, log=None) -> Set[str]:
        """
        Recursively collect group principal names reachable from ``refs``.

        References of other providers are skipped. A group that cannot be
        fetched is logged and its branch abandoned; names collected so far are kept.

        Args:
            principal_names: Set the names are added to
            refs: Declared group references of a user or group
            depth: Remaining nesting depth; nothing is collected below 1

        Returns:
            ``principal_names``
        """
        log = log or logger
        if depth <= 0:
            return principal_names

        provider = self.context.provider
        refs = [ref for ref in refs if self.context.is_same_idp(ref)]

        if depth == 1 and provider.supports_direct_principal_name:
            for ref in refs:
                try:
                    principal_names.add(provider.direct_principal_name(ref))
                except ProviderLookupError as e:
                    log.error(f"Failed to map group reference {ref}: {e}")
            return principal_names

        for ref in refs:
            try:
                identity = provider.resolve(ref)
            except ProviderLookupError as e:
                log.error(f"Failed to resolve group {ref}, skipping its nested membership: {e}")
                continue
            if identity is None or not identity.is_group:
                log.debug(f"Not an external group ({ref}), ignoring")
                continue
            principal_names.add(identity.principal_name)
            if depth > 1:
                self.collect_principal_names(principal_names, identity.declared_groups, depth - 1, log)
        return principal_names
