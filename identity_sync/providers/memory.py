"""
In-memory identity provider.

Holds a fixed set of users and groups in dictionaries. Used for local runs
driven by a YAML fixture and throughout the test suite.
"""

import logging
from typing import Any, Dict, Iterable, Iterator, Optional

from identity_sync.identities import ExternalIdentity, ExternalIdentityRef, IdentityKind
from .base import IdentityProvider

logger = logging.getLogger(__name__)


class InMemoryIdentityProvider(IdentityProvider):
    """
    Dictionary backed identity provider.

    Identities are keyed by their external id. Group principal names can be
    served directly from the reference when ``direct_mapping`` is enabled.
    """

    def __init__(self, name: str, direct_mapping: bool = False):
        super().__init__(name)
        self.supports_direct_principal_name = direct_mapping
        self._identities: Dict[str, ExternalIdentity] = {}

    def ref(self, external_id: str) -> ExternalIdentityRef:
        return ExternalIdentityRef(external_id, self.name)

    def add_user(self, user_id: str, groups: Iterable[str] = (), principal_name: Optional[str] = None,
                 properties: Optional[Dict[str, Any]] = None) -> ExternalIdentity:
        return self._add(IdentityKind.USER, user_id, groups, principal_name, properties)

    def add_group(self, group_id: str, groups: Iterable[str] = (), principal_name: Optional[str] = None,
                  properties: Optional[Dict[str, Any]] = None) -> ExternalIdentity:
        return self._add(IdentityKind.GROUP, group_id, groups, principal_name, properties)

    def _add(self, kind, identity_id, groups, principal_name, properties) -> ExternalIdentity:
        identity = ExternalIdentity(
            id=identity_id,
            principal_name=principal_name or identity_id,
            external_id=self.ref(identity_id),
            kind=kind,
            declared_groups=tuple(g if isinstance(g, ExternalIdentityRef) else self.ref(g) for g in groups),
            properties=dict(properties or {}),
        )
        self._identities[identity_id] = identity
        return identity

    def remove(self, identity_id: str):
        self._identities.pop(identity_id, None)

    def resolve(self, ref: ExternalIdentityRef) -> Optional[ExternalIdentity]:
        if not self.owns(ref):
            return None
        return self._identities.get(ref.external_id)

    def get_user(self, user_id: str) -> Optional[ExternalIdentity]:
        identity = self._identities.get(user_id)
        return identity if identity is not None and identity.kind is IdentityKind.USER else None

    def get_group(self, name: str) -> Optional[ExternalIdentity]:
        for identity in self._identities.values():
            if identity.kind is IdentityKind.GROUP and identity.principal_name == name:
                return identity
        return None

    def list_users(self) -> Iterator[ExternalIdentity]:
        return iter([i for i in self._identities.values() if i.kind is IdentityKind.USER])

    def direct_principal_name(self, ref: ExternalIdentityRef) -> str:
        if not self.supports_direct_principal_name:
            return super().direct_principal_name(ref)
        identity = self._identities.get(ref.external_id)
        # principal name defaults to the id, so unknown refs map to themselves
        return identity.principal_name if identity is not None else ref.external_id

    @classmethod
    def from_config(cls, name: str, config: Dict[str, Any]) -> 'InMemoryIdentityProvider':
        """
        Build a provider from a configuration mapping.

        Args:
            name: Provider name
            config: Mapping with optional ``users`` and ``groups`` lists; each entry
                has ``id`` and optional ``principal_name``, ``groups`` and ``properties``

        Returns:
            Populated provider
        """
        provider = cls(name, direct_mapping=bool(config.get('direct_mapping', False)))
        for entry in config.get('groups', []) or []:
            provider.add_group(entry['id'], entry.get('groups', []), entry.get('principal_name'),
                               entry.get('properties'))
        for entry in config.get('users', []) or []:
            provider.add_user(entry['id'], entry.get('groups', []), entry.get('principal_name'),
                              entry.get('properties'))
        logger.info(f"Loaded in-memory provider {name} with {len(provider._identities)} identities")
        return provider
