"""
Identity data model for Identity Sync.

External identities are read-only snapshots fetched from the identity provider
on every sync call. Local principal records are the users and groups held by the
local store, each in exactly one membership mode.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Set, Tuple


class IdentityKind(Enum):
    """Closed set of external identity kinds."""
    USER = 'user'
    GROUP = 'group'


class MembershipMode(Enum):
    """How group membership of a local record is represented."""
    # group objects with member lists, as written by the default sync path
    LEGACY = 'legacy'
    # flattened principal names stored on the user
    DYNAMIC = 'dynamic'


class SyncStatus(Enum):
    NOP = 'nop'
    ADD = 'add'
    UPDATE = 'update'
    DELETE = 'delete'
    FOREIGN = 'foreign'


@dataclass(frozen=True)
class ExternalIdentityRef:
    """Pointer to a principal inside a specific identity provider."""
    external_id: str
    provider_name: Optional[str] = None

    def to_string(self) -> str:
        """Render as ``id;provider``, omitting the provider when unknown."""
        if self.provider_name:
            return f"{self.external_id};{self.provider_name}"
        return self.external_id

    @classmethod
    def from_string(cls, value: str) -> 'ExternalIdentityRef':
        external_id, sep, provider_name = value.rpartition(';')
        if not sep:
            return cls(value)
        return cls(external_id, provider_name or None)

    def __str__(self) -> str:
        return self.to_string()


@dataclass(frozen=True)
class ExternalIdentity:
    """
    Snapshot of a user or group as reported by the identity provider.

    Attributes:
        id: Identifier used for the local record
        principal_name: Name of the security principal
        external_id: Reference of this identity inside its provider
        kind: USER or GROUP
        declared_groups: Groups this identity is a direct member of, in provider order
        properties: Attributes copied by the default attribute sync
    """
    id: str
    principal_name: str
    external_id: ExternalIdentityRef
    kind: IdentityKind
    declared_groups: Tuple[ExternalIdentityRef, ...] = ()
    properties: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_group(self) -> bool:
        return self.kind is IdentityKind.GROUP


@dataclass
class LocalPrincipalRecord:
    """
    A local user or group.

    Direct group memberships are owned by the local store, not by the record.
    ``external_principal_names`` is only meaningful in DYNAMIC mode.
    """
    id: str
    is_group: bool
    principal_name: str
    external_id: Optional[ExternalIdentityRef] = None
    mode: MembershipMode = MembershipMode.DYNAMIC
    last_synced: Optional[float] = None
    external_principal_names: Optional[Set[str]] = None
    properties: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_legacy(self) -> bool:
        return self.mode is MembershipMode.LEGACY

    def convert_to_dynamic(self, principal_names: Set[str]) -> None:
        """Switch a LEGACY record to DYNAMIC mode with the given principal names."""
        if not self.is_legacy:
            raise ValueError(f"Record {self.id} is not in legacy membership mode")
        self.mode = MembershipMode.DYNAMIC
        self.external_principal_names = set(principal_names)


@dataclass(frozen=True)
class SyncResult:
    """Outcome of synchronizing one identity."""
    identity_id: str
    ref: Optional[ExternalIdentityRef]
    is_group: bool
    last_synced: float
    status: SyncStatus
