"""
Sync policy for Identity Sync.

Read-only, per principal type settings consulted by every part of the sync
engine. Built from the ``sync`` section of the configuration.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet

from identity_sync.identities import LocalPrincipalRecord


@dataclass(frozen=True)
class GroupPolicy:
    auto_membership: FrozenSet[str] = frozenset()
    property_mapping: Dict[str, str] = field(default_factory=dict)
    expiration_time: float = 3600
    dynamic_groups: bool = False


@dataclass(frozen=True)
class UserPolicy:
    auto_membership: FrozenSet[str] = frozenset()
    property_mapping: Dict[str, str] = field(default_factory=dict)
    expiration_time: float = 3600
    membership_nesting_depth: int = 1
    dynamic_membership: bool = False
    enforce_dynamic_membership: bool = False


@dataclass(frozen=True)
class SyncPolicy:
    """
    Complete policy of one sync handler.

    Attributes:
        provider_name: Name of the identity provider this handler syncs from
        user: Policy applied to user records
        group: Policy applied to group records
    """
    provider_name: str
    user: UserPolicy = field(default_factory=UserPolicy)
    group: GroupPolicy = field(default_factory=GroupPolicy)

    @property
    def has_dynamic_groups(self) -> bool:
        return self.group.dynamic_groups

    @property
    def enforce_dynamic_sync(self) -> bool:
        """Whether legacy records are forced onto the dynamic membership path."""
        return self.user.enforce_dynamic_membership or self.group.dynamic_groups

    def auto_membership_for(self, record: LocalPrincipalRecord) -> FrozenSet[str]:
        return self.group.auto_membership if record.is_group else self.user.auto_membership


def build_policy(config: Dict[str, Any]) -> SyncPolicy:
    """
    Build a SyncPolicy from a loaded configuration dictionary.

    Args:
        config: Full configuration as returned by load_config

    Returns:
        Policy for the configured provider
    """
    sync_config = config['sync']
    user_config = sync_config.get('user', {})
    group_config = sync_config.get('group', {})

    user = UserPolicy(
        auto_membership=frozenset(user_config.get('auto_membership', [])),
        property_mapping=dict(user_config.get('property_mapping', {})),
        expiration_time=user_config.get('expiration_time', 3600),
        membership_nesting_depth=int(user_config.get('membership_nesting_depth', 1)),
        dynamic_membership=bool(user_config.get('dynamic_membership', False)),
        enforce_dynamic_membership=bool(user_config.get('enforce_dynamic_membership', False)),
    )
    group = GroupPolicy(
        auto_membership=frozenset(group_config.get('auto_membership', [])),
        property_mapping=dict(group_config.get('property_mapping', {})),
        expiration_time=group_config.get('expiration_time', 3600),
        dynamic_groups=bool(group_config.get('dynamic_groups', False)),
    )
    return SyncPolicy(provider_name=sync_config['provider'], user=user, group=group)
