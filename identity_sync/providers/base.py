"""
Base identity provider interface.

This module defines the abstract base class that all identity provider
integrations must implement, along with the provider error types.
"""

import logging
from abc import ABC, abstractmethod
from typing import Iterator, Optional

from identity_sync.identities import ExternalIdentity, ExternalIdentityRef

logger = logging.getLogger(__name__)


class ProviderLookupError(Exception):
    """Raised when the provider is unreachable or a reference cannot be resolved."""
    pass


class ProviderConnectionError(ProviderLookupError):
    """Raised when a connection to the provider cannot be established."""
    pass


class IdentityProvider(ABC):
    """
    Abstract base class for identity providers.

    Providers resolve references synchronously and never cache identities
    across calls.
    """

    # Providers that can map a group reference to its principal name without
    # fetching the group set this and implement direct_principal_name.
    supports_direct_principal_name = False

    def __init__(self, name: str):
        self.name = name

    @abstractmethod
    def resolve(self, ref: ExternalIdentityRef) -> Optional[ExternalIdentity]:
        """
        Fetch the identity behind a reference.

        Args:
            ref: Reference to resolve

        Returns:
            The identity, or None if the provider does not know it

        Raises:
            ProviderLookupError: If the provider cannot be queried
        """
        pass

    @abstractmethod
    def get_user(self, user_id: str) -> Optional[ExternalIdentity]:
        """Look up a user by its id."""
        pass

    @abstractmethod
    def get_group(self, name: str) -> Optional[ExternalIdentity]:
        """Look up a group by its name."""
        pass

    @abstractmethod
    def list_users(self) -> Iterator[ExternalIdentity]:
        """Iterate over all users known to the provider."""
        pass

    def direct_principal_name(self, ref: ExternalIdentityRef) -> str:
        """
        Map a group reference to its principal name without a lookup.

        Only available when supports_direct_principal_name is set.
        """
        raise NotImplementedError(f"Provider {self.name} does not map references to principal names")

    def owns(self, ref: Optional[ExternalIdentityRef]) -> bool:
        """Check whether a reference points into this provider."""
        return ref is not None and ref.provider_name == self.name

    def close(self):
        """Release provider resources."""
        pass
