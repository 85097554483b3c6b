"""
Provider Factory and Registry

Maps provider types to adapter classes. Adapters register themselves with
``@register_provider`` when their module is imported.
"""

import logging
from typing import Optional, Type

from mailsync.core.config import SyncSettings
from mailsync.providers.base import (
    MailProvider,
    ProviderType,
    ConnectionCredentials,
)

logger = logging.getLogger(__name__)

# Provider registry - maps provider types to implementation classes
_provider_registry: dict[ProviderType, Type[MailProvider]] = {}


def register_provider(provider_type: ProviderType):
    """
    Decorator to register a provider implementation.

    Usage:
        @register_provider(ProviderType.GMAIL)
        class GmailProvider(MailProvider):
            ...
    """
    def decorator(cls: Type[MailProvider]):
        _provider_registry[provider_type] = cls
        logger.debug(f"Registered provider: {provider_type.value} -> {cls.__name__}")
        return cls
    return decorator


def get_provider_class(provider_type: ProviderType) -> Optional[Type[MailProvider]]:
    """Get the provider class for a given type."""
    return _provider_registry.get(provider_type)


def create_provider(
    provider_type: ProviderType,
    credentials: Optional[ConnectionCredentials] = None,
    settings: Optional[SyncSettings] = None,
) -> MailProvider:
    """
    Create a provider instance.

    Raises:
        ValueError: If provider type is not registered
    """
    cls = get_provider_class(ProviderType(provider_type))
    if not cls:
        raise ValueError(f"No provider registered for type: {provider_type}")
    return cls(credentials, settings=settings)


def list_registered_providers() -> list[ProviderType]:
    """List all registered provider types."""
    return list(_provider_registry.keys())


def _load_providers():
    """Import adapter modules so their decorators run."""
    from mailsync.providers.email import gmail_sync  # noqa: F401
    from mailsync.providers.email import outlook_sync  # noqa: F401
    from mailsync.providers.email import imap_sync  # noqa: F401


_load_providers()
