"""Provider plugins that perform create/update/delete against real systems.

Every plugin exposes the same capability set (see Provider) so the engine
treats cloud APIs, Helm and local files uniformly. Readiness is an optional
capability: a plugin that defines ready() is polled after create/update of
resources declaring `readiness`.

Plugins are instantiated once per run from the stack's `providers:` block
with immutable ProviderSettings and resolved credentials.
"""

from typing import Optional, Protocol, runtime_checkable

from config import ConfigError, load_secrets, resolve_credentials
from providers.helm import HelmProvider
from providers.local import LocalProvider
from providers.rest import RestProvider
from stack import ProviderSettings, Stack


@runtime_checkable
class Provider(Protocol):
    """Protocol for provider plugins.

    Errors are raised as TransientProviderError (retried) or
    PermanentProviderError (fails the resource).
    """

    def create(self, resource_type: str, config: dict) -> dict:
        """Create a resource; return its output attributes."""

    def update(self, resource_type: str, name: str, config: dict) -> dict:
        """Update a resource in place; return its output attributes."""

    def delete(self, resource_type: str, name: str) -> None:
        """Delete a resource. Deleting a missing resource is not an error."""

    def read(self, resource_type: str, name: str) -> dict:
        """Return the current output attributes of a resource."""


PROVIDER_KINDS = {
    'local': LocalProvider,
    'rest': RestProvider,
    'helm': HelmProvider,
}


def supports_readiness(provider: object) -> bool:
    """True if the provider implements the optional ready() capability."""
    return callable(getattr(provider, 'ready', None))


def build_provider(settings: ProviderSettings, secrets: dict) -> Provider:
    """Instantiate one provider plugin.

    Raises:
        ConfigError: If the kind is unknown or credentials cannot be resolved
    """
    cls = PROVIDER_KINDS.get(settings.kind)
    if cls is None:
        raise ConfigError(
            f"Provider '{settings.name}' has unknown kind '{settings.kind}'. "
            f"Available: {', '.join(sorted(PROVIDER_KINDS))}"
        )
    token = resolve_credentials(settings.credentials, secrets)
    return cls(settings, token)


def build_providers(stack: Stack, secrets: Optional[dict] = None) -> dict[str, Provider]:
    """Instantiate every provider declared by a stack, keyed by name."""
    if secrets is None:
        secrets = load_secrets()
    return {name: build_provider(settings, secrets)
            for name, settings in stack.providers.items()}


__all__ = [
    'HelmProvider',
    'LocalProvider',
    'PROVIDER_KINDS',
    'Provider',
    'RestProvider',
    'build_provider',
    'build_providers',
    'supports_readiness',
]
