"""
Base provider protocols.

These define the interfaces of the two collaborators the archive depends on
but does not implement itself: the file decoder and the report renderer.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

import logging
from typing import Iterable, Protocol, runtime_checkable

from ..types import Activity, DecodedContent

logger = logging.getLogger(__name__)


# -----------------------------------------------------------------------------
# Decoding
# -----------------------------------------------------------------------------

@runtime_checkable
class Decoder(Protocol):
    """
    Turns raw device file bytes into structured content.

    Example implementation:
        class JsonDecoder:
            def decode(self, data: bytes, name: str = "") -> DecodedContent:
                return ActivityContent(**json.loads(data))
    """

    def decode(self, data: bytes, name: str = "") -> DecodedContent:
        """
        Decode one file.

        Args:
            data: Raw file bytes
            name: File name, for error messages only

        Returns:
            ActivityContent, MonitoringContent, or OtherContent

        Raises:
            DecodeError: If the bytes are not a valid file
        """
        ...


# -----------------------------------------------------------------------------
# Rendering
# -----------------------------------------------------------------------------

@runtime_checkable
class Renderer(Protocol):
    """
    Receives regeneration signals for generated documents (HTML reports).

    The archive never renders anything itself; after a mutation it tells
    the renderer which documents are stale.
    """

    def regenerate(self, activity: Activity) -> None:
        """The document for this activity must be rebuilt."""
        ...

    def discard(self, activity: Activity) -> None:
        """The activity is gone; its document must be removed."""
        ...

    def regenerate_index(self, activities: Iterable[Activity]) -> None:
        """The activity list document must be rebuilt."""
        ...

    def regenerate_all(self, activities: Iterable[Activity]) -> None:
        """Every document must be rebuilt (unit system or output dir changed)."""
        ...


class NullRenderer:
    """Renderer that only logs the signals it receives."""

    def regenerate(self, activity: Activity) -> None:
        logger.debug("Regenerate report for %s", activity.id)

    def discard(self, activity: Activity) -> None:
        logger.debug("Discard report for %s", activity.id)

    def regenerate_index(self, activities: Iterable[Activity]) -> None:
        logger.debug("Regenerate activity index")

    def regenerate_all(self, activities: Iterable[Activity]) -> None:
        logger.debug("Regenerate all reports")


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating providers.

    Providers are registered by name and can be instantiated from configuration.
    This allows the archive configuration (TOML) to specify providers by name
    rather than requiring code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_decoder("fitparse", FitparseDecoder)

        # Later, from config:
        decoder = registry.create_decoder("fitparse", {})
    """

    def __init__(self):
        self._decoders: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules so they can register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import fit  # noqa: F401

    def register_decoder(self, name: str, provider_class: type) -> None:
        """Register a decoder class."""
        self._decoders[name] = provider_class

    @staticmethod
    def _create_provider(kind: str, name: str, providers: dict, params: dict | None):
        """Shared factory logic for all provider types."""
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown {kind} provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create {kind} provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e

    def create_decoder(self, name: str, params: dict | None = None) -> Decoder:
        """Create a decoder instance."""
        self._ensure_providers_loaded()
        return self._create_provider("decoder", name, self._decoders, params)

    def list_decoders(self) -> list[str]:
        """List registered decoder names."""
        self._ensure_providers_loaded()
        return list(self._decoders.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
