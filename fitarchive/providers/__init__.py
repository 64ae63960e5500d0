"""Collaborator providers: file decoders and report renderers."""

from .base import Decoder, NullRenderer, ProviderRegistry, Renderer, get_registry

__all__ = [
    "Decoder",
    "NullRenderer",
    "ProviderRegistry",
    "Renderer",
    "get_registry",
]
