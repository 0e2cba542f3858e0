"""
SDK for Story Context.

Provider contract and the OpenAI-backed adapter.
"""

from .openai_provider import OpenAIProvider
from .provider import CacheInfo, FileInfo, LLMProvider, ModelInfo, ProviderCapabilities, StreamChunk

__all__ = [
    "CacheInfo",
    "FileInfo",
    "LLMProvider",
    "ModelInfo",
    "OpenAIProvider",
    "ProviderCapabilities",
    "StreamChunk",
]
