"""
SDK for Cinegen.

Provides the client used to reach the generation service.
"""

from .openai_client import GenerationClient

__all__ = ["GenerationClient"]
