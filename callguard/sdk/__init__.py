"""
SDK for callguard.

Provides the OpenAI-backed transcription and analysis client.
"""

from .openai_client import OpenAITranscriptionClient

__all__ = ["OpenAITranscriptionClient"]
