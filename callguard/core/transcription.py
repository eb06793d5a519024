"""
Transcription and analysis results.

Shapes returned by the external transcription/analysis capability.
"""

from dataclasses import dataclass, field
from typing import Protocol, Tuple


class UpstreamUnavailable(Exception):
    """Raised when the transcription/analysis service fails or times out."""


@dataclass(frozen=True)
class TokenUsage:
    """Token counts reported by the analysis model."""
    input_tokens: int
    output_tokens: int

    @property
    def total_tokens(self) -> int:
        """Total tokens used (input + output)."""
        return self.input_tokens + self.output_tokens


@dataclass(frozen=True)
class TranscriptWord:
    """A transcribed word with its position in the audio, in seconds."""
    word: str
    start: float
    end: float


@dataclass(frozen=True)
class TranscriptionResult:
    """Transcript, analysis and usage for one recording."""
    transcript: str
    analysis: str
    model: str
    usage: TokenUsage
    words: Tuple[TranscriptWord, ...] = field(default_factory=tuple)


class TranscriptionAnalysisClient(Protocol):
    def transcribe_and_analyze(self, audio_locator: str) -> TranscriptionResult:
        """Transcribe and analyze the recording at ``audio_locator``.

        Raises:
            UpstreamUnavailable: On any service failure or timeout
        """
        ...
