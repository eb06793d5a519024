"""
OpenAI transcription and analysis client.

Transcribes recordings with Whisper and analyzes transcripts with a chat
model, reporting token usage for cost tracking.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlparse

import httpx
from openai import OpenAI, OpenAIError

from ..core.transcription import (
    TokenUsage,
    TranscriptionResult,
    TranscriptWord,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

DEFAULT_ANALYSIS_PROMPT = """You are an AI call analyst. Using the transcript provided, write a structured report.

Format your response EXACTLY as follows, each section starting on a new line with its number:

1. **Summary**
[2-3 sentence summary of the conversation]

2. **Action Items**
[Bulleted list of short action items, one per line starting with - ]

3. **Sentiment**
[One word: positive, negative or neutral]

4. **Urgent Topics**
[Anything that needs immediate attention, or "None"]
"""


class OpenAITranscriptionClient:
    """Transcription/analysis capability backed by the OpenAI API.

    All service, network and file errors surface as UpstreamUnavailable so
    the orchestrator can record them on the record.
    """

    def __init__(
        self,
        transcription_model: str = "whisper-1",
        analysis_model: str = "gpt-4o-mini",
        analysis_prompt: Optional[str] = None,
        timeout: float = 120.0,
        api_key: Optional[str] = None,
    ):
        """Initialize the client.

        Args:
            transcription_model: Whisper model name
            analysis_model: Chat model used for analysis
            analysis_prompt: System prompt for analysis (a default report
                format is used when omitted)
            timeout: Per-request timeout in seconds
            api_key: API key (defaults to the OPENAI_API_KEY environment variable)

        Raises:
            ValueError: If a model name is missing/empty
        """
        if not transcription_model or not transcription_model.strip():
            raise ValueError("transcription_model is required and cannot be empty")
        if not analysis_model or not analysis_model.strip():
            raise ValueError("analysis_model is required and cannot be empty")

        self.transcription_model = transcription_model
        self.analysis_model = analysis_model
        self.analysis_prompt = analysis_prompt or DEFAULT_ANALYSIS_PROMPT
        self.timeout = timeout
        self.client = OpenAI(api_key=api_key, timeout=timeout)

    def transcribe_and_analyze(self, audio_locator: str) -> TranscriptionResult:
        """Fetch the recording, transcribe it and analyze the transcript.

        Args:
            audio_locator: http(s) URL or local file path

        Returns:
            Transcript with word timestamps, analysis, model and token usage

        Raises:
            UpstreamUnavailable: On any download, API or usage error
        """
        if not audio_locator:
            raise UpstreamUnavailable("audio locator is empty")

        try:
            filename, audio = self._load_audio(audio_locator)
            logger.info("Transcribing %s (%d bytes) with %s", filename, len(audio), self.transcription_model)
            transcription = self.client.audio.transcriptions.create(
                file=(filename, audio),
                model=self.transcription_model,
                response_format="verbose_json",
                timestamp_granularities=["word"],
            )
            transcript = transcription.text or ""
            words = tuple(
                TranscriptWord(word=str(w.word), start=float(w.start), end=float(w.end))
                for w in (getattr(transcription, "words", None) or [])
            )

            response = self.client.chat.completions.create(
                model=self.analysis_model,
                messages=[
                    {"role": "system", "content": self.analysis_prompt},
                    {"role": "user", "content": f"TRANSCRIPT:\n{transcript}"},
                ],
            )
        except (OpenAIError, httpx.HTTPError, OSError) as e:
            raise UpstreamUnavailable(f"{type(e).__name__}: {e}") from e

        usage = response.usage
        if not usage:
            raise UpstreamUnavailable("OpenAI response missing usage information")
        if not response.choices:
            raise UpstreamUnavailable("OpenAI response has no choices")

        return TranscriptionResult(
            transcript=transcript,
            analysis=response.choices[0].message.content or "",
            model=response.model or self.analysis_model,
            usage=TokenUsage(
                input_tokens=usage.prompt_tokens,
                output_tokens=usage.completion_tokens,
            ),
            words=words,
        )

    def _load_audio(self, audio_locator: str) -> Tuple[str, bytes]:
        parsed = urlparse(audio_locator)
        if parsed.scheme in ("http", "https"):
            response = httpx.get(audio_locator, timeout=self.timeout, follow_redirects=True)
            response.raise_for_status()
            return Path(parsed.path).name or "recording.wav", response.content

        path = Path(audio_locator)
        return path.name, path.read_bytes()
