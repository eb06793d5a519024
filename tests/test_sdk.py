"""
Unit tests for SDK layer.

Tests the OpenAI transcription/analysis client with the API mocked out.
"""

import os
import shutil
import tempfile
from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from callguard.core.transcription import TranscriptWord, UpstreamUnavailable
from callguard.sdk.openai_client import DEFAULT_ANALYSIS_PROMPT, OpenAITranscriptionClient


def _transcription(text="hello my pin is 1234"):
    transcription = Mock()
    transcription.text = text
    transcription.words = [
        Mock(word="hello", start=0.0, end=0.4),
        Mock(word="my", start=0.4, end=0.6),
    ]
    return transcription


def _chat_response(content="1. **Summary**\nGreeting.", usage=True):
    response = Mock()
    response.model = "gpt-4o-mini-2024-07-18"
    response.choices = [Mock(message=Mock(content=content))]
    if usage:
        response.usage.prompt_tokens = 150
        response.usage.completion_tokens = 60
    else:
        response.usage = None
    return response


class TestOpenAITranscriptionClient:
    """Test OpenAITranscriptionClient behavior."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()
        self.audio_path = os.path.join(self.temp_dir, "call.wav")
        with open(self.audio_path, "wb") as f:
            f.write(b"RIFF....WAVE")

    def teardown_method(self):
        """Clean up test environment."""
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    @patch('callguard.sdk.openai_client.OpenAI')
    def test_init_success(self, mock_openai_class):
        """Test successful initialization."""
        client = OpenAITranscriptionClient(analysis_model="gpt-4o", timeout=30.0)

        assert client.transcription_model == "whisper-1"
        assert client.analysis_model == "gpt-4o"
        assert client.analysis_prompt == DEFAULT_ANALYSIS_PROMPT
        mock_openai_class.assert_called_once_with(api_key=None, timeout=30.0)

    def test_init_missing_model(self):
        """Test initialization fails with missing model."""
        with pytest.raises(ValueError, match="transcription_model is required"):
            OpenAITranscriptionClient(transcription_model="")
        with pytest.raises(ValueError, match="analysis_model is required"):
            OpenAITranscriptionClient(analysis_model=None)

    @patch('callguard.sdk.openai_client.OpenAI')
    def test_local_file_success(self, mock_openai_class):
        """Test transcription and analysis of a local recording."""
        mock_client = Mock()
        mock_client.audio.transcriptions.create.return_value = _transcription()
        mock_client.chat.completions.create.return_value = _chat_response()
        mock_openai_class.return_value = mock_client

        result = OpenAITranscriptionClient().transcribe_and_analyze(self.audio_path)

        assert result.transcript == "hello my pin is 1234"
        assert result.analysis.startswith("1. **Summary**")
        assert result.model == "gpt-4o-mini-2024-07-18"
        assert result.usage.input_tokens == 150
        assert result.usage.output_tokens == 60
        assert result.words == (
            TranscriptWord(word="hello", start=0.0, end=0.4),
            TranscriptWord(word="my", start=0.4, end=0.6),
        )

        kwargs = mock_client.audio.transcriptions.create.call_args.kwargs
        assert kwargs["model"] == "whisper-1"
        assert kwargs["response_format"] == "verbose_json"
        assert kwargs["timestamp_granularities"] == ["word"]
        assert kwargs["file"] == ("call.wav", b"RIFF....WAVE")

        messages = mock_client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0] == {"role": "system", "content": DEFAULT_ANALYSIS_PROMPT}
        assert "hello my pin is 1234" in messages[1]["content"]

    @patch('callguard.sdk.openai_client.httpx.get')
    @patch('callguard.sdk.openai_client.OpenAI')
    def test_url_is_downloaded(self, mock_openai_class, mock_get):
        mock_client = Mock()
        mock_client.audio.transcriptions.create.return_value = _transcription()
        mock_client.chat.completions.create.return_value = _chat_response()
        mock_openai_class.return_value = mock_client
        mock_get.return_value = Mock(content=b"audio-bytes")

        OpenAITranscriptionClient(timeout=15.0).transcribe_and_analyze("https://media.example.com/rec/RE1.mp3")

        mock_get.assert_called_once_with(
            "https://media.example.com/rec/RE1.mp3", timeout=15.0, follow_redirects=True
        )
        assert mock_client.audio.transcriptions.create.call_args.kwargs["file"] == ("RE1.mp3", b"audio-bytes")

    @patch('callguard.sdk.openai_client.httpx.get')
    @patch('callguard.sdk.openai_client.OpenAI')
    def test_download_failure_is_upstream_unavailable(self, mock_openai_class, mock_get):
        mock_get.side_effect = httpx.ConnectError("connection refused")

        with pytest.raises(UpstreamUnavailable, match="ConnectError"):
            OpenAITranscriptionClient().transcribe_and_analyze("https://media.example.com/rec.wav")

    @patch('callguard.sdk.openai_client.OpenAI')
    def test_missing_file_is_upstream_unavailable(self, mock_openai_class):
        with pytest.raises(UpstreamUnavailable):
            OpenAITranscriptionClient().transcribe_and_analyze(os.path.join(self.temp_dir, "missing.wav"))

    @patch('callguard.sdk.openai_client.OpenAI')
    def test_api_failure_is_upstream_unavailable(self, mock_openai_class):
        mock_client = Mock()
        mock_client.audio.transcriptions.create.side_effect = openai.APIConnectionError(
            request=httpx.Request("POST", "https://api.openai.com/v1/audio/transcriptions")
        )
        mock_openai_class.return_value = mock_client

        with pytest.raises(UpstreamUnavailable, match="APIConnectionError"):
            OpenAITranscriptionClient().transcribe_and_analyze(self.audio_path)
        mock_client.chat.completions.create.assert_not_called()

    @patch('callguard.sdk.openai_client.OpenAI')
    def test_missing_usage_is_upstream_unavailable(self, mock_openai_class):
        """Test response without usage information raises error."""
        mock_client = Mock()
        mock_client.audio.transcriptions.create.return_value = _transcription()
        mock_client.chat.completions.create.return_value = _chat_response(usage=False)
        mock_openai_class.return_value = mock_client

        with pytest.raises(UpstreamUnavailable, match="usage information"):
            OpenAITranscriptionClient().transcribe_and_analyze(self.audio_path)

    @patch('callguard.sdk.openai_client.OpenAI')
    def test_empty_locator(self, mock_openai_class):
        with pytest.raises(UpstreamUnavailable):
            OpenAITranscriptionClient().transcribe_and_analyze("")

    @patch('callguard.sdk.openai_client.OpenAI')
    def test_custom_prompt(self, mock_openai_class):
        mock_client = Mock()
        mock_client.audio.transcriptions.create.return_value = _transcription()
        mock_client.chat.completions.create.return_value = _chat_response()
        mock_openai_class.return_value = mock_client

        OpenAITranscriptionClient(analysis_prompt="Summarize briefly.").transcribe_and_analyze(self.audio_path)

        messages = mock_client.chat.completions.create.call_args.kwargs["messages"]
        assert messages[0]["content"] == "Summarize briefly."
