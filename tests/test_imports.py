# test_imports.py
import importlib

import pytest

MODULES = [
    "callguard.cli.main",
    "callguard.config.loader",
    "callguard.core.billing",
    "callguard.core.clock",
    "callguard.core.orchestrator",
    "callguard.core.pipeline",
    "callguard.core.pricing",
    "callguard.core.redaction",
    "callguard.core.schedule",
    "callguard.core.status",
    "callguard.core.transcription",
    "callguard.sdk.openai_client",
    "callguard.storage.models",
    "callguard.storage.repository",
    "callguard.utils.logger",
]


@pytest.mark.parametrize("name", MODULES)
def test_module_imports(name):
    assert importlib.import_module(name) is not None


def test_sdk_exports_client():
    from callguard.sdk import OpenAITranscriptionClient

    assert OpenAITranscriptionClient.__name__ == "OpenAITranscriptionClient"
