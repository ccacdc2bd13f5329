"""
Shared fixtures for the GreenLens test suite.
"""

from typing import List, Optional

import pytest

from greenlens.pdf_text import DocumentTextExtractor, PageRenderer
from greenlens.providers import InferenceRequest, LLMClient
from greenlens.storage import AnalysisStore, LocalKeyValueStore


class FakeLLMClient(LLMClient):
    """Scripted provider: returns queued responses or raises a fixed error."""

    def __init__(self, name: str = "Fake", responses: Optional[List[str]] = None, error: Exception = None):
        self.name = name
        self.responses = list(responses or [])
        self.error = error
        self.requests: List[InferenceRequest] = []

    async def complete(self, request: InferenceRequest) -> str:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        return self.responses.pop(0)


class StaticRenderer(PageRenderer):
    """Page renderer returning fixed text items."""

    name = "static"

    def __init__(self, pages: List[List[str]]):
        self.pages = pages

    def render(self, content: bytes) -> List[List[str]]:
        return self.pages


@pytest.fixture
def make_client():
    """Factory for scripted provider clients."""
    return FakeLLMClient


@pytest.fixture
def make_text_extractor():
    """Factory for a text extractor over fixed pages."""
    def factory(pages: List[List[str]]) -> DocumentTextExtractor:
        return DocumentTextExtractor(StaticRenderer(pages))
    return factory


@pytest.fixture
def analysis_store(tmp_path):
    """Analysis store backed by a temporary directory."""
    return AnalysisStore(LocalKeyValueStore(str(tmp_path / "kv")))
