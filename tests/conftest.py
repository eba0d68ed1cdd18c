"""
Pytest configuration for BatchQuery tests.
Provides candidate file factories, fake transports and the Flask test client.
"""

import sys
from pathlib import Path
from typing import List

import pytest

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from chat_session import AnalysisRequestError, ChatSession
from image_intake import MAX_IMAGE_BYTES, CandidateFile

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 16


def make_png(name: str = "photo.png", size: int = None) -> CandidateFile:
    if size is None:
        return CandidateFile.from_bytes(name, "image/png", PNG_BYTES)
    # Large files only need a declared size; the bytes are never read.
    return CandidateFile(name, "image/png", size, lambda: PNG_BYTES)


class FakeTransport:
    """Records calls and replies with a canned answer or error."""

    def __init__(self, reply: str = "Image 1: a red shoe.", error: str = None):
        self.reply = reply
        self.error = error
        self.calls: List[tuple] = []

    def analyze(self, query, images):
        self.calls.append((query, tuple(images)))
        if self.error is not None:
            raise AnalysisRequestError(self.error)
        return self.reply


class FakeAnalyzer:
    def __init__(self, reply: str = "Image 1: looks fine."):
        self.reply = reply
        self.calls = []

    def analyze(self, query, images):
        self.calls.append((query, list(images)))
        return self.reply


@pytest.fixture
def png_factory():
    return make_png


@pytest.fixture
def oversized_png():
    return make_png("huge.png", MAX_IMAGE_BYTES + 1)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def chat(transport):
    return ChatSession(transport=transport)


@pytest.fixture
def fake_analyzer(monkeypatch):
    import app as webapp

    analyzer = FakeAnalyzer()
    monkeypatch.setattr(webapp, "analyzer", analyzer)
    return analyzer


@pytest.fixture
def client(fake_analyzer):
    import app as webapp

    webapp.app.config["TESTING"] = True
    with webapp.app.test_client() as test_client:
        yield test_client
