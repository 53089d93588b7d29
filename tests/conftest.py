# tests/conftest.py
from __future__ import annotations

import sys
import os
import tempfile
from pathlib import Path

# Environment must be in place before app.settings is imported
os.environ.setdefault("API_KEY", "dev")
os.environ.setdefault("GEMINI_API_KEYS", "key-0,key-1,key-2")
os.environ.setdefault("CHROMA_DIR", tempfile.mkdtemp(prefix="ragdesk-chroma-"))
os.environ.setdefault("TELEGRAM_BOT_TOKEN", "test-token")
os.environ.setdefault("TELEGRAM_ADMIN_CHAT_ID", "1000")
os.environ.setdefault("RETRY_COOLDOWN_S", "0")
os.environ.setdefault("RETRY_BACKOFF_S", "0")

# Insert the project root (one level up) at the front of sys.path
PROJECT_ROOT = Path(__file__).parent.parent.resolve()
sys.path.insert(0, str(PROJECT_ROOT))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.answering.composer import Answer  # noqa: E402


class FakeChannel:
    """Stands in for TelegramChannel; hands out increasing message ids."""

    configured = True

    def __init__(self, fail: bool = False):
        self.sent: list[str] = []
        self.tokens: list[str] = []
        self.fail = fail
        self._next = 500

    async def send(self, text: str):
        if self.fail:
            raise RuntimeError("telegram down")
        self.sent.append(text)
        self._next += 1
        token = str(self._next)
        self.tokens.append(token)
        return token

    async def aclose(self):
        return None


class FakeRetriever:
    def __init__(self, passages=None, error: Exception | None = None):
        self.passages = list(passages or [])
        self.error = error
        self.queries: list[str] = []

    async def retrieve(self, query: str):
        self.queries.append(query)
        if self.error is not None:
            raise self.error
        return list(self.passages)


class FakeComposer:
    def __init__(self, outcome):
        self.outcome = outcome
        self.calls: list[tuple] = []

    async def rewrite_query(self, question: str) -> str:
        return question

    async def compose(self, question, passages, *, rewritten=None):
        self.calls.append((question, list(passages)))
        return self.outcome


class FakeGemini:
    """Queue of Generations / exceptions returned by generate(); fixed embeddings."""

    def __init__(self, replies=None, dim: int = 3):
        self.replies = list(replies or [])
        self.prompts: list[str] = []
        self.dim = dim
        self.embedded: list[str] = []

    async def generate(self, prompt, **kwargs):
        self.prompts.append(prompt)
        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        return reply

    async def embed(self, text):
        self.embedded.append(text)
        return [1.0] + [0.0] * (self.dim - 1)

    async def embed_many(self, texts):
        self.embedded.extend(texts)
        return [[1.0] + [0.0] * (self.dim - 1) for _ in texts]


@pytest.fixture
def client():
    import app.main as main
    with TestClient(main.app) as c:
        yield c


@pytest.fixture
def fake_channel(client):
    channel = FakeChannel()
    client.app.state.notifier.channel = channel
    return channel


@pytest.fixture
def stub_pipeline(client):
    """Swap the pipeline's retriever/composer for fakes: stub_pipeline(passages=..., outcome=...)."""
    pipeline = client.app.state.pipeline

    def _stub(passages=None, outcome=None, error=None):
        pipeline.retriever = FakeRetriever(passages, error=error)
        pipeline.composer = FakeComposer(outcome if outcome is not None else Answer("ok"))
        return pipeline

    return _stub

