"""Pytest configuration and shared fixtures."""

import os
import tempfile

# Point the app at a throwaway database BEFORE importing any project module
os.environ.setdefault("DATABASE_URL", f"sqlite:///{os.path.join(tempfile.mkdtemp(), 'app.db')}")
os.environ.setdefault("JWT_SECRET", "test-secret")

import httpx
import pytest
from jose import jwt as jose_jwt
from sqlalchemy.orm import sessionmaker

from adapters import AdapterSet
from competitors import CompetitorDiscovery
from config import Settings
from database import init_db, make_engine
from insights import InsightSynthesizer
from models import WorkflowContext
from orchestrator import Orchestrator

JWT_SECRET = "test-secret"

VALID_RECOMMENDATIONS = (
    '{"executive_summary": "Example.com trails two competitors on core SaaS terms.", '
    '"recommendations": ['
    '{"title": "Target comparison keywords", "description": "Publish vs pages.", "confidence": 0.82}, '
    '{"title": "Fix LCP on mobile", "description": "Compress hero media.", "confidence": 0.9}'
    "]}"
)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

class FakeAdapter:
    """Stands in for a SourceAdapter: returns canned records, remembers calls."""

    def __init__(self, records=None):
        self.records = records or []
        self.calls = []

    async def fetch(self, context, *args, **kwargs):
        self.calls.append(args)
        return [dict(r) for r in self.records]


class FakeClaude:
    provider = "claude"

    def __init__(self, reply: str = VALID_RECOMMENDATIONS, error: Exception = None, gate=None):
        self.reply = reply
        self.error = error
        self.gate = gate
        self.prompts = []

    async def complete(self, system, prompt, max_tokens=2000):
        self.prompts.append(prompt)
        if self.gate is not None:
            import asyncio
            await asyncio.get_running_loop().run_in_executor(None, self.gate.wait, 10)
        if self.error is not None:
            raise self.error
        return self.reply


class FakePerplexity:
    provider = "perplexity"

    def __init__(self, reply: str = "", error: Exception = None, configured: bool = True):
        self.reply = reply
        self.error = error
        self.configured = configured
        self.prompts = []

    async def chat(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.reply


def fake_adapters(**overrides) -> AdapterSet:
    names = [
        "serp", "keywords", "competitor_keywords", "content_sentiment", "crawl",
        "domain_analytics", "backlinks", "onpage", "pagespeed", "business_data",
        "news", "contacts",
    ]
    values = {name: overrides.get(name, FakeAdapter()) for name in names}
    return AdapterSet(**values)


def dataforseo_body(items=None, result=None) -> dict:
    result = result if result is not None else {"items": items or []}
    return {
        "status_code": 20000,
        "tasks": [{"status_code": 20000, "result": [result]}],
    }


def make_token(user_id: str, email: str = "jane@example.com") -> str:
    return jose_jwt.encode({"sub": user_id, "email": email}, JWT_SECRET, algorithm="HS256")


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

VENDOR_ENV = (
    "DATAFORSEO_LOGIN", "DATAFORSEO_PASSWORD", "PAGESPEED_API_KEY", "GOOGLE_SEARCH_API_KEY",
    "GOOGLE_SEARCH_CSE_ID", "VOILANORBERT_API_KEY", "ANTHROPIC_API_KEY", "PERPLEXITY_API_KEY",
)


@pytest.fixture(autouse=True)
def no_vendor_credentials(monkeypatch):
    """Settings() reads the environment; keep real credentials out of tests."""
    for name in VENDOR_ENV:
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        dataforseo_login="login",
        dataforseo_password="password",
        anthropic_api_key="test-anthropic-key",
        jwt_secret=JWT_SECRET,
        scheduler_secret="scheduler-secret",
        http_retries=2,
        http_backoff_seconds=0,
        llm_backoff_seconds=0,
        workflow_timeout_seconds=10,
        run_workers=1,
    )


@pytest.fixture
def session_factory(tmp_path):
    """Fresh file-backed SQLite database per test."""
    engine = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    init_db(bind=engine)
    factory = sessionmaker(bind=engine, autocommit=False, autoflush=False)
    yield factory
    engine.dispose()


@pytest.fixture
def context() -> WorkflowContext:
    return WorkflowContext(
        workflow_id="wf-test",
        user_id="user-1",
        full_name="Jane Doe",
        website_url="https://example.com",
        industry="SaaS",
        location="United States",
    )


@pytest.fixture
def make_orchestrator(settings, session_factory):
    def _make(adapters=None, primary=None, secondary=None, discovery=None, queue=None, cfg=None):
        return Orchestrator(
            settings=cfg or settings,
            adapters=adapters or fake_adapters(),
            synthesizer=InsightSynthesizer(primary or FakeClaude(), secondary),
            discovery=discovery or CompetitorDiscovery(None, None),
            queue=queue,
            session_factory=session_factory,
        )
    return _make


@pytest.fixture
async def mock_http():
    """AsyncClient whose traffic is answered by the handler you pass in."""
    clients = []

    def _make(handler):
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        clients.append(client)
        return client

    yield _make
    for client in clients:
        await client.aclose()
