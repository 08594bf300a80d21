"""
Pytest configuration and fixtures
"""
from unittest.mock import AsyncMock

import pytest

from config import Settings
from schemas import Candidate, Content, GenerateResponse, Part, SubjectRecord


class FakeConnection:
    """asyncpg connection stand-in; every query method is an AsyncMock."""

    def __init__(self):
        self.fetch = AsyncMock(return_value=[])
        self.fetchrow = AsyncMock(return_value=None)
        self.fetchval = AsyncMock(return_value=0)
        self.execute = AsyncMock(return_value="DELETE 1")


class _Acquire:
    def __init__(self, conn):
        self.conn = conn

    async def __aenter__(self):
        return self.conn

    async def __aexit__(self, *exc):
        return False


class FakePool:
    def __init__(self, conn=None):
        self.conn = conn or FakeConnection()
        self.close = AsyncMock()

    def acquire(self):
        return _Acquire(self.conn)


class FakeGemini:
    """Upstream client stand-in that counts calls."""

    def __init__(self, response=None, configured=True, error=None):
        self.configured = configured
        self.generate = AsyncMock(return_value=response, side_effect=error)


def make_response(text="An answer.", finish_reason="STOP") -> GenerateResponse:
    return GenerateResponse(
        candidates=[
            Candidate(
                content=Content(parts=[Part(text=text)], role="model"),
                finishReason=finish_reason,
            )
        ]
    )


@pytest.fixture
def settings():
    return Settings(_env_file=None, gemini_api_key="test-key", gemini_api_url="http://upstream.invalid/generate")


@pytest.fixture
def ashwagandha():
    return SubjectRecord(
        name="Ashwagandha",
        scientific_name="Withania somnifera",
        uses="Stress, Vitality",
    )


@pytest.fixture
def fake_pool():
    return FakePool()
