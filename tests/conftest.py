"""テスト共通のフィクスチャ."""

import pytest

from mpn_index.memory import InMemoryIndexStore, InMemoryJobTracker
from tests.helpers import FIXTURES_DIR


@pytest.fixture
def store():
    return InMemoryIndexStore()


@pytest.fixture
def tracker():
    return InMemoryJobTracker()


@pytest.fixture
def bulk_lines():
    return (FIXTURES_DIR / "bulk_result.jsonl").read_text(encoding="utf-8").splitlines()
