"""Pytest configuration and fixtures."""

import os

import pytest

from tests.fakes.fake_vault_db import fake_fields_table, fake_sections_table

FUNNEL_ID = "11111111-1111-1111-1111-111111111111"


@pytest.fixture(scope="session", autouse=True)
def setup_test_env():
    """Set up test environment variables."""
    os.environ["SUPABASE_URL"] = "https://test.supabase.co"
    os.environ["SUPABASE_SERVICE_ROLE_KEY"] = "test-key"
    os.environ["ANTHROPIC_API_KEY"] = "test-anthropic-key"
    os.environ["OPENAI_API_KEY"] = "test-openai-key"
    os.environ["VAULT_ENGINE_ENV"] = "test"


@pytest.fixture
def funnel_id() -> str:
    return FUNNEL_ID


@pytest.fixture
def sections_db():
    return fake_sections_table()


@pytest.fixture
def fields_db():
    return fake_fields_table()


@pytest.fixture
def store(sections_db, fields_db):
    from vault_engine.core.versioned_store import VersionedFieldStore

    return VersionedFieldStore(sections_db, fields_db, max_attempts=5, retry_delay=0.0)
