"""
Unit Tests for the Supabase Pipeline Store
Tests for query execution off the event loop, error mapping and
conditional mode transitions against a mocked Supabase client.
"""
import threading
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from leadflow.core.exceptions import DependencyError
from leadflow.domain.models.conversation import ACTIVE_MODES, ConversationMode
from leadflow.infrastructure.storage.supabase_store import SupabasePipelineStore

from conftest import make_lead

CHAIN_METHODS = ("select", "eq", "neq", "in_", "limit", "order", "update", "upsert", "delete", "insert")


@pytest.fixture
def query():
    query = MagicMock()
    for name in CHAIN_METHODS:
        getattr(query, name).return_value = query
    query.execute.return_value = SimpleNamespace(data=[])
    return query


@pytest.fixture
def store(query):
    client = MagicMock()
    client.table.return_value = query
    return SupabasePipelineStore(client)


class TestQueryExecution:

    @pytest.mark.asyncio
    async def test_queries_run_off_the_event_loop(self, store, query):
        """Blocking client calls execute in a worker thread"""
        threads = []

        def execute():
            threads.append(threading.get_ident())
            return SimpleNamespace(data=[make_lead().model_dump(mode="json")])

        query.execute.side_effect = execute

        lead = await store.get_lead("lead-1")

        assert lead.id == "lead-1"
        assert threads and threads[0] != threading.get_ident()
        query.eq.assert_called_with("id", "lead-1")

    @pytest.mark.asyncio
    async def test_client_errors_become_dependency_errors(self, store, query):
        query.execute.side_effect = RuntimeError("connection refused")

        with pytest.raises(DependencyError, match="connection refused"):
            await store.get_lead("lead-1")


class TestModeTransitions:

    @pytest.mark.asyncio
    async def test_disallowed_transition_skips_the_update(self, store, query):
        """COMPLETED is terminal; no UPDATE is issued"""
        changed = await store.transition_mode("conv-1", [ConversationMode.COMPLETED], ConversationMode.AI_MODE)

        assert changed is False
        query.update.assert_not_called()

    @pytest.mark.asyncio
    async def test_only_legal_source_modes_are_matched(self, store, query):
        query.execute.return_value = SimpleNamespace(data=[{"id": "conv-1"}])

        changed = await store.transition_mode("conv-1", ACTIVE_MODES, ConversationMode.AI_MODE)

        assert changed is True
        query.in_.assert_called_once_with("mode", [ConversationMode.TEMPLATE_MODE.value])
