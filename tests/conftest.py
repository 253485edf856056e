"""
Pytest configuration for ACE assistant tests.
Points logs and the conversation store at temp paths and clears every
collaborator URL and key so tests never reach a real service.
"""

import os
import tempfile

# Must be set before any ace_assistant import (settings is a singleton)
_test_data_dir = tempfile.mkdtemp(prefix="ace_assistant_test_")
os.environ["ACE_LOG_DIR"] = os.path.join(_test_data_dir, "logs")
os.environ["ACE_CHAT_DATABASE_URL"] = f"sqlite:///{_test_data_dir}/chat.db"

for _name in (
    "ACE_ANTHROPIC_API_KEY",
    "ACE_DATABASE_URL",
    "ACE_DATA_API_URL",
    "ACE_DATA_API_TOKEN",
    "ACE_NOTEBOOK_A_BASE",
    "ACE_NOTEBOOK_B_BASE",
    "ACE_EXA_API_KEY",
    "ACE_MCP_SSE_URL",
    "ACE_MCP_HTTP_URL",
):
    os.environ[_name] = ""

import pytest

from ace_assistant.core.database import init_db

# Conversation tables on the temp SQLite file
init_db()

# Load error registry so AceError maps to the right HTTP status codes
from ace_assistant.core.errors.registry import error_registry
error_registry.load()


@pytest.fixture
def test_data_dir():
    return _test_data_dir


# ---------------------------------------------------------------------------
# Offline collaborators
# ---------------------------------------------------------------------------

from sqlalchemy import text
from sqlmodel import SQLModel, create_engine

from ace_assistant.models.tools import RowsTable
from ace_assistant.services.capability_prober import CapabilityProber
from ace_assistant.services.chat_service import ChatService
from ace_assistant.services.conversation_store import ConversationStore
from ace_assistant.services.data_api import DataApiClient
from ace_assistant.services.external_tools import ExternalToolSource
from ace_assistant.services.prediction_clients import NotebookAClient, NotebookBClient
from ace_assistant.services.warehouse import Warehouse
from ace_assistant.services.web_search import WebSearchClient

SUMMARY_ROWS = [
    {"bus_route_id": "M15+", "date_trunc_ym": "2024-01", "violations": 10, "exempt_count": 2},
    {"bus_route_id": "Q46", "date_trunc_ym": "2024-02", "violations": 5, "exempt_count": 1},
]


class StubWarehouse(Warehouse):
    """SQLite-backed warehouse; the Postgres-only summary query is canned."""

    def __init__(self, engine, summary_rows=None):
        super().__init__(engine=engine)
        self.summary_rows = SUMMARY_ROWS if summary_rows is None else summary_rows
        self.summary_calls = []

    async def violations_summary(self, route_id=None, start=None, end=None, limit=5000):
        self.summary_calls.append({"route_id": route_id, "start": start, "end": end, "limit": limit})
        return RowsTable(rows=[dict(row) for row in self.summary_rows])


@pytest.fixture
def warehouse_engine(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path}/warehouse.db", connect_args={"check_same_thread": False})
    with engine.begin() as conn:
        conn.execute(text("create table violations (violation_id integer, bus_route_id text, violation_status text)"))
        conn.execute(text(
            "insert into violations values (1, 'M15+', 'EXEMPT'), (2, 'M15+', 'ISSUED'), (3, 'Q46', 'ISSUED')"
        ))
    yield engine
    engine.dispose()


@pytest.fixture
def store(tmp_path):
    engine = create_engine(f"sqlite:///{tmp_path}/store.db", connect_args={"check_same_thread": False})
    SQLModel.metadata.create_all(engine)
    yield ConversationStore(engine=engine)
    engine.dispose()


@pytest.fixture
def make_chat_service(warehouse_engine, store):
    """Build a ChatService whose collaborators never leave the process."""

    def _make(provider=None, warehouse=None, conversation_store=None):
        return ChatService(
            warehouse=warehouse or StubWarehouse(warehouse_engine),
            data_api=DataApiClient(base_url=""),
            search=WebSearchClient(api_key=""),
            notebook_a=NotebookAClient(base_url=""),
            notebook_b=NotebookBClient(base_url=""),
            prober=CapabilityProber(service_a_base="", service_b_base=""),
            external=ExternalToolSource(servers=[]),
            store=conversation_store or store,
            provider_factory=lambda: provider,
        )

    return _make
