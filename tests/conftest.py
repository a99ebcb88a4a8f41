"""
Kanzlei Pipeline Test Configuration

Shared fixtures for all tests.
"""
import sys
from pathlib import Path

import pytest
import pytest_asyncio

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from modules.workflow.database import create_engine, create_session_factory, init_db
from modules.workflow.repository import (
    SqlAuditLog,
    SqlProjectRepository,
    SqlTemplateRepository,
)
from modules.workflow.rules import TEMPLATE_ANGEBOT, TEMPLATE_KONZEPTBLATT
from modules.workflow.service import RunCoordinator


# =============================================================================
# FIXTURES: Database
# =============================================================================

@pytest_asyncio.fixture
async def engine(tmp_path):
    eng = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'pipeline.db'}")
    await init_db(eng)
    yield eng
    await eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def projects(session_factory) -> SqlProjectRepository:
    return SqlProjectRepository(session_factory)


@pytest.fixture
def templates(session_factory) -> SqlTemplateRepository:
    return SqlTemplateRepository(session_factory)


@pytest.fixture
def audit_log(session_factory) -> SqlAuditLog:
    return SqlAuditLog(session_factory)


@pytest_asyncio.fixture
async def mail_templates(templates):
    """Both mailing templates the rules request."""
    await templates.upsert(TEMPLATE_KONZEPTBLATT, "Konzeptblatt", "Hallo")
    await templates.upsert(TEMPLATE_ANGEBOT, "Angebot", "Hallo")


@pytest.fixture
def coordinator(projects, templates, audit_log) -> RunCoordinator:
    return RunCoordinator(projects, templates, audit_log)
