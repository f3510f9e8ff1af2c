from datetime import datetime

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlmodel import Session, SQLModel, create_engine

from crm_assistant import models
from crm_assistant.db import _make_engine, get_session
from crm_assistant.executor import TenantContext
from crm_assistant.llm import CompletionError, CompletionResult
from crm_assistant.main import app, get_completer, get_tenant

ORG_A = "org-a"
ORG_B = "org-b"


class FakeCompleter:
    """Devolve respostas pré-definidas, em ordem, e guarda as chamadas."""

    def __init__(self, *replies):
        self.replies = list(replies)
        self.calls = []

    async def __call__(self, messages, **kwargs):
        self.calls.append({"messages": messages, **kwargs})
        if not self.replies:
            return CompletionResult.failure(CompletionError.PROVIDER_ERROR)
        reply = self.replies.pop(0)
        if isinstance(reply, CompletionError):
            return CompletionResult.failure(reply)
        return CompletionResult(text=reply)


def _seed(session: Session) -> None:
    session.add_all([
        models.User(id="u-a1", organization_id=ORG_A, email="alice@a.fr", full_name="Alice Martin"),
        models.User(id="u-b1", organization_id=ORG_B, email="bruno@b.fr", full_name="Bruno Petit"),
        models.CrmProspect(
            id="p-a1", organization_id=ORG_A, first_name="Claire", last_name="Durand",
            qualification="chaud", patrimoine_estime=1500000.0, assigned_to="u-a1",
            created_at=datetime(2026, 1, 15, 10, 0),
        ),
        models.CrmProspect(
            id="p-a2", organization_id=ORG_A, first_name="Denis", last_name="Moreau",
            qualification="froid", patrimoine_estime=250000.0,
        ),
        models.CrmProspect(
            id="p-a3", organization_id=ORG_A, first_name="Emma", last_name="Bernard",
            qualification="chaud", notes="rappel 10:30",
        ),
        models.CrmProspect(
            id="p-b1", organization_id=ORG_B, first_name="Fabien", last_name="Roux",
            qualification="chaud", patrimoine_estime=9000000.0,
        ),
        models.CrmEvent(
            id="e-a1", organization_id=ORG_A, prospect_id="p-a1", type="meeting",
            title="RDV bilan", assigned_to="u-a1",
        ),
    ])
    session.commit()


@pytest.fixture(scope="function")
def db_url(tmp_path):
    """Arquivo SQLite com as tabelas do CRM e dados de duas organizações."""
    url = f"sqlite:///{tmp_path / 'crm.db'}"
    seed_engine = create_engine(url)
    SQLModel.metadata.create_all(seed_engine)
    with Session(seed_engine) as session:
        _seed(session)
    seed_engine.dispose()
    return url


# Engine somente leitura, igual ao da aplicação
@pytest.fixture(scope="function")
def engine(db_url):
    eng = _make_engine(db_url)
    yield eng
    eng.dispose()


@pytest.fixture(scope="function")
def db_session(engine):
    with Session(engine) as session:
        yield session


@pytest.fixture
def tenant_a():
    return TenantContext(organization_id=ORG_A)


@pytest.fixture
def fake_completer():
    return FakeCompleter()


# Client
@pytest_asyncio.fixture(scope="function")
async def client(db_session: Session, tenant_a: TenantContext, fake_completer: FakeCompleter):
    def override_get_session():
        yield db_session

    app.dependency_overrides[get_session] = override_get_session
    app.dependency_overrides[get_tenant] = lambda: tenant_a
    app.dependency_overrides[get_completer] = lambda: fake_completer

    async with AsyncClient(
        transport=ASGITransport(app=app), base_url="http://test"
    ) as ac:
        yield ac

    app.dependency_overrides.clear()
