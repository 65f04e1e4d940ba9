"""Shared test fixtures for the Manual Service Bundler backend.

Provides:
- Sample BPMN documents (main process with gateway and call activity, subprocess)
- An in-memory ``FakeRepository`` with the same async surface as
  ``ServiceRepository``
- A filesystem blob store rooted in ``tmp_path``
- The application and an HTTP client with both swapped in
- A session-scoped PostgreSQL engine and a per-test rolled-back session
  factory for the repository tests (skipped when no database is reachable)

Only the database fixtures need PostgreSQL.
"""

from __future__ import annotations

import asyncio
import os
import uuid

# Set test environment BEFORE any app imports so Settings() picks them up.
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-pytest-only")
os.environ.setdefault("ENVIRONMENT", "development")
# External collaborators stay unconfigured unless a test swaps in a fake.
for _var in ("ANTHROPIC_API_KEY", "CAMUNDA_CONSOLE_CLIENT_ID", "CAMUNDA_CONSOLE_CLIENT_SECRET"):
    os.environ[_var] = ""

from datetime import datetime, timezone
from types import SimpleNamespace

import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from manual_service.models import Base
from manual_service.services.export_packager import LocalBlobStore

# ---------------------------------------------------------------------------
# Sample BPMN
# ---------------------------------------------------------------------------

MAIN_BPMN = """\
<?xml version="1.0" encoding="UTF-8"?>
<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL" xmlns:bpmndi="http://www.omg.org/spec/BPMN/20100524/DI" xmlns:dc="http://www.omg.org/spec/DD/20100524/DC" id="Definitions_1" targetNamespace="http://bpmn.io/schema/bpmn">
  <bpmn:process id="Process_1" isExecutable="true">
    <bpmn:startEvent id="StartEvent_1" name="Order received">
      <bpmn:outgoing>Flow_1</bpmn:outgoing>
    </bpmn:startEvent>
    <bpmn:userTask id="Activity_check" name="Check request">
      <bpmn:incoming>Flow_1</bpmn:incoming>
      <bpmn:outgoing>Flow_2</bpmn:outgoing>
    </bpmn:userTask>
    <bpmn:exclusiveGateway id="Gateway_1" name="Approved?">
      <bpmn:incoming>Flow_2</bpmn:incoming>
      <bpmn:outgoing>Flow_3</bpmn:outgoing>
      <bpmn:outgoing>Flow_4</bpmn:outgoing>
    </bpmn:exclusiveGateway>
    <bpmn:callActivity id="Activity_fulfil" name="Fulfil order">
      <bpmn:incoming>Flow_3</bpmn:incoming>
      <bpmn:outgoing>Flow_5</bpmn:outgoing>
    </bpmn:callActivity>
    <bpmn:userTask id="Activity_notify" name="Notify requester">
      <bpmn:incoming>Flow_4</bpmn:incoming>
      <bpmn:outgoing>Flow_6</bpmn:outgoing>
    </bpmn:userTask>
    <bpmn:endEvent id="EndEvent_1">
      <bpmn:incoming>Flow_5</bpmn:incoming>
      <bpmn:incoming>Flow_6</bpmn:incoming>
    </bpmn:endEvent>
    <bpmn:sequenceFlow id="Flow_1" sourceRef="StartEvent_1" targetRef="Activity_check"/>
    <bpmn:sequenceFlow id="Flow_2" sourceRef="Activity_check" targetRef="Gateway_1"/>
    <bpmn:sequenceFlow id="Flow_3" sourceRef="Gateway_1" targetRef="Activity_fulfil"/>
    <bpmn:sequenceFlow id="Flow_4" sourceRef="Gateway_1" targetRef="Activity_notify"/>
    <bpmn:sequenceFlow id="Flow_5" sourceRef="Activity_fulfil" targetRef="EndEvent_1"/>
    <bpmn:sequenceFlow id="Flow_6" sourceRef="Activity_notify" targetRef="EndEvent_1"/>
  </bpmn:process>
  <bpmndi:BPMNDiagram id="BPMNDiagram_1">
    <bpmndi:BPMNPlane id="BPMNPlane_1" bpmnElement="Process_1">
      <bpmndi:BPMNShape id="Activity_check_di" bpmnElement="Activity_check">
        <dc:Bounds x="270" y="80" width="100" height="80"/>
      </bpmndi:BPMNShape>
      <bpmndi:BPMNShape id="Activity_fulfil_di" bpmnElement="Activity_fulfil">
        <dc:Bounds x="520" y="80" width="100" height="80"/>
      </bpmndi:BPMNShape>
    </bpmndi:BPMNPlane>
  </bpmndi:BPMNDiagram>
</bpmn:definitions>
"""

SUB_BPMN = """\
<?xml version="1.0" encoding="UTF-8"?>
<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL" id="Definitions_sub" targetNamespace="http://bpmn.io/schema/bpmn">
  <bpmn:process id="Process_fulfil" isExecutable="true">
    <bpmn:startEvent id="Start_sub"/>
    <bpmn:userTask id="Task_pack" name="Pack goods"/>
    <bpmn:endEvent id="End_sub"/>
    <bpmn:sequenceFlow id="SFlow_1" sourceRef="Start_sub" targetRef="Task_pack"/>
    <bpmn:sequenceFlow id="SFlow_2" sourceRef="Task_pack" targetRef="End_sub"/>
  </bpmn:process>
</bpmn:definitions>
"""

SUBPROCESS_ID = "3f2a9c1e-7b4d-4e1a-9c3b-0d5e6f7a8b9c"
GENERATED_AT = datetime(2025, 10, 23, 22, 45, 12, tzinfo=timezone.utc)


def make_service(
    key: str = "SVC-1",
    name: str = "Order Handling",
    edited: str | None = None,
    original: str | None = MAIN_BPMN,
):
    return SimpleNamespace(
        id=uuid.uuid4(),
        external_id=key,
        name=name,
        edited_bpmn_xml=edited,
        original_bpmn_xml=original,
        performing_team=None,
        performer_org=None,
    )


def make_subprocess(
    name: str = "Fulfil order",
    step_key: str | None = "S-200",
    original: str | None = SUB_BPMN,
    sub_id: str = SUBPROCESS_ID,
):
    return SimpleNamespace(
        id=uuid.UUID(sub_id),
        name=name,
        step_external_id=step_key,
        edited_bpmn_xml=None,
        original_bpmn_xml=original,
    )


def make_step(step_key: str, name: str, process_step: int | None = None, **urls):
    return SimpleNamespace(
        step_external_id=step_key,
        step_name=name,
        process_step=process_step,
        sop_urls=urls.get("sop_urls"),
        decision_sheet_urls=urls.get("decision_sheet_urls"),
        document_urls=urls.get("document_urls"),
        document_name=urls.get("document_name"),
    )


def default_steps():
    return [
        make_step("S-100", "Check request", 1, sop_urls="SOP|https://sop.example/check"),
        make_step(
            "S-200",
            "Fulfil order",
            2,
            document_urls="https://docs.example/a; https://docs.example/b",
            document_name="Fulfilment guide",
        ),
    ]


# ---------------------------------------------------------------------------
# Fake repository
# ---------------------------------------------------------------------------


class FakeRepository:
    """In-memory stand-in for ``ServiceRepository``."""

    def __init__(self, services=(), subprocesses=None, steps=None, descriptions=None):
        self.services = {s.external_id: s for s in services}
        self.subprocesses = subprocesses or {}
        self.steps = steps or {}
        self.descriptions: dict[tuple[str, str | None], str] = descriptions or {}
        self.templates: dict[str, str] = {}
        self.step_rows: dict[tuple[str, str], dict] = {}
        self.jobs: dict[uuid.UUID, dict] = {}
        self.touched: list[tuple[str, bool, bool]] = []

    async def get_service(self, service_key):
        return self.services.get(service_key)

    async def ensure_service(self, service_key, name, performing_team=None, performer_org=None):
        if service_key in self.services:
            return False
        self.services[service_key] = SimpleNamespace(
            id=uuid.uuid4(),
            external_id=service_key,
            name=name,
            performing_team=performing_team,
            performer_org=performer_org,
            edited_bpmn_xml=None,
            original_bpmn_xml=None,
        )
        return True

    async def save_edited_diagram(self, service_key, xml):
        service = self.services.get(service_key)
        if service is None:
            return None
        service.edited_bpmn_xml = xml
        return service

    async def touch_service(self, service_key, exported=False, transferred=False):
        self.touched.append((service_key, exported, transferred))

    async def save_original_diagram(self, service_key, xml):
        service = self.services.get(service_key)
        if service is None:
            return None
        service.original_bpmn_xml = xml
        return service

    async def list_subprocesses(self, service_id):
        return list(self.subprocesses.get(service_id, []))

    async def get_subprocess(self, service_id, subprocess_id):
        for sub in self.subprocesses.get(service_id, []):
            if sub.id == subprocess_id:
                return sub
        return None

    async def upsert_subprocess(self, service_id, step_key, name, original_xml):
        rows = self.subprocesses.setdefault(service_id, [])
        for sub in rows:
            if sub.step_external_id == step_key:
                sub.name = name
                sub.original_bpmn_xml = original_xml
                return False
        rows.append(
            SimpleNamespace(
                id=uuid.uuid4(),
                name=name,
                step_external_id=step_key,
                edited_bpmn_xml=None,
                original_bpmn_xml=original_xml,
            )
        )
        return True

    async def save_edited_subprocess_diagram(self, service_id, subprocess_id, xml):
        sub = await self.get_subprocess(service_id, subprocess_id)
        if sub is not None:
            sub.edited_bpmn_xml = xml
        return sub

    async def list_mds_steps(self, service_key):
        return list(self.steps.get(service_key, []))

    async def mds_row_hashes(self, service_keys):
        return {
            key: values["row_hash"]
            for key, values in self.step_rows.items()
            if key[0] in service_keys
        }

    async def upsert_mds_step(self, values):
        self.step_rows[(values["service_external_id"], values["step_external_id"])] = dict(values)

    async def list_descriptions(self, service_key):
        return [
            SimpleNamespace(service_key=svc, node_id=node_id, description=text)
            for (svc, node_id), text in self.descriptions.items()
            if svc == service_key
        ]

    async def upsert_description(self, service_key, node_id, description):
        self.descriptions[(service_key, node_id)] = description

    async def get_form_template(self, name):
        file_name = self.templates.get(name)
        if file_name is None:
            return None
        return SimpleNamespace(template_name=name, file_name=file_name)

    async def upsert_form_template(self, name, file_name):
        self.templates[name] = file_name

    async def delete_form_template(self, name):
        return self.templates.pop(name, None) is not None

    async def create_job(self, service_key, kind):
        job_id = uuid.uuid4()
        self.jobs[job_id] = {"service_key": service_key, "kind": kind, "status": "processing"}
        return job_id

    async def finish_job(self, job_id, status, detail=None, download_url=None, error=None):
        self.jobs[job_id].update(
            status=status, detail=detail or {}, download_url=download_url, error=error
        )


@pytest.fixture
def repository():
    service = make_service()
    return FakeRepository(
        services=[service],
        subprocesses={service.id: [make_subprocess()]},
        steps={"SVC-1": default_steps()},
        descriptions={
            ("SVC-1", None): "Handles incoming orders end to end. Owned by the order desk. Extra.",
            ("SVC-1", "S-100"): "Verify the request is complete.",
        },
    )


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(
        tmp_path / "blobs",
        secret="blob-secret",
        base_url="http://testserver",
        download_path="/api/v1/exports/download",
        clock=lambda: 1_000_000.0,
    )


# ---------------------------------------------------------------------------
# Database engine (repository tests only)
# ---------------------------------------------------------------------------


def _test_db_url() -> str:
    user = os.getenv("POSTGRES_USER", "manual_services")
    password = os.getenv("POSTGRES_PASSWORD", "manual_services")
    host = os.getenv("POSTGRES_HOST", "localhost")
    port = os.getenv("POSTGRES_PORT", "5432")
    db = os.getenv("TEST_POSTGRES_DB", "manual_services_test")
    return f"postgresql+asyncpg://{user}:{password}@{host}:{port}/{db}"


@pytest.fixture(scope="session")
def test_engine():
    """Create a test database engine and all tables. Drops tables at teardown.

    A *sync* fixture so the engine is not bound to one event loop; NullPool
    opens a fresh asyncpg connection on whatever loop is current.
    """
    engine = create_async_engine(_test_db_url(), echo=False, poolclass=NullPool)

    async def _setup():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
            await conn.run_sync(Base.metadata.create_all)

    async def _teardown():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()

    try:
        asyncio.run(_setup())
    except Exception as exc:
        asyncio.run(engine.dispose())
        pytest.skip(f"Test database not available ({exc})")

    yield engine

    asyncio.run(_teardown())


@pytest.fixture
async def session_factory(test_engine):
    """Session factory whose commits only release savepoints.

    Every session it makes joins one outer transaction, which is rolled back
    at teardown, so each repository operation can commit as in production.
    """
    conn = await test_engine.connect()
    trans = await conn.begin()
    factory = async_sessionmaker(
        bind=conn, expire_on_commit=False, join_transaction_mode="create_savepoint"
    )

    yield factory

    await trans.rollback()
    await conn.close()


# ---------------------------------------------------------------------------
# FastAPI app + HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture
async def app(repository, blob_store):
    """The application with repository and blob storage swapped for fakes.

    The lifespan does not run under ``ASGITransport``, so no database is
    touched.
    """
    from manual_service.api.deps import get_blob_store, get_repository
    from manual_service.main import app as application

    application.dependency_overrides[get_repository] = lambda: repository
    application.dependency_overrides[get_blob_store] = lambda: blob_store
    yield application
    application.dependency_overrides.clear()


@pytest.fixture
async def client(app):
    async with AsyncClient(
        transport=ASGITransport(app=app, raise_app_exceptions=False),
        base_url="http://test",
    ) as c:
        yield c


@pytest.fixture(autouse=True)
def _disable_rate_limiter():
    """Disable slowapi rate limiting during tests to avoid 429 responses."""
    from manual_service.core.rate_limit import limiter

    limiter.enabled = False
    yield
    limiter.enabled = True
