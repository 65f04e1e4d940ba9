"""Tests for the Web Modeler client and the transfer engine.

HTTP is served by ``httpx.MockTransport``; sleeps are recorded instead of
awaited, so retries and pacing can be asserted without waiting.
"""

from __future__ import annotations

import json
from datetime import datetime

import httpx
import pytest

from manual_service.exceptions import ApiError, AuthenticationError, InvalidBundle, UploadError
from manual_service.services.bundle_builder import Bundle, FormArtifact, SubprocessFile
from manual_service.services.transfer_engine import (
    CamundaModelerClient,
    TokenCache,
    TransferEngine,
    UploadItem,
)

OAUTH_URL = "https://login.test/oauth/token"
API_URL = "https://modeler.test/api/v1"


class FakeModeler:
    """Minimal Web Modeler API: records requests, fails uploads on demand."""

    def __init__(
        self,
        upload_failures: dict[str, int] | None = None,
        projects=None,
        html_uploads: set[str] | None = None,
    ):
        self.upload_failures = dict(upload_failures or {})
        # names answered with 200 and an HTML page, as a misrouted gateway does
        self.html_uploads = set(html_uploads or ())
        self.projects = list(projects or [])
        self.requests: list[tuple[str, str, dict]] = []
        self.token_requests = 0
        self._next_id = 0

    def _id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content) if request.content else {}
        self.requests.append((request.method, request.url.path, body))

        if str(request.url) == OAUTH_URL:
            self.token_requests += 1
            return httpx.Response(200, json={"access_token": f"tok-{self.token_requests}", "expires_in": 300})

        path = request.url.path.removeprefix("/api/v1")
        if path == "/projects/search":
            return httpx.Response(200, json={"items": self.projects})
        if path == "/projects":
            project = {"id": self._id("proj"), "name": body["name"]}
            self.projects.append(project)
            return httpx.Response(200, json=project)
        if path == "/folders":
            return httpx.Response(200, json={"id": self._id("folder"), "name": body["name"]})
        if path == "/files":
            remaining = self.upload_failures.get(body["name"], 0)
            if remaining:
                self.upload_failures[body["name"]] = remaining - 1
                return httpx.Response(500, text="upstream error")
            if body["name"] in self.html_uploads:
                return httpx.Response(200, text="<html>gateway ok</html>")
            return httpx.Response(200, json={"id": self._id("file"), "name": body["name"]})
        return httpx.Response(404)

    def uploads(self) -> list[str]:
        return [b["name"] for m, p, b in self.requests if p.endswith("/files")]


def _client(modeler: FakeModeler, cache: TokenCache | None = None) -> CamundaModelerClient:
    return CamundaModelerClient(
        client_id="id",
        client_secret="secret",
        oauth_url=OAUTH_URL,
        audience="api.test",
        api_url=API_URL,
        ui_url="https://ui.test",
        token_cache=cache,
        transport=httpx.MockTransport(modeler.handler),
    )


def _engine(modeler: FakeModeler, sleeps: list[float]) -> TransferEngine:
    async def record(seconds: float) -> None:
        sleeps.append(seconds)

    return TransferEngine(
        _client(modeler),
        project_name="Manual Service Models",
        max_attempts=3,
        backoff_seconds=1.0,
        pacing_seconds=0.3,
        sleep=record,
        now=lambda: datetime(2025, 10, 23, 22, 45),
    )


def _bundle() -> Bundle:
    return Bundle(
        service_key="SVC-1",
        service_name="Order Handling",
        main_xml="<bpmn:definitions/>",
        subprocesses=[
            SubprocessFile(filename="subprocess-Fulfil-order-3f2a9c1e.bpmn", xml="<x/>", name="Fulfil order", step_key="S-200")
        ],
        forms=[
            FormArtifact(
                node_id="StartEvent_1",
                name="Start",
                filename="000-start.form",
                form_id="000-start-20251023T224512Z",
                template_type="start",
                content={"id": "000-start-20251023T224512Z", "components": []},
            )
        ],
    )


class TestTokenCache:
    async def test_reuses_until_margin(self):
        now = [0.0]
        cache = TokenCache(clock=lambda: now[0], margin_seconds=60)
        calls = []

        async def fetch():
            calls.append(now[0])
            return f"t{len(calls)}", 300

        assert await cache.get(fetch) == "t1"
        now[0] = 239.0
        assert await cache.get(fetch) == "t1"
        now[0] = 240.0
        assert await cache.get(fetch) == "t2"
        assert len(calls) == 2

    async def test_invalidate(self):
        cache = TokenCache(clock=lambda: 0.0)

        async def fetch():
            return "t", 3600

        await cache.get(fetch)
        assert cache.valid
        cache.invalidate()
        assert not cache.valid


class TestCamundaModelerClient:
    async def test_token_requested_once(self):
        modeler = FakeModeler()
        client = _client(modeler)
        await client.search_projects("x")
        await client.create_folder("p", "f")
        assert modeler.token_requests == 1
        await client.close()

    async def test_token_request_body(self):
        modeler = FakeModeler()
        client = _client(modeler)
        await client.authenticate()
        _method, _path, body = modeler.requests[0]
        assert body == {
            "grant_type": "client_credentials",
            "audience": "api.test",
            "client_id": "id",
            "client_secret": "secret",
        }
        await client.close()

    async def test_rejected_credentials(self):
        client = CamundaModelerClient(
            "id", "bad", OAUTH_URL, "api.test", API_URL,
            transport=httpx.MockTransport(lambda r: httpx.Response(401, text="nope")),
        )
        with pytest.raises(AuthenticationError):
            await client.authenticate()

    async def test_401_invalidates_token(self):
        calls = {"token": 0}

        def handler(request: httpx.Request) -> httpx.Response:
            if str(request.url) == OAUTH_URL:
                calls["token"] += 1
                return httpx.Response(200, json={"access_token": "t", "expires_in": 3600})
            return httpx.Response(401, text="expired")

        client = CamundaModelerClient(
            "id", "s", OAUTH_URL, "api.test", API_URL, transport=httpx.MockTransport(handler)
        )
        with pytest.raises(ApiError) as exc_info:
            await client.create_project("p")
        assert exc_info.value.status == 401
        assert not client.token_cache.valid
        with pytest.raises(ApiError):
            await client.create_project("p")
        assert calls["token"] == 2

    async def test_upload_error_type(self):
        modeler = FakeModeler(upload_failures={"a.bpmn": 1})
        client = _client(modeler)
        with pytest.raises(UploadError):
            await client.upload_file("p", "a.bpmn", "<x/>", "bpmn", "folder-1")
        _m, _p, body = modeler.requests[-1]
        assert body["folderId"] == "folder-1"
        assert body["fileType"] == "bpmn"

    def test_urls(self):
        client = _client(FakeModeler())
        assert client.project_url("p1") == "https://ui.test/projects/p1"
        assert client.folder_url("p1", "f1") == "https://ui.test/projects/p1/folder/f1"


class TestUploadAll:
    async def test_two_failures_then_success(self):
        modeler = FakeModeler(upload_failures={"a.bpmn": 2})
        sleeps: list[float] = []
        report = await _engine(modeler, sleeps).upload_all("p", [UploadItem("a.bpmn", "<x/>", "bpmn")])
        assert [s.name for s in report.succeeded] == ["a.bpmn"]
        assert report.failed == []
        assert modeler.uploads() == ["a.bpmn"] * 3
        # linear backoff, no pacing after the last file
        assert sleeps == [1.0, 2.0]

    async def test_exhausted_file_does_not_stop_batch(self):
        modeler = FakeModeler(upload_failures={"a.bpmn": 3})
        sleeps: list[float] = []
        files = [UploadItem("a.bpmn", "<x/>", "bpmn"), UploadItem("b.form", "{}", "form")]
        report = await _engine(modeler, sleeps).upload_all("p", files)
        assert [s.name for s in report.succeeded] == ["b.form"]
        assert len(report.failed) == 1
        failure = report.failed[0]
        assert failure.name == "a.bpmn"
        assert failure.attempts == 3
        assert "500" in failure.error
        assert sleeps == [1.0, 2.0]

    async def test_non_json_success_body_does_not_stop_batch(self):
        modeler = FakeModeler(html_uploads={"a.bpmn"})
        sleeps: list[float] = []
        files = [UploadItem("a.bpmn", "<x/>", "bpmn"), UploadItem("b.form", "{}", "form")]
        report = await _engine(modeler, sleeps).upload_all("p", files)
        assert [s.name for s in report.succeeded] == ["b.form"]
        assert [f.name for f in report.failed] == ["a.bpmn"]
        assert report.failed[0].attempts == 3
        assert "non-JSON" in report.failed[0].error
        assert modeler.uploads() == ["a.bpmn"] * 3 + ["b.form"]

    async def test_pacing_between_files(self):
        modeler = FakeModeler()
        sleeps: list[float] = []
        files = [UploadItem(f"{n}.bpmn", "<x/>", "bpmn") for n in "abc"]
        await _engine(modeler, sleeps).upload_all("p", files)
        assert sleeps == [0.3, 0.3]

    async def test_empty_content_not_uploaded(self):
        modeler = FakeModeler()
        report = await _engine(modeler, []).upload_all("p", [UploadItem("a.bpmn", "", "bpmn")])
        assert report.failed[0].error == "Empty content"
        assert report.failed[0].attempts == 0
        assert modeler.uploads() == []


class TestTransfer:
    async def test_creates_layout_and_uploads(self):
        modeler = FakeModeler()
        result = await _engine(modeler, []).transfer(_bundle())

        folders = [(b["name"], b.get("parentId")) for m, p, b in modeler.requests if p.endswith("/folders")]
        assert folders == [
            ("Order Handling SVC-1", None),
            ("Order Handling 20251023-2245", "folder-2"),
            ("High Level", "folder-3"),
            ("Low Level", "folder-3"),
        ]
        assert modeler.uploads() == [
            "manual-service.bpmn",
            "000-start.form",
            "subprocess-Fulfil-order-3f2a9c1e.bpmn",
        ]
        assert result.success
        assert result.status == "success"
        assert result.project_name == "Manual Service Models"
        assert result.export_folder_url == "https://ui.test/projects/proj-1/folder/folder-3"

    async def test_uploads_go_to_high_and_low_level(self):
        modeler = FakeModeler()
        await _engine(modeler, []).transfer(_bundle())
        targets = {b["name"]: b["folderId"] for m, p, b in modeler.requests if p.endswith("/files")}
        assert targets["manual-service.bpmn"] == "folder-4"
        assert targets["000-start.form"] == "folder-4"
        assert targets["subprocess-Fulfil-order-3f2a9c1e.bpmn"] == "folder-5"

    async def test_form_content_is_json(self):
        modeler = FakeModeler()
        await _engine(modeler, []).transfer(_bundle())
        form_body = next(b for m, p, b in modeler.requests if b.get("name") == "000-start.form")
        assert json.loads(form_body["content"])["id"] == "000-start-20251023T224512Z"

    async def test_reuses_existing_project(self):
        modeler = FakeModeler(projects=[{"id": "existing", "name": "Manual Service Models"}])
        result = await _engine(modeler, []).transfer(_bundle())
        assert result.project_id == "existing"
        assert not any(p.endswith("/projects") for m, p, b in modeler.requests)

    async def test_partial_success(self):
        modeler = FakeModeler(upload_failures={"000-start.form": 3})
        result = await _engine(modeler, []).transfer(_bundle())
        assert not result.success
        data = result.to_dict()
        assert data["status"] == "partial_success"
        assert data["filesUploaded"] == 2
        assert data["filesFailed"] == 1
        assert data["uploadDetails"]["failed"][0]["name"] == "000-start.form"

    async def test_invalid_bundle(self):
        bundle = _bundle()
        bundle.main_xml = ""
        with pytest.raises(InvalidBundle):
            await _engine(FakeModeler(), []).transfer(bundle)

    async def test_authentication_retried_then_raised(self):
        sleeps: list[float] = []

        async def record(seconds: float) -> None:
            sleeps.append(seconds)

        client = CamundaModelerClient(
            "id", "bad", OAUTH_URL, "api.test", API_URL,
            transport=httpx.MockTransport(lambda r: httpx.Response(400, text="invalid_client")),
        )
        engine = TransferEngine(client, max_attempts=3, backoff_seconds=1.0, sleep=record)
        with pytest.raises(AuthenticationError):
            await engine.transfer(_bundle())
        assert sleeps == [1.0, 2.0]
