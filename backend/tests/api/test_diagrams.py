"""Integration tests for the diagram read/save endpoints.

These tests do NOT require a database.
"""

from __future__ import annotations

from conftest import MAIN_BPMN, SUB_BPMN, SUBPROCESS_ID

from manual_service.services.event_bus import event_bus


class TestGetDiagram:
    async def test_original(self, client):
        resp = await client.get("/api/v1/services/SVC-1/diagram")
        assert resp.status_code == 200
        data = resp.json()
        assert data["source"] == "original"
        assert data["bpmn_xml"] == MAIN_BPMN
        assert data["recovered"] is False

    async def test_edited_preferred(self, client, repository):
        edited = MAIN_BPMN.replace("Order received", "Order in")
        repository.services["SVC-1"].edited_bpmn_xml = edited
        data = (await client.get("/api/v1/services/SVC-1/diagram")).json()
        assert data["source"] == "edited"
        assert data["bpmn_xml"] == edited

    async def test_wrapped_edited_is_repaired(self, client, repository):
        inner = MAIN_BPMN.split("\n", 1)[1]
        repository.services["SVC-1"].edited_bpmn_xml = f"<html><body>{inner}</body></html>"
        data = (await client.get("/api/v1/services/SVC-1/diagram")).json()
        assert data["source"] == "edited-recovered"
        assert data["recovered"] is True
        assert repository.services["SVC-1"].edited_bpmn_xml == data["bpmn_xml"]

    async def test_corrupted_edited_is_cleared(self, client, repository):
        corrupted = MAIN_BPMN.replace("bpmn:userTask", "bpmn:usertask")
        repository.services["SVC-1"].edited_bpmn_xml = corrupted
        data = (await client.get("/api/v1/services/SVC-1/diagram")).json()
        assert data["source"] == "original"
        assert data["recovered"] is True
        assert repository.services["SVC-1"].edited_bpmn_xml is None

    async def test_unknown_service(self, client):
        resp = await client.get("/api/v1/services/NOPE/diagram")
        assert resp.status_code == 404

    async def test_no_diagram(self, client, repository):
        repository.services["SVC-1"].original_bpmn_xml = None
        resp = await client.get("/api/v1/services/SVC-1/diagram")
        assert resp.status_code == 404
        assert "SVC-1" in resp.json()["detail"]


class TestSaveDiagram:
    async def test_saves_and_notifies_other_origins(self, client, repository):
        other_sub, other_queue = event_bus.subscribe("SVC-1", origin="tab-b")
        own_sub, own_queue = event_bus.subscribe("SVC-1", origin="tab-a")
        try:
            resp = await client.put(
                "/api/v1/services/SVC-1/diagram",
                json={"bpmn_xml": MAIN_BPMN, "origin": "tab-a"},
            )
            assert resp.status_code == 200
            assert resp.json()["source"] == "edited"
            assert repository.services["SVC-1"].edited_bpmn_xml == MAIN_BPMN

            event = other_queue.get_nowait()
            assert event["type"] == "diagram.saved"
            assert event["payload"]["length"] == len(MAIN_BPMN)
            assert own_queue.empty()
        finally:
            event_bus.unsubscribe(other_sub)
            event_bus.unsubscribe(own_sub)

    async def test_strips_markup_wrapper(self, client, repository):
        inner = MAIN_BPMN.split("\n", 1)[1]
        resp = await client.put(
            "/api/v1/services/SVC-1/diagram",
            json={"bpmn_xml": f"<html><body>{inner}</body></html>"},
        )
        assert resp.status_code == 200
        assert repository.services["SVC-1"].edited_bpmn_xml.startswith("<bpmn:definitions")

    async def test_rejects_lowercased_names(self, client, repository):
        resp = await client.put(
            "/api/v1/services/SVC-1/diagram",
            json={"bpmn_xml": MAIN_BPMN.replace("bpmn:userTask", "bpmn:usertask")},
        )
        assert resp.status_code == 400
        assert repository.services["SVC-1"].edited_bpmn_xml is None

    async def test_rejects_malformed(self, client):
        resp = await client.put(
            "/api/v1/services/SVC-1/diagram", json={"bpmn_xml": "<bpmn:definitions"}
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "MalformedInput"

    async def test_unknown_service(self, client):
        resp = await client.put("/api/v1/services/NOPE/diagram", json={"bpmn_xml": MAIN_BPMN})
        assert resp.status_code == 404


class TestGenerateDiagrams:
    async def test_generates_from_master_data(self, client, repository):
        resp = await client.post("/api/v1/services/SVC-1/diagram/generate")
        assert resp.status_code == 200
        data = resp.json()
        assert data["mainSource"] == "fallback"
        assert data["subprocessesCreated"] == 1
        assert data["subprocessesUpdated"] == 1
        assert "Process_Sub_S-100" in repository.services["SVC-1"].original_bpmn_xml

    async def test_draft_needs_text_generation(self, client):
        resp = await client.post("/api/v1/services/SVC-1/diagram/generate", json={"draft": True})
        assert resp.status_code == 503

    async def test_unknown_service(self, client):
        resp = await client.post("/api/v1/services/NOPE/diagram/generate")
        assert resp.status_code == 404


class TestSubprocessDiagrams:
    def _url(self, sub_id: str = SUBPROCESS_ID) -> str:
        return f"/api/v1/services/SVC-1/subprocesses/{sub_id}/diagram"

    async def test_list(self, client):
        resp = await client.get("/api/v1/services/SVC-1/subprocesses")
        assert resp.status_code == 200
        assert resp.json() == [
            {"id": SUBPROCESS_ID, "name": "Fulfil order", "step_external_id": "S-200", "edited": False}
        ]

    async def test_get_original(self, client):
        data = (await client.get(self._url())).json()
        assert data["source"] == "original"
        assert data["bpmn_xml"] == SUB_BPMN
        assert data["step_external_id"] == "S-200"

    async def test_corrupted_edited_is_cleared(self, client, repository):
        service = repository.services["SVC-1"]
        sub = repository.subprocesses[service.id][0]
        sub.edited_bpmn_xml = SUB_BPMN.replace("bpmn:startEvent", "bpmn:startevent")
        data = (await client.get(self._url())).json()
        assert data["source"] == "original"
        assert data["recovered"] is True
        assert sub.edited_bpmn_xml is None

    async def test_save_and_notify(self, client, repository):
        sub_id, queue = event_bus.subscribe(SUBPROCESS_ID, origin="tab-b")
        try:
            resp = await client.put(self._url(), json={"bpmn_xml": SUB_BPMN, "origin": "tab-a"})
            assert resp.status_code == 200
            assert resp.json()["source"] == "edited"
            service = repository.services["SVC-1"]
            assert repository.subprocesses[service.id][0].edited_bpmn_xml == SUB_BPMN
            assert queue.get_nowait()["type"] == "subprocess.saved"
        finally:
            event_bus.unsubscribe(sub_id)

    async def test_save_rejects_malformed(self, client):
        resp = await client.put(self._url(), json={"bpmn_xml": "<nope"})
        assert resp.status_code == 400

    async def test_unknown_subprocess(self, client):
        resp = await client.get(self._url("00000000-0000-0000-0000-000000000000"))
        assert resp.status_code == 404

    async def test_invalid_id(self, client):
        resp = await client.get(self._url("not-a-uuid"))
        assert resp.status_code == 400
