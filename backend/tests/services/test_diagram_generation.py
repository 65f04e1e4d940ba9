"""Tests for generating original diagrams from master-data steps.

These tests do NOT require a database.
"""

from __future__ import annotations

from unittest.mock import AsyncMock

import pytest
from conftest import GENERATED_AT, FakeRepository, make_service, make_step

from manual_service.exceptions import (
    MalformedInput,
    NoMasterData,
    ServiceNotFound,
    TextGenerationError,
)
from manual_service.services import bpmn_document as bpmn
from manual_service.services.diagram_generation import (
    DiagramGenerator,
    GenerationStep,
    extract_bpmn_xml,
    fallback_main_xml,
    fallback_subprocess_xml,
    generate_diagrams,
    order_steps,
)
from manual_service.services.pipeline import generate_bundle

DRAFTED_SUB = """\
Here you go:
```xml
<?xml version="1.0" encoding="UTF-8"?>
<bpmn:definitions xmlns:bpmn="http://www.omg.org/spec/BPMN/20100524/MODEL" id="Defs_1" targetNamespace="http://camunda.org/examples">
  <bpmn:process id="S-100" name="Check request" isExecutable="true">
    <bpmn:startEvent id="Start_1"/>
    <bpmn:userTask id="Task_1" name="Read the form"/>
    <bpmn:endEvent id="End_1"/>
  </bpmn:process>
</bpmn:definitions>
```
"""


def _steps() -> list[GenerationStep]:
    return [
        GenerationStep("S-100", "Check request", process_step=1, candidate_group="Desk"),
        GenerationStep("S-200", "Fulfil order", process_step=2),
    ]


def _targets(doc, element_id):
    return [f.target.element_id for f in bpmn.outgoing_targets(doc, element_id)]


class TestOrderSteps:
    def test_dedupes_and_puts_first_steps_first(self):
        rows = [
            make_step("S-300", "Close", 3),
            make_step("S-200", "Fulfil order", 1),
            make_step("S-100", "Check request", 1),
            make_step("S-100", "Check request again", 1),
            make_step("S-400", "Archive", None),
        ]
        ordered = order_steps(rows)
        assert [s.step_key for s in ordered] == ["S-100", "S-200", "S-300", "S-400"]
        assert ordered[0].name == "Check request"
        assert ordered[0].candidate_group is None


class TestFallbackMain:
    def test_sequential_call_activities(self):
        xml = fallback_main_xml("Order Handling", "SVC-1", _steps())
        assert not bpmn.is_likely_corrupted(xml)
        doc = bpmn.parse(xml)
        assert doc.process_id == "Manual_Service_ID_SVC-1"

        calls = bpmn.find_elements_ordered(doc, (bpmn.CALL_ACTIVITY,))
        assert [c.element_id for c in calls] == ["Process_Step_ID_S-100", "Process_Step_ID_S-200"]
        assert [c.called_element for c in calls] == ["Process_Sub_S-100", "Process_Sub_S-200"]

        assert _targets(doc, "StartEvent_1") == ["Process_Step_ID_S-100"]
        assert _targets(doc, "Process_Step_ID_S-100") == ["Process_Step_ID_S-200"]
        assert _targets(doc, "Process_Step_ID_S-200") == ["EndEvent_1"]

    def test_every_node_and_flow_has_diagram_shape(self):
        doc = bpmn.parse(fallback_main_xml("Order Handling", "SVC-1", _steps()))
        drawn = {
            el.get("bpmnElement")
            for el in doc.root.iter(f"{{{bpmn.BPMNDI_NS}}}BPMNShape", f"{{{bpmn.BPMNDI_NS}}}BPMNEdge")
        }
        expected = {e.element_id for e in doc.elements}
        assert expected <= drawn

    def test_several_first_steps_fan_out(self):
        steps = [
            GenerationStep("S-100", "Check request", process_step=1),
            GenerationStep("S-150", "Check stock", process_step=1),
            GenerationStep("S-200", "Fulfil order", process_step=2),
        ]
        doc = bpmn.parse(fallback_main_xml("Order Handling", "SVC-1", steps))
        assert _targets(doc, "StartEvent_1") == ["Gateway_Split"]
        assert _targets(doc, "Gateway_Split") == ["Process_Step_ID_S-100", "Process_Step_ID_S-150"]
        assert _targets(doc, "Process_Step_ID_S-150") == ["Gateway_Join"]
        assert _targets(doc, "Gateway_Join") == ["Process_Step_ID_S-200"]

    def test_names_are_escaped(self):
        steps = [GenerationStep("S-1", 'Check "A" & <B>', process_step=1)]
        doc = bpmn.parse(fallback_main_xml("R&D", "SVC-1", steps))
        assert doc.element("Process_Step_ID_S-1").get("name") == 'Check "A" & <B>'
        assert doc.process.get("name") == "R&D"


class TestFallbackSubprocess:
    def test_single_user_task_with_candidate_group(self):
        xml = fallback_subprocess_xml(_steps()[0])
        doc = bpmn.parse(xml)
        assert doc.process_id == "Process_Sub_S-100"
        assert doc.process.get("name") == "Check request"
        (task,) = bpmn.find_elements_ordered(doc, (bpmn.USER_TASK,))
        assert task.name == "Process Activities"
        assert 'key="candidateGroups" value="Desk"' in xml

    def test_no_headers_without_group(self):
        assert "taskHeaders" not in fallback_subprocess_xml(_steps()[1])


class TestExtractXml:
    def test_strips_fences_and_prose(self):
        xml = extract_bpmn_xml(DRAFTED_SUB)
        assert xml.startswith("<?xml")
        assert xml.endswith("</bpmn:definitions>")

    def test_rejects_prose(self):
        with pytest.raises(MalformedInput):
            extract_bpmn_xml("I cannot help with that.")


class TestDiagramGenerator:
    async def test_stores_originals_and_keeps_edits(self, repository):
        service = repository.services["SVC-1"]
        existing = repository.subprocesses[service.id][0]
        existing.edited_bpmn_xml = "<edited/>"

        summary = await DiagramGenerator(repository).generate("SVC-1")

        assert summary.main_source == "fallback"
        assert summary.subprocesses_created == 1
        assert summary.subprocesses_updated == 1
        assert summary.fallback_steps == ["S-100", "S-200"]
        assert bpmn.parse(service.original_bpmn_xml).process_id == "Manual_Service_ID_SVC-1"

        subs = {s.step_external_id: s for s in repository.subprocesses[service.id]}
        assert set(subs) == {"S-100", "S-200"}
        assert subs["S-200"] is existing
        assert existing.edited_bpmn_xml == "<edited/>"
        assert bpmn.parse(subs["S-100"].original_bpmn_xml).process_id == "Process_Sub_S-100"

    async def test_generated_diagrams_bundle_cleanly(self, repository, blob_store):
        service = repository.services["SVC-1"]
        repository.subprocesses[service.id] = []
        await DiagramGenerator(repository).generate("SVC-1")

        bundle = await generate_bundle(repository, blob_store, "SVC-1", now=GENERATED_AT)
        assert {s.step_key for s in bundle.subprocesses} == {"S-100", "S-200"}
        assert not any("no subprocess file" in w for w in bundle.warnings)
        assert [f.node_id for f in bundle.forms] == ["StartEvent_1"]

    async def test_drafted_subprocess_is_renamed(self, repository):
        generator = AsyncMock()
        generator.complete.side_effect = [DRAFTED_SUB, "no xml here", "still none"]

        summary = await DiagramGenerator(repository, generator).generate("SVC-1")

        assert summary.fallback_steps == ["S-200"]
        assert summary.main_source == "fallback"
        service = repository.services["SVC-1"]
        subs = {s.step_external_id: s for s in repository.subprocesses[service.id]}
        drafted = bpmn.parse(subs["S-100"].original_bpmn_xml)
        assert drafted.process_id == "Process_Sub_S-100"
        assert drafted.has_id("Task_1")

    async def test_collaborator_failure_falls_back(self, repository):
        generator = AsyncMock()
        generator.complete.side_effect = TextGenerationError("Text generation failed: 529")
        summary = await DiagramGenerator(repository, generator).generate("SVC-1")
        assert summary.fallback_steps == ["S-100", "S-200"]
        assert summary.main_source == "fallback"

    async def test_corrupted_draft_is_rejected(self, repository):
        generator = AsyncMock()
        generator.complete.return_value = DRAFTED_SUB.replace("bpmn:startEvent", "bpmn:startevent")
        summary = await DiagramGenerator(repository, generator).generate("SVC-1")
        assert summary.fallback_steps == ["S-100", "S-200"]

    async def test_unknown_service(self):
        with pytest.raises(ServiceNotFound):
            await DiagramGenerator(FakeRepository()).generate("SVC-1")

    async def test_no_master_data(self):
        repo = FakeRepository(services=[make_service()])
        with pytest.raises(NoMasterData):
            await DiagramGenerator(repo).generate("SVC-1")


class TestGenerateDiagrams:
    async def test_records_job(self, repository):
        await generate_diagrams(repository, "SVC-1")
        (job,) = repository.jobs.values()
        assert job["kind"] == "generate"
        assert job["status"] == "completed"
        assert job["detail"]["subprocessesCreated"] == 1

    async def test_failure_marks_job(self):
        repo = FakeRepository(services=[make_service()])
        with pytest.raises(NoMasterData):
            await generate_diagrams(repo, "SVC-1")
        (job,) = repo.jobs.values()
        assert job["status"] == "failed"
