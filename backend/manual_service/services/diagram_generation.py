"""Generation of the original main and subprocess diagrams from master data.

One subprocess per master-data step and one main process that calls them in
order. Steps with ``process_step == 1`` start the process; several of them
are fanned out behind an inclusive split and join.

Drafting through the text-generation collaborator is optional. A draft that
fails, is not BPMN, or looks case-corrupted is replaced by the deterministic
layout built here, so generation never fails on the collaborator.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field

from lxml import etree

from manual_service.core.logging_config import log_context
from manual_service.core.metrics import diagram_generations_total
from manual_service.exceptions import (
    ElementIdConflict,
    MalformedInput,
    NoMasterData,
    ServiceNotFound,
    TextGenerationError,
)
from manual_service.services import bpmn_document as bpmn

logger = logging.getLogger(__name__)

DC_NS = "http://www.omg.org/spec/DD/20100524/DC"
DI_NS = "http://www.omg.org/spec/DD/20100524/DI"
TARGET_NAMESPACE = "http://camunda.org/examples"

NSMAP = {
    "xsi": bpmn.XSI_NS,
    "bpmn": bpmn.BPMN_NS,
    "bpmndi": bpmn.BPMNDI_NS,
    "dc": DC_NS,
    "di": DI_NS,
    "zeebe": bpmn.ZEEBE_NS,
}

TASK_SIZE = (100, 80)
EVENT_SIZE = (36, 36)
GATEWAY_SIZE = (50, 50)
LANE_Y = 80  # top of a task on the main line; events and gateways centre on it
BRANCH_SPACING = 120

BPMN_SYSTEM_PROMPT = (
    "You are a BPMN 2.0 generator for Camunda 8. Return only well-formed BPMN 2.0 XML, "
    "with no markdown fences and no commentary. Use the bpmn, bpmndi, dc, di and zeebe "
    "(http://camunda.org/schema/zeebe/1.0) namespaces, never the Camunda 7 namespace. "
    "Always include a complete bpmndi:BPMNDiagram with a shape for every task, gateway "
    "and event and an edge for every sequence flow. Set isExecutable=\"true\" on the "
    "process and keep ids unique and concise."
)

_FENCE_RE = re.compile(r"```(?:xml)?")


@dataclass
class GenerationStep:
    step_key: str
    name: str
    step_type: str | None = None
    candidate_group: str | None = None
    process_step: int | None = None


@dataclass
class GenerationSummary:
    service_key: str
    main_source: str = "fallback"  # drafted | fallback
    subprocesses_created: int = 0
    subprocesses_updated: int = 0
    fallback_steps: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "serviceKey": self.service_key,
            "mainSource": self.main_source,
            "subprocessesCreated": self.subprocesses_created,
            "subprocessesUpdated": self.subprocesses_updated,
            "fallbackSteps": self.fallback_steps,
        }


def order_steps(rows) -> list[GenerationStep]:
    """One entry per step key, first steps leading, then by process step and key."""
    steps: dict[str, GenerationStep] = {}
    for row in rows:
        key = row.step_external_id
        if not key or key in steps:
            continue
        steps[key] = GenerationStep(
            step_key=key,
            name=(row.step_name or key).strip(),
            step_type=getattr(row, "step_type", None),
            candidate_group=getattr(row, "candidate_group", None),
            process_step=row.process_step,
        )
    return sorted(
        steps.values(),
        key=lambda s: (
            s.process_step != 1,
            s.process_step is None,
            s.process_step or 0,
            s.step_key,
        ),
    )


# ---------------------------------------------------------------------------
# Layout
# ---------------------------------------------------------------------------


@dataclass
class _Node:
    node_id: str
    tag: str
    name: str | None
    x: int
    y: int
    width: int
    height: int
    called_process: str | None = None
    candidate_group: str | None = None
    incoming: list[str] = field(default_factory=list)
    outgoing: list[str] = field(default_factory=list)

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def middle(self) -> int:
        return self.y + self.height // 2


@dataclass
class _Flow:
    flow_id: str
    source: _Node
    target: _Node

    def waypoints(self) -> list[tuple[int, int]]:
        start = (self.source.right, self.source.middle)
        end = (self.target.x, self.target.middle)
        if start[1] == end[1]:
            return [start, end]
        bend = (self.source.right + self.target.x) // 2
        return [start, (bend, start[1]), (bend, end[1]), end]


class _Layout:
    def __init__(self) -> None:
        self.nodes: list[_Node] = []
        self.flows: list[_Flow] = []

    def event(self, tag: str, node_id: str, name: str, x: int) -> _Node:
        width, height = EVENT_SIZE
        return self._add(_Node(node_id, tag, name, x, LANE_Y + 40 - height // 2, width, height))

    def gateway(self, node_id: str, name: str, x: int) -> _Node:
        width, height = GATEWAY_SIZE
        node = _Node(node_id, "inclusiveGateway", name, x, LANE_Y + 40 - height // 2, width, height)
        return self._add(node)

    def activity(self, tag: str, node_id: str, name: str, x: int, y: int = LANE_Y, **extra) -> _Node:
        width, height = TASK_SIZE
        return self._add(_Node(node_id, tag, name, x, y, width, height, **extra))

    def connect(self, source: _Node, target: _Node) -> _Flow:
        flow = _Flow(f"Flow_{len(self.flows) + 1}", source, target)
        source.outgoing.append(flow.flow_id)
        target.incoming.append(flow.flow_id)
        self.flows.append(flow)
        return flow

    def _add(self, node: _Node) -> _Node:
        self.nodes.append(node)
        return node

    def to_xml(self, definitions_id: str, process_id: str, process_name: str) -> str:
        root = etree.Element(_q(bpmn.BPMN_NS, "definitions"), nsmap=NSMAP)
        root.set("id", definitions_id)
        root.set("targetNamespace", TARGET_NAMESPACE)

        process = etree.SubElement(root, _q(bpmn.BPMN_NS, "process"))
        process.set("id", process_id)
        process.set("name", process_name)
        process.set("isExecutable", "true")
        for node in self.nodes:
            _node_element(process, node)
        for flow in self.flows:
            el = etree.SubElement(process, _q(bpmn.BPMN_NS, "sequenceFlow"))
            el.set("id", flow.flow_id)
            el.set("sourceRef", flow.source.node_id)
            el.set("targetRef", flow.target.node_id)

        diagram = etree.SubElement(root, _q(bpmn.BPMNDI_NS, "BPMNDiagram"))
        diagram.set("id", f"BPMNDiagram_{process_id}")
        plane = etree.SubElement(diagram, _q(bpmn.BPMNDI_NS, "BPMNPlane"))
        plane.set("id", f"BPMNPlane_{process_id}")
        plane.set("bpmnElement", process_id)
        for node in self.nodes:
            shape = etree.SubElement(plane, _q(bpmn.BPMNDI_NS, "BPMNShape"))
            shape.set("id", f"{node.node_id}_di")
            shape.set("bpmnElement", node.node_id)
            bounds = etree.SubElement(shape, _q(DC_NS, "Bounds"))
            for attr, value in (("x", node.x), ("y", node.y), ("width", node.width), ("height", node.height)):
                bounds.set(attr, str(value))
        for flow in self.flows:
            edge = etree.SubElement(plane, _q(bpmn.BPMNDI_NS, "BPMNEdge"))
            edge.set("id", f"{flow.flow_id}_di")
            edge.set("bpmnElement", flow.flow_id)
            for x, y in flow.waypoints():
                point = etree.SubElement(edge, _q(DI_NS, "waypoint"))
                point.set("x", str(x))
                point.set("y", str(y))

        return etree.tostring(
            root, pretty_print=True, xml_declaration=True, encoding="UTF-8"
        ).decode("utf-8")


def _q(namespace: str, localname: str) -> str:
    return f"{{{namespace}}}{localname}"


def _node_element(process: etree._Element, node: _Node) -> None:
    el = etree.SubElement(process, _q(bpmn.BPMN_NS, node.tag))
    el.set("id", node.node_id)
    if node.name:
        el.set("name", node.name)

    if node.called_process or node.candidate_group:
        block = etree.SubElement(el, _q(bpmn.BPMN_NS, "extensionElements"))
        if node.called_process:
            called = etree.SubElement(block, _q(bpmn.ZEEBE_NS, "calledElement"))
            called.set("processId", node.called_process)
            called.set("propagateAllChildVariables", "false")
        if node.candidate_group:
            headers = etree.SubElement(block, _q(bpmn.ZEEBE_NS, "taskHeaders"))
            header = etree.SubElement(headers, _q(bpmn.ZEEBE_NS, "header"))
            header.set("key", "candidateGroups")
            header.set("value", node.candidate_group)

    for flow_id in node.incoming:
        etree.SubElement(el, _q(bpmn.BPMN_NS, "incoming")).text = flow_id
    for flow_id in node.outgoing:
        etree.SubElement(el, _q(bpmn.BPMN_NS, "outgoing")).text = flow_id


# ---------------------------------------------------------------------------
# Deterministic diagrams
# ---------------------------------------------------------------------------


def fallback_main_xml(service_name: str, service_key: str, steps: list[GenerationStep]) -> str:
    """Main process with one call activity per step, each calling ``Process_Sub_<key>``."""
    layout = _Layout()
    previous = layout.event("startEvent", "StartEvent_1", "Start", 152)
    cursor = previous.right + 60

    first = [s for s in steps if s.process_step == 1]
    sequential = steps
    if len(first) > 1:
        split = layout.gateway("Gateway_Split", "Split", cursor)
        layout.connect(previous, split)
        cursor = split.right + 60
        branches = [
            layout.activity(
                bpmn.CALL_ACTIVITY,
                bpmn.step_element_id(step.step_key),
                step.name,
                cursor,
                LANE_Y + index * BRANCH_SPACING,
                called_process=bpmn.subprocess_process_id(step.step_key),
            )
            for index, step in enumerate(first)
        ]
        for branch in branches:
            layout.connect(split, branch)
        cursor += TASK_SIZE[0] + 60
        join = layout.gateway("Gateway_Join", "Join", cursor)
        for branch in branches:
            layout.connect(branch, join)
        previous = join
        cursor = join.right + 60
        sequential = [s for s in steps if s.process_step != 1]

    for step in sequential:
        node = layout.activity(
            bpmn.CALL_ACTIVITY,
            bpmn.step_element_id(step.step_key),
            step.name,
            cursor,
            called_process=bpmn.subprocess_process_id(step.step_key),
        )
        layout.connect(previous, node)
        previous = node
        cursor = node.right + 100

    end = layout.event("endEvent", "EndEvent_1", "End", cursor)
    layout.connect(previous, end)
    return layout.to_xml(
        definitions_id=f"Definitions_Main_{service_key}",
        process_id=bpmn.main_process_id(service_key),
        process_name=service_name,
    )


def fallback_subprocess_xml(step: GenerationStep) -> str:
    """Start, one user task for the step's activities, end."""
    layout = _Layout()
    start = layout.event("startEvent", f"StartEvent_{step.step_key}", "Start", 152)
    task = layout.activity(
        bpmn.USER_TASK,
        f"Activity_{step.step_key}",
        "Process Activities",
        start.right + 60,
        candidate_group=step.candidate_group,
    )
    end = layout.event("endEvent", f"EndEvent_{step.step_key}", "End", task.right + 60)
    layout.connect(start, task)
    layout.connect(task, end)
    return layout.to_xml(
        definitions_id=f"Definitions_Sub_{step.step_key}",
        process_id=bpmn.subprocess_process_id(step.step_key),
        process_name=step.name,
    )


# ---------------------------------------------------------------------------
# Drafting
# ---------------------------------------------------------------------------


def extract_bpmn_xml(text: str) -> str:
    """Strip markdown fences and prose around a drafted BPMN document."""
    cleaned = _FENCE_RE.sub("", text or "").strip()
    start = cleaned.find("<?xml")
    if start < 0:
        start = cleaned.find("<")
    end = cleaned.rfind(">")
    if start < 0 or end < start or "definitions" not in cleaned:
        raise MalformedInput("Generated text contains no BPMN definitions")
    return cleaned[start:end + 1]


def _subprocess_prompt(step: GenerationStep) -> str:
    return (
        "Create a BPMN subprocess for the following step with 3 to 9 major actions.\n\n"
        f"Step name: {step.name}\n"
        f"Step id: {step.step_key}\n"
        f"Type: {step.step_type or 'regular'}\n"
        f"Candidate group: {step.candidate_group or 'None'}\n\n"
        f'Use process id="{bpmn.subprocess_process_id(step.step_key)}" and name="{step.name}". '
        "Default to bpmn:userTask unless the work is clearly automated. Include one start "
        "event and one end event and lay tasks out left to right."
    )


def _main_prompt(service, steps: list[GenerationStep]) -> str:
    listing = "\n".join(
        f"{index}. {step.name} -> calledElement {bpmn.subprocess_process_id(step.step_key)}"
        f"{' [FIRST STEP]' if step.process_step == 1 else ''}"
        for index, step in enumerate(steps, start=1)
    )
    return (
        "Create the main BPMN process of a manual service. Every step is a bpmn:callActivity "
        "with a zeebe:calledElement processId as listed, in execution order.\n\n"
        f"Service name: {service.name}\n"
        f"Performing team: {getattr(service, 'performing_team', None) or 'None'}\n"
        f"Performer org: {getattr(service, 'performer_org', None) or 'None'}\n\n"
        f"Steps:\n{listing}\n\n"
        f'Use process id="{bpmn.main_process_id(service.external_id)}" name="{service.name}". '
        "Steps marked [FIRST STEP] follow the start event directly; when there are several, "
        "fan them out behind an inclusive gateway and join them again."
    )


class DiagramGenerator:
    """Builds and stores the original diagrams of one service."""

    def __init__(self, repository, text_generator=None):
        self.repository = repository
        self.text_generator = text_generator

    async def generate(self, service_key: str) -> GenerationSummary:
        service = await self.repository.get_service(service_key)
        if service is None:
            raise ServiceNotFound(service_key)
        steps = order_steps(await self.repository.list_mds_steps(service_key))
        if not steps:
            raise NoMasterData(service_key)

        summary = GenerationSummary(service_key=service_key)
        for step in steps:
            xml = await self._draft(
                _subprocess_prompt(step), bpmn.subprocess_process_id(step.step_key)
            )
            source = "drafted"
            if xml is None:
                xml = fallback_subprocess_xml(step)
                source = "fallback"
                summary.fallback_steps.append(step.step_key)
            diagram_generations_total.labels(kind="subprocess", source=source).inc()

            created = await self.repository.upsert_subprocess(service.id, step.step_key, step.name, xml)
            if created:
                summary.subprocesses_created += 1
            else:
                summary.subprocesses_updated += 1

        main_xml = await self._draft(
            _main_prompt(service, steps), bpmn.main_process_id(service_key)
        )
        if main_xml is None:
            main_xml = fallback_main_xml(service.name, service_key, steps)
        else:
            summary.main_source = "drafted"
        diagram_generations_total.labels(kind="main", source=summary.main_source).inc()
        await self.repository.save_original_diagram(service_key, main_xml)

        logger.info(
            "Generated diagrams: main %s, %d subprocesses created, %d updated, %d fallbacks",
            summary.main_source,
            summary.subprocesses_created,
            summary.subprocesses_updated,
            len(summary.fallback_steps),
        )
        return summary

    async def _draft(self, prompt: str, process_id: str) -> str | None:
        if self.text_generator is None:
            return None
        try:
            raw = await self.text_generator.complete(BPMN_SYSTEM_PROMPT, prompt)
            xml = extract_bpmn_xml(raw)
            if bpmn.is_likely_corrupted(xml):
                raise MalformedInput("Drafted BPMN has lowercased element or attribute names")
            doc = bpmn.parse(xml)
        except (TextGenerationError, MalformedInput) as exc:
            logger.warning("Drafting %s failed, using the built-in layout: %s", process_id, exc)
            return None

        if doc.process_id is None:
            logger.warning("Drafted %s has no process; using the built-in layout", process_id)
            return None
        try:
            bpmn.rewrite_element_id(doc, doc.process_id, process_id)
        except ElementIdConflict as exc:
            logger.warning("Drafted %s kept its own process id: %s", process_id, exc)
        return bpmn.serialize(doc)


async def generate_diagrams(repository, service_key: str, text_generator=None) -> GenerationSummary:
    job_id = await repository.create_job(service_key, "generate")
    with log_context(service_key=service_key, job_id=job_id):
        try:
            summary = await DiagramGenerator(repository, text_generator).generate(service_key)
        except Exception as exc:
            await repository.finish_job(job_id, "failed", error=str(exc))
            raise
        await repository.finish_job(job_id, "completed", detail=summary.to_dict())
    return summary
