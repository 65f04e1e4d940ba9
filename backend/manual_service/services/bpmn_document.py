"""Parse, query and minimally mutate BPMN 2.0 XML for bundle generation.

Parsing is two-stage: ``defusedxml`` rejects malformed text and entity
tricks, then ``lxml`` builds the mutable tree. lxml keeps namespace prefixes,
comments, attribute order and inter-element whitespace, so serialising a
document reproduces its markup byte for byte outside the elements we touch.
The XML declaration is carried over verbatim.

Mutations are local to one element. Callers decide whether a failed mutation
aborts the document or is skipped.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import defusedxml.ElementTree as ET  # noqa: N817
from defusedxml import DefusedXmlException
from lxml import etree

from manual_service.exceptions import (
    CorruptedDiagram,
    ElementIdConflict,
    ElementNotFound,
    MalformedInput,
)

BPMN_NS = "http://www.omg.org/spec/BPMN/20100524/MODEL"
BPMNDI_NS = "http://www.omg.org/spec/BPMN/20100524/DI"
ZEEBE_NS = "http://camunda.org/schema/zeebe/1.0"
XSI_NS = "http://www.w3.org/2001/XMLSchema-instance"

START_EVENT = "startEvent"
USER_TASK = "userTask"
CALL_ACTIVITY = "callActivity"

# Fixed traversal order: start events first, then user tasks
FORM_BEARING_TYPES: tuple[str, ...] = (START_EVENT, USER_TASK)

FLOW_ELEMENT_TYPES = frozenset(
    {
        "startEvent",
        "endEvent",
        "intermediateCatchEvent",
        "intermediateThrowEvent",
        "boundaryEvent",
        "task",
        "userTask",
        "manualTask",
        "serviceTask",
        "scriptTask",
        "sendTask",
        "receiveTask",
        "businessRuleTask",
        "callActivity",
        "subProcess",
        "exclusiveGateway",
        "inclusiveGateway",
        "parallelGateway",
        "eventBasedGateway",
        "sequenceFlow",
    }
)

GATEWAY_KINDS = {
    "exclusiveGateway": "XOR",
    "inclusiveGateway": "OR",
    "parallelGateway": "AND",
}

MAIN_PROCESS_ID_PREFIX = "Manual_Service_ID_"
STEP_ID_PREFIX = "Process_Step_ID_"
SUBPROCESS_ID_PREFIX = "Process_Sub_"
_SUBPROCESS_ID_RE = re.compile(r"^Process_Sub_(.+)$")
_STEP_ID_RE = re.compile(r"^Process_Step_ID_(.+)$")

# Attributes whose value is another element's id
_ID_REF_ATTRIBUTES = ("sourceRef", "targetRef", "bpmnElement", "default", "attachedToRef", "processRef")
# Elements whose text content is another element's id
_ID_REF_TEXT_TAGS = frozenset({"incoming", "outgoing", "flowNodeRef", "sourceRef", "targetRef"})

_INDENT_STEP = "  "

# ---------------------------------------------------------------------------
# Corruption heuristics
# ---------------------------------------------------------------------------

_WRAPPER_MARKERS = ("<html", "<body")

# camelCase names a lossy HTML round-trip renders fully lowercase
_CAMEL_CASE_TAGS = (
    "startEvent",
    "endEvent",
    "userTask",
    "callActivity",
    "sequenceFlow",
    "exclusiveGateway",
    "inclusiveGateway",
    "parallelGateway",
    "extensionElements",
    "laneSet",
    "flowNodeRef",
    "conditionExpression",
    "BPMNDiagram",
    "BPMNPlane",
    "BPMNShape",
    "BPMNEdge",
    "BPMNLabel",
    "Bounds",
    "formDefinition",
    "calledElement",
)
_CAMEL_CASE_ATTRIBUTES = (
    "targetNamespace",
    "exporterVersion",
    "isExecutable",
    "sourceRef",
    "targetRef",
    "bpmnElement",
    "processId",
    "formId",
    "bindingType",
)

_LOWERED_TAG_RE = re.compile(
    r"<(?:[A-Za-z_][\w.-]*:)?(?:%s)[\s/>]" % "|".join(t.lower() for t in _CAMEL_CASE_TAGS)
)
_LOWERED_ATTRIBUTE_RE = re.compile(
    r"\s(?:[A-Za-z_][\w.-]*:)?(?:%s)\s*=" % "|".join(a.lower() for a in _CAMEL_CASE_ATTRIBUTES)
)

# Same prefix on the opening and closing tag; the prefix group is always set
_DEFINITIONS_RE = re.compile(
    r"<(?P<prefix>(?:[A-Za-z_][\w.-]*:)?)definitions\b[\s\S]*</(?P=prefix)definitions\s*>"
)
_DECLARATION_RE = re.compile(r"^\s*(<\?xml[^>]*\?>)(\s*)")

_LXML_PARSER = etree.XMLParser(resolve_entities=False, no_network=True, remove_blank_text=False)


@dataclass
class FlowElement:
    """Read-only snapshot of one BPMN flow element."""

    element_id: str
    element_type: str
    name: str | None
    form_id: str | None = None
    called_element: str | None = None

    @property
    def display_name(self) -> str:
        return self.name or self.element_id


@dataclass
class OutgoingFlow:
    flow_id: str
    target: FlowElement | None


class ProcessDocument:
    """One parsed BPMN 2.0 document, mutated in place during bundle generation."""

    def __init__(
        self,
        tree: etree._ElementTree,
        declaration: str = "",
        separator: str = "",
        trailing: str = "",
    ) -> None:
        self._tree = tree
        self._declaration = declaration
        self._separator = separator
        self._trailing = trailing

    @property
    def root(self) -> etree._Element:
        return self._tree.getroot()

    @property
    def process(self) -> etree._Element | None:
        return self.root.find(f"{{{BPMN_NS}}}process")

    @property
    def process_id(self) -> str | None:
        process = self.process
        return process.get("id") if process is not None else None

    def element(self, element_id: str) -> etree._Element | None:
        for el in self.root.iter(etree.Element):
            if el.get("id") == element_id:
                return el
        return None

    def has_id(self, element_id: str) -> bool:
        return self.element(element_id) is not None

    @property
    def elements(self) -> list[FlowElement]:
        """Flow elements of every process in document order."""
        found: list[FlowElement] = []
        for process in self.root.iter(f"{{{BPMN_NS}}}process"):
            for el in process.iter(etree.Element):
                qname = etree.QName(el)
                if qname.namespace == BPMN_NS and qname.localname in FLOW_ELEMENT_TYPES:
                    if el.get("id"):
                        found.append(_describe(el))
        return found

    def extension_data(self, element_id: str) -> dict[str, str | None]:
        el = self.element(element_id)
        if el is None:
            raise ElementNotFound(element_id)
        described = _describe(el)
        return {"form_id": described.form_id, "called_element": described.called_element}

    @property
    def tree(self) -> etree._ElementTree:
        return self._tree


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


def has_markup_wrapper(xml: str) -> bool:
    return any(marker in xml for marker in _WRAPPER_MARKERS)


def unwrap_markup(xml: str) -> str:
    """Extract the BPMN payload from markup-wrapped text.

    Text without wrapper markers is returned unchanged. Raises
    :class:`CorruptedDiagram` when wrapper markers are present but no
    ``definitions`` element can be matched.
    """
    if not has_markup_wrapper(xml):
        return xml
    match = _DEFINITIONS_RE.search(xml)
    if match is None:
        raise CorruptedDiagram("Markup-wrapped diagram contains no BPMN definitions payload")
    return match.group(0)


def is_likely_corrupted(xml: str) -> bool:
    """Flag XML that went through a lossy, case-normalising round-trip.

    Checks the raw string: a parser would accept the lowercased names as
    different (unknown) elements and hide the defect.
    """
    if not xml:
        return False
    if has_markup_wrapper(xml):
        return True
    return bool(_LOWERED_TAG_RE.search(xml) or _LOWERED_ATTRIBUTE_RE.search(xml))


def parse(xml: str) -> ProcessDocument:
    """Parse BPMN text into a mutable :class:`ProcessDocument`."""
    if not xml or not xml.strip():
        raise MalformedInput("BPMN document is empty")

    text = unwrap_markup(xml)

    try:
        ET.fromstring(text)
    except (ET.ParseError, DefusedXmlException) as exc:
        raise MalformedInput(f"BPMN document is not well-formed XML: {exc}") from exc

    declaration = separator = ""
    body = text
    decl_match = _DECLARATION_RE.match(text)
    if decl_match:
        declaration, separator = decl_match.group(1), decl_match.group(2)
        body = text[decl_match.end():]
    trailing = body[len(body.rstrip()):]

    try:
        root = etree.fromstring(body.strip(), _LXML_PARSER)
    except etree.XMLSyntaxError as exc:
        raise MalformedInput(f"BPMN document is not well-formed XML: {exc}") from exc

    qname = etree.QName(root)
    if qname.namespace != BPMN_NS or qname.localname != "definitions":
        raise MalformedInput(
            f"Root element must be BPMN definitions, found '{qname.localname}'"
        )

    return ProcessDocument(root.getroottree(), declaration, separator, trailing)


def serialize(doc: ProcessDocument) -> str:
    """Emit XML, keeping the original declaration and namespace prefixes."""
    body = etree.tostring(doc.tree, encoding="unicode")
    if doc._declaration:
        return f"{doc._declaration}{doc._separator or chr(10)}{body}{doc._trailing}"
    return f"{body}{doc._trailing}"


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


def find_elements_ordered(
    doc: ProcessDocument, types: tuple[str, ...] = FORM_BEARING_TYPES
) -> list[FlowElement]:
    """Elements of ``types``, grouped in the order of ``types``, document order within each."""
    ordered: list[FlowElement] = []
    for element_type in types:
        for el in doc.root.iter(f"{{{BPMN_NS}}}{element_type}"):
            if el.get("id"):
                ordered.append(_describe(el))
    return ordered


def outgoing_targets(doc: ProcessDocument, element_id: str) -> list[OutgoingFlow]:
    flows: list[OutgoingFlow] = []
    for flow in doc.root.iter(f"{{{BPMN_NS}}}sequenceFlow"):
        if flow.get("sourceRef") != element_id:
            continue
        target_el = doc.element(flow.get("targetRef", ""))
        flows.append(
            OutgoingFlow(
                flow_id=flow.get("id", ""),
                target=_describe(target_el) if target_el is not None else None,
            )
        )
    return flows


def gateway_kind(element_type: str) -> str | None:
    return GATEWAY_KINDS.get(element_type)


def main_process_id(service_key: str) -> str:
    return f"{MAIN_PROCESS_ID_PREFIX}{service_key}"


def step_element_id(step_key: str) -> str:
    return f"{STEP_ID_PREFIX}{step_key}"


def subprocess_process_id(step_key: str) -> str:
    return f"{SUBPROCESS_ID_PREFIX}{step_key}"


def step_key_from_called_element(reference: str | None) -> str | None:
    if not reference:
        return None
    match = _SUBPROCESS_ID_RE.match(reference.strip())
    return match.group(1) if match else None


def step_key_from_element_id(element_id: str | None) -> str | None:
    if not element_id:
        return None
    match = _STEP_ID_RE.match(element_id)
    return match.group(1) if match else None


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------


def rewrite_element_id(doc: ProcessDocument, element_id: str, new_id: str) -> None:
    """Rename one element and every reference to it (flows, DI shapes, lanes)."""
    target = doc.element(element_id)
    if target is None:
        raise ElementNotFound(element_id)
    if new_id == element_id:
        return
    if doc.has_id(new_id):
        raise ElementIdConflict(element_id, new_id)

    target.set("id", new_id)
    for el in doc.root.iter(etree.Element):
        for attr in _ID_REF_ATTRIBUTES:
            if el.get(attr) == element_id:
                el.set(attr, new_id)
        if etree.QName(el).localname in _ID_REF_TEXT_TAGS and el.text:
            if el.text.strip() == element_id:
                el.text = el.text.replace(element_id, new_id)


def set_called_element_reference(
    doc: ProcessDocument, call_activity_id: str, subprocess_key: str
) -> str:
    """Point a call activity at ``Process_Sub_<subprocess_key>``; returns the process id."""
    el = doc.element(call_activity_id)
    if el is None or etree.QName(el).localname != CALL_ACTIVITY:
        raise ElementNotFound(call_activity_id)

    process_id = subprocess_process_id(subprocess_key)
    _ensure_namespace(doc, "zeebe", ZEEBE_NS)
    block = _extension_block(el)
    called = block.find(f"{{{ZEEBE_NS}}}calledElement")
    if called is None:
        called = _append(block, f"{{{ZEEBE_NS}}}calledElement")
        called.set("processId", process_id)
        called.set("propagateAllChildVariables", "false")
    else:
        called.set("processId", process_id)
    if el.get("calledElement") is not None:
        el.set("calledElement", process_id)
    return process_id


def inject_form_binding(doc: ProcessDocument, element_id: str, form_id: str) -> None:
    """Bind ``form_id`` to an element, replacing any earlier binding."""
    el = doc.element(element_id)
    if el is None:
        raise ElementNotFound(element_id)

    _ensure_namespace(doc, "zeebe", ZEEBE_NS)
    block = _extension_block(el)
    for existing in block.findall(f"{{{ZEEBE_NS}}}formDefinition"):
        _remove(existing)

    form_def = _append(block, f"{{{ZEEBE_NS}}}formDefinition")
    form_def.set("formId", form_id)
    form_def.set("bindingType", "deployment")

    if etree.QName(el).localname == USER_TASK and block.find(f"{{{ZEEBE_NS}}}userTask") is None:
        _append(block, f"{{{ZEEBE_NS}}}userTask")


def set_gateway_conditions(doc: ProcessDocument, gateway_id: str, kind: str) -> None:
    """Write FEEL conditions on a gateway's outgoing flows for the form chooser.

    XOR: ``= nextTask = "<target>"`` with the last flow as default (no
    condition). OR: ``= list contains(nextTasks, "<target>")``. AND: all
    conditions removed.
    """
    gateway = doc.element(gateway_id)
    if gateway is None:
        raise ElementNotFound(gateway_id)

    flows = outgoing_targets(doc, gateway_id)
    if kind == "AND":
        for flow in flows:
            _clear_condition(doc, flow.flow_id)
        return

    default_flow = flows[-1].flow_id if kind == "XOR" and flows else None
    if default_flow:
        gateway.set("default", default_flow)

    _ensure_namespace(doc, "xsi", XSI_NS)
    for flow in flows:
        if flow.flow_id == default_flow:
            _clear_condition(doc, flow.flow_id)
            continue
        target_id = flow.target.element_id if flow.target else ""
        if kind == "XOR":
            expression = f'= nextTask = "{target_id}"'
        else:
            expression = f'= list contains(nextTasks, "{target_id}")'
        _set_condition(doc, flow.flow_id, expression)


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


def _describe(el: etree._Element) -> FlowElement:
    form_id = None
    called_element = el.get("calledElement")
    for block in el.findall(f"{{{BPMN_NS}}}extensionElements"):
        form_def = block.find(f"{{{ZEEBE_NS}}}formDefinition")
        if form_def is not None and form_id is None:
            form_id = form_def.get("formId")
        called = block.find(f"{{{ZEEBE_NS}}}calledElement")
        if called is not None and called.get("processId"):
            called_element = called.get("processId")
    return FlowElement(
        element_id=el.get("id", ""),
        element_type=etree.QName(el).localname,
        name=el.get("name"),
        form_id=form_id,
        called_element=called_element,
    )


def _ensure_namespace(doc: ProcessDocument, prefix: str, uri: str) -> None:
    """Declare ``uri`` on the root element unless it is already declared there."""
    root = doc.root
    if uri in root.nsmap.values():
        return
    keep = [p for p in root.nsmap if p] + [prefix]
    etree.cleanup_namespaces(root, top_nsmap={prefix: uri}, keep_ns_prefixes=keep)


def _bpmn_prefix(doc: ProcessDocument) -> str | None:
    for prefix, uri in doc.root.nsmap.items():
        if uri == BPMN_NS:
            return prefix
    return None


def _line_indent(el: etree._Element) -> str:
    """Whitespace preceding ``el`` on its own line."""
    previous = el.getprevious()
    parent = el.getparent()
    if previous is not None:
        ws = previous.tail
    elif parent is not None:
        ws = parent.text
    else:
        ws = ""
    if ws and "\n" in ws:
        return ws.rsplit("\n", 1)[1]
    return ""


def _sibling_separator(parent: etree._Element) -> str:
    if parent.text and "\n" in parent.text and not parent.text.strip():
        return parent.text
    return "\n" + _line_indent(parent) + _INDENT_STEP


def _append(parent: etree._Element, tag: str) -> etree._Element:
    """Append a child element, indented like its future siblings."""
    if len(parent) == 0:
        closing = "\n" + _line_indent(parent)
        parent.text = closing + _INDENT_STEP
        child = etree.SubElement(parent, tag)
        child.tail = closing
        return child
    separator = _sibling_separator(parent)
    last = parent[-1]
    closing = last.tail
    last.tail = separator
    child = etree.SubElement(parent, tag)
    child.tail = closing
    return child


def _insert(parent: etree._Element, index: int, tag: str) -> etree._Element:
    if index >= len(parent):
        return _append(parent, tag)
    separator = _sibling_separator(parent)
    child = etree.SubElement(parent, tag)
    parent.insert(index, child)
    child.tail = separator
    return child


def _remove(el: etree._Element) -> None:
    """Remove ``el`` and keep the parent's closing-tag indentation intact."""
    parent = el.getparent()
    if parent is None:
        return
    if el.getnext() is None:
        previous = el.getprevious()
        if previous is not None:
            previous.tail = el.tail
        else:
            parent.text = el.tail
    parent.remove(el)


def _extension_block(el: etree._Element) -> etree._Element:
    """The single ``extensionElements`` child of ``el``, created or merged as needed."""
    blocks = el.findall(f"{{{BPMN_NS}}}extensionElements")
    if blocks:
        primary = blocks[0]
        for extra in blocks[1:]:
            for child in list(extra):
                tail = child.tail
                primary.append(child)
                child.tail = tail
            _remove(extra)
        return primary

    index = 0
    for child in el:
        if isinstance(child.tag, str) and etree.QName(child).localname == "documentation":
            index += 1
        else:
            break
    return _insert(el, index, f"{{{BPMN_NS}}}extensionElements")


def _clear_condition(doc: ProcessDocument, flow_id: str) -> None:
    flow = doc.element(flow_id)
    if flow is None:
        return
    for condition in flow.findall(f"{{{BPMN_NS}}}conditionExpression"):
        _remove(condition)


def _set_condition(doc: ProcessDocument, flow_id: str, expression: str) -> None:
    flow = doc.element(flow_id)
    if flow is None:
        raise ElementNotFound(flow_id)
    condition = flow.find(f"{{{BPMN_NS}}}conditionExpression")
    if condition is None:
        condition = _append(flow, f"{{{BPMN_NS}}}conditionExpression")
    prefix = _bpmn_prefix(doc)
    condition.set(
        f"{{{XSI_NS}}}type", f"{prefix}:tFormalExpression" if prefix else "tFormalExpression"
    )
    condition.text = expression
