"""Bundle generation: rewritten main BPMN, subprocess BPMNs, forms and manifest.

:func:`load_bundle_inputs` does all fetching up front. :class:`BundleBuilder`
is then a pure transformation over those inputs, so generation can be
re-run or discarded without side effects.

Naming conventions shared with the execution engine:

* main process id        ``Manual_Service_ID_<service key>``
* task / call activity   ``Process_Step_ID_<step key>``
* subprocess process id  ``Process_Sub_<step key>``
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from manual_service.exceptions import (
    CorruptedDiagram,
    ElementIdConflict,
    ElementNotFound,
    InvalidTemplateOutput,
    MalformedInput,
    NoDiagram,
    ServiceNotFound,
    TemplatesUnavailable,
)
from manual_service.services import bpmn_document as bpmn
from manual_service.services.description_resolver import (
    DescriptionResolver,
    ServiceKnowledge,
    load_service_knowledge,
)
from manual_service.services.template_engine import (
    FormContext,
    FormTemplates,
    NextTaskOption,
    builtin_templates,
    format_references,
    instantiate,
    load_templates,
)

logger = logging.getLogger(__name__)

MAIN_FILENAME = "manual-service.bpmn"
SUBPROCESS_FOLDER = "subprocesses"
FORMS_FOLDER = "forms"
MANIFEST_FILENAME = "manifest.json"

_NEXT_TASK_TYPES = frozenset({bpmn.USER_TASK, bpmn.CALL_ACTIVITY})


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


@dataclass
class ServiceSnapshot:
    key: str
    name: str
    edited_xml: str | None = None
    original_xml: str | None = None

    @classmethod
    def from_row(cls, row) -> ServiceSnapshot:
        return cls(
            key=row.external_id,
            name=row.name,
            edited_xml=row.edited_bpmn_xml,
            original_xml=row.original_bpmn_xml,
        )


@dataclass
class SubprocessSnapshot:
    id: str
    name: str
    step_key: str | None = None
    edited_xml: str | None = None
    original_xml: str | None = None

    @classmethod
    def from_row(cls, row) -> SubprocessSnapshot:
        return cls(
            id=str(row.id),
            name=row.name,
            step_key=row.step_external_id,
            edited_xml=row.edited_bpmn_xml,
            original_xml=row.original_bpmn_xml,
        )


@dataclass
class BundleInputs:
    service: ServiceSnapshot
    subprocesses: list[SubprocessSnapshot]
    knowledge: ServiceKnowledge
    templates: FormTemplates
    generated_at: datetime


# ---------------------------------------------------------------------------
# Outputs
# ---------------------------------------------------------------------------


@dataclass
class FormArtifact:
    node_id: str
    name: str
    filename: str
    form_id: str
    template_type: str
    content: dict[str, Any]

    def manifest_entry(self) -> dict[str, str]:
        return {
            "nodeId": self.node_id,
            "name": self.name,
            "filename": self.filename,
            "formId": self.form_id,
            "templateType": self.template_type,
        }


@dataclass
class SubprocessFile:
    filename: str
    xml: str
    name: str
    step_key: str | None = None
    task_name: str | None = None

    @property
    def called_element(self) -> str | None:
        return bpmn.subprocess_process_id(self.step_key) if self.step_key else None

    @property
    def path(self) -> str:
        return f"{SUBPROCESS_FOLDER}/{self.filename}"


@dataclass
class Bundle:
    service_key: str
    service_name: str
    main_xml: str
    subprocesses: list[SubprocessFile] = field(default_factory=list)
    forms: list[FormArtifact] = field(default_factory=list)
    manifest: dict[str, Any] = field(default_factory=dict)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "serviceKey": self.service_key,
            "serviceName": self.service_name,
            "mainXml": self.main_xml,
            "subprocesses": [
                {
                    "filename": s.filename,
                    "xml": s.xml,
                    "name": s.name,
                    "stepKey": s.step_key,
                    "taskName": s.task_name,
                    "calledElement": s.called_element,
                }
                for s in self.subprocesses
            ],
            "forms": [{**f.manifest_entry(), "content": f.content} for f in self.forms],
            "manifest": self.manifest,
            "warnings": list(self.warnings),
        }


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def select_diagram_xml(edited: str | None, original: str | None) -> tuple[str, str]:
    """Pick the authoritative diagram text.

    Returns ``(xml, source)`` where source is ``edited``, ``edited-recovered``
    (markup wrapper stripped) or ``original``. Raises :class:`NoDiagram`
    when no usable text exists.
    """
    if edited and edited.strip():
        if not bpmn.is_likely_corrupted(edited):
            return edited, "edited"
        if bpmn.has_markup_wrapper(edited):
            try:
                inner = bpmn.unwrap_markup(edited)
            except CorruptedDiagram:
                logger.warning("Edited diagram wrapper could not be unwrapped")
            else:
                if not bpmn.is_likely_corrupted(inner):
                    logger.info("Recovered edited diagram from markup wrapper")
                    return inner, "edited-recovered"
        logger.warning("Edited diagram looks corrupted; falling back to the original")
    if original and original.strip():
        return original, "original"
    raise NoDiagram("")


def as_utc(moment: datetime) -> datetime:
    if moment.tzinfo is None:
        return moment.replace(tzinfo=timezone.utc)
    return moment.astimezone(timezone.utc)


def compact_timestamp(moment: datetime) -> str:
    """``20251023T224512Z`` style UTC stamp."""
    return as_utc(moment).strftime("%Y%m%dT%H%M%SZ")


def form_slug(text: str | None) -> str:
    value = re.sub(r"\s+", "-", (text or "").strip())
    value = re.sub(r"[^A-Za-z0-9_-]", "", value)
    return re.sub(r"-+", "-", value)


def file_slug(text: str | None) -> str:
    value = re.sub(r"[^a-zA-Z0-9\s-]", "", text or "")
    return re.sub(r"\s+", "-", value.strip())[:50]


def subprocess_filename(name: str, subprocess_id: str) -> str:
    suffix = subprocess_id.replace("-", "")[:8]
    return f"subprocess-{file_slug(name) or 'unnamed'}-{suffix}.bpmn"


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def load_bundle_inputs(
    repository, blob_store, service_key: str, now: datetime | None = None
) -> BundleInputs:
    """Fetch everything a build needs; subprocesses, knowledge and templates concurrently."""
    row = await repository.get_service(service_key)
    if row is None:
        raise ServiceNotFound(service_key)

    subprocess_rows, knowledge, templates = await asyncio.gather(
        repository.list_subprocesses(row.id),
        load_service_knowledge(repository, service_key),
        _load_templates_or_builtin(repository, blob_store, service_key),
    )
    return BundleInputs(
        service=ServiceSnapshot.from_row(row),
        subprocesses=[SubprocessSnapshot.from_row(s) for s in subprocess_rows],
        knowledge=knowledge,
        templates=templates,
        generated_at=now or datetime.now(timezone.utc),
    )


async def _load_templates_or_builtin(repository, blob_store, service_key: str) -> FormTemplates:
    try:
        return await load_templates(repository, blob_store)
    except TemplatesUnavailable as exc:
        logger.warning(
            "Form templates unavailable (%s); using built-in skeleton",
            exc,
            extra={"service_key": service_key},
        )
        return builtin_templates()


# ---------------------------------------------------------------------------
# Builder
# ---------------------------------------------------------------------------


class BundleBuilder:
    """Produce a :class:`Bundle` from pre-fetched :class:`BundleInputs`. No I/O."""

    def __init__(self, inputs: BundleInputs) -> None:
        self.inputs = inputs
        self.service = inputs.service
        self.resolver = DescriptionResolver(inputs.knowledge)
        self.warnings: list[str] = []
        self._fallback_templates: FormTemplates | None = None

    def _warn(self, message: str, *args: Any) -> None:
        text = message % args if args else message
        logger.warning(text, extra={"service_key": self.service.key})
        self.warnings.append(text)

    def build(self) -> Bundle:
        try:
            xml, source = select_diagram_xml(self.service.edited_xml, self.service.original_xml)
        except NoDiagram:
            raise NoDiagram(self.service.key) from None
        logger.info(
            "Building bundle from %s diagram", source, extra={"service_key": self.service.key}
        )
        if self.inputs.templates.builtin:
            self.warnings.append("Form templates unavailable; built-in skeleton used")

        doc = bpmn.parse(xml)
        main_process_id = self._rewrite_process_id(doc)
        call_targets = self._bind_call_activities(doc)
        step_keys = self._bind_user_tasks(doc)
        forms = self._build_forms(doc, step_keys)
        subprocesses = self._collect_subprocesses(call_targets)
        self._check_call_coverage(call_targets, subprocesses)

        generated_at = as_utc(self.inputs.generated_at)
        manifest = {
            "serviceExternalId": self.service.key,
            "serviceName": self.service.name,
            "generatedAt": generated_at.isoformat().replace("+00:00", "Z"),
            "diagramSource": source,
            "bpmn": {
                "main": {"filename": MAIN_FILENAME, "processId": main_process_id},
                "subprocesses": [
                    {
                        "stepExternalId": s.step_key,
                        "filename": s.path,
                        "taskName": s.task_name,
                        "calledElement": s.called_element,
                    }
                    for s in subprocesses
                ],
            },
            "forms": [f.manifest_entry() for f in forms],
            "warnings": list(self.warnings),
        }
        return Bundle(
            service_key=self.service.key,
            service_name=self.service.name,
            main_xml=bpmn.serialize(doc),
            subprocesses=subprocesses,
            forms=forms,
            manifest=manifest,
            warnings=list(self.warnings),
        )

    # -- identifiers --------------------------------------------------------

    def _rewrite_process_id(self, doc: bpmn.ProcessDocument) -> str | None:
        current = doc.process_id
        if current is None:
            raise MalformedInput("Diagram has no process element")
        target = bpmn.main_process_id(self.service.key)
        try:
            bpmn.rewrite_element_id(doc, current, target)
        except ElementIdConflict as exc:
            self._warn("Main process id not rewritten: %s", exc)
            return current
        return target

    def _rename(self, doc: bpmn.ProcessDocument, element_id: str, step_key: str) -> str:
        new_id = bpmn.step_element_id(step_key)
        try:
            bpmn.rewrite_element_id(doc, element_id, new_id)
        except (ElementIdConflict, ElementNotFound) as exc:
            self._warn("Element '%s' kept its id: %s", element_id, exc)
            return element_id
        return new_id

    def _bind_call_activities(self, doc: bpmn.ProcessDocument) -> dict[str, str]:
        """Bind call activities to subprocess keys; returns step key → task name."""
        targets: dict[str, str] = {}
        for node in bpmn.find_elements_ordered(doc, (bpmn.CALL_ACTIVITY,)):
            step_key = self.resolver.resolve_step_key(node)
            if not step_key:
                self._warn(
                    "Call activity '%s' has no subprocess step key", node.display_name
                )
                continue
            if bpmn.step_key_from_called_element(node.called_element) != step_key:
                bpmn.set_called_element_reference(doc, node.element_id, step_key)
            self._rename(doc, node.element_id, step_key)
            targets.setdefault(step_key, node.display_name)
        return targets

    def _bind_user_tasks(self, doc: bpmn.ProcessDocument) -> dict[str, str | None]:
        """Rename matched user tasks; returns current element id → step key."""
        keys: dict[str, str | None] = {}
        for node in bpmn.find_elements_ordered(doc, (bpmn.USER_TASK,)):
            step_key = self.resolver.resolve_step_key(node)
            if not step_key:
                self._warn(
                    "User task '%s' matches no master-data step; keeping id '%s'",
                    node.display_name,
                    node.element_id,
                )
                keys[node.element_id] = None
                continue
            keys[self._rename(doc, node.element_id, step_key)] = step_key
        return keys

    # -- forms --------------------------------------------------------------

    def _build_forms(
        self, doc: bpmn.ProcessDocument, step_keys: dict[str, str | None]
    ) -> list[FormArtifact]:
        stamp = compact_timestamp(self.inputs.generated_at)
        forms: list[FormArtifact] = []
        gateways: dict[str, str] = {}
        start_count = 0
        task_count = 0

        for node in bpmn.find_elements_ordered(doc):
            is_start = node.element_type == bpmn.START_EVENT
            if is_start:
                start_count += 1
                base = "000-start" if start_count == 1 else f"000-start-{start_count}"
            else:
                task_count += 1
                base = f"{task_count:03d}-{form_slug(node.display_name) or node.element_id}"
            form_id = f"{base}-{stamp}"

            kind, options, gateway_id = self._next_tasks(doc, node.element_id)
            if gateway_id and kind:
                gateways[gateway_id] = kind

            described = self.resolver.resolve(node, step_keys.get(node.element_id))
            context = FormContext(
                service_name=self.service.name,
                step_name=node.display_name,
                form_id=form_id,
                step_description=described.description,
                next_tasks=options,
                next_task_kind=kind,
                references_text=format_references(described.references),
            )
            content = self._instantiate(is_start, context, node.display_name)
            bpmn.inject_form_binding(doc, node.element_id, form_id)

            forms.append(
                FormArtifact(
                    node_id=node.element_id,
                    name=node.display_name,
                    filename=f"{base}.form",
                    form_id=form_id,
                    template_type="start" if is_start else "task",
                    content=content,
                )
            )

        for gateway_id, kind in gateways.items():
            bpmn.set_gateway_conditions(doc, gateway_id, kind)
        return forms

    def _instantiate(self, is_start: bool, context: FormContext, node_name: str) -> dict[str, Any]:
        try:
            return instantiate(self.inputs.templates.for_node(is_start), context)
        except InvalidTemplateOutput as exc:
            if self.inputs.templates.builtin:
                raise
            self._warn("Template output for '%s' invalid (%s); using built-in skeleton", node_name, exc)
            if self._fallback_templates is None:
                self._fallback_templates = builtin_templates()
            return instantiate(self._fallback_templates.for_node(is_start), context)

    @staticmethod
    def _next_tasks(
        doc: bpmn.ProcessDocument, element_id: str
    ) -> tuple[str | None, list[NextTaskOption], str | None]:
        """Gateway kind, selectable next tasks and the gateway id following ``element_id``."""
        flows = bpmn.outgoing_targets(doc, element_id)
        for flow in flows:
            target = flow.target
            kind = bpmn.gateway_kind(target.element_type) if target else None
            if target and kind:
                options = [
                    NextTaskOption(label=o.target.display_name, value=o.target.element_id)
                    for o in bpmn.outgoing_targets(doc, target.element_id)
                    if o.target and o.target.element_type in _NEXT_TASK_TYPES
                ]
                return kind, options, target.element_id
        linear = [
            NextTaskOption(label=f.target.display_name, value=f.target.element_id)
            for f in flows
            if f.target and f.target.element_type in _NEXT_TASK_TYPES
        ]
        return None, linear[:1], None

    # -- subprocesses -------------------------------------------------------

    def _collect_subprocesses(self, call_targets: dict[str, str]) -> list[SubprocessFile]:
        files: list[SubprocessFile] = []
        for sub in self.inputs.subprocesses:
            try:
                xml, _source = select_diagram_xml(sub.edited_xml, sub.original_xml)
            except NoDiagram:
                self._warn("Subprocess '%s' has no diagram; skipped", sub.name)
                continue
            try:
                sub_doc = bpmn.parse(xml)
            except MalformedInput as exc:
                self._warn("Subprocess '%s' is not valid BPMN (%s); skipped", sub.name, exc)
                continue

            step_key = sub.step_key or self.resolver.resolve_step_key_by_name(sub.name)
            if step_key and sub_doc.process_id:
                try:
                    bpmn.rewrite_element_id(
                        sub_doc, sub_doc.process_id, bpmn.subprocess_process_id(step_key)
                    )
                except ElementIdConflict as exc:
                    self._warn("Subprocess '%s' process id not rewritten: %s", sub.name, exc)
            elif not step_key:
                self._warn("Subprocess '%s' has no step key; process id unchanged", sub.name)

            files.append(
                SubprocessFile(
                    filename=subprocess_filename(sub.name, sub.id),
                    xml=bpmn.serialize(sub_doc),
                    name=sub.name,
                    step_key=step_key,
                    task_name=call_targets.get(step_key, sub.name) if step_key else sub.name,
                )
            )
        return files

    def _check_call_coverage(
        self, call_targets: dict[str, str], subprocesses: list[SubprocessFile]
    ) -> None:
        provided = {s.step_key for s in subprocesses if s.step_key}
        for step_key, task_name in call_targets.items():
            if step_key not in provided:
                self._warn(
                    "Call activity '%s' calls %s but no subprocess file provides it",
                    task_name,
                    bpmn.subprocess_process_id(step_key),
                )
