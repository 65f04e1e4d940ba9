"""Per-node descriptions and reference links for generated forms.

Descriptions can live in several places depending on how a service was
authored, so resolution walks a fallback chain:

1. start events get the service-level description (and nothing else does);
2. call activities derive their step key from ``Process_Sub_<key>``;
3. user tasks match their display name against the master-data steps;
4. no description found → blank;
5. no step references found → every reference of the service, deduplicated.
"""

from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass, field

from manual_service.config import settings
from manual_service.services.bpmn_document import (
    CALL_ACTIVITY,
    START_EVENT,
    USER_TASK,
    FlowElement,
    step_key_from_called_element,
    step_key_from_element_id,
)

logger = logging.getLogger(__name__)

_URL_SPLIT_RE = re.compile(r"[;,]")
_TWO_SENTENCES_RE = re.compile(r"^(.+?[.!?])\s+(.+?[.!?])(.*)$")
_REFERENCE_FIELDS = ("sop_urls", "decision_sheet_urls", "document_urls")


@dataclass(frozen=True)
class ReferenceEntry:
    title: str
    url: str


@dataclass
class StepRecord:
    """One master-data step as seen by the resolver."""

    step_key: str
    name: str
    process_step: int | None = None
    sop_urls: str | None = None
    decision_sheet_urls: str | None = None
    document_urls: str | None = None
    document_name: str | None = None

    @classmethod
    def from_row(cls, row) -> StepRecord:
        return cls(
            step_key=row.step_external_id,
            name=row.step_name or "",
            process_step=row.process_step,
            sop_urls=row.sop_urls,
            decision_sheet_urls=row.decision_sheet_urls,
            document_urls=row.document_urls,
            document_name=row.document_name,
        )


@dataclass
class ServiceKnowledge:
    """Snapshot of everything the resolver may consult for one service."""

    service_key: str
    service_description: str = ""
    steps: list[StepRecord] = field(default_factory=list)
    # keyed by step key, or by raw diagram node id for hand-entered rows
    step_descriptions: dict[str, str] = field(default_factory=dict)


@dataclass
class NodeDescription:
    step_key: str | None
    description: str
    references: list[ReferenceEntry]
    fallback_references: bool = False


async def load_service_knowledge(repository, service_key: str) -> ServiceKnowledge:
    steps, descriptions = await asyncio.gather(
        repository.list_mds_steps(service_key),
        repository.list_descriptions(service_key),
    )
    knowledge = ServiceKnowledge(
        service_key=service_key,
        steps=[StepRecord.from_row(row) for row in steps],
    )
    for row in descriptions:
        if row.node_id is None:
            knowledge.service_description = row.description or ""
        elif row.description:
            knowledge.step_descriptions[row.node_id] = row.description
    return knowledge


def clamp_two_sentences(text: str | None, max_chars: int = 400) -> str:
    """Collapse whitespace, keep the first two sentences, cap at ``max_chars``."""
    if not text:
        return ""
    trimmed = " ".join(text.split())
    match = _TWO_SENTENCES_RE.match(trimmed)
    first_two = f"{match.group(1)} {match.group(2)}" if match else trimmed
    if len(first_two) > max_chars:
        return first_two[:max_chars].strip() + "…"
    return first_two


def _normalize_name(name: str) -> str:
    return " ".join(name.split()).casefold()


def build_reference_entries(step: StepRecord) -> list[ReferenceEntry]:
    """Split the step's URL fields into titled entries.

    ``Title|URL`` items keep their own title. Untitled URLs are named after
    ``document_name`` (or the step name) and numbered only when there is more
    than one of them.
    """
    titled: list[tuple[int, ReferenceEntry]] = []
    untitled: list[tuple[int, str]] = []
    seen: set[str] = set()
    position = 0

    for field_name in _REFERENCE_FIELDS:
        raw = getattr(step, field_name) or ""
        for item in _URL_SPLIT_RE.split(raw):
            item = item.strip()
            if not item:
                continue
            title = ""
            url = item
            if "|" in item:
                title, url = (part.strip() for part in item.split("|", 1))
            if not url or url in seen:
                continue
            seen.add(url)
            if title:
                titled.append((position, ReferenceEntry(title=title, url=url)))
            else:
                untitled.append((position, url))
            position += 1

    base_title = (step.document_name or "").strip() or step.name
    numbered: list[tuple[int, ReferenceEntry]] = []
    for index, (pos, url) in enumerate(untitled, start=1):
        title = f"{base_title} ({index})" if len(untitled) > 1 else base_title
        numbered.append((pos, ReferenceEntry(title=title, url=url)))

    return [entry for _, entry in sorted(titled + numbered, key=lambda pair: pair[0])]


class DescriptionResolver:
    def __init__(self, knowledge: ServiceKnowledge, max_chars: int | None = None) -> None:
        self.knowledge = knowledge
        self.max_chars = max_chars or settings.DESCRIPTION_MAX_CHARS

        self._steps = sorted(
            knowledge.steps,
            key=lambda s: (s.process_step is None, s.process_step or 0, s.step_key),
        )
        self._step_keys = {s.step_key for s in self._steps}
        self._references = {s.step_key: build_reference_entries(s) for s in self._steps}
        self._exact: dict[str, list[StepRecord]] = {}
        self._normalized: dict[str, list[StepRecord]] = {}
        for step in self._steps:
            if not step.name:
                continue
            self._exact.setdefault(step.name, []).append(step)
            self._normalized.setdefault(_normalize_name(step.name), []).append(step)

    def resolve_step_key_by_name(self, name: str | None) -> str | None:
        if not name or not name.strip():
            return None
        candidates = self._exact.get(name) or self._normalized.get(_normalize_name(name))
        if not candidates:
            return None
        if len(candidates) > 1:
            logger.warning(
                "Step name '%s' matches %d master-data steps; using %s",
                name,
                len(candidates),
                candidates[0].step_key,
                extra={"service_key": self.knowledge.service_key},
            )
        return candidates[0].step_key

    def resolve_step_key(self, node: FlowElement) -> str | None:
        if node.element_type == CALL_ACTIVITY:
            key = step_key_from_called_element(node.called_element)
            if key:
                return key
            return self.resolve_step_key_by_name(node.name)
        if node.element_type == USER_TASK:
            key = self.resolve_step_key_by_name(node.name)
            if key:
                return key
            # diagrams regenerated from an earlier bundle already carry the key
            existing = step_key_from_element_id(node.element_id)
            if existing in self._step_keys:
                return existing
        return None

    def references_for(self, step_key: str | None) -> list[ReferenceEntry]:
        if not step_key:
            return []
        return list(self._references.get(step_key, []))

    def all_service_references(self) -> list[ReferenceEntry]:
        seen: set[str] = set()
        merged: list[ReferenceEntry] = []
        for step in self._steps:
            for entry in self._references[step.step_key]:
                if entry.url not in seen:
                    seen.add(entry.url)
                    merged.append(entry)
        return merged

    def resolve(self, node: FlowElement, step_key: str | None = None) -> NodeDescription:
        """Description and references for ``node``.

        ``step_key`` may be passed when the caller has already resolved it,
        otherwise it is derived from the node.
        """
        if node.element_type == START_EVENT:
            return NodeDescription(
                step_key=None,
                description=clamp_two_sentences(self.knowledge.service_description, self.max_chars),
                references=self.all_service_references(),
                fallback_references=True,
            )

        key = step_key if step_key is not None else self.resolve_step_key(node)
        descriptions = self.knowledge.step_descriptions
        text = (descriptions.get(key, "") if key else "") or descriptions.get(node.element_id, "")
        description = clamp_two_sentences(text, self.max_chars)

        references = self.references_for(key)
        if references:
            return NodeDescription(step_key=key, description=description, references=references)
        return NodeDescription(
            step_key=key,
            description=description,
            references=self.all_service_references(),
            fallback_references=True,
        )
