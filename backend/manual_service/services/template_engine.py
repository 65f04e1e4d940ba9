"""Form-template loading and instantiation.

Templates are opaque Camunda Forms JSON documents. The only structure relied
on is the presence of placeholder tokens in their text and, optionally, a
top-level component with id ``NextTaskChooserPlaceholder``.
"""

from __future__ import annotations

import asyncio
import copy
import json
import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from manual_service.config import settings
from manual_service.exceptions import BlobNotFound, InvalidTemplateOutput, TemplatesUnavailable

if TYPE_CHECKING:
    from manual_service.services.description_resolver import ReferenceEntry

logger = logging.getLogger(__name__)

START_TEMPLATE = "START_NODE"
TASK_TEMPLATE = "TASK_NODE"
TEMPLATE_NAMES = (START_TEMPLATE, TASK_TEMPLATE)

SERVICE_NAME_TOKEN = "ManualServiceNamePlaceholder"
STEP_NAME_TOKEN = "ProcessStepPlaceholder"
DESCRIPTION_TOKEN = "ProcessDescriptionPlaceholder"
NEXT_TASK_TOKEN = "NextTaskPlaceholder"
REFERENCES_TOKEN = "ReferencesPlaceholder"
CHOOSER_COMPONENT_ID = "NextTaskChooserPlaceholder"

FORM_SCHEMA_VERSION = 4

_LEFTOVER_TOKEN_RE = re.compile(r"[A-Za-z]+Placeholder\b")


@dataclass
class FormTemplates:
    start: dict[str, Any]
    task: dict[str, Any]
    builtin: bool = False

    def for_node(self, is_start: bool) -> dict[str, Any]:
        return self.start if is_start else self.task


@dataclass
class NextTaskOption:
    label: str
    value: str


@dataclass
class FormContext:
    """Everything one form needs besides its template."""

    service_name: str
    step_name: str
    form_id: str
    step_description: str = ""
    next_tasks: list[NextTaskOption] = field(default_factory=list)
    next_task_kind: str | None = None
    references_text: str = ""

    def substitutions(self) -> dict[str, str]:
        return {
            SERVICE_NAME_TOKEN: self.service_name or "",
            STEP_NAME_TOKEN: self.step_name or "",
            DESCRIPTION_TOKEN: self.step_description or "",
            NEXT_TASK_TOKEN: format_next_tasks(
                [option.label for option in self.next_tasks], self.next_task_kind
            ),
            REFERENCES_TOKEN: self.references_text or "",
        }


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------


async def load_templates(repository, blob_store, bucket: str | None = None) -> FormTemplates:
    """Fetch the start and task templates concurrently.

    Raises :class:`TemplatesUnavailable` when either one is not configured,
    missing from the bucket, or not a JSON object.
    """
    bucket = bucket or settings.TEMPLATES_BUCKET
    start, task = await asyncio.gather(
        _fetch_template(repository, blob_store, bucket, START_TEMPLATE),
        _fetch_template(repository, blob_store, bucket, TASK_TEMPLATE),
    )
    return FormTemplates(start=start, task=task)


async def _fetch_template(repository, blob_store, bucket: str, name: str) -> dict[str, Any]:
    row = await repository.get_form_template(name)
    if row is None:
        raise TemplatesUnavailable(f"Form template '{name}' is not configured")
    try:
        raw = await blob_store.get(bucket, row.file_name)
    except BlobNotFound as exc:
        raise TemplatesUnavailable(
            f"Form template '{name}' file '{row.file_name}' is missing"
        ) from exc
    try:
        data = json.loads(raw)
    except (ValueError, UnicodeDecodeError) as exc:
        raise TemplatesUnavailable(f"Form template '{name}' is not valid JSON") from exc
    if not isinstance(data, dict):
        raise TemplatesUnavailable(f"Form template '{name}' is not a JSON object")
    return data


def _text(component_id: str, text: str) -> dict[str, Any]:
    return {"id": component_id, "type": "text", "text": text}


_BUILTIN_COMPONENTS: list[dict[str, Any]] = [
    _text("serviceName", "# {{%s}}" % SERVICE_NAME_TOKEN),
    _text("stepName", "## {{%s}}" % STEP_NAME_TOKEN),
    _text("stepDescription", "{{%s}}" % DESCRIPTION_TOKEN),
    {
        "id": CHOOSER_COMPONENT_ID,
        "type": "group",
        "label": "Next task",
        "components": [],
    },
    _text("nextTasks", "**Next task:** {{%s}}" % NEXT_TASK_TOKEN),
    _text("references", "**References**\n{{%s}}" % REFERENCES_TOKEN),
    {"id": "notes", "key": "notes", "type": "textarea", "label": "Notes"},
]


def builtin_templates() -> FormTemplates:
    """Minimal skeleton used when the configured templates cannot be loaded."""
    skeleton = {
        "type": "default",
        "schemaVersion": FORM_SCHEMA_VERSION,
        "components": _BUILTIN_COMPONENTS,
    }
    return FormTemplates(start=copy.deepcopy(skeleton), task=copy.deepcopy(skeleton), builtin=True)


# ---------------------------------------------------------------------------
# Instantiation
# ---------------------------------------------------------------------------


def instantiate(template: dict[str, Any], context: FormContext) -> dict[str, Any]:
    """Materialise one form from ``template``.

    Substitution is textual over the serialised template, covering both the
    ``{{Token}}`` and bare ``Token`` spellings. Values are JSON-string escaped
    so quotes and newlines in descriptions cannot break the document.
    """
    working = copy.deepcopy(template)
    _apply_chooser(working, context)

    text = json.dumps(working, ensure_ascii=False)
    substitutions = context.substitutions()

    # Checked before substitution so description text cannot look like a token
    remainder = text
    for token in substitutions:
        remainder = remainder.replace(token, "")
    leftover = _LEFTOVER_TOKEN_RE.search(remainder)
    if leftover:
        raise InvalidTemplateOutput(f"Unresolved placeholder '{leftover.group(0)}' in form output")

    pattern = re.compile(
        "|".join(r"\{\{%s\}\}|%s" % (re.escape(t), re.escape(t)) for t in substitutions)
    )
    escaped = {
        token: json.dumps(value, ensure_ascii=False)[1:-1]
        for token, value in substitutions.items()
    }
    # One pass, so substituted values are never rescanned for tokens
    text = pattern.sub(lambda m: escaped[m.group(0).strip("{}")], text)

    try:
        form = json.loads(text)
    except ValueError as exc:
        raise InvalidTemplateOutput(f"Form output is not valid JSON: {exc}") from exc
    if not isinstance(form, dict):
        raise InvalidTemplateOutput("Form output is not a JSON object")

    form["id"] = context.form_id
    form.setdefault("type", "default")
    form.setdefault("schemaVersion", FORM_SCHEMA_VERSION)
    return form


def _apply_chooser(form: dict[str, Any], context: FormContext) -> None:
    """Swap the chooser placeholder group for a select / checkbox group, or drop it."""
    components = form.get("components")
    if not isinstance(components, list):
        return
    index = next(
        (i for i, c in enumerate(components) if isinstance(c, dict) and c.get("id") == CHOOSER_COMPONENT_ID),
        None,
    )
    if index is None:
        return

    chooser = _chooser_component(context.next_task_kind, context.next_tasks)
    if chooser is None:
        del components[index]
        return
    group = components[index]
    group["id"] = "NextTaskChooser"
    group["components"] = [chooser]


def _chooser_component(kind: str | None, options: list[NextTaskOption]) -> dict[str, Any] | None:
    if not options:
        return None
    values = [{"label": o.label, "value": o.value} for o in options]
    if kind == "XOR":
        return {
            "type": "select",
            "key": "nextTask",
            "label": "Choose the next task",
            "validate": {"required": True},
            "values": values,
        }
    if kind == "OR":
        return {
            "type": "checkbox-group",
            "key": "nextTasks",
            "label": "Select all next tasks that apply",
            "validate": {"required": True},
            "values": values,
        }
    return None


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


def format_references(entries: Iterable[ReferenceEntry]) -> str:
    return "\n".join(f"• {entry.title}: {entry.url}" for entry in entries)


def format_next_tasks(names: list[str], kind: str | None) -> str:
    if not names:
        return ""
    if kind == "XOR":
        return " / ".join(names)
    if kind == "OR":
        return " • ".join(names)
    return ", ".join(names)
