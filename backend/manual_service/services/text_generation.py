"""Text-generation collaborator (Anthropic Messages API over httpx).

Used to draft descriptions and to assess diagrams. Output is plain prose
and never fed back into the diagram itself.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field

import httpx

from manual_service.config import settings as default_settings
from manual_service.exceptions import TextGenerationError
from manual_service.services.description_resolver import clamp_two_sentences

logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"

ASSESSMENT_SYSTEM_PROMPT = (
    "You are a BPMN 2.0 process expert. Assess the structural correctness of a BPMN "
    "process and describe any formal or logical issues in clear, human language. Be "
    "concise and friendly. If the process has no problems, answer in one sentence. "
    "Focus on problems only and do not list what is correct. Format the answer as "
    "Markdown and do not output XML or code."
)

ASSESSMENT_CHECKS = """Please analyse the following BPMN process and tell me if it makes formal sense.

Check for:
- Is there a path from the Start Event to every task?
- Is there a path from every task to at least one End Event?
- Are gateways used where branching is needed?
- Are there dangling or disconnected tasks?
- Anything that looks structurally odd or could cause runtime issues."""

MANUAL_SERVICE_CHECK = (
    "This is a Manual Service process. Between Start and End, every high-level step "
    "should be modeled as a CallActivity linked to a subprocess. Mention any plain Task "
    "or UserTask as a potential missing subprocess."
)

DESCRIBE_SYSTEM_PROMPT = (
    "You write short operational descriptions for steps of a business process. Each "
    "description is at most two sentences. Answer with a single JSON object and nothing "
    'else, shaped as {"serviceDescription": "...", "steps": [{"nodeId": "...", '
    '"description": "..."}]}.'
)


@dataclass
class DraftDescriptions:
    service_description: str = ""
    steps: dict[str, str] = field(default_factory=dict)


class TextGenerator:
    """Single request/response wrapper around the Messages endpoint."""

    def __init__(
        self,
        api_key: str,
        api_url: str,
        model: str,
        max_tokens: int = 2000,
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.api_url = api_url
        self.model = model
        self.max_tokens = max_tokens
        self._transport = transport
        self._timeout = timeout

    @classmethod
    def from_settings(cls, settings=default_settings, transport=None) -> TextGenerator:
        return cls(
            api_key=settings.ANTHROPIC_API_KEY,
            api_url=settings.ANTHROPIC_API_URL,
            model=settings.ANTHROPIC_MODEL,
            max_tokens=settings.ANTHROPIC_MAX_TOKENS,
            transport=transport,
        )

    async def complete(self, system: str, prompt: str, temperature: float = 0.2) -> str:
        if not self.api_key:
            raise TextGenerationError("Text generation is not configured")
        body = {
            "model": self.model,
            "max_tokens": self.max_tokens,
            "temperature": temperature,
            "system": system,
            "messages": [{"role": "user", "content": prompt}],
        }
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }
        async with httpx.AsyncClient(transport=self._transport, timeout=self._timeout) as client:
            try:
                resp = await client.post(self.api_url, json=body, headers=headers)
            except httpx.HTTPError as exc:
                raise TextGenerationError(f"Text generation request failed: {exc}") from exc
        if not resp.is_success:
            logger.error("Text generation error %s: %s", resp.status_code, resp.text[:500])
            raise TextGenerationError(f"Text generation failed: {resp.status_code}")

        blocks = resp.json().get("content") or []
        text = "".join(b.get("text", "") for b in blocks if b.get("type") == "text").strip()
        if not text:
            raise TextGenerationError("Text generation returned no text")
        return text

    async def assess_bpmn(self, bpmn_xml: str, manual_service: bool = True) -> str:
        prompt = ASSESSMENT_CHECKS
        if manual_service:
            prompt += f"\n\n{MANUAL_SERVICE_CHECK}"
        prompt += f"\n\nHere is the BPMN XML:\n{bpmn_xml}"
        return await self.complete(ASSESSMENT_SYSTEM_PROMPT, prompt)

    async def draft_descriptions(
        self,
        service_name: str,
        steps: list[tuple[str, str]],
        max_chars: int = 400,
    ) -> DraftDescriptions:
        """Draft a service description and one description per ``(node_id, name)``."""
        listing = "\n".join(f"- nodeId={node_id}: {name}" for node_id, name in steps)
        prompt = f"Service: {service_name}\n\nSteps:\n{listing or '(none)'}"
        raw = await self.complete(DESCRIBE_SYSTEM_PROMPT, prompt)
        data = _extract_json_object(raw)

        known = {node_id for node_id, _ in steps}
        drafts = DraftDescriptions(
            service_description=clamp_two_sentences(data.get("serviceDescription"), max_chars)
        )
        for item in data.get("steps") or []:
            if not isinstance(item, dict):
                continue
            node_id = item.get("nodeId")
            if node_id in known:
                drafts.steps[node_id] = clamp_two_sentences(item.get("description"), max_chars)
        return drafts


def _extract_json_object(text: str) -> dict:
    start, end = text.find("{"), text.rfind("}")
    if start < 0 or end <= start:
        raise TextGenerationError("Generated text contains no JSON object")
    try:
        data = json.loads(text[start:end + 1])
    except ValueError as exc:
        raise TextGenerationError("Generated text is not valid JSON") from exc
    if not isinstance(data, dict):
        raise TextGenerationError("Generated JSON is not an object")
    return data
