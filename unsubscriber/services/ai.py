import json
import logging
from typing import Literal, Optional

import openai
from pydantic import BaseModel, ValidationError, field_validator

from unsubscriber.config import get_settings

logger = logging.getLogger(__name__)


class AIError(Exception):
    """The AI backend failed or returned something we could not interpret."""


class FieldValue(BaseModel):
    selector: str
    value: str = ""

    @field_validator("value", mode="before")
    @classmethod
    def _coerce_value(cls, value):
        return "" if value is None else str(value)


class CheckboxState(BaseModel):
    selector: str
    checked: bool = True


class AIDirective(BaseModel):
    strategy: Literal["form_submit", "button_click", "link_click", "unknown"]
    form_index: Optional[int] = None
    fields: list[FieldValue] = []
    selects: list[FieldValue] = []
    checkboxes: list[CheckboxState] = []
    submit_selector: Optional[str] = None
    link_selector: Optional[str] = None
    confidence: Literal["high", "medium", "low"] = "low"
    reason: Optional[str] = None


class SimpleDirective(BaseModel):
    method: str
    form_data: Optional[dict] = None
    selector: Optional[str] = None
    reason: Optional[str] = None


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence (```json ... ```)."""
    text = text.strip()
    if text.startswith("```"):
        parts = text.split("\n", 1)
        text = parts[1] if len(parts) > 1 else ""
        text = text.rsplit("```", 1)[0]
    return text.strip()


def _decode_object(text: Optional[str]) -> dict:
    if not text:
        raise AIError("Empty AI response")
    try:
        data = json.loads(strip_code_fence(text))
    except json.JSONDecodeError as e:
        raise AIError(f"AI response is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise AIError("AI response is not a JSON object")
    return data


def parse_directive(text: Optional[str]) -> AIDirective:
    """Defensively decode an AIDirective from untrusted model output."""
    data = _decode_object(text)
    if "strategy" not in data:
        raise AIError("AI directive is missing 'strategy'")
    for key in ("fields", "selects", "checkboxes"):
        if not isinstance(data.get(key), list):
            data.pop(key, None)
    if data.get("confidence") not in ("high", "medium", "low"):
        data.pop("confidence", None)
    try:
        return AIDirective.model_validate(data)
    except ValidationError as e:
        raise AIError(f"AI directive has an invalid shape: {e}") from e


def parse_simple_directive(text: Optional[str]) -> SimpleDirective:
    data = _decode_object(text)
    if "method" not in data:
        raise AIError("AI response is missing 'method'")
    try:
        return SimpleDirective.model_validate(data)
    except ValidationError as e:
        raise AIError(f"AI response has an invalid shape: {e}") from e


class AIService:
    def __init__(self):
        settings = get_settings()
        self.settings = settings
        self.client = openai.AsyncOpenAI(
            api_key=settings.openai_api_key or "missing",
            timeout=settings.ai_timeout,
        )
        self.model = settings.openai_model

    async def complete(self, prompt: str, max_tokens: int = 500) -> str:
        """Send a single prompt to the reasoning backend and return its text."""
        if not self.settings.ai_enabled:
            raise AIError("OPENAI_API_KEY is not configured")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                messages=[{"role": "user", "content": prompt}],
            )
        except openai.OpenAIError as e:
            logger.error("AI request failed: %s", e)
            raise AIError(str(e)) from e

        content = response.choices[0].message.content if response.choices else None
        if not content:
            raise AIError("AI returned an empty response")
        return content.strip()

    async def resolve_directive(self, page: dict) -> AIDirective:
        """
        Ask the model how to unsubscribe from a page.

        `page` is the compact view produced by page_analyzer.simplify.
        Returns a validated AIDirective or raises AIError.
        """
        prompt = self._directive_prompt(page)
        directive = parse_directive(await self.complete(prompt, max_tokens=800))
        logger.info(
            "AI directive: strategy=%s confidence=%s fields=%d selects=%d checkboxes=%d",
            directive.strategy,
            directive.confidence,
            len(directive.fields),
            len(directive.selects),
            len(directive.checkboxes),
        )
        return directive

    async def resolve_simple(self, html: str) -> SimpleDirective:
        """Legacy page analysis: returns {method, form_data} for a plain HTTP POST."""
        prompt = f"""Analyze this unsubscribe page HTML and identify how to unsubscribe. Look for:
1. Unsubscribe buttons or links
2. Forms that need to be submitted
3. Checkboxes that need to be toggled

Respond with ONLY valid JSON in this exact format:
{{"method": "button_click" | "form_submit" | "unknown", "selector": "<CSS selector or null>", "form_data": {{"<field name>": "<value>"}}, "reason": "<short explanation>"}}

Use "{self.settings.placeholder_email}" for any email field. Include form_data only for form_submit.

HTML (truncated):
{_truncate(html, 3000)}"""

        directive = parse_simple_directive(await self.complete(prompt, max_tokens=400))
        logger.info("AI simple directive: method=%s", directive.method)
        return directive

    def _directive_prompt(self, page: dict) -> str:
        page_json = json.dumps(page, indent=2)
        email = self.settings.placeholder_email
        return f"""You are automating an email unsubscribe page. Below is the structure of the page: its forms, fields, buttons and unsubscribe links.

PAGE STRUCTURE:
{page_json}

Decide how to complete the unsubscribe and respond with ONLY valid JSON in this exact format:
{{
    "strategy": "form_submit" | "button_click" | "link_click" | "unknown",
    "form_index": <index of the form to submit or null>,
    "fields": [{{"selector": "<CSS selector>", "value": "<text to enter>"}}],
    "selects": [{{"selector": "<CSS selector>", "value": "<option value>"}}],
    "checkboxes": [{{"selector": "<CSS selector>", "checked": true}}],
    "submit_selector": "<CSS selector of the submit button or button to click, or null>",
    "link_selector": "<CSS selector of the link to click, or null>",
    "confidence": "high" | "medium" | "low",
    "reason": "<one sentence explanation>"
}}

Guidelines:
- Use the selectors exactly as given in the page structure.
- For email fields use "{email}".
- If there is a dropdown asking for a reason, choose an option like "no longer interested".
- Check any checkbox that confirms unsubscribing from all emails.
- Use "button_click" when a single button completes the unsubscribe, "link_click" when a link does.
- Use "unknown" if you cannot find a way to unsubscribe.
- Set confidence by how clear the unsubscribe path is."""


def _truncate(content: str, max_length: int) -> str:
    if len(content) > max_length:
        return content[:max_length] + "..."
    return content
