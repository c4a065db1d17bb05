"""
Template Renderer — Turns a stored Template into a RenderedMessage.

TEXT templates interpolate `{{ dotted.path }}` placeholders against the
event context. STRUCTURED templates are sent by external name and
language; only their ordered parameters are interpolated.

Best-effort mode (default) renders unresolved placeholders as empty
strings. Strict mode refuses to render and reports every unresolved path.
"""
from __future__ import annotations

import re
import structlog
from datetime import date, datetime, timezone
from typing import Any, Optional

from models.errors import TemplateRenderError
from models.schemas import RenderedMessage, Template, TemplateKind
from utils.conditions import get_nested_value

logger = structlog.get_logger()

PLACEHOLDER = re.compile(r"\{\{\s*([a-zA-Z0-9_.]+)\s*\}\}")


def format_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")
    if isinstance(value, date):
        return value.isoformat()
    return str(value)


def placeholders(text: str) -> list[str]:
    return PLACEHOLDER.findall(text or "")


class TemplateRenderer:
    """Stateless apart from the default strictness."""

    def __init__(self, strict: bool = False):
        self.strict = strict

    # ── Public API ────────────────────────────────────────────

    def render(self, template: Template, context: dict[str, Any], strict: Optional[bool] = None) -> RenderedMessage:
        strict = self.strict if strict is None else strict
        if strict:
            missing = self.missing_variables(template, context)
            if missing:
                raise TemplateRenderError(template.id, missing)

        if template.kind == TemplateKind.TEXT:
            return RenderedMessage(
                kind=TemplateKind.TEXT,
                content=self.render_text(template.content or "", context),
            )

        ref = template.structured_ref
        return RenderedMessage(
            kind=TemplateKind.STRUCTURED,
            structured_name=ref.name,
            language=ref.language,
            ordered_params=[self.render_text(p, context) for p in ref.ordered_params],
        )

    def render_text(self, content: str, context: dict[str, Any]) -> str:
        """Replace {{path}} placeholders; anything unresolved becomes ''."""
        if not content:
            return ""

        def replacer(match: re.Match) -> str:
            return format_value(get_nested_value(context, match.group(1)))

        return PLACEHOLDER.sub(replacer, content)

    def missing_variables(self, template: Template, context: dict[str, Any]) -> list[str]:
        """Placeholder paths that resolve to nothing or to an empty value, first occurrence order."""
        if template.kind == TemplateKind.TEXT:
            sources = [template.content or ""]
        else:
            sources = list(template.structured_ref.ordered_params) if template.structured_ref else []

        missing: list[str] = []
        for text in sources:
            for path in placeholders(text):
                if format_value(get_nested_value(context, path)) == "" and path not in missing:
                    missing.append(path)
        return missing
