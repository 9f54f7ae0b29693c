"""``{{placeholder}}`` substitution and template lookup.

Rendering is a plain string replace over a mapping.  A placeholder with no
value is left in the output unchanged unless ``strict`` is requested, in
which case :class:`~email_pipeline.errors.TemplateVariableError` lists the
missing names.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from sqlalchemy import select
from sqlalchemy.engine import Engine

from email_pipeline.errors import TemplateVariableError
from email_pipeline.storage.schema import email_templates

_PLACEHOLDER = re.compile(r"\{\{\s*([A-Za-z0-9_.]+)\s*\}\}")


def render_template(
    text: Optional[str], variables: Mapping[str, Any], strict: bool = False
) -> str:
    """Replace every ``{{key}}`` in ``text`` with ``variables[key]``."""
    if not text:
        return text or ""

    missing: list[str] = []

    def _sub(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in variables and variables[key] is not None:
            return str(variables[key])
        missing.append(key)
        return match.group(0)

    rendered = _PLACEHOLDER.sub(_sub, text)
    if strict and missing:
        raise TemplateVariableError(sorted(set(missing)))
    return rendered


def flatten_variables(data: Mapping[str, Any]) -> Dict[str, str]:
    """Stringify event fields so they can be used as template variables."""
    flat: Dict[str, str] = {}
    for key, value in data.items():
        if value is None:
            continue
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        flat[str(key)] = str(value)
    return flat


@dataclass(frozen=True)
class EmailTemplate:
    id: int
    subject: str
    html_content: str
    text_content: Optional[str] = None


class TemplateStore:
    """Read-only access to ``email_templates``."""

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def get(self, template_id: Optional[int]) -> Optional[EmailTemplate]:
        if template_id is None:
            return None
        with self._engine.connect() as conn:
            row = conn.execute(
                select(email_templates).where(
                    email_templates.c.id == template_id,
                    email_templates.c.is_active.is_(True),
                )
            ).mappings().first()
        if row is None:
            return None
        return EmailTemplate(
            id=row["id"],
            subject=row["subject"],
            html_content=row["html_content"],
            text_content=row["text_content"],
        )


__all__ = ["EmailTemplate", "TemplateStore", "flatten_variables", "render_template"]
