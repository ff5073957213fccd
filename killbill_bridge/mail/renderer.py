"""Rendering helpers for billing notification emails."""
from __future__ import annotations

import html
import re
from pathlib import Path
from typing import Any, Dict, Tuple

_TEMPLATE_PATH = Path(__file__).resolve().parent / "templates"
_PLACEHOLDER_PATTERN = re.compile(r"{{\s*(\w+)\s*}}")

CARD_DECLINED = "subscription_card_declined"
SUBSCRIPTION_RESTARTED = "subscription_restarted"


def _load_template(template: str) -> str:
    path = _TEMPLATE_PATH / template
    return path.read_text(encoding="utf-8")


def _render_template(template: str, context: Dict[str, Any], *, escape: bool) -> str:
    source = _load_template(template)

    def _replace(match: re.Match[str]) -> str:
        value = context.get(match.group(1), "")
        text = "" if value is None else str(value)
        return html.escape(text) if escape else text

    return _PLACEHOLDER_PATTERN.sub(_replace, source)


def render_subject_body(base_template: str, context: Dict[str, Any]) -> Tuple[str, str, str]:
    """Return ``(subject, text_body, html_body)`` for ``base_template``."""

    subject = _render_template(f"{base_template}_subject.txt.j2", context, escape=False)
    text_body = _render_template(f"{base_template}_body.txt.j2", context, escape=False)
    html_body = _render_template(f"{base_template}_body.html.j2", context, escape=True)
    return subject.strip(), text_body.strip(), html_body.strip()
