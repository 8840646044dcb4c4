"""Placeholder rendering for reward communications."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Mapping

# Placeholders tenants use in templates; any other variable supplied is rendered too.
KNOWN_PLACEHOLDERS = ("name", "client", "program", "link", "validity", "reward")

_PLACEHOLDER = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")

DEFAULT_SUBJECT = "Your reward from {client}"
DEFAULT_BODY = "Hi {name}, you have earned {reward} from {client}. Redeem here: {link} (valid {validity})."
FALLBACK_REWARD_TEXT = "a reward (please contact {support} to claim it)"


@dataclass
class RenderedTemplate:
    subject: str | None
    text_body: str


def render_text(template: str | None, variables: Mapping[str, Any]) -> str | None:
    """Substitute ``{key}`` tokens; unknown keys are left verbatim."""

    if template is None:
        return None

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        value = variables.get(key)
        if value is None:
            return match.group(0)
        return str(value)

    return _PLACEHOLDER.sub(_replace, template)


def render_message(subject: str | None, body: str, variables: Mapping[str, Any]) -> RenderedTemplate:
    return RenderedTemplate(
        subject=render_text(subject, variables),
        text_body=render_text(body, variables) or "",
    )


__all__ = [
    "DEFAULT_BODY",
    "DEFAULT_SUBJECT",
    "FALLBACK_REWARD_TEXT",
    "KNOWN_PLACEHOLDERS",
    "RenderedTemplate",
    "render_message",
    "render_text",
]
