"""Generator program deployed into each sandbox.

``render_program`` splices a request payload into ``template.py`` and
returns the source that the orchestrator writes into the sandbox.
"""

from __future__ import annotations

import json
from functools import cache
from importlib import resources
from typing import Any

from vizbox.types import VizboxError

PLACEHOLDER = '"__VIZBOX_REQUEST__"'


class GeneratorTemplateError(VizboxError):
    """Raised when the generator program cannot be rendered."""


@cache
def load_template() -> str:
    """Return the raw source of the generator template."""
    return resources.files(__package__).joinpath("template.py").read_text(encoding="utf-8")


def render_program(payload: dict[str, Any]) -> str:
    """Return generator source with *payload* embedded as a string literal.

    Raises:
        GeneratorTemplateError: If the payload is not JSON-serializable or the
            template lost its placeholder.
    """
    try:
        raw = json.dumps(payload)
    except (TypeError, ValueError) as exc:
        raise GeneratorTemplateError(f"Payload is not JSON-serializable: {exc}") from exc

    template = load_template()
    if template.count(PLACEHOLDER) != 1:
        raise GeneratorTemplateError("Generator template must contain exactly one placeholder")
    return template.replace(PLACEHOLDER, repr(raw))
