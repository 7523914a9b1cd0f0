"""Jinja2-backed prompt library for the pipeline stages.

Each prompt is a pair of templates under ``lightapp/prompts/templates/``:
``<name>.system.j2`` and ``<name>.user.j2``.  Prompt text is configuration
data, so it lives in template files rather than in code; the builders in
:mod:`lightapp.stages` only decide *which* values reach a template.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateNotFound, select_autoescape

from lightapp.models import ChatMessage

_DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"

PROMPT_NAMES = (
    "stage1",
    "stage2",
    "stage3",
    "stage4",
    "stage5",
    "cover_image",
    "game_over_image",
)


def _bullet_list_filter(items: Any, empty: str = "(see code)") -> str:
    """Join a list of features into ``a, b, c`` or return *empty*."""
    values = [str(i) for i in (items or []) if str(i).strip()]
    return ", ".join(values) if values else empty


class PromptLibrary:
    """Renders the system/user message pair for a named prompt."""

    def __init__(self, template_dir: str | Path | None = None) -> None:
        self.template_dir = Path(template_dir or _DEFAULT_TEMPLATE_DIR)
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape([]),
            undefined=StrictUndefined,
            keep_trailing_newline=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["bullet_list"] = _bullet_list_filter

    def render(self, template_path: str, context: dict[str, Any]) -> str:
        """Render a single template file with *context*."""
        template = self.env.get_template(template_path)
        return template.render(**context).strip()

    def messages(self, name: str, **context: Any) -> list[ChatMessage]:
        """Return ``[system, user]`` messages for the prompt *name*.

        Raises:
            KeyError: If no templates exist for *name*.
        """
        try:
            system = self.render(f"{name}.system.j2", context)
            user = self.render(f"{name}.user.j2", context)
        except TemplateNotFound as exc:
            raise KeyError(f"No prompt templates for '{name}'") from exc
        return [
            ChatMessage(role="system", content=system),
            ChatMessage(role="user", content=user),
        ]


__all__ = ["PromptLibrary", "PROMPT_NAMES"]
