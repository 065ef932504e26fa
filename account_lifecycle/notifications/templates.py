"""Jinja2 rendering of transactional email templates."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any, Mapping, Protocol

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError, select_autoescape

from ..domain.errors import RenderFailure

TEMPLATE_DIR = Path(__file__).resolve().parent / "mail_templates"


@dataclass(frozen=True, slots=True)
class RenderedMessage:
    subject: str
    html: str


class TemplateRenderer(Protocol):
    def render(self, template_name: str, context: Mapping[str, Any]) -> RenderedMessage: ...


class JinjaTemplateRenderer:
    """Renders ``<name>.html`` templates; each template sets its own ``subject``.

    Undefined variables fail loudly so a mail never goes out with a blank code
    or link.
    """

    def __init__(self, template_dir: Path = TEMPLATE_DIR) -> None:
        self._env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            autoescape=select_autoescape(["html"]),
            undefined=StrictUndefined,
        )

    def render(self, template_name: str, context: Mapping[str, Any]) -> RenderedMessage:
        try:
            template = self._env.get_template(f"{template_name}.html")
            module = template.make_module(dict(context))
            html = str(module)
            subject = getattr(module, "subject", None)
        except TemplateError as exc:
            raise RenderFailure(f"template {template_name!r} failed to render: {exc}") from exc
        if not subject:
            raise RenderFailure(f"template {template_name!r} does not define a subject")
        return RenderedMessage(subject=str(subject).strip(), html=html.strip())
