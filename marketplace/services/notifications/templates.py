"""
Notification template engine with Jinja2 for email and SMS rendering.

Templates live in the ``templates`` directory next to this module:
``<name>_subject.txt``, ``<name>.html``, optional ``<name>.txt`` and
optional ``<name>_sms.txt``.
"""

from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Optional, Union

from jinja2 import (
    Environment,
    FileSystemLoader,
    StrictUndefined,
    TemplateError,
    TemplateNotFound,
    select_autoescape,
)

from marketplace.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TEMPLATE_DIR = Path(__file__).parent / "templates"


class TemplateEngineError(Exception):
    """Base exception for template engine errors."""

    def __init__(self, message: str, template_name: Optional[str] = None):
        super().__init__(message)
        self.template_name = template_name


class TemplateNotFoundError(TemplateEngineError):
    """Raised when a template cannot be found."""

    pass


class TemplateRenderError(TemplateEngineError):
    """Raised when template rendering fails."""

    pass


@dataclass(frozen=True)
class RenderedEmail:
    subject: str
    html_body: str
    text_body: Optional[str] = None


def format_currency(value: Union[Decimal, float, int, str]) -> str:
    return f"${Decimal(str(value)):,.2f}"


class TemplateEngine:
    """Loads and renders notification templates."""

    def __init__(self, template_dir: Optional[Union[str, Path]] = None):
        self.template_dir = Path(template_dir) if template_dir else DEFAULT_TEMPLATE_DIR
        self.env = Environment(
            loader=FileSystemLoader(str(self.template_dir)),
            autoescape=select_autoescape(["html", "xml"]),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
        )
        self.env.filters["currency"] = format_currency

    def _render(self, filename: str, template_name: str, context: Dict[str, Any]) -> str:
        try:
            return self.env.get_template(filename).render(**context)
        except TemplateNotFound as e:
            raise TemplateNotFoundError(
                f"Template not found: {filename}", template_name=template_name
            ) from e
        except TemplateError as e:
            logger.error(
                "Template rendering failed",
                template_name=template_name,
                filename=filename,
                error=str(e),
            )
            raise TemplateRenderError(
                f"Failed to render {filename}: {e}", template_name=template_name
            ) from e

    def render_email(self, template_name: str, context: Dict[str, Any]) -> RenderedEmail:
        """
        Render subject, HTML body and (when present) plain-text body.

        Raises:
            TemplateNotFoundError: If the subject or HTML template is missing
            TemplateRenderError: If rendering fails
        """
        subject = self._render(f"{template_name}_subject.txt", template_name, context).strip()
        html_body = self._render(f"{template_name}.html", template_name, context)

        text_body: Optional[str]
        try:
            text_body = self._render(f"{template_name}.txt", template_name, context)
        except TemplateNotFoundError:
            text_body = None

        return RenderedEmail(subject=subject, html_body=html_body, text_body=text_body)

    def render_sms(self, template_name: str, context: Dict[str, Any]) -> str:
        return self._render(f"{template_name}_sms.txt", template_name, context).strip()

    def has_sms_template(self, template_name: str) -> bool:
        return f"{template_name}_sms.txt" in self.env.list_templates()
