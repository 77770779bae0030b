"""Jinja2 rendering for notification templates."""

from typing import Any

import structlog
from jinja2 import StrictUndefined, TemplateError
from jinja2.sandbox import SandboxedEnvironment

from hrqueue.exceptions import TemplateRenderError
from hrqueue.services.notifications.models import NotificationTemplate

logger = structlog.get_logger(__name__)


class TemplateRenderer:
    """Renders template subject/body in a sandbox.

    Undefined variables are errors rather than empty strings, so a template
    never goes out with a hole in it.
    """

    def __init__(self):
        self._env = SandboxedEnvironment(
            undefined=StrictUndefined,
            autoescape=False,
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def render(
        self, template: NotificationTemplate, variables: dict[str, Any]
    ) -> tuple[str, str]:
        """
        Render a template.

        Returns:
            (title, body)

        Raises:
            TemplateRenderError: Syntax error or missing variable
        """
        try:
            title = self._env.from_string(template.subject).render(**variables)
            body = self._env.from_string(template.body).render(**variables)
        except TemplateError as e:
            logger.warning(
                "template_render_failed", template_id=template.id, error=str(e)
            )
            raise TemplateRenderError(
                f"Template {template.id} failed to render: {e}", template_id=template.id
            ) from e
        return title.strip(), body
