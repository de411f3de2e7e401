"""Template rendering for every delivery channel using a sandboxed Jinja2.

Templates are tenant-authored, so they run in Jinja2's SandboxedEnvironment.
Placeholders whose variable was not supplied are left in the output exactly
as written, and the missing names are logged.
"""

import json
import re
from functools import lru_cache
from typing import Any, Dict, Mapping, Set

from jinja2 import ChainableUndefined, TemplateError, meta
from jinja2.sandbox import SandboxedEnvironment

from pulss_notify.config.models import RenderingConfig
from pulss_notify.domain.exceptions import TemplateRenderError
from pulss_notify.domain.models import Channel, NotificationTemplate, RenderedContent
from pulss_notify.logging import get_logger

logger = get_logger(__name__, component="renderer")


class VerbatimUndefined(ChainableUndefined):
    """Undefined value that prints as the placeholder it came from."""

    def __str__(self) -> str:
        return "{{" + (self._undefined_name or "") + "}}"

    def __html__(self) -> str:
        return str(self)


def _build_environment(autoescape: bool) -> SandboxedEnvironment:
    return SandboxedEnvironment(
        autoescape=autoescape,
        undefined=VerbatimUndefined,
        keep_trailing_newline=False,
    )


_PLAIN_ENV = _build_environment(autoescape=False)
_HTML_ENV = _build_environment(autoescape=True)


@lru_cache(maxsize=512)
def _compile(source: str, autoescape: bool):
    env = _HTML_ENV if autoescape else _PLAIN_ENV
    return env.from_string(source)


@lru_cache(maxsize=512)
def _referenced_names(source: str) -> frozenset:
    return frozenset(meta.find_undeclared_variables(_PLAIN_ENV.parse(source)))


def _protect_missing(source: str, missing: Set[str]) -> str:
    """Wrap placeholders of missing variables in raw blocks so they survive verbatim."""
    for name in missing:
        pattern = re.compile(r"\{\{-?\s*" + re.escape(name) + r"\b[^}]*\}\}")
        source = pattern.sub(lambda m: "{% raw %}" + m.group(0) + "{% endraw %}", source)
    return source


class TemplateRenderer:
    """Renders stored templates into channel payloads.

    Rendering is pure: the same template, variables and channel always give
    the same RenderedContent.

    Channel rules:
    - email: HTML body with variables escaped; subject plain and on one line
    - sms: plain body truncated to ``sms_max_length``
    - push: plain title and body, body truncated to ``push_max_length``
    - in_app: plain subject and body
    - webhook: no escaping; ``data`` carries the variables
    """

    def __init__(self, rendering_config: RenderingConfig | None = None):
        self.config = rendering_config or RenderingConfig()

    def render(
        self,
        template: NotificationTemplate,
        variables: Mapping[str, Any],
        channel: Channel | str | None = None,
    ) -> RenderedContent:
        """Render a template for a channel (defaults to the template's own channel).

        Raises:
            TemplateRenderError: If the template does not compile or breaks the sandbox
        """
        channel = Channel(channel or template.channel)
        variables = dict(variables or {})

        subject = self._render_text(template.subject, variables, autoescape=False, template=template)
        subject = " ".join(subject.split())

        if channel == Channel.EMAIL:
            body = self._render_text(template.body, variables, autoescape=True, template=template)
            return RenderedContent(subject=subject, body=body.strip(), is_html=True)

        body = self._render_text(template.body, variables, autoescape=False, template=template).strip()

        if channel == Channel.SMS:
            return RenderedContent(body=self._truncate(body, self.config.sms_max_length))
        if channel == Channel.PUSH:
            return RenderedContent(subject=subject, body=self._truncate(body, self.config.push_max_length))
        if channel == Channel.WEBHOOK:
            return RenderedContent(subject=subject, body=body, data=_json_safe(variables))
        return RenderedContent(subject=subject, body=body)

    def validate(self, template: NotificationTemplate) -> None:
        """Check that subject and body compile in the sandbox.

        Raises:
            TemplateRenderError: On a syntax error
        """
        for source in (template.subject, template.body):
            if not source:
                continue
            try:
                _PLAIN_ENV.parse(source)
            except TemplateError as e:
                raise TemplateRenderError(
                    f"Template {template.type_code}/{Channel(template.channel).value} is invalid: {e}",
                    tenant_id=template.tenant_id,
                ) from e

    def _render_text(
        self,
        source: str,
        variables: Dict[str, Any],
        autoescape: bool,
        template: NotificationTemplate,
    ) -> str:
        if not source:
            return ""
        try:
            missing = set(_referenced_names(source)) - set(variables)
            if missing:
                logger.warning(
                    f"Template {template.type_code}/{Channel(template.channel).value} "
                    f"has unresolved placeholders: {', '.join(sorted(missing))}",
                    extra={
                        "event": "template.render.unresolved",
                        "type_code": template.type_code,
                        "channel": Channel(template.channel).value,
                        "missing": sorted(missing),
                    },
                )
                source = _protect_missing(source, missing)
            return _compile(source, autoescape).render(variables)
        except TemplateError as e:
            message = f"Template {template.type_code}/{Channel(template.channel).value} failed to render: {e}"
            logger.error(message, extra={"event": "template.render.failed", "type_code": template.type_code})
            raise TemplateRenderError(message, tenant_id=template.tenant_id) from e

    def _truncate(self, text: str, limit: int) -> str:
        if len(text) <= limit:
            return text
        suffix = self.config.truncation_suffix
        return text[: limit - len(suffix)].rstrip() + suffix


def _json_safe(variables: Dict[str, Any]) -> Dict[str, Any]:
    """Variables as plain JSON types so they can be stored and posted."""
    return json.loads(json.dumps(variables, default=str))
