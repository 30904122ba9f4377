"""
Notification template renderer.

Two flavours share one expression language and one set of formatting
functions. The HTML flavour autoescapes every interpolated value because the
output goes into email clients without further sanitization. Values that
read as `javascript:`, `vbscript:` or `data:` URLs are replaced with
"#ZgotmplZ" before escaping, since escaping alone leaves them live inside an
href. The text flavour (subject, plain body, SMS) never escapes.
"""

import json
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import tzinfo
from typing import Any

import jinja2
from jinja2.sandbox import SandboxedEnvironment

from opsqueue.core.exceptions import OpsQueueException
from opsqueue.notifications.formatters import Formatters


class TemplateContentError(OpsQueueException):
    """Base for content errors; retrying a job cannot fix these."""

    def __init__(self, message: str, part: str | None = None):
        self.part = part
        super().__init__(message, details={"part": part} if part else None)


class TemplateSyntaxError(TemplateContentError):
    """Template failed to parse or compile."""


class TemplateRenderError(TemplateContentError):
    """Template parsed but failed while executing."""


class TemplateDataError(TemplateContentError):
    """Entity snapshot is not a JSON object."""


@dataclass(frozen=True)
class TemplateBodies:
    subject: str
    html: str
    text: str
    sms: str | None = None


@dataclass(frozen=True)
class RenderedNotification:
    subject: str
    html: str
    text: str
    sms: str | None = None


class SnapshotEnvironment(SandboxedEnvironment):
    """
    Sandboxed environment where mapping keys win over Python attributes.

    `Entity.items` reads the snapshot's "items" field rather than dict.items,
    and a missing key is undefined (rendered empty) instead of an error.
    """

    def getattr(self, obj: Any, attribute: str) -> Any:
        if isinstance(obj, Mapping):
            try:
                return obj[attribute]
            except KeyError:
                return self.undefined(obj=obj, name=attribute)
        return super().getattr(obj, attribute)


# Replacement for interpolated values that would run script as a URL
UNSAFE_URL_VALUE = "#ZgotmplZ"

_SCRIPT_SCHEMES = ("javascript:", "vbscript:")


def neutralize_unsafe_url(value: Any) -> Any:
    """
    Replace string values that a browser would treat as a script URL.

    Leading whitespace and control characters are ignored, as are tabs and
    line breaks inside the scheme. `data:` only counts when followed directly
    by a media type, so prose such as "Data: 5 chairs" is left alone.
    """
    if not isinstance(value, str):
        return value
    compact = value.lstrip("".join(map(chr, range(33))))[:64]
    compact = compact.replace("\t", "").replace("\n", "").replace("\r", "").lower()
    if compact.startswith(_SCRIPT_SCHEMES):
        return UNSAFE_URL_VALUE
    if compact.startswith("data:") and compact[5:6].strip():
        return UNSAFE_URL_VALUE
    return value


class Renderer:
    """Parses and executes notification templates."""

    def __init__(self, site_url: str, timezone: tzinfo):
        self.site_url = site_url
        self.formatters = Formatters(timezone)
        self._text_env = self._build_env(autoescape=False)
        self._html_env = self._build_env(autoescape=True)

    def _build_env(self, autoescape: bool) -> SnapshotEnvironment:
        env = SnapshotEnvironment(
            autoescape=autoescape,
            undefined=jinja2.ChainableUndefined,
            keep_trailing_newline=True,
            finalize=neutralize_unsafe_url if autoescape else None,
        )
        functions = self.formatters.as_mapping()
        env.filters.update(functions)
        env.globals.update(functions)
        return env

    def _env(self, is_html: bool) -> SnapshotEnvironment:
        return self._html_env if is_html else self._text_env

    def build_context(self, entity: dict[str, Any]) -> dict[str, Any]:
        return {"Entity": entity, "Metadata": {"site_url": self.site_url}}

    @staticmethod
    def load_entity(entity_data: Any) -> dict[str, Any]:
        """Accept a decoded snapshot or its JSON text."""
        if isinstance(entity_data, (str, bytes)):
            try:
                entity_data = json.loads(entity_data)
            except ValueError as e:
                raise TemplateDataError(f"invalid entity data: {e}") from e
        if entity_data is None:
            return {}
        if not isinstance(entity_data, dict):
            raise TemplateDataError(
                f"invalid entity data: expected a JSON object, got {type(entity_data).__name__}"
            )
        return entity_data

    def validate(self, source: str, is_html: bool, part: str | None = None) -> None:
        """Parse and compile without executing."""
        try:
            self._env(is_html).from_string(source)
        except jinja2.TemplateSyntaxError as e:
            raise TemplateSyntaxError(
                f"invalid template syntax (line {e.lineno}): {e.message}", part
            ) from e

    def render_part(
        self, source: str, is_html: bool, context: dict[str, Any], part: str | None = None
    ) -> str:
        try:
            template = self._env(is_html).from_string(source)
        except jinja2.TemplateSyntaxError as e:
            raise TemplateSyntaxError(
                f"template parse error (line {e.lineno}): {e.message}", part
            ) from e

        try:
            return template.render(context)
        except (jinja2.TemplateError, TypeError, ValueError, ArithmeticError, LookupError) as e:
            raise TemplateRenderError(f"template execution error: {e}", part) from e

    def render(self, bodies: TemplateBodies, entity_data: Any) -> RenderedNotification:
        """Render subject, HTML, text and (when present) SMS bodies."""
        context = self.build_context(self.load_entity(entity_data))

        subject = self.render_part(bodies.subject, False, context, "subject")
        html = self.render_part(bodies.html, True, context, "html")
        text = self.render_part(bodies.text, False, context, "text")
        sms = None
        if bodies.sms:
            sms = self.render_part(bodies.sms, False, context, "sms")

        return RenderedNotification(subject=subject, html=html, text=text, sms=sms)

    def preview(self, source: str, is_html: bool, sample_entity_data: Any) -> str:
        """Render one template string against caller-supplied sample data."""
        context = self.build_context(self.load_entity(sample_entity_data))
        return self.render_part(source, is_html, context)
