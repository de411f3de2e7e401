"""Tests for template rendering, resolution and the bundled defaults."""

from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from pulss_notify.config.models import RenderingConfig
from pulss_notify.domain import TemplateMissing
from pulss_notify.domain.exceptions import TemplateRenderError
from pulss_notify.domain.models import Channel, NotificationTemplate
from pulss_notify.persistence import TemplateRepository, get_session
from pulss_notify.templates import TemplateRenderer, TemplateResolver, load_defaults

NOW = datetime(2025, 11, 4, 12, 0, tzinfo=timezone.utc)


def _template(channel=Channel.EMAIL, subject="", body="Hello", **overrides):
    return NotificationTemplate(
        type_code=overrides.pop("type_code", "order_confirmed"),
        channel=channel,
        subject=subject,
        body=body,
        **overrides,
    )


@pytest.fixture
def renderer():
    return TemplateRenderer()


class TestTemplateRenderer:
    """Test channel rendering rules."""

    def test_substitutes_variables(self, renderer):
        template = _template(subject="Order Confirmed - {{order_id}}", body="<p>Order {{order_id}}</p>")

        content = renderer.render(template, {"order_id": 1001})

        assert content.subject == "Order Confirmed - 1001"
        assert content.body == "<p>Order 1001</p>"
        assert content.is_html

    def test_unresolved_placeholder_kept_verbatim(self, renderer):
        template = _template(subject="Order {{order_id}} for {{customer_name}}")

        with patch("pulss_notify.templates.renderer.logger") as mock_logger:
            content = renderer.render(template, {"order_id": 7})

        assert content.subject == "Order 7 for {{customer_name}}"
        mock_logger.warning.assert_called_once()
        extra = mock_logger.warning.call_args.kwargs["extra"]
        assert extra["event"] == "template.render.unresolved"
        assert extra["missing"] == ["customer_name"]

    def test_email_body_escapes_variables(self, renderer):
        template = _template(subject="Hi {{name}}", body="<p>Hi {{name}}</p>")

        content = renderer.render(template, {"name": "<b>Ann</b> & co"})

        assert content.body == "<p>Hi &lt;b&gt;Ann&lt;/b&gt; &amp; co</p>"
        assert content.subject == "Hi <b>Ann</b> & co"

    def test_subject_collapsed_to_one_line(self, renderer):
        template = _template(subject="Order\n  {{order_id}}\n")

        assert renderer.render(template, {"order_id": "A1"}).subject == "Order A1"

    def test_sms_truncated(self):
        renderer = TemplateRenderer(RenderingConfig(sms_max_length=160))
        template = _template(channel=Channel.SMS, body="{{text}}")

        content = renderer.render(template, {"text": "x" * 200})

        assert len(content.body) == 160
        assert content.body.endswith("...")
        assert not content.is_html

    def test_sms_not_escaped(self, renderer):
        template = _template(channel=Channel.SMS, body="{{store}}: ready")

        assert renderer.render(template, {"store": "Tom & Co"}).body == "Tom & Co: ready"

    def test_push_body_truncated_title_kept(self):
        renderer = TemplateRenderer(RenderingConfig(push_max_length=40))
        template = _template(channel=Channel.PUSH, subject="Order ready", body="{{text}}")

        content = renderer.render(template, {"text": "y" * 100})

        assert content.subject == "Order ready"
        assert len(content.body) == 40

    def test_webhook_carries_data(self, renderer):
        template = _template(channel=Channel.WEBHOOK, subject="order_confirmed", body="Order {{order_id}}")

        content = renderer.render(template, {"order_id": 1001, "placed_at": NOW})

        assert content.body == "Order 1001"
        assert content.data == {"order_id": 1001, "placed_at": str(NOW)}

    def test_rendering_is_deterministic(self, renderer):
        template = _template(subject="{{a}}-{{b}}", body="<i>{{a}}</i>")
        variables = {"a": "1", "b": "<2>"}

        assert renderer.render(template, variables) == renderer.render(template, variables)

    def test_channel_override(self, renderer):
        template = _template(channel=Channel.EMAIL, body="<p>{{x}}</p>")

        content = renderer.render(template, {"x": "<y>"}, channel=Channel.IN_APP)

        assert content.body == "<p><y></p>"
        assert not content.is_html

    def test_validate_rejects_syntax_error(self, renderer):
        with pytest.raises(TemplateRenderError) as exc_info:
            renderer.validate(_template(body="{% if order_id %}unterminated"))

        assert exc_info.value.alert_kind == "template_invalid"

    def test_validate_accepts_good_template(self, renderer):
        renderer.validate(_template(subject="{{a}}", body="{% if b %}{{b}}{% endif %}"))


class TestTemplateResolver:
    """Test tenant-then-platform template lookup."""

    def _save(self, template):
        with get_session() as session:
            TemplateRepository(session).upsert(template, NOW)

    def test_platform_default_used_without_tenant_template(self, seeded):
        with get_session() as session:
            template = TemplateResolver().resolve(session, "t-1", "order_confirmed", Channel.EMAIL)

        assert template.tenant_id is None
        assert template.subject == "Order Confirmed - {{order_id}}"

    def test_tenant_template_preferred(self, seeded):
        self._save(_template(tenant_id="t-1", subject="Thanks! {{order_id}}"))

        with get_session() as session:
            own = TemplateResolver().resolve(session, "t-1", "order_confirmed", "email")
            other = TemplateResolver().resolve(session, "t-2", "order_confirmed", "email")

        assert own.subject == "Thanks! {{order_id}}"
        assert other.tenant_id is None

    def test_inactive_tenant_template_skipped(self, seeded):
        self._save(_template(tenant_id="t-1", subject="Off", is_active=False))

        with get_session() as session:
            template = TemplateResolver().resolve(session, "t-1", "order_confirmed", "email")

        assert template.tenant_id is None

    def test_missing_everywhere_raises(self, seeded):
        with get_session() as session:
            with pytest.raises(TemplateMissing) as exc_info:
                TemplateResolver().resolve(session, "t-1", "order_ready", Channel.EMAIL)

        assert exc_info.value.channel == "email"
        assert exc_info.value.alert_kind == "template_missing"


class TestDefaults:
    def test_catalog_and_templates_load(self):
        types, templates = load_defaults(critical_types=["payment_failed"])

        codes = {t.type_code for t in types}
        assert {"order_confirmed", "payment_failed", "promo_new_offer"} <= codes
        assert all(t.tenant_id is None for t in templates)

        by_code = {t.type_code: t for t in types}
        assert by_code["payment_failed"].critical
        assert not by_code["order_confirmed"].critical
        assert not by_code["order_confirmed"].can_opt_out
        assert by_code["promo_new_offer"].can_opt_out

    def test_every_default_template_compiles(self):
        renderer = TemplateRenderer()
        _, templates = load_defaults()
        for template in templates:
            renderer.validate(template)

    def test_every_template_references_a_catalog_type(self):
        types, templates = load_defaults()
        codes = {t.type_code for t in types}
        assert {t.type_code for t in templates} <= codes
