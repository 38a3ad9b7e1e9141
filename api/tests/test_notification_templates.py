"""Tests for billing notice rendering."""

from __future__ import annotations

import pytest
from api.services.notification_templates import NotificationTemplates


@pytest.fixture()
def templates() -> NotificationTemplates:
    return NotificationTemplates(brand_name="LaundryFlow Pro", app_url="https://app.test/")


class TestRender:
    def test_trial_ending(self, templates: NotificationTemplates) -> None:
        email = templates.render("trial_ending_7d", branch_name="Centro", laundry_name="Lavandería Sol")

        assert email.subject == "⏰ Tu período de prueba termina en 7 días - Centro"
        assert "Hola Lavandería Sol" in email.html
        assert "Activar Suscripción" in email.html
        assert 'href="https://app.test/settings?tab=subscription"' in email.html
        assert "LaundryFlow Pro" in email.html

    def test_singular_day(self, templates: NotificationTemplates) -> None:
        trial = templates.render("trial_ending_1d", branch_name="Centro", laundry_name="Sol")
        past_due = templates.render("past_due_1d", branch_name="Centro", laundry_name="Sol")

        assert "1 día -" in trial.subject
        assert past_due.subject == "⚠️ Pago vencido - 1 día para suspensión - Centro"

    def test_past_due(self, templates: NotificationTemplates) -> None:
        email = templates.render("past_due_3d", branch_name="Norte", laundry_name="Sol")

        assert email.subject == "⚠️ Pago vencido - 3 días para suspensión - Norte"
        assert "<strong>3 días</strong>" in email.html
        assert "Realizar Pago" in email.html

    def test_suspended(self, templates: NotificationTemplates) -> None:
        email = templates.render("suspended", branch_name="Centro", laundry_name="Sol")

        assert email.subject == "🚫 Suscripción suspendida - Centro"
        assert "Reactivar Ahora" in email.html
        assert "suspendida por falta de pago" in email.html

    def test_names_are_escaped_in_body(self, templates: NotificationTemplates) -> None:
        email = templates.render("suspended", branch_name="<b>Centro</b>", laundry_name="Sol & Luna")

        assert "&lt;b&gt;Centro&lt;/b&gt;" in email.html
        assert "Sol &amp; Luna" in email.html

    @pytest.mark.parametrize("tag", ["welcome", "trial_ending_d", "past_due_3", "payment_received"])
    def test_unknown_type(self, templates: NotificationTemplates, tag: str) -> None:
        with pytest.raises(ValueError, match="Unknown notification type"):
            templates.render(tag, branch_name="Centro", laundry_name="Sol")
