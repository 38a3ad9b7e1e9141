"""Email subjects and bodies for billing notices.

Notification type tags map to templates:

* ``trial_ending_{N}d`` -- trial ends in N days
* ``past_due_{N}d`` -- N days left before suspension
* ``suspended`` -- service suspended for non-payment
"""

from __future__ import annotations

import html
import re

from pydantic import BaseModel
from subscription_engine.models import SUSPENDED_NOTIFICATION

_TYPE_RE = re.compile(r"^(?P<kind>trial_ending|past_due)_(?P<days>\d+)d$")

_SETTINGS_PATH = "/settings?tab=subscription"

_BUTTON_STYLE = (
    "background-color: {color}; color: white; padding: 12px 24px; "
    "text-decoration: none; border-radius: 6px; display: inline-block;"
)


class RenderedEmail(BaseModel):
    subject: str
    html: str


def _plural_days(days: int) -> str:
    return "1 día" if days == 1 else f"{days} días"


class NotificationTemplates:
    """Render billing notices for one brand.

    Parameters
    ----------
    brand_name:
        Product name shown in the body.
    app_url:
        Web app root; the call-to-action links to its subscription settings.
    """

    def __init__(self, brand_name: str, app_url: str) -> None:
        self._brand = brand_name
        self._settings_url = f"{app_url.rstrip('/')}{_SETTINGS_PATH}"

    def _button(self, label: str, color: str) -> str:
        style = _BUTTON_STYLE.format(color=color)
        return f'<p><a href="{html.escape(self._settings_url)}" style="{style}">{label}</a></p>'

    def render(
        self,
        notification_type: str,
        *,
        branch_name: str,
        laundry_name: str,
    ) -> RenderedEmail:
        """Return subject and HTML body for *notification_type*.

        Raises
        ------
        ValueError
            If the type tag is not a known billing notice.
        """
        branch = html.escape(branch_name)
        laundry = html.escape(laundry_name)

        if notification_type == SUSPENDED_NOTIFICATION:
            return RenderedEmail(
                subject=f"🚫 Suscripción suspendida - {branch_name}",
                html=(
                    f"<h2>Hola {laundry},</h2>"
                    f"<p>La suscripción de la sucursal <strong>{branch}</strong> ha sido suspendida por falta de pago.</p>"
                    "<p>No podrás crear pedidos ni realizar ventas hasta regularizar el pago.</p>"
                    f"{self._button('Reactivar Ahora', '#ef4444')}"
                    f"<p>El equipo de {html.escape(self._brand)}</p>"
                ),
            )

        match = _TYPE_RE.match(notification_type)
        if match is None:
            raise ValueError(f"Unknown notification type '{notification_type}'")

        days = int(match.group("days"))
        if match.group("kind") == "trial_ending":
            return RenderedEmail(
                subject=f"⏰ Tu período de prueba termina en {_plural_days(days)} - {branch_name}",
                html=(
                    f"<h2>Hola {laundry},</h2>"
                    f"<p>El período de prueba de la sucursal <strong>{branch}</strong> termina en "
                    f"<strong>{_plural_days(days)}</strong>.</p>"
                    f"<p>Para continuar usando {html.escape(self._brand)} sin interrupciones, "
                    "activa tu suscripción ahora.</p>"
                    f"{self._button('Activar Suscripción', '#0ea5e9')}"
                    f"<p>Gracias por usar {html.escape(self._brand)}.</p>"
                ),
            )

        return RenderedEmail(
            subject=f"⚠️ Pago vencido - {_plural_days(days)} para suspensión - {branch_name}",
            html=(
                f"<h2>Hola {laundry},</h2>"
                f"<p>El pago de la suscripción de la sucursal <strong>{branch}</strong> está vencido.</p>"
                f"<p>Tienes <strong>{_plural_days(days)}</strong> para realizar el pago antes de que "
                "el servicio sea suspendido.</p>"
                f"{self._button('Realizar Pago', '#f59e0b')}"
                "<p>Si tienes dudas, contáctanos.</p>"
            ),
        )
