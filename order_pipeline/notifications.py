"""
Order Pipeline — email notifications

Templates render to a text and an HTML body. Without SMTP settings the
mailer writes the message to the log instead of sending it.
"""

import asyncio
import html
import logging
import smtplib
from collections.abc import Callable
from email.message import EmailMessage
from typing import Any

from .config import Settings
from .errors import MalformedMessage

logger = logging.getLogger(__name__)


# ── Templates ────────────────────────────────────


def _item_label(item: dict[str, Any]) -> str:
    return item.get("productName") or item["productId"]


def render_order_confirmation(data: dict[str, Any]) -> tuple[str, str]:
    items = data.get("items", [])
    total = float(data["totalAmount"])

    lines = "\n".join(
        f"  {i}. Product: {_item_label(item)} | Qty: {item['quantity']} | "
        f"Price: ${float(item['price']):.2f}"
        for i, item in enumerate(items, start=1)
    )
    text_body = (
        f"Dear {data['customerName']},\n\n"
        "Thank you for your order! Here are your order details:\n\n"
        f"Order ID: {data['orderId']}\n\n"
        f"Items:\n{lines}\n\n"
        f"Total: ${total:.2f}\n\n"
        "Your order is being processed and you will receive shipping updates soon.\n\n"
        "Best regards,\nE-Commerce Store"
    )

    rows = "".join(
        "<tr>"
        f"<td>{html.escape(_item_label(item))}</td>"
        f"<td style=\"text-align: center;\">{item['quantity']}</td>"
        f"<td style=\"text-align: right;\">${float(item['price']):.2f}</td>"
        "</tr>"
        for item in items
    )
    html_body = (
        "<!DOCTYPE html><html><body style=\"font-family: Arial, sans-serif;\">"
        "<h1>Order Confirmation</h1>"
        f"<p>Dear <strong>{html.escape(data['customerName'])}</strong>,</p>"
        "<p>Thank you for your order! Here are your order details:</p>"
        f"<p><strong>Order ID:</strong> {html.escape(data['orderId'])}</p>"
        "<table><thead><tr><th>Product</th><th>Qty</th><th>Price</th></tr></thead>"
        f"<tbody>{rows}</tbody>"
        f"<tfoot><tr><td colspan=\"2\">Total</td><td>${total:.2f}</td></tr></tfoot>"
        "</table>"
        "<p>Your order is being processed and you will receive shipping updates soon.</p>"
        "</body></html>"
    )
    return text_body, html_body


TEMPLATES: dict[str, Callable[[dict[str, Any]], tuple[str, str]]] = {
    "order-confirmation": render_order_confirmation,
}


def render(template_id: str, data: dict[str, Any]) -> tuple[str, str]:
    renderer = TEMPLATES.get(template_id)
    if renderer is None:
        raise MalformedMessage(f"Unknown template: {template_id}")
    try:
        return renderer(data)
    except (KeyError, TypeError, ValueError) as e:
        raise MalformedMessage(f"Bad data for template {template_id}: {e}") from e


# ── Delivery ─────────────────────────────────────


class Mailer:
    def __init__(self, settings: Settings):
        self.settings = settings

    async def send(self, to: str, subject: str, text_body: str, html_body: str) -> bool:
        if not self.settings.smtp_configured:
            logger.info("EMAIL (not sent, SMTP not configured) to=%s subject=%s\n%s", to, subject, text_body)
            return True

        message = EmailMessage()
        message["From"] = self.settings.email_from
        message["To"] = to
        message["Subject"] = subject
        message.set_content(text_body)
        message.add_alternative(html_body, subtype="html")

        try:
            await asyncio.to_thread(self._deliver, message)
        except (smtplib.SMTPException, OSError):
            logger.exception("Failed to send email to %s", to)
            return False
        logger.info("Email sent to %s: %s", to, subject)
        return True

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self.settings.smtp_host, self.settings.smtp_port, timeout=10) as smtp:
            smtp.starttls()
            smtp.login(self.settings.smtp_user, self.settings.smtp_pass)
            smtp.send_message(message)
