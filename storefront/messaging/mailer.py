"""Transactional order emails over SMTP."""
from __future__ import annotations

import logging
import smtplib
from email.message import EmailMessage
from email.utils import formataddr
from html import escape
from typing import Callable, List

from ..models import PaymentMethod
from ..schemas import NotificationEvent, OrderDetail
from ..site_settings import SettingsProvider, SiteSettings
from .telegram import item_name

logger = logging.getLogger(__name__)

PAYMENT_LABELS = {
    PaymentMethod.CASH_ON_DELIVERY: "Cash on Delivery",
    PaymentMethod.BANK_TRANSFER: "Bank Transfer",
}


def _money(amount) -> str:
    return f"${amount:.2f}"


def order_confirmation(order: OrderDetail, settings: SiteSettings) -> EmailMessage:
    """Customer-facing confirmation, HTML with a plain-text fallback."""
    site = escape(settings.site_name)
    rows = "".join(
        "<tr>"
        f"<td>{escape(item_name(line))}</td>"
        f"<td style=\"text-align: center;\">{line.quantity}</td>"
        f"<td style=\"text-align: right;\">{_money(line.price)}</td>"
        f"<td style=\"text-align: right;\">{_money(line.line_total)}</td>"
        "</tr>"
        for line in order.items
    )
    notes = (
        f"<h3>Order Notes</h3><p>{escape(order.notes)}</p>" if order.notes else ""
    )
    phone = f"<p>Phone: {escape(settings.site_phone)}</p>" if settings.site_phone else ""
    html = f"""<!DOCTYPE html>
<html>
<head><meta charset="utf-8"><title>Order Confirmation</title></head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
  <h1 style="color: #2563eb;">{site}</h1>
  <h2>Order Confirmation</h2>
  <p>Dear {escape(order.customer_name or 'customer')},</p>
  <p>Thank you for your order! We've received your order and it's being processed.</p>
  <p><strong>Order ID:</strong> #{order.id}<br>
     <strong>Order Date:</strong> {order.created_at:%Y-%m-%d}<br>
     <strong>Payment Method:</strong> {PAYMENT_LABELS[order.payment_method]}<br>
     <strong>Status:</strong> {order.status.value.capitalize()}</p>
  <table style="width: 100%; border-collapse: collapse;">
    <thead><tr><th>Product</th><th>Qty</th><th>Price</th><th>Total</th></tr></thead>
    <tbody>{rows}</tbody>
    <tfoot><tr><td colspan="3" style="text-align: right;">Total Amount:</td>
    <td style="text-align: right;">{_money(order.total_amount)}</td></tr></tfoot>
  </table>
  <h3>Shipping Address</h3>
  <p>{escape(order.shipping_address)}</p>
  {notes}
  <p>Thank you for shopping with {site}!</p>
  {phone}
  <p>Email: {escape(settings.site_email)}</p>
</body>
</html>
"""
    message = EmailMessage()
    message["Subject"] = f"Order Confirmation #{order.id} - {settings.site_name}"
    message["From"] = formataddr((settings.site_name, settings.site_email))
    message["To"] = order.customer_email
    message.set_content(
        f"Thank you for your order #{order.id} at {settings.site_name}. "
        f"Total: {_money(order.total_amount)}."
    )
    message.add_alternative(html, subtype="html")
    return message


def admin_notification(order: OrderDetail, settings: SiteSettings) -> EmailMessage:
    items = "\n".join(
        f"- {item_name(line)} (Qty: {line.quantity}) - {_money(line.line_total)}" for line in order.items
    )
    text = (
        f"New Order Received - {settings.site_name}\n\n"
        "Order Details:\n"
        f"- Order ID: #{order.id}\n"
        f"- Customer: {order.customer_name or ''} ({order.customer_email or 'no email'})\n"
        f"- Phone: {order.phone}\n"
        f"- Total Amount: {_money(order.total_amount)}\n"
        f"- Payment Method: {PAYMENT_LABELS[order.payment_method]}\n"
        f"- Status: {order.status.value}\n"
        f"- Order Date: {order.created_at:%Y-%m-%d %H:%M:%S}\n\n"
        f"Items:\n{items}\n\n"
        f"Shipping Address:\n{order.shipping_address}\n\n"
    )
    if order.notes:
        text += f"Notes: {order.notes}\n\n"
    text += "Please process this order in the admin panel.\n"

    message = EmailMessage()
    message["Subject"] = f"New Order #{order.id} - {settings.site_name}"
    message["From"] = formataddr((settings.site_name, settings.site_email))
    message["To"] = settings.site_email
    message.set_content(text)
    return message


class EmailChannel:
    """Sends the customer confirmation and the admin notice for new orders."""

    name = "email"

    def __init__(
        self,
        settings: SettingsProvider,
        smtp_factory: Callable[..., smtplib.SMTP] = smtplib.SMTP,
        timeout: float = 10,
    ):
        self.settings = settings
        self.smtp_factory = smtp_factory
        self.timeout = timeout

    def send(self, event: NotificationEvent) -> bool:
        if event.kind != "created":
            return True

        settings = self.settings.get()
        if not settings.smtp_configured:
            logger.info("SMTP settings not configured, skipping emails for order #%s", event.order.id)
            return True

        order = event.order
        messages: List[EmailMessage] = []
        if order.customer_email:
            messages.append(order_confirmation(order, settings))
        else:
            logger.warning("[order=%s] customer has no email, sending admin notice only", order.id)
        messages.append(admin_notification(order, settings))

        try:
            with self.smtp_factory(settings.smtp_host, settings.smtp_port, timeout=self.timeout) as smtp:
                smtp.ehlo()
                if smtp.has_extn("starttls"):
                    smtp.starttls()
                    smtp.ehlo()
                smtp.login(settings.smtp_username, settings.smtp_password)
                for message in messages:
                    smtp.send_message(message)
        except (smtplib.SMTPException, OSError) as exc:
            logger.error("[order=%s] email notification failed: %s", order.id, exc)
            return False

        logger.info("[order=%s] %s email(s) sent", order.id, len(messages))
        return True
