"""
Dunning notification delivery.

Runs after the DunningRecord has committed. Any failure is reported as
ExternalDeliveryFailure so the caller can leave the channel's sent flag
false for a later retry.
"""

from __future__ import annotations

import logging
import smtplib
from typing import TYPE_CHECKING, Dict

import requests
from django.conf import settings
from django.core.mail import send_mail
from django.template import Context, Template

from .conf import ledger_setting
from .errors import ExternalDeliveryFailure
from .money import format_amount

if TYPE_CHECKING:
    from .models import DunningRecord

logger = logging.getLogger(__name__)

DEFAULT_MESSAGES: Dict[str, str] = {
    "first_reminder": (
        "Dear {{ customer.name }}, invoice {{ invoice.invoice_number }} for "
        "{{ outstanding }} {{ invoice.currency }} was due on {{ invoice.due_date }}. "
        "Please arrange payment at your earliest convenience."
    ),
    "second_reminder": (
        "Dear {{ customer.name }}, invoice {{ invoice.invoice_number }} is now "
        "{{ days_overdue }} days overdue with {{ outstanding }} {{ invoice.currency }} outstanding."
    ),
    "final_notice": (
        "Final notice: invoice {{ invoice.invoice_number }} ({{ outstanding }} "
        "{{ invoice.currency }}) is {{ days_overdue }} days overdue. Pay now to avoid further action."
    ),
    "legal_action": (
        "Invoice {{ invoice.invoice_number }} ({{ outstanding }} {{ invoice.currency }}) "
        "has been referred for collection."
    ),
}


def render_message(record: DunningRecord, template_text: str = "") -> str:
    """Render a dunning level template against the record it belongs to."""
    source = template_text or DEFAULT_MESSAGES.get(record.level, DEFAULT_MESSAGES["first_reminder"])
    context = Context({
        "invoice": record.invoice,
        "customer": record.customer,
        "level": record.get_level_display(),
        "days_overdue": record.days_overdue,
        "outstanding": format_amount(record.outstanding_amount),
    })
    return Template(source).render(context)


class NotificationDispatcher:
    """Deliver a dunning message over email, SMS or letter."""

    GATEWAY_TIMEOUT_SECONDS = 15

    def send(self, record: DunningRecord, channel: str, message: str) -> None:
        handler = getattr(self, f"send_{channel}", None)
        if handler is None:
            raise ExternalDeliveryFailure(f"Unknown notification channel '{channel}'", channel=channel)
        handler(record, message)

    def send_email(self, record: DunningRecord, message: str) -> None:
        recipient = record.customer.email
        if not recipient:
            raise ExternalDeliveryFailure("Customer has no email address", channel="email", customer_id=record.customer_id)

        subject = f"{record.get_level_display()}: invoice {record.invoice.invoice_number}"
        try:
            send_mail(
                subject=subject,
                message=message,
                from_email=settings.DEFAULT_FROM_EMAIL,
                recipient_list=[recipient],
                fail_silently=False,
            )
        except (smtplib.SMTPException, OSError) as exc:
            raise ExternalDeliveryFailure(f"Email delivery failed: {exc}", channel="email") from exc
        logger.info(f"Dunning email for {record.invoice.invoice_number} sent to {recipient}")

    def send_sms(self, record: DunningRecord, message: str) -> None:
        gateway_url = ledger_setting("SMS_GATEWAY_URL")
        if not gateway_url:
            raise ExternalDeliveryFailure("SMS gateway is not configured", channel="sms")
        phone = record.customer.phone
        if not phone:
            raise ExternalDeliveryFailure("Customer has no phone number", channel="sms", customer_id=record.customer_id)

        self._post(
            "sms", gateway_url, ledger_setting("SMS_GATEWAY_TOKEN"),
            {"to": phone, "message": message, "reference": f"dunning-{record.pk}"},
        )
        logger.info(f"Dunning SMS for {record.invoice.invoice_number} sent to {phone}")

    def send_letter(self, record: DunningRecord, message: str) -> None:
        """Hand the letter to the print-and-post gateway. Accepted means sent."""
        gateway_url = ledger_setting("LETTER_GATEWAY_URL")
        if not gateway_url:
            raise ExternalDeliveryFailure("Letter gateway is not configured", channel="letter")
        address = record.customer.address
        if not address:
            raise ExternalDeliveryFailure("Customer has no postal address", channel="letter", customer_id=record.customer_id)

        self._post(
            "letter", gateway_url, ledger_setting("LETTER_GATEWAY_TOKEN"),
            {
                "recipient": record.customer.name,
                "address": address,
                "subject": f"{record.get_level_display()}: invoice {record.invoice.invoice_number}",
                "body": message,
                "reference": f"dunning-{record.pk}",
            },
        )
        logger.info(f"Dunning letter for {record.invoice.invoice_number} accepted for printing")

    def _post(self, channel: str, url: str, token: str, payload: Dict[str, str]) -> None:
        headers = {"Content-Type": "application/json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        try:
            response = requests.post(url, headers=headers, json=payload, timeout=self.GATEWAY_TIMEOUT_SECONDS)
            response.raise_for_status()
        except requests.exceptions.RequestException as exc:
            raise ExternalDeliveryFailure(f"{channel.upper()} delivery failed: {exc}", channel=channel) from exc
