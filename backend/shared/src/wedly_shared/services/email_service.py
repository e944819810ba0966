"""Transactional email via Amazon SES.

``EmailService.send`` never raises for delivery failures: it returns an
``EmailResult`` so callers can record the outcome without failing the
operation that triggered the email.
"""

import datetime as dt
import html
import logging
import time
from functools import lru_cache
from zoneinfo import ZoneInfo

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from pydantic import BaseModel, Field

from wedly_shared.config import Settings, get_settings
from wedly_shared.models.purchase import PurchaseRecord
from wedly_shared.utils.sanitize import sanitize_message

logger = logging.getLogger(__name__)

DISPLAY_TIMEZONE = ZoneInfo("Australia/Sydney")

# Currencies Stripe bills without a minor unit
ZERO_DECIMAL_CURRENCIES = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "JPY", "KMF", "KRW", "MGA", "PYG", "RWF", "UGX", "VND", "VUV", "XAF", "XOF", "XPF"}
)


class EmailMessage(BaseModel):
    """An outbound email."""

    to: str
    subject: str
    html_body: str
    text_body: str
    reply_to: str | None = None


class EmailResult(BaseModel):
    """Outcome of one send attempt."""

    success: bool
    message_id: str | None = None
    error: str | None = Field(default=None, description="Sanitized failure reason")
    duration_ms: int = 0


def format_currency(amount_minor_units: int, currency: str = "AUD") -> str:
    """Format an amount in minor units for display, e.g. ``AUD 49.99``."""
    code = currency.upper()
    if code in ZERO_DECIMAL_CURRENCIES:
        return f"{code} {amount_minor_units:,}"
    return f"{code} {amount_minor_units / 100:,.2f}"


def format_email_date(value: dt.datetime) -> str:
    """Format a timestamp in the display timezone, e.g. ``5 March 2026 at 02:30 PM AEDT``."""
    local = value.astimezone(DISPLAY_TIMEZONE)
    return f"{local.day} {local:%B %Y at %I:%M %p %Z}"


def build_purchase_confirmation(
    purchase: PurchaseRecord,
    *,
    product_name: str,
    receipt_url: str | None = None,
    recipient_name: str | None = None,
) -> EmailMessage:
    """Render the purchase confirmation email for a completed purchase.

    Args:
        purchase: Persisted purchase record (must carry a buyer email)
        product_name: Display name of the purchased product
        receipt_url: Provider receipt link when known
        recipient_name: Greeting name, defaults to "Valued Customer"

    Returns:
        EmailMessage with HTML and plain-text bodies
    """
    if not purchase.buyer_email:
        raise ValueError("Purchase has no buyer email")

    transaction_id = purchase.payment_intent_id or purchase.stripe_session_id
    amount = format_currency(purchase.amount, purchase.currency)
    purchase_date = format_email_date(purchase.created_at)
    name = recipient_name or "Valued Customer"
    subject = f"Payment Confirmation - {product_name} - {transaction_id}"

    receipt_html = (
        f'<p><a href="{html.escape(receipt_url, quote=True)}" '
        'style="background: #d4a373; color: #fff; padding: 10px 20px; '
        'border-radius: 4px; text-decoration: none;">View Receipt</a></p>'
        if receipt_url
        else ""
    )
    html_body = f"""
    <html>
    <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; color: #333;">
        <h2 style="color: #d4a373;">Payment Confirmed</h2>
        <p>Hi {html.escape(name)},</p>
        <p>We're excited to confirm that your payment has been successfully processed!</p>
        <table style="width: 100%; border-collapse: collapse;">
            <tr><td><strong>Product</strong></td><td>{html.escape(product_name)}</td></tr>
            <tr><td><strong>Amount</strong></td><td>{html.escape(amount)}</td></tr>
            <tr><td><strong>Transaction ID</strong></td><td>{html.escape(transaction_id)}</td></tr>
            <tr><td><strong>Purchase Date</strong></td><td>{html.escape(purchase_date)}</td></tr>
        </table>
        {receipt_html}
        <p>Your purchase has been recorded in your account.</p>
        <hr style="border: none; border-top: 1px solid #eee; margin: 20px 0;">
        <p style="color: #999; font-size: 12px;">
            This email was sent to {html.escape(purchase.buyer_email)}.
            This is an automated message. Please do not reply to this email.
        </p>
    </body>
    </html>
    """

    receipt_text = f"View your receipt: {receipt_url}\n\n" if receipt_url else ""
    text_body = f"""WEDLY - PAYMENT CONFIRMATION

Hi {name},

We're excited to confirm that your payment has been successfully processed!

PURCHASE DETAILS:
- Product: {product_name}
- Amount: {amount}
- Transaction ID: {transaction_id}
- Purchase Date: {purchase_date}

{receipt_text}Your purchase has been recorded in your account.

Thank you for choosing Wedly!

---
This email was sent to {purchase.buyer_email}
This is an automated message. Please do not reply to this email.
"""

    return EmailMessage(
        to=purchase.buyer_email,
        subject=subject,
        html_body=html_body,
        text_body=text_body,
    )


class EmailService:
    """Sends email through SES."""

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = boto3.client("ses")

    def send(self, message: EmailMessage) -> EmailResult:
        """Send one email.

        Args:
            message: Email to deliver

        Returns:
            EmailResult; ``success`` is False with a sanitized ``error`` on failure
        """
        start = time.monotonic()
        reply_to = message.reply_to or self._settings.email_reply_to
        kwargs: dict = {
            "Source": self._settings.email_from,
            "Destination": {"ToAddresses": [message.to]},
            "Message": {
                "Subject": {"Data": message.subject, "Charset": "UTF-8"},
                "Body": {
                    "Text": {"Data": message.text_body, "Charset": "UTF-8"},
                    "Html": {"Data": message.html_body, "Charset": "UTF-8"},
                },
            },
        }
        if reply_to:
            kwargs["ReplyToAddresses"] = [reply_to]

        try:
            response = self._client.send_email(**kwargs)
        except ClientError as e:
            code = e.response.get("Error", {}).get("Code", "Unknown")
            detail = e.response.get("Error", {}).get("Message", "")
            error = sanitize_message(f"Email delivery failed ({code}): {detail}")
            logger.error("SES send_email failed: %s", error)
            return EmailResult(
                success=False,
                error=error,
                duration_ms=int((time.monotonic() - start) * 1000),
            )
        except BotoCoreError as e:
            error = sanitize_message(f"Email delivery failed: {e}")
            logger.error("SES send_email failed: %s", error)
            return EmailResult(
                success=False,
                error=error,
                duration_ms=int((time.monotonic() - start) * 1000),
            )

        message_id = response.get("MessageId")
        logger.info("Email sent: %s (subject: %s)", message_id, message.subject)
        return EmailResult(
            success=True,
            message_id=message_id,
            duration_ms=int((time.monotonic() - start) * 1000),
        )


@lru_cache(maxsize=1)
def get_email_service() -> EmailService:
    """Get the shared EmailService instance."""
    return EmailService()
