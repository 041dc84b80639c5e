import os
import logging
from datetime import datetime
from typing import Optional

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail

logger = logging.getLogger(__name__)


def format_money(amount_cents: int, currency: str = "BRL") -> str:
    value = f"{amount_cents / 100:,.2f}"
    if currency.upper() == "BRL":
        # 1,234.56 -> 1.234,56
        return "R$ " + value.replace(",", "_").replace(".", ",").replace("_", ".")
    return f"{currency.upper()} {value}"


def _button(link: str, label: str) -> str:
    return f"""
            <p style="text-align: center; margin: 20px 0;">
                <a href="{link}" style="
                    background-color: #4F46E5;
                    color: white;
                    padding: 12px 28px;
                    text-decoration: none;
                    border-radius: 6px;
                    font-weight: bold;
                    display: inline-block;
                ">{label}</a>
            </p>"""


class EmailService:
    """
    Transactional billing emails via SendGrid.
    Without SENDGRID_API_KEY / MAIL_FROM the messages are only logged.
    """

    def __init__(self, api_key: Optional[str] = None, sender_email: Optional[str] = None):
        self.sendgrid_api_key = api_key or os.getenv("SENDGRID_API_KEY")
        self.sender_email = sender_email or os.getenv("MAIL_FROM")

        self.enabled = bool(self.sendgrid_api_key and self.sender_email)
        if not self.enabled:
            logger.warning("📧 Email service not configured. Missing SENDGRID_API_KEY or MAIL_FROM.")
        else:
            logger.info(f"📧 Email service configured and ready. Sender: {self.sender_email}")

    def _send(self, to_email: str, subject: str, html_content: str) -> bool:
        if not self.enabled:
            # Development fallback (no SendGrid setup)
            logger.info(f"📨 [Mock Email] To: {to_email} | Subject: {subject}")
            return True

        try:
            message = Mail(
                from_email=self.sender_email,
                to_emails=to_email,
                subject=subject,
                html_content=html_content,
            )
            sg = SendGridAPIClient(self.sendgrid_api_key)
            response = sg.send(message)
            logger.info(f"✅ Email '{subject}' sent to {to_email}. Status: {response.status_code}")
            return True
        except Exception as e:
            logger.exception("❌ Failed to send email to %s: %s", to_email, e)
            return False

    # ============================================================
    # ✅ Payment approved
    # ============================================================
    def send_payment_approved_email(
        self,
        to_email: str,
        recipient_name: Optional[str],
        organization_name: str,
        plan_name: str,
        amount_cents: int,
        currency: str,
        paid_at: datetime,
        receipt_url: Optional[str] = None,
        billing_url: Optional[str] = None,
    ) -> bool:
        greeting = f"Hello {recipient_name}!" if recipient_name else "Hello!"
        subject = f"✅ Payment confirmed for {organization_name}"
        receipt_block = _button(receipt_url, "View receipt") if receipt_url else ""
        billing_block = (
            f'<p>Billing details: <a href="{billing_url}">{billing_url}</a></p>' if billing_url else ""
        )

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>👋 {greeting}</h2>
            <p>We received <strong>{format_money(amount_cents, currency)}</strong> for the
            <strong>{plan_name}</strong> plan of <strong>{organization_name}</strong>
            on {paid_at.strftime("%Y-%m-%d %H:%M")} UTC.</p>
            {receipt_block}
            {billing_block}
            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>Thank you,<br><strong>The Billing Team</strong></p>
        </div>
        """
        return self._send(to_email, subject, html_content)

    # ============================================================
    # ⚠️ Payment failed (dunning reminder)
    # ============================================================
    def send_payment_failed_dunning_email(
        self,
        to_email: str,
        recipient_name: Optional[str],
        organization_name: str,
        plan_name: str,
        dunning_day: int,
        grace_ends_at: Optional[datetime] = None,
        billing_url: Optional[str] = None,
    ) -> bool:
        greeting = f"Hello {recipient_name}!" if recipient_name else "Hello!"
        subject = f"⚠️ Payment failed for {organization_name} (day {dunning_day})"
        deadline = (
            f"<p>Paid features stay available until <strong>{grace_ends_at.strftime('%Y-%m-%d')}</strong>. "
            "After that the organization moves to the Free plan.</p>"
            if grace_ends_at else ""
        )
        action = _button(billing_url, "Update payment") if billing_url else ""

        html_content = f"""
        <div style="font-family: Arial, sans-serif; line-height: 1.6; color: #333;">
            <h2>👋 {greeting}</h2>
            <p>We could not process the payment for the <strong>{plan_name}</strong> plan of
            <strong>{organization_name}</strong>.</p>
            {deadline}
            {action}
            <hr style="border:none; border-top:1px solid #eee; margin: 24px 0;">
            <p>Best regards,<br><strong>The Billing Team</strong></p>
        </div>
        """
        return self._send(to_email, subject, html_content)


# ============================================================
# ✅ Global instance for app-wide import
# ============================================================
email_service = EmailService()
