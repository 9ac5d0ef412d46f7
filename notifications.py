import logging
import smtplib
from email.message import EmailMessage
from html import escape
from typing import Optional

import config

logger = logging.getLogger(__name__)

REFUND_STATUS_MESSAGES = {
    "pending": (
        "Refund Request Received",
        "Your refund request has been submitted and is awaiting admin review. We typically review requests within 1-2 business days.",
    ),
    "approved": (
        "Refund Approved",
        "Your refund request has been approved! The funds will be returned to your original payment method within 5-10 business days.",
    ),
    "denied": (
        "Refund Request Denied",
        "Unfortunately, your refund request could not be approved. Please contact the healer directly for more information.",
    ),
    "processed": (
        "Refund Processing",
        "Your refund is now being processed with Stripe. The funds should appear in your account within 5-10 business days.",
    ),
    "failed": (
        "Refund Processing Error",
        "Unfortunately, there was an error processing your refund. Our team has been notified and will contact you shortly.",
    ),
}


def send_email(to_email: str, subject: str, body_text: str, body_html: Optional[str] = None) -> bool:
    """Send an email via SMTP. Returns True on success, False otherwise. Without SMTP settings the email is logged."""
    if not config.SMTP_HOST or not config.SMTP_USER or not config.SMTP_PASS:
        # Dev fallback: log email so flows are testable
        logger.info("EMAIL (dev mode) to=%s subject=%s\n%s", to_email, subject, body_text)
        return True
    try:
        msg = EmailMessage()
        msg["From"] = config.FROM_EMAIL
        msg["To"] = to_email
        msg["Subject"] = subject
        msg.set_content(body_text)
        if body_html:
            msg.add_alternative(body_html, subtype="html")
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as server:
            server.starttls()
            server.login(config.SMTP_USER, config.SMTP_PASS)
            server.send_message(msg)
        return True
    except (smtplib.SMTPException, OSError) as e:
        logger.error("Email send error: %s", e)
        return False


def send_invite_email(
    to_email: str,
    invite_link: str,
    role: str,
    custom_message: Optional[str] = None,
    expires_in_days: int = 7,
) -> bool:
    subject = "You're invited to join Your Spell Caster"
    expiry = f"This link expires in {expires_in_days} day{'' if expires_in_days == 1 else 's'}."
    lines = [
        f"You have been invited to join Your Spell Caster as {role}.",
        "",
        f"Accept your invitation: {invite_link}",
        expiry,
    ]
    if custom_message:
        lines[1:1] = ["", custom_message]
    html = f"""
    <div style='font-family:Inter,Segoe UI,Arial,sans-serif'>
      <h2>You're invited</h2>
      <p>You have been invited to join Your Spell Caster as <b>{escape(role)}</b>.</p>
      {f"<p>{escape(custom_message)}</p>" if custom_message else ""}
      <p><a href='{escape(invite_link)}'>Accept invitation</a></p>
      <p>{expiry}</p>
    </div>
    """
    return send_email(to_email, subject, "\n".join(lines), html)


def send_refund_status_email(to_email: str, status: str, service_name: str, amount: str, admin_notes: Optional[str] = None) -> bool:
    if status not in REFUND_STATUS_MESSAGES:
        return False
    subject, message = REFUND_STATUS_MESSAGES[status]
    text = f"{message}\n\nService: {service_name}\nAmount: ${amount}"
    if admin_notes:
        text += f"\n\nNote from our team: {admin_notes}"
    return send_email(to_email, f"{subject} - Your Spell Caster", text)
