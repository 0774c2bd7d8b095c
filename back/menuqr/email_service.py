"""
Email service for billing notifications sent to restaurant owners.
Supports SMTP (Gmail, Proton Mail, etc.).
"""

import logging
from decimal import Decimal
from html import escape
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import aiosmtplib

from .settings import settings

logger = logging.getLogger(__name__)


def smtp_configured() -> bool:
    return bool(settings.smtp_user and settings.smtp_password)


def _tls_options() -> dict:
    # Port 587 uses STARTTLS, port 465 implicit TLS
    if settings.smtp_port == 587:
        return {"start_tls": True}
    if settings.smtp_port == 465:
        return {"use_tls": True}
    return {"start_tls": settings.smtp_use_tls}


def build_message(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: Optional[str] = None,
    from_email: Optional[str] = None,
    from_name: Optional[str] = None,
) -> MIMEMultipart:
    from_email = from_email or settings.email_from
    from_name = from_name or settings.email_from_name

    message = MIMEMultipart("alternative")
    message["Subject"] = subject
    message["From"] = f"{from_name} <{from_email}>" if from_name else from_email
    message["To"] = to_email

    if text_content:
        message.attach(MIMEText(text_content, "plain"))
    message.attach(MIMEText(html_content, "html"))
    return message


async def send_email(
    to_email: str,
    subject: str,
    html_content: str,
    text_content: Optional[str] = None,
) -> bool:
    """
    Send an email via SMTP.

    Returns:
        True if email sent successfully, False otherwise
    """
    if not smtp_configured():
        logger.error("SMTP credentials not configured")
        return False

    message = build_message(to_email, subject, html_content, text_content)
    try:
        await aiosmtplib.send(
            message,
            hostname=settings.smtp_host,
            port=settings.smtp_port,
            username=settings.smtp_user,
            password=settings.smtp_password,
            **_tls_options(),
        )
        logger.info(f"Email sent successfully to {to_email}")
        return True
    except aiosmtplib.SMTPException as e:
        logger.error(f"Failed to send email to {to_email}: {e}")
        return False
    except OSError as e:
        logger.error(f"Could not reach SMTP server for {to_email}: {e}")
        return False


def _wrap_html(title: str, body: str) -> str:
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <meta charset="utf-8">
        <style>
            body {{ font-family: Arial, sans-serif; line-height: 1.6; color: #333; }}
            .container {{ max-width: 600px; margin: 0 auto; padding: 20px; }}
            .amount {{ font-size: 22px; font-weight: bold; padding: 16px; background-color: #f5f5f5; border-radius: 5px; text-align: center; }}
        </style>
    </head>
    <body>
        <div class="container">
            <h1>{title}</h1>
            {body}
            <hr>
            <p style="color: #666; font-size: 12px;">This is an automated message, please do not reply.</p>
        </div>
    </body>
    </html>
    """


async def send_low_balance_warning(
    to_email: str,
    restaurant_name: str,
    balance: Decimal,
    plan_cost: Decimal,
    currency: str,
    days_left: int,
) -> bool:
    subject = f"Low balance warning for {restaurant_name}"
    html_content = _wrap_html(
        "Your balance is running low",
        f"""
            <p>The account balance for <b>{escape(restaurant_name)}</b> is getting low.</p>
            <p class="amount">{escape(currency)} {balance:,.2f}</p>
            <p>Your monthly plan costs {escape(currency)} {plan_cost:,.2f}. The current balance covers about
            {days_left} more days of service.</p>
            <p>Add balance via JazzCash, EasyPaisa or bank transfer from your dashboard to avoid suspension.</p>
        """,
    )
    text_content = (
        f"The account balance for {restaurant_name} is {currency} {balance:,.2f}.\n"
        f"Your monthly plan costs {currency} {plan_cost:,.2f} (about {days_left} days left).\n"
        "Add balance from your dashboard to avoid suspension."
    )
    return await send_email(to_email, subject, html_content, text_content)


async def send_suspension_notice(to_email: str, restaurant_name: str, reason: str) -> bool:
    subject = f"{restaurant_name} has been suspended"
    html_content = _wrap_html(
        "Your restaurant has been suspended",
        f"""
            <p><b>{escape(restaurant_name)}</b> is no longer accepting orders.</p>
            <p>Reason: {escape(reason)}</p>
            <p>Add balance from your dashboard and contact support to reactivate your account.</p>
        """,
    )
    text_content = (
        f"{restaurant_name} has been suspended.\n"
        f"Reason: {reason}\n"
        "Add balance from your dashboard and contact support to reactivate your account."
    )
    return await send_email(to_email, subject, html_content, text_content)
