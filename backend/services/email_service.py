from postmarker.core import PostmarkClient
from datetime import datetime, timezone
from html import escape
import os
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

# Verified sender in Postmark
DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "noreply@wastewater-ai.com")
# Sales inbox receiving new-quote notifications
SALES_NOTIFICATION_EMAIL = os.getenv("SALES_NOTIFICATION_EMAIL", DEFAULT_SENDER)
SUPPORT_PHONE = os.getenv("SUPPORT_PHONE", "19905980186")
SUPPORT_EMAIL = os.getenv("SUPPORT_EMAIL", "24721042@bjtu.edu.cn")

PRODUCT_NAME = "Wastewater Approval Platform"

COMPANY_TYPE_LABELS = {
    "government": "Government department",
    "park": "Industrial park operator",
    "enterprise": "Key discharge enterprise",
    "consultant": "Environmental consultancy",
    "other": "Other",
}


def _fmt_date(value: Optional[datetime]) -> str:
    if not value:
        return "-"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d")
    return str(value)


def _fmt_datetime(value: Optional[datetime]) -> str:
    if not value:
        return "-"
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M UTC")
    return str(value)


class EmailService:
    """Notification sender for trial and quote intake.

    Every send_* method raises on delivery failure; callers decide whether a
    failure matters (intake and reminder flows log and continue).
    """

    def __init__(self, server_token: Optional[str] = None):
        postmark_token = server_token or os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def _send(self, recipient: str, subject: str, html_body: str, text_body: str, tag: str) -> Optional[str]:
        if not self.client:
            # Dev mode - just log
            logger.info(f"[DEV MODE] Email logged (not sent) to {recipient}: {subject}")
            return None

        response = self.client.emails.send(
            From=DEFAULT_SENDER,
            To=recipient,
            Subject=subject,
            HtmlBody=html_body,
            TextBody=text_body,
            TrackOpens=True,
            TrackLinks="HtmlOnly",
            Tag=tag,
        )
        message_id = response["MessageID"]
        logger.info(f"Email '{tag}' sent to {recipient}: {message_id}")
        return message_id

    def _build_footer(self) -> str:
        return f"""
                <hr style="border: none; border-top: 1px solid #eee; margin: 30px 0;">
                <p style="color: #64748b; font-size: 13px;">
                    Hotline: {SUPPORT_PHONE} &middot; Support: {SUPPORT_EMAIL}<br>
                    This email was sent automatically by the {PRODUCT_NAME}. Please do not reply.
                </p>
        """

    async def send_trial_account_email(self, trial: Dict[str, Any]) -> Optional[str]:
        """Send the generated trial credentials to the contact (includes the plaintext legacy password)."""
        account = trial.get("trial_account") or {}
        access_url = escape(account.get("access_url", "#"))
        end_date = _fmt_date(trial.get("trial_end_date"))

        html_body = f"""
            <html>
            <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
                <div style="background-color: #667eea; padding: 20px; border-radius: 8px 8px 0 0;">
                    <h1 style="color: white; margin: 0;">Welcome to the {PRODUCT_NAME} trial</h1>
                </div>
                <div style="padding: 20px; border: 1px solid #e2e8f0; border-top: none; border-radius: 0 0 8px 8px;">
                    <p>Hello {escape(trial.get('contact_name', 'there'))},</p>
                    <p>Thank you for requesting a trial. Your trial account is ready:</p>
                    <div style="background: #f8f9fa; padding: 15px; border-radius: 6px;">
                        <p><strong>Company:</strong> {escape(trial.get('company_name', ''))}</p>
                        <p><strong>Username:</strong> {escape(account.get('username', ''))}</p>
                        <p><strong>Initial password:</strong> {escape(account.get('password', ''))}</p>
                        <p><strong>Access URL:</strong> <a href="{access_url}">{access_url}</a></p>
                        <p><strong>Trial ends:</strong> {end_date}</p>
                    </div>
                    <p style="color: #856404;">Please keep these details safe and change your password after the first login.</p>
                    <p style="margin: 30px 0;">
                        <a href="{access_url}"
                           style="background-color: #667eea; color: white; padding: 12px 24px;
                                  text-decoration: none; border-radius: 6px; display: inline-block;">
                            Start your trial
                        </a>
                    </p>
                </div>
                {self._build_footer()}
            </body>
            </html>
            """
        text_body = (
            f"Hello {trial.get('contact_name', 'there')},\n\n"
            f"Your {PRODUCT_NAME} trial account is ready.\n\n"
            f"Username: {account.get('username', '')}\n"
            f"Initial password: {account.get('password', '')}\n"
            f"Access URL: {account.get('access_url', '')}\n"
            f"Trial ends: {end_date}\n\n"
            f"Hotline: {SUPPORT_PHONE}\n"
        )
        return await self._send(
            recipient=trial["email"],
            subject=f"{PRODUCT_NAME} - Your trial account",
            html_body=html_body,
            text_body=text_body,
            tag="trial-account",
        )

    async def send_trial_expiry_reminder(self, trial: Dict[str, Any], days_remaining: int) -> Optional[str]:
        html_body = f"""
            <html>
            <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
                <div style="background-color: #ee5a24; padding: 20px; border-radius: 8px 8px 0 0;">
                    <h1 style="color: white; margin: 0;">Your trial ends in {days_remaining} day(s)</h1>
                </div>
                <div style="padding: 20px; border: 1px solid #e2e8f0; border-top: none; border-radius: 0 0 8px 8px;">
                    <p>Hello {escape(trial.get('contact_name', 'there'))},</p>
                    <p>Your {PRODUCT_NAME} trial account will expire in <strong>{days_remaining} day(s)</strong>.</p>
                    <div style="background: #fff3cd; padding: 15px; border-radius: 6px;">
                        <p><strong>Company:</strong> {escape(trial.get('company_name', ''))}</p>
                        <p><strong>Expires:</strong> {_fmt_datetime(trial.get('trial_end_date'))}</p>
                        <p><strong>Logins so far:</strong> {trial.get('login_count', 0)}</p>
                    </div>
                    <p>To keep using the platform, contact our sales team for the full version.</p>
                    <p style="margin: 30px 0;">
                        <a href="tel:{SUPPORT_PHONE}"
                           style="background-color: #667eea; color: white; padding: 12px 24px;
                                  text-decoration: none; border-radius: 6px; display: inline-block;">
                            Contact sales
                        </a>
                    </p>
                </div>
                {self._build_footer()}
            </body>
            </html>
            """
        text_body = (
            f"Hello {trial.get('contact_name', 'there')},\n\n"
            f"Your {PRODUCT_NAME} trial expires in {days_remaining} day(s) "
            f"({_fmt_datetime(trial.get('trial_end_date'))}).\n"
            f"Contact sales on {SUPPORT_PHONE} to continue.\n"
        )
        return await self._send(
            recipient=trial["email"],
            subject=f"Trial expiry reminder - {days_remaining} day(s) left",
            html_body=html_body,
            text_body=text_body,
            tag="trial-expiry-reminder",
        )

    async def send_quote_notification(self, quote: Dict[str, Any]) -> Optional[str]:
        """Notify the sales inbox about a new quote request."""
        company_type = COMPANY_TYPE_LABELS.get(quote.get("company_type"), quote.get("company_type"))
        requirements = quote.get("requirements")
        requirements_block = f"""
                    <div style="background: #fff3cd; padding: 15px; border-radius: 6px; margin: 20px 0;">
                        <h4 style="margin-top: 0;">Special requirements</h4>
                        <p>{escape(requirements)}</p>
                    </div>
        """ if requirements else ""

        html_body = f"""
            <html>
            <body style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 20px;">
                <h2 style="color: #667eea;">New quote request</h2>
                <div style="background: #f8f9fa; padding: 20px; border-radius: 8px;">
                    <p><strong>Company:</strong> {escape(quote.get('company_name', ''))}</p>
                    <p><strong>Contact:</strong> {escape(quote.get('contact_name', ''))}</p>
                    <p><strong>Phone:</strong> {escape(quote.get('phone', ''))}</p>
                    <p><strong>Email:</strong> {escape(quote.get('email') or 'not provided')}</p>
                    <p><strong>Company type:</strong> {escape(company_type or '')}</p>
                    <p><strong>Users:</strong> {escape(quote.get('user_count') or 'not selected')}</p>
                </div>
                {requirements_block}
                <div style="background: #e7f3ff; padding: 15px; border-radius: 8px; margin: 20px 0;">
                    <p><strong>Submitted:</strong> {_fmt_datetime(quote.get('created_at') or datetime.now(timezone.utc))}</p>
                    <p><strong>IP address:</strong> {escape(quote.get('ip_address') or 'unknown')}</p>
                    <p><strong>Referrer:</strong> {escape(quote.get('referrer') or 'direct')}</p>
                </div>
                {self._build_footer()}
            </body>
            </html>
            """
        text_body = (
            f"New quote request from {quote.get('company_name', '')}\n"
            f"Contact: {quote.get('contact_name', '')} / {quote.get('phone', '')} / {quote.get('email') or '-'}\n"
            f"Company type: {company_type}\n"
            f"Users: {quote.get('user_count') or '-'}\n"
            f"Requirements: {requirements or '-'}\n"
        )
        return await self._send(
            recipient=SALES_NOTIFICATION_EMAIL,
            subject=f"New quote request - {quote.get('company_name', '')}",
            html_body=html_body,
            text_body=text_body,
            tag="quote-notification",
        )
