"""SendGrid Email Service for order and payment notification emails"""
import os
import logging
from html import escape

from sendgrid import SendGridAPIClient
from sendgrid.helpers.mail import Mail, To

logger = logging.getLogger(__name__)


class EmailService:
    """Service for sending notification emails via SendGrid"""

    def __init__(self, api_key=None, from_email=None, enabled=None):
        self.api_key = api_key if api_key is not None else os.environ.get('SENDGRID_API_KEY')
        self.from_email = from_email if from_email is not None else os.environ.get('SENDGRID_FROM_EMAIL')
        if enabled is None:
            enabled = os.environ.get('NOTIFICATION_EMAILS_ENABLED', 'true').lower() == 'true'
        self.enabled = enabled

    def is_configured(self):
        """Check if SendGrid is properly configured"""
        return bool(self.enabled and self.api_key and self.from_email)

    def send_single_email(self, to_email, to_name, subject, html_content, text_content=None):
        """
        Send an email to a single recipient

        Returns:
            tuple: (success: bool, message: str, response_status: int or None)
        """
        if not self.is_configured():
            return False, "SendGrid is not configured. Please add SENDGRID_API_KEY and SENDGRID_FROM_EMAIL.", None

        if not to_email:
            return False, "No recipient specified.", None

        try:
            message = Mail(
                from_email=self.from_email,
                to_emails=To(email=to_email, name=to_name) if to_name else to_email,
                subject=subject,
                plain_text_content=text_content,
                html_content=html_content
            )
            response = SendGridAPIClient(self.api_key).send(message)
        except Exception as e:
            logger.error(f"Error sending email to {to_email}: {str(e)}")
            return False, str(e), None

        if 200 <= response.status_code < 300:
            return True, "Email sent successfully.", response.status_code

        logger.warning(f"Non-success status {response.status_code} for {to_email}")
        return False, f"SendGrid returned status {response.status_code}", response.status_code

    def send_notification_email(self, to_email, to_name, title, message):
        """Mirror an in-app notification to the user's inbox"""
        html_content = (
            f"<h2>{escape(title)}</h2>"
            f"<p>{escape(message)}</p>"
            "<p style=\"color:#888\">You are receiving this because of activity on one of your orders.</p>"
        )
        return self.send_single_email(to_email, to_name, title, html_content, text_content=message)


# Global instance
email_service = EmailService()
