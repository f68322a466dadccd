from postmarker.core import PostmarkClient
from models import EmailTemplateAlias
import os
import logging
from typing import Optional, Dict, Any

logger = logging.getLogger(__name__)

DEFAULT_SENDER = os.getenv("EMAIL_SENDER", "billing@stitchmate.app")

SUBJECTS = {
    EmailTemplateAlias.SUBSCRIPTION_CONFIRMED: "Your {plan_name} subscription is active",
    EmailTemplateAlias.SUBSCRIPTION_CANCELED: "Your subscription has been canceled",
    EmailTemplateAlias.PAYMENT_FAILED: "We couldn't process your payment",
}

class EmailService:
    """Transactional billing emails through Postmark.

    Without POSTMARK_SERVER_TOKEN emails are logged and skipped. Sending never
    raises: a billing transition must not fail because an email did.
    """

    def __init__(self):
        postmark_token = os.getenv("POSTMARK_SERVER_TOKEN")
        if not postmark_token:
            logger.warning("POSTMARK_SERVER_TOKEN not set - emails will be logged but not sent")
            self.client = None
        else:
            self.client = PostmarkClient(server_token=postmark_token)
            logger.info("Postmark email client initialized")

    async def send_billing_email(
        self,
        recipient: Optional[str],
        template_alias: EmailTemplateAlias,
        template_model: Dict[str, Any],
    ) -> bool:
        if not recipient:
            return False

        subject = SUBJECTS[template_alias].format(**{"plan_name": "", **template_model}).replace("  ", " ")
        text_body = self._build_text_body(template_alias, template_model)

        if not self.client:
            logger.info(f"[DEV MODE] Email logged (not sent) to {recipient}: {subject}")
            return True

        try:
            response = self.client.emails.send(
                From=DEFAULT_SENDER,
                To=recipient,
                Subject=subject,
                TextBody=text_body,
                HtmlBody="<br>".join(text_body.split("\n")),
                Tag=template_alias.value,
            )
            logger.info(f"Billing email sent to {recipient}: {response.get('MessageID')}")
            return True
        except Exception as e:
            logger.error(f"Failed to send billing email to {recipient}: {e}")
            return False

    def _build_text_body(self, template_alias: EmailTemplateAlias, model: Dict[str, Any]) -> str:
        name = model.get("name") or "there"
        if template_alias == EmailTemplateAlias.SUBSCRIPTION_CONFIRMED:
            return (
                f"Hello {name},\n\n"
                f"Your {model.get('plan_name', '')} plan is now active.\n"
                f"Current period ends: {model.get('due_date', '')}\n\n"
                "Thank you for your payment."
            )
        if template_alias == EmailTemplateAlias.SUBSCRIPTION_CANCELED:
            return (
                f"Hello {name},\n\n"
                "Your paid subscription has been canceled and your account has moved to the Free plan.\n"
                "You can resubscribe at any time from your billing settings."
            )
        return (
            f"Hello {name},\n\n"
            "Your latest payment could not be completed. Your plan has not been activated.\n"
            "Please try again from your billing settings."
        )

email_service = EmailService()
