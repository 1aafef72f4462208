"""
SendGrid API v3 client implementation for transactional email
"""
from typing import Any, Dict, Optional

from ..base import BaseAPIClient


class SendGridClient(BaseAPIClient):
    """SendGrid API v3 client for order emails"""

    def __init__(self, api_key: Optional[str] = None, **kwargs):
        super().__init__(provider="sendgrid", api_key=api_key, **kwargs)

    def _get_base_url(self) -> str:
        """Get SendGrid API base URL"""
        return "https://api.sendgrid.com"

    def _get_headers(self) -> Dict[str, str]:
        """Get SendGrid API headers"""
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    async def send_email(
        self,
        to_email: str,
        subject: str,
        text_content: str,
        from_email: str,
        from_name: Optional[str] = None,
        html_content: Optional[str] = None,
        reply_to: Optional[str] = None,
        categories: Optional[list] = None,
        custom_args: Optional[Dict[str, str]] = None,
    ) -> Dict[str, Any]:
        """
        Send a single email via SendGrid

        Args:
            to_email: Recipient email address
            subject: Email subject
            text_content: Plain text content
            from_email: Sender email address
            from_name: Sender name
            html_content: Optional HTML alternative
            reply_to: Reply-to email address
            categories: SendGrid categories for reporting
            custom_args: Custom arguments echoed back in event webhooks

        Returns:
            Dict containing send response (empty on 202 Accepted)
        """
        payload = {
            "personalizations": [{"to": [{"email": to_email}], "subject": subject}],
            "from": {"email": from_email, "name": from_name or from_email},
            "content": [{"type": "text/plain", "value": text_content}],
            # Payment emails are transactional
            "tracking_settings": {
                "click_tracking": {"enable": False},
                "open_tracking": {"enable": False},
                "subscription_tracking": {"enable": False},
            },
        }

        if html_content:
            payload["content"].append({"type": "text/html", "value": html_content})
        if reply_to:
            payload["reply_to"] = {"email": reply_to}
        if categories:
            payload["categories"] = categories
        if custom_args:
            payload["custom_args"] = {k: str(v) for k, v in custom_args.items()}

        return await self.make_request("POST", "/v3/mail/send", json=payload)
