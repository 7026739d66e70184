import html
import logging
import re
import smtplib
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import List, Optional
from urllib.parse import quote

from itsdangerous import URLSafeTimedSerializer

from leadflow.config import config

logger = logging.getLogger(__name__)

LINK_PATTERN = re.compile(r'href=["\']([^"\']+)["\']')

# Shared with api/tracking.py, which verifies what we sign here.
serializer = URLSafeTimedSerializer(config.TRACKING_SECRET_KEY, salt="leadflow-tracking")


def make_tracking_token(kind: str, recipient_email: str, subject: str, lead_id: Optional[str] = None) -> str:
    return serializer.dumps({"type": kind, "email": recipient_email, "subject": subject, "lead_id": lead_id})


def get_tracking_url(endpoint: str, token: str, **params) -> str:
    query_params = "&".join(f"{k}={quote(str(v), safe='')}" for k, v in params.items())
    query_string = f"?token={token}&{query_params}" if params else f"?token={token}"
    return f"{config.API_PUBLIC_URL}{endpoint}{query_string}"


def convert_text_to_html(plain_text: str, links: Optional[List[dict]] = None) -> str:
    """Plain text body to HTML, with configured links appended as buttons."""
    if not plain_text:
        return ""
    html_content = html.escape(plain_text).replace("\n", "<br>")

    for link in links or []:
        text = (link.get("text") or "").strip()
        url = (link.get("url") or "").strip()
        if text and url:
            html_content += (
                '<div style="margin: 25px 0; text-align: center;">'
                f'<a href="{html.escape(url, quote=True)}" style="display: inline-block; padding: 15px 30px; '
                'text-decoration: none; border-radius: 25px; background: #667eea; color: white;">'
                f"{html.escape(text)}</a></div>"
            )
    return html_content


def add_click_tracking(html_content: str, click_token: str) -> str:
    def replace_link(match):
        original_url = match.group(1)
        if "/api/track/" in original_url or original_url.startswith("mailto:"):
            return match.group(0)
        tracking_url = get_tracking_url("/api/track/click", click_token, url=original_url)
        return f'href="{html.escape(tracking_url, quote=True)}"'

    return LINK_PATTERN.sub(replace_link, html_content)


def build_message(
    subject: str,
    body: str,
    recipient_email: str,
    links: Optional[List[dict]] = None,
    lead_id: Optional[str] = None,
    track: bool = True,
) -> MIMEMultipart:
    html_body = convert_text_to_html(body, links)
    pixel = ""
    if track:
        open_token = make_tracking_token("open", recipient_email, subject, lead_id)
        click_token = make_tracking_token("click", recipient_email, subject, lead_id)
        html_body = add_click_tracking(html_body, click_token)
        pixel_url = get_tracking_url("/api/track/open", open_token)
        pixel = f'<img src="{html.escape(pixel_url, quote=True)}" width="1" height="1" alt="" style="display:none">'

    full_html_body = f"""<!DOCTYPE html>
<html lang="en">
<head><meta charset="UTF-8"><title>{html.escape(subject)}</title></head>
<body style="font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #333;">
<div style="max-width: 600px; margin: 0 auto; padding: 30px;">{html_body}</div>
{pixel}
</body>
</html>"""

    msg = MIMEMultipart("alternative")
    msg["Subject"] = subject
    msg["From"] = f"{config.SMTP_SENDER_NAME} <{config.SMTP_USERNAME}>"
    msg["To"] = recipient_email
    msg["Reply-To"] = config.SMTP_USERNAME or ""
    msg["List-Unsubscribe"] = f"<mailto:{config.SMTP_USERNAME}?subject=unsubscribe>"
    msg.attach(MIMEText(body, "plain"))
    msg.attach(MIMEText(full_html_body, "html"))
    return msg


def send_email_with_tracking(
    subject: str,
    body: str,
    recipient_email: str,
    links: Optional[List[dict]] = None,
    lead_id: Optional[str] = None,
    track: bool = True,
):
    """
    Sends an HTML email with an open-tracking pixel and click-tracked links.
    Blocking; callers on the event loop run it in a thread.
    """
    if not subject or not subject.strip():
        raise ValueError("Email subject is required")
    if not body or not body.strip():
        raise ValueError("Email body is required")
    if not recipient_email or not recipient_email.strip():
        raise ValueError("Recipient email is required")

    if not config.SMTP_USERNAME or not config.SMTP_PASSWORD:
        logger.error(f"[EMAIL] SMTP_USERNAME: {'SET' if config.SMTP_USERNAME else 'MISSING'}")
        logger.error(f"[EMAIL] SMTP_PASSWORD: {'SET' if config.SMTP_PASSWORD else 'MISSING'}")
        raise EnvironmentError("Missing SMTP credentials")

    msg = build_message(subject, body, recipient_email, links=links, lead_id=lead_id, track=track)

    logger.info(f"[EMAIL] Sending '{subject}' to {recipient_email}")
    try:
        with smtplib.SMTP(config.SMTP_HOST, config.SMTP_PORT) as server:
            server.starttls()
            server.login(config.SMTP_USERNAME, config.SMTP_PASSWORD)
            server.send_message(msg)
        logger.info(f"[EMAIL] Sent to {recipient_email}")
    except smtplib.SMTPAuthenticationError as e:
        logger.error(f"[EMAIL] SMTP authentication failed: {e}")
        raise
    except smtplib.SMTPRecipientsRefused as e:
        logger.error(f"[EMAIL] SMTP recipients refused for {recipient_email}: {e}")
        raise
    except smtplib.SMTPException as e:
        logger.error(f"[EMAIL] SMTP error sending to {recipient_email}: {e}")
        raise
