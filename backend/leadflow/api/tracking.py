import logging
from typing import Optional
from urllib.parse import unquote

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import RedirectResponse, Response
from itsdangerous import BadSignature, SignatureExpired

from leadflow.config import config
from leadflow.models.automation import TriggerType
from leadflow.models.event import AutomationEvent
from leadflow.services.email import serializer
from leadflow.tasks import process_event_task

logger = logging.getLogger(__name__)
router = APIRouter()

# 1x1 transparent GIF pixel
TRACKING_PIXEL = (
    b'\x47\x49\x46\x38\x39\x61\x01\x00\x01\x00\x80\x00\x00\xff\xff\xff'
    b'\x00\x00\x00\x21\xf9\x04\x01\x00\x00\x00\x00\x2c\x00\x00\x00\x00'
    b'\x01\x00\x01\x00\x00\x02\x02\x44\x01\x00\x3b'
)

NO_CACHE_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
}


def pixel_response() -> Response:
    return Response(content=TRACKING_PIXEL, media_type="image/gif", headers=NO_CACHE_HEADERS)


def decode_token(token: str) -> Optional[dict]:
    """Signed payload from services/email.py, or None if expired or tampered with."""
    try:
        return serializer.loads(token, max_age=config.TRACKING_TOKEN_MAX_AGE)
    except SignatureExpired:
        logger.warning("[TRACKING] Expired tracking token received")
    except BadSignature:
        logger.warning("[TRACKING] Invalid tracking token received")
    return None


def issued_by_us(token: str) -> bool:
    """True for any token we signed, expired or not. Redirects are only followed for these."""
    try:
        serializer.loads(token)
        return True
    except BadSignature:
        return False


def is_web_url(url: str) -> bool:
    return url.lower().startswith(("http://", "https://"))


def tracking_event(event_type: TriggerType, data: dict, url: Optional[str] = None) -> AutomationEvent:
    payload = {
        "lead": {"email": data.get("email"), "id": data.get("lead_id")},
        "email": {"subject": data.get("subject")},
    }
    if url is not None:
        payload["link"] = {"url": url}
    return AutomationEvent(type=event_type.value, data=payload)


def enqueue(event: AutomationEvent):
    try:
        task = process_event_task.delay(event.model_dump(mode="json", by_alias=True))
        logger.info(f"[TRACKING] Queued {event.type} for {event.data['lead']['email']} as task {task.id}")
    except Exception as e:
        # The recipient still gets the pixel or redirect; the hit is lost.
        logger.error(f"[TRACKING] Could not queue {event.type}: {e}", exc_info=True)


@router.get("/track/open")
async def track_email_open(
    token: str = Query(..., description="Signed tracking token"),
    redirect: Optional[str] = Query(None, description="Optional redirect after tracking"),
):
    """
    Records an email open and feeds it to automations triggered by email_opened.
    Always answers with the pixel. The redirect is followed only for a token we
    issued and an http(s) target.
    """
    data = decode_token(token) if token.strip() else None
    if data and data.get("type") == "open":
        logger.info(f"[TRACKING] Email open by {data.get('email')} ('{data.get('subject')}')")
        enqueue(tracking_event(TriggerType.EMAIL_OPENED, data))
    if redirect:
        target = unquote(redirect).strip()
        if is_web_url(target) and token.strip() and issued_by_us(token):
            return RedirectResponse(url=target, status_code=302)
        logger.warning(f"[TRACKING] Ignoring redirect to {target!r} for an unverified open")
    return pixel_response()


@router.get("/track/click")
async def track_link_click(
    token: str = Query(..., description="Signed tracking token"),
    url: str = Query(..., description="Original URL"),
):
    """Records a link click, feeds it to email_clicked automations and redirects to the link."""
    original_url = unquote(url).strip()
    if not is_web_url(original_url):
        raise HTTPException(status_code=400, detail="Only http and https links are tracked")
    if not issued_by_us(token):
        logger.warning(f"[TRACKING] Refusing redirect to {original_url} for an unsigned token")
        raise HTTPException(status_code=400, detail="Unknown tracking link")
    data = decode_token(token)
    if data and data.get("type") == "click":
        logger.info(f"[TRACKING] Link click by {data.get('email')} on {original_url}")
        enqueue(tracking_event(TriggerType.EMAIL_CLICKED, data, url=original_url))
    return RedirectResponse(url=original_url, status_code=302, headers=NO_CACHE_HEADERS)
