import json
import logging
from typing import Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request, status

from app.core.config import get_settings
from app.schemas.webhook import UrlValidationResponse, ZoomWebhookResponse
from app.services.notification_service import drain_notification_outbox
from app.services.zoom_webhook_service import ZoomWebhookService

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger(__name__)


@router.post(
    "/zoom",
    response_model=ZoomWebhookResponse | UrlValidationResponse,
)
async def receive_zoom_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
) -> ZoomWebhookResponse | UrlValidationResponse:
    payload, raw_body = await _load_payload_and_raw_body(request)
    signature = request.headers.get("x-signature") or request.headers.get("x-zm-signature")
    timestamp = request.headers.get("x-request-timestamp") or request.headers.get("x-zm-request-timestamp")
    logger.info(
        "Webhook received provider=zoom event=%s has_signature=%s",
        payload.get("event"),
        bool(signature),
    )

    service = ZoomWebhookService(get_settings())
    try:
        response = service.handle(payload, raw_body, signature, timestamp)
    except HTTPException as exc:
        logger.warning(
            "Webhook rejected provider=zoom event=%s status_code=%s detail=%s",
            payload.get("event"),
            exc.status_code,
            exc.detail,
        )
        raise

    if isinstance(response, ZoomWebhookResponse) and response.handled:
        background_tasks.add_task(drain_notification_outbox)
        logger.info(
            "Webhook processed provider=zoom event=%s meeting_ids=%s",
            response.event,
            ",".join(response.meeting_ids),
        )
    return response


async def _load_payload_and_raw_body(request: Request) -> tuple[dict[str, Any], bytes]:
    raw_body = await request.body()
    try:
        parsed_payload = json.loads(raw_body or b"{}")
    except json.JSONDecodeError as exc:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be valid JSON.",
        ) from exc

    if not isinstance(parsed_payload, dict):
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail="Request body must be a JSON object.",
        )

    return parsed_payload, raw_body
