"""
Inbound webhook endpoints, one per source channel
"""

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
import logging

from api.dependencies import get_services
from core.exceptions import IngestionError, MalformedEvent
from schemas.api import ErrorResponse, WebhookAccepted
from tracking.services import TrackingServices
from tracking.verifier import SIGNATURE_HEADER

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/webhooks", tags=["Webhooks"])

CORRELATION_HEADER = "X-Correlation-ID"


def _error(status_code: int, exc: IngestionError) -> JSONResponse:
    body = ErrorResponse(
        error=exc.error_code,
        message=exc.message,
        fields=exc.fields if isinstance(exc, MalformedEvent) else None
    )
    return JSONResponse(status_code=status_code, content=body.model_dump(exclude_none=True))


@router.post(
    "/{channel}",
    response_model=WebhookAccepted,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}}
)
async def receive_webhook(
    channel: str,
    request: Request,
    services: TrackingServices = Depends(get_services)
):
    """
    Accept one event from ``channel``.

    The signature is checked against the raw body, so the body is read
    before any JSON parsing.
    """
    request_id = getattr(request.state, "request_id", None)

    if not services.pipeline.knows_channel(channel):
        logger.warning(f"[{request_id}] Webhook for unknown channel '{channel}'")
        return JSONResponse(
            status_code=404,
            content={"error": "unknown_channel", "message": f"Unknown webhook channel '{channel}'"}
        )

    body = await request.body()
    try:
        result = await services.pipeline.handle_webhook(
            channel,
            body,
            signature=request.headers.get(SIGNATURE_HEADER),
            correlation_id=request.headers.get(CORRELATION_HEADER)
        )
    except IngestionError as e:
        logger.info(f"[{request_id}] Rejected {channel} webhook: {e.error_code} {e.message}")
        return _error(400, e)

    return WebhookAccepted(success=True, eventId=result.event_id, duplicate=result.duplicate)
