"""
GitHub webhook endpoint
"""

import structlog
from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

from mailbot.utils.exceptions import MailbotError, ParseError
from mailbot.utils.webhook_validator import (
    DELIVERY_HEADER,
    SIGNATURE_HEADER,
    extract_github_event_type,
    validate_github_webhook,
)

router = APIRouter()
logger = structlog.get_logger()


async def read_capped_body(request: Request, limit: int) -> bytes:
    """Read the request body, refusing anything larger than limit bytes"""
    content_length = request.headers.get("content-length")
    if content_length and content_length.isdigit() and int(content_length) > limit:
        raise ParseError("request body too large")

    body = bytearray()
    async for chunk in request.stream():
        body.extend(chunk)
        if len(body) > limit:
            raise ParseError("request body too large")
    return bytes(body)


@router.post("", response_class=PlainTextResponse)
async def github_webhook(request: Request) -> PlainTextResponse:
    """
    Authenticate a GitHub delivery and route it by event kind
    """
    settings = request.app.state.settings
    event_router = request.app.state.event_router

    event_type = extract_github_event_type(request.headers)
    delivery_id = request.headers.get(DELIVERY_HEADER, "")

    try:
        payload = await read_capped_body(request, settings.MAX_BODY_BYTES)
        validate_github_webhook(
            payload,
            request.headers.get(SIGNATURE_HEADER),
            settings.WEBHOOK_SECRET.get_secret_value().encode("utf-8"),
        )
        result = await event_router.route_event(event_type, payload, delivery_id=delivery_id)
    except MailbotError as e:
        logger.warning(
            "Webhook rejected",
            event_type=event_type,
            delivery_id=delivery_id,
            error_type=e.__class__.__name__,
            error=e.message,
        )
        return PlainTextResponse(e.message, status_code=400)

    logger.info(
        "Webhook event processed",
        event_type=event_type,
        delivery_id=delivery_id,
        status=result.status,
    )
    return PlainTextResponse(result.body, status_code=result.status_code)


@router.api_route("", methods=["GET", "PUT", "PATCH", "DELETE"], include_in_schema=False)
async def unexpected_method(request: Request) -> PlainTextResponse:
    return PlainTextResponse(f"unexpected method: {request.method}", status_code=400)
