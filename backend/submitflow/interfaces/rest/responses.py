"""HTTP shaping of dispatch results and parsing of the async request headers."""

from __future__ import annotations

import logging
import uuid
from typing import Optional

from rest_framework import status
from rest_framework.response import Response

from submitflow.application.dispatcher import DispatchResult
from submitflow.domain.models.async_request import AsyncRequestStatus

logger = logging.getLogger(__name__)

REQUEST_ID_HEADER = "x-request-id"
WAIT_TIME_HEADER = "x-wait-time-ms"
RETRY_AFTER_SEC = "5"


def resolve_request_id(request) -> str:
    """Client-supplied id when present, otherwise a fresh UUID4."""
    supplied = request.headers.get(REQUEST_ID_HEADER)
    if supplied is not None:
        return supplied.strip()
    return str(uuid.uuid4())


def parse_wait_time_ms(request, default: int = 0) -> int:
    raw = request.headers.get(WAIT_TIME_HEADER)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw.strip())
    except ValueError:
        logger.info("Ignoring malformed wait time header", extra={"value": raw[:32]})
        return default
    return value if value >= 0 else default


def respond(
    result: Optional[DispatchResult], *, request_id: str, location: str
) -> Response:
    headers = {REQUEST_ID_HEADER: request_id}
    if result is None:
        return Response(
            {"request_id": request_id, "detail": "Unknown or expired request"},
            status=status.HTTP_404_NOT_FOUND,
            headers=headers,
        )
    body = result.as_dict()
    if result.status is AsyncRequestStatus.COMPLETED:
        return Response(body, status=status.HTTP_200_OK, headers=headers)
    if result.status is AsyncRequestStatus.FAILED:
        code = result.error.status_code if result.error else None
        if code is None or not 400 <= code < 600:
            code = status.HTTP_502_BAD_GATEWAY
        logger.info(
            "Returning failed request",
            extra={"request_id": request_id, "status_code": code},
        )
        return Response(body, status=code, headers=headers)
    headers.update({"Location": location, "Retry-After": RETRY_AFTER_SEC})
    body["detail"] = "Request accepted for processing"
    return Response(body, status=status.HTTP_202_ACCEPTED, headers=headers)


def error_response(detail: str, *, status_code: int, request_id: str) -> Response:
    return Response(
        {"request_id": request_id, "detail": detail},
        status=status_code,
        headers={REQUEST_ID_HEADER: request_id},
    )
