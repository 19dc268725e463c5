"""REST API views for SubmitFlow."""

from __future__ import annotations

import logging
import time

from django.conf import settings
from django.urls import reverse
from drf_spectacular.utils import OpenApiParameter, extend_schema
from rest_framework import status
from rest_framework.permissions import IsAuthenticated
from rest_framework.views import APIView

from submitflow.application.dispatcher import DispatchResult
from submitflow.bootstrap import get_dispatcher
from submitflow.domain.errors import (
    InvalidCallerIdError,
    InvalidRequestIdError,
    StoreUnavailableError,
)
from submitflow.infrastructure.upstream.http_unit import vat_obligations_unit, vat_return_unit
from submitflow.interfaces.rest import serializers
from submitflow.interfaces.rest.responses import (
    REQUEST_ID_HEADER,
    WAIT_TIME_HEADER,
    error_response,
    parse_wait_time_ms,
    resolve_request_id,
    respond,
)

logger = logging.getLogger(__name__)

ACCESS_TOKEN_HEADER = "x-hmrc-access-token"

_ASYNC_HEADERS = [
    OpenApiParameter(REQUEST_ID_HEADER, str, OpenApiParameter.HEADER, required=False),
    OpenApiParameter(WAIT_TIME_HEADER, int, OpenApiParameter.HEADER, required=False),
]


def _caller_id(request) -> str:
    return str(request.user.pk)


def _status_location(request, request_id: str) -> str:
    return request.build_absolute_uri(reverse("async-request-status", args=[request_id]))


def _dispatch(request, request_id: str, wait_ms: int, unit):
    """Run the unit, then poll for whatever is left of the caller's wait budget."""
    dispatcher = get_dispatcher()
    started = time.monotonic()
    try:
        result = dispatcher.run(_caller_id(request), request_id, wait_ms, unit)
        remaining_ms = wait_ms - int((time.monotonic() - started) * 1000)
        if result.persisted and not result.is_terminal and remaining_ms > 0:
            record = dispatcher.wait(_caller_id(request), request_id, remaining_ms)
            if record is not None:
                result = DispatchResult.from_record(record)
    except (InvalidRequestIdError, InvalidCallerIdError) as exc:
        return error_response(str(exc), status_code=status.HTTP_400_BAD_REQUEST, request_id=request_id)
    except StoreUnavailableError as exc:
        return error_response(
            str(exc), status_code=status.HTTP_503_SERVICE_UNAVAILABLE, request_id=request_id
        )
    return respond(result, request_id=request_id, location=_status_location(request, request_id))


class VatReturnView(APIView):
    """Submit a VAT return; answers inline or hands off and tells the client to poll."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        request=serializers.VatReturnSerializer,
        responses={200: serializers.AsyncRequestStatusSerializer, 202: serializers.AsyncRequestStatusSerializer},
        parameters=_ASYNC_HEADERS,
    )
    def post(self, request):
        request_id = resolve_request_id(request)
        serializer = serializers.VatReturnSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        wait_ms = parse_wait_time_ms(request, default=settings.ASYNC_DEFAULT_WAIT_MS)
        unit = vat_return_unit(
            vat_number=data["vatNumber"],
            period_key=data["periodKey"],
            vat_due=data["vatDue"],
            access_token=data["accessToken"],
            base_url=settings.UPSTREAM_BASE_URL,
            timeout=settings.UPSTREAM_TIMEOUT_SEC,
        )
        return _dispatch(request, request_id, wait_ms, unit)


class VatObligationsView(APIView):
    """List VAT obligations through the same inline-or-poll path as submissions."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        parameters=[
            OpenApiParameter("vrn", str, OpenApiParameter.QUERY, required=True),
            OpenApiParameter("from", str, OpenApiParameter.QUERY, required=False),
            OpenApiParameter("to", str, OpenApiParameter.QUERY, required=False),
            OpenApiParameter("status", str, OpenApiParameter.QUERY, required=False, enum=["O", "F"]),
            OpenApiParameter(ACCESS_TOKEN_HEADER, str, OpenApiParameter.HEADER, required=True),
            *_ASYNC_HEADERS,
        ],
        responses={200: serializers.AsyncRequestStatusSerializer, 202: serializers.AsyncRequestStatusSerializer},
    )
    def get(self, request):
        request_id = resolve_request_id(request)
        serializer = serializers.VatObligationQuerySerializer(data=request.query_params)
        serializer.is_valid(raise_exception=True)
        data = serializer.validated_data
        access_token = (request.headers.get(ACCESS_TOKEN_HEADER) or "").strip()
        if not access_token:
            return error_response(
                f"Missing {ACCESS_TOKEN_HEADER} header",
                status_code=status.HTTP_400_BAD_REQUEST,
                request_id=request_id,
            )
        wait_ms = parse_wait_time_ms(request, default=settings.ASYNC_DEFAULT_WAIT_MS)
        unit = vat_obligations_unit(
            vat_number=data["vrn"],
            date_from=data["from"],
            date_to=data["to"],
            status=data.get("status"),
            access_token=access_token,
            base_url=settings.UPSTREAM_BASE_URL,
            timeout=settings.UPSTREAM_TIMEOUT_SEC,
        )
        return _dispatch(request, request_id, wait_ms, unit)


class AsyncRequestStatusView(APIView):
    """Poll a previously submitted request; optionally wait for it to finish."""

    permission_classes = [IsAuthenticated]

    @extend_schema(
        responses={200: serializers.AsyncRequestStatusSerializer, 202: serializers.AsyncRequestStatusSerializer},
        parameters=_ASYNC_HEADERS[1:],
    )
    def get(self, request, request_id: str):
        dispatcher = get_dispatcher()
        wait_ms = parse_wait_time_ms(request, default=0)
        try:
            if wait_ms > 0:
                record = dispatcher.wait(_caller_id(request), request_id, wait_ms)
            else:
                record = dispatcher.get_status(_caller_id(request), request_id)
        except (InvalidRequestIdError, InvalidCallerIdError) as exc:
            return error_response(str(exc), status_code=status.HTTP_400_BAD_REQUEST, request_id=request_id)
        except StoreUnavailableError as exc:
            return error_response(
                str(exc), status_code=status.HTTP_503_SERVICE_UNAVAILABLE, request_id=request_id
            )
        result = DispatchResult.from_record(record) if record is not None else None
        return respond(result, request_id=request_id, location=_status_location(request, request_id))
