"""Execution unit performing one JSON call against the upstream tax gateway."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Any, Dict, Optional

import requests
from requests import Response

from submitflow.domain.models.unit import UnitOutcome

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = os.getenv("UPSTREAM_BASE_URL", "https://test-api.service.hmrc.gov.uk")
DEFAULT_TIMEOUT = float(os.getenv("UPSTREAM_TIMEOUT_SEC", "20"))
HMRC_ACCEPT = "application/vnd.hmrc.1.0+json"

# Rate limiting and gateway unavailability are worth another attempt.
TRANSIENT_STATUS_CODES = frozenset({429, 503, 504})


@dataclass
class HttpExecutionUnit:
    """Upstream HTTP call addressed entirely by its JSON payload.

    payload keys: ``method``, ``url``, optional ``headers``, ``params``, ``json`` and
    ``timeout``.
    """

    payload: Dict[str, Any]
    kind: str = "http"
    session: Optional[requests.Session] = field(default=None, repr=False)

    def execute(self) -> UnitOutcome:
        method = str(self.payload.get("method", "GET")).upper()
        url = self.payload["url"]
        timeout = float(self.payload.get("timeout", DEFAULT_TIMEOUT))
        client = self.session or requests
        logger.info("Calling upstream", extra={"method": method, "url": url})
        try:
            response = client.request(
                method,
                url,
                headers=self.payload.get("headers") or {},
                params=self.payload.get("params"),
                json=self.payload.get("json"),
                timeout=timeout,
            )
        except (requests.Timeout, requests.ConnectionError) as exc:
            logger.warning("Upstream unreachable", extra={"url": url, "error": str(exc)})
            return UnitOutcome.transient(f"Upstream unreachable: {exc}")
        except requests.RequestException as exc:
            return UnitOutcome.permanent(f"Upstream request could not be sent: {exc}")
        return self._classify(response)

    def _classify(self, response: Response) -> UnitOutcome:
        body = _safe_body(response)
        status = response.status_code
        if 200 <= status < 300:
            return UnitOutcome.success(
                {"status": status, "headers": dict(response.headers), "body": body}
            )
        message = f"Upstream responded with status {status}"
        logger.warning("Upstream call failed", extra={"status_code": status})
        if status in TRANSIENT_STATUS_CODES:
            return UnitOutcome.transient(message, status_code=status, data=body)
        return UnitOutcome.permanent(message, status_code=status, data=body)


def _safe_body(response: Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text[:2000]


def vat_return_unit(
    *,
    vat_number: str,
    period_key: str,
    vat_due: Decimal | float | str,
    access_token: str,
    base_url: str | None = None,
    timeout: float | None = None,
) -> HttpExecutionUnit:
    """Build the unit submitting a nil-other-boxes VAT return for one period."""
    amount = float(vat_due)
    body = {
        "periodKey": period_key,
        "vatDueSales": amount,
        "vatDueAcquisitions": 0,
        "totalVatDue": amount,
        "vatReclaimedCurrPeriod": 0,
        "netVatDue": amount,
        "totalValueSalesExVAT": 0,
        "totalValuePurchasesExVAT": 0,
        "totalValueGoodsSuppliedExVAT": 0,
        "totalAcquisitionsExVAT": 0,
        "finalised": True,
    }
    root = (base_url or DEFAULT_BASE_URL).rstrip("/")
    return HttpExecutionUnit(
        payload={
            "method": "POST",
            "url": f"{root}/organisations/vat/{vat_number}/returns",
            "headers": {
                "Content-Type": "application/json",
                "Accept": HMRC_ACCEPT,
                "Authorization": f"Bearer {access_token}",
            },
            "json": body,
            "timeout": timeout if timeout is not None else DEFAULT_TIMEOUT,
        }
    )


def vat_obligations_unit(
    *,
    vat_number: str,
    date_from: date,
    date_to: date,
    access_token: str,
    status: str | None = None,
    base_url: str | None = None,
    timeout: float | None = None,
) -> HttpExecutionUnit:
    """Build the unit listing open (O) or fulfilled (F) obligations in a date range."""
    params = {"from": date_from.isoformat(), "to": date_to.isoformat()}
    if status:
        params["status"] = status
    root = (base_url or DEFAULT_BASE_URL).rstrip("/")
    return HttpExecutionUnit(
        payload={
            "method": "GET",
            "url": f"{root}/organisations/vat/{vat_number}/obligations",
            "headers": {
                "Accept": HMRC_ACCEPT,
                "Authorization": f"Bearer {access_token}",
            },
            "params": params,
            "timeout": timeout if timeout is not None else DEFAULT_TIMEOUT,
        }
    )


def from_payload(payload: Dict[str, Any]) -> HttpExecutionUnit:
    return HttpExecutionUnit(payload=dict(payload))
