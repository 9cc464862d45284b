# Overview: HTTP client for the fiscal approval service; builds payloads and parses verdicts.

"""
Approval service client.

The service takes a structured document payload and a resolution (test set)
identifier and answers with {"success": bool, "cufe": "<token>", ...}.
The token is opaque to us.

Two failure shapes are kept apart:
- ApprovalResult(approved=False): the service answered and said no
- ApprovalUnavailable: no usable answer (transport error, timeout, 5xx)

Tests and alternative transports plug in through
``app.extensions["approval_client"]``; anything with a
``submit(document_type, payload) -> ApprovalResult`` method works.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import httpx
from flask import current_app

from ..families import get_rules
from ..models import DocumentHeader
from ..time_utils import to_utc_z


class ApprovalUnavailable(Exception):
    """The approval service could not be reached or gave no usable answer."""


@dataclass(frozen=True)
class ApprovalResult:
    approved: bool
    token: str | None = None
    message: str | None = None
    raw: dict = field(default_factory=dict)


class HttpApprovalClient:
    def __init__(
        self,
        base_url: str,
        test_set_id: str,
        *,
        api_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.BaseTransport | None = None,
    ):
        if not base_url:
            raise ValueError("base_url is required")
        self.base_url = base_url.rstrip("/")
        self.test_set_id = str(test_set_id or "").strip()
        self.api_token = api_token
        self.timeout = timeout
        self.transport = transport

    def endpoint(self, document_type: str) -> str:
        return f"{self.base_url}/api/ubl2.1/{document_type}/{self.test_set_id}"

    def submit(self, document_type: str, payload: dict) -> ApprovalResult:
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        if self.api_token:
            headers["Authorization"] = f"Bearer {self.api_token}"

        try:
            with httpx.Client(timeout=self.timeout, transport=self.transport) as client:
                response = client.post(self.endpoint(document_type), json=payload, headers=headers)
        except (httpx.HTTPError, httpx.InvalidURL) as exc:
            raise ApprovalUnavailable(f"{type(exc).__name__}: {exc}") from exc

        if response.status_code >= 500:
            raise ApprovalUnavailable(f"approval service returned HTTP {response.status_code}")

        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"response": body}

        token = body.get("cufe") or body.get("token")
        approved = response.is_success and bool(body.get("success")) and bool(token)
        message = body.get("message") or body.get("error")
        if not approved and not message:
            message = f"approval service rejected the document (HTTP {response.status_code})"

        return ApprovalResult(
            approved=approved,
            token=str(token) if approved else None,
            message=message,
            raw=body,
        )


def build_approval_payload(header: DocumentHeader) -> dict:
    """Shape a committed document for the approval service."""
    payload = {
        "number": header.sequence_number,
        "document_number": header.document_number,
        "type_document": header.family,
        "issued_at": to_utc_z(header.issued_at),
        "sync": True,
        "trackId": f"track-{header.family}-{header.sequence_number}-{header.id}",
        "customer": header.client.to_dict() if header.client is not None else None,
        "legal_monetary_totals": {
            "line_extension_amount": str(header.subtotal),
            "allowance_total_amount": str(header.discount),
            "tax_amount": str(header.tax),
            "payable_amount": str(header.total),
        },
        "invoice_lines": [
            {
                "code": line.product.sku if line.product is not None else None,
                "description": line.product.name if line.product is not None else None,
                "invoiced_quantity": str(line.quantity),
                "price_amount": str(line.unit_price),
                "discount_rate": str(line.discount_rate),
                "tax_rate": str(line.tax_rate),
                "line_extension_amount": str(line.subtotal),
                "tax_amount": str(line.tax),
            }
            for line in header.lines
        ],
    }
    if header.origin is not None:
        payload["billing_reference"] = {
            "number": header.origin.document_number,
            "uuid": header.origin.approval_token,
            "issue_date": to_utc_z(header.origin.issued_at),
        }
    return payload


def approval_document_type(header: DocumentHeader) -> str:
    return get_rules(header.family).approval_document_type or header.family


def get_approval_client():
    """
    The configured client. An explicitly installed client wins; otherwise one
    is built from APPROVAL_SERVICE_URL. Missing configuration surfaces as
    ApprovalUnavailable so the document is marked UNREACHABLE, not lost.
    """
    client = current_app.extensions.get("approval_client")
    if client is not None:
        return client

    base_url = current_app.config.get("APPROVAL_SERVICE_URL")
    if not base_url:
        raise ApprovalUnavailable("approval service is not configured (APPROVAL_SERVICE_URL)")
    return HttpApprovalClient(
        base_url,
        current_app.config.get("APPROVAL_TEST_SET_ID", ""),
        api_token=current_app.config.get("APPROVAL_API_TOKEN") or None,
        timeout=float(current_app.config.get("APPROVAL_TIMEOUT_SECONDS", 30)),
    )
