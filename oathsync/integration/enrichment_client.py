"""Enrichment (OCR) worker client.

The worker extracts text from a summons document and writes the derived
fields straight to the store; this client only invokes it and interprets
its success / skip / failure signal.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any

import httpx

from oathsync.config import EnrichmentConfig
from oathsync.errors import ConfigurationError, EnrichmentInvocationError

logger = logging.getLogger(__name__)


@dataclass
class EnrichmentRequest:
    record_id: str
    ticket_number: str
    document_link: str | None
    video_link: str | None
    violation_date: str | None
    healing_mode: bool = False

    def to_payload(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "ticket_number": self.ticket_number,
            "document_link": self.document_link,
            "video_link": self.video_link,
            "violation_date": self.violation_date,
            "healing_mode": self.healing_mode,
        }


@dataclass
class EnrichmentResponse:
    """Interpreted worker answer."""

    status_code: int
    has_ocr_data: bool = False
    skipped: bool = False
    message: str | None = None
    body: dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def succeeded(self) -> bool:
        return 200 <= self.status_code < 300 and (self.has_ocr_data or self.skipped)

    @property
    def failure_reason(self) -> str:
        if self.message:
            return self.message
        if 200 <= self.status_code < 300:
            return "no OCR data returned"
        return f"worker returned HTTP {self.status_code}"


def parse_worker_body(status_code: int, payload: Any) -> EnrichmentResponse:
    """Interpret a worker body, unwrapping a Lambda-proxy envelope if present.

    Raises:
        EnrichmentInvocationError: If the body (or envelope body) is not a JSON
            object, or the envelope status is not an integer
    """
    if isinstance(payload, dict) and "statusCode" in payload and "body" in payload:
        try:
            status_code = int(payload["statusCode"])
        except (TypeError, ValueError) as e:
            raise EnrichmentInvocationError(
                f"invalid envelope statusCode {payload['statusCode']!r}"
            ) from e
        payload = payload["body"]
        if isinstance(payload, str):
            try:
                payload = json.loads(payload) if payload else {}
            except json.JSONDecodeError as e:
                raise EnrichmentInvocationError(f"undecodable envelope body: {e}") from e

    if payload is None:
        payload = {}
    if not isinstance(payload, dict):
        raise EnrichmentInvocationError(f"unexpected body type {type(payload).__name__}")

    message = payload.get("error") or payload.get("message")
    return EnrichmentResponse(
        status_code=status_code,
        has_ocr_data=bool(payload.get("hasOCRData")),
        skipped=bool(payload.get("skipped")),
        message=str(message) if message else None,
        body=payload,
    )


class EnrichmentClient:
    """Synchronous request/response invocation of the OCR worker."""

    def __init__(
        self,
        config: EnrichmentConfig,
        http_client: httpx.AsyncClient | None = None,
    ):
        if not config.worker_url:
            raise ConfigurationError("ENRICHMENT_WORKER_URL is required for enrichment")

        self.config = config
        headers = {"Content-Type": "application/json"}
        if config.api_key:
            headers["Authorization"] = f"Bearer {config.api_key}"

        self._owns_client = http_client is None
        self.client = http_client or httpx.AsyncClient(
            timeout=config.timeout_seconds, headers=headers
        )
        if http_client is not None:
            self.client.headers.update(headers)

    async def __aenter__(self) -> EnrichmentClient:
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._owns_client:
            await self.client.aclose()

    async def invoke(self, request: EnrichmentRequest) -> EnrichmentResponse:
        """Invoke the worker for one record.

        Returns:
            EnrichmentResponse (non-2xx answers are returned, not raised)

        Raises:
            EnrichmentInvocationError: Transport failure (no response), or a
                response whose body cannot be interpreted
        """
        try:
            response = await self.client.post(self.config.worker_url, json=request.to_payload())
        except httpx.HTTPError as e:
            raise EnrichmentInvocationError(
                f"worker unreachable for {request.ticket_number}: {e or type(e).__name__}"
            ) from e

        try:
            payload = response.json() if response.content else {}
        except json.JSONDecodeError as e:
            raise EnrichmentInvocationError(
                f"undecodable worker response (HTTP {response.status_code}): {e}",
                responded=True,
            ) from e

        try:
            return parse_worker_body(response.status_code, payload)
        except EnrichmentInvocationError as e:
            raise EnrichmentInvocationError(str(e), responded=True) from e
