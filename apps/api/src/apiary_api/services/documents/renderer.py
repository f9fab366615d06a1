"""Certificate rendering capability."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import date
from typing import Any, Protocol

import httpx
from loguru import logger

from apiary_api.core.settings import Settings, get_settings
from apiary_api.domain.errors import DownstreamSideEffectFailed


@dataclass(slots=True)
class CertificateRecord:
    """Snapshot of the ledger row a certificate is rendered from."""

    kind: str
    entity_id: str
    owner_id: str
    organization: str
    year: int
    holder: str
    issued_on: date
    details: dict[str, Any] = field(default_factory=dict)

    def to_payload(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["issued_on"] = self.issued_on.isoformat()
        return payload


class DocumentRenderer(Protocol):
    """Turn a record into document bytes."""

    async def render(self, record: CertificateRecord) -> bytes:
        ...


class HttpDocumentRenderer:
    """Renders certificates through the document rendering service."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 20.0,
        http_client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._timeout_seconds = timeout_seconds
        self._http_client = http_client

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "HttpDocumentRenderer":
        resolved = settings or get_settings()
        if not resolved.document_renderer_url:
            raise ValueError("Document renderer URL must be configured")
        return cls(
            resolved.document_renderer_url,
            api_key=resolved.document_renderer_api_key,
            timeout_seconds=resolved.document_renderer_timeout_seconds,
        )

    async def render(self, record: CertificateRecord) -> bytes:
        target_url = f"{self._base_url}/certificates/{record.kind}"
        headers = {"Accept": "application/pdf"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"

        try:
            if self._http_client is not None:
                response = await self._http_client.post(target_url, json=record.to_payload(), headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self._timeout_seconds) as client:
                    response = await client.post(target_url, json=record.to_payload(), headers=headers)
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "Certificate renderer returned HTTP error",
                status=exc.response.status_code,
                entity_id=record.entity_id,
            )
            raise DownstreamSideEffectFailed("render", f"HTTP {exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.warning("Certificate renderer request failed", entity_id=record.entity_id, error=str(exc))
            raise DownstreamSideEffectFailed("render", str(exc)) from exc

        if not response.content:
            raise DownstreamSideEffectFailed("render", "empty document")
        return response.content


__all__ = ["CertificateRecord", "DocumentRenderer", "HttpDocumentRenderer"]
