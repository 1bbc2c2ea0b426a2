from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict

LOGGER = logging.getLogger(__name__)

_JSON_HEADERS = {"Content-Type": "application/json"}


class DownstreamError(RuntimeError):
    """Base class for a failed solr-updater call."""

    def __init__(self, message: str, *, url: str) -> None:
        super().__init__(message)
        self.url = url


class DownstreamTransportError(DownstreamError):
    """Connection-level failure before a response was received."""


class DownstreamTimeout(DownstreamError):
    """The call did not complete within the configured timeout."""


class DownstreamStatusError(DownstreamError):
    """The downstream service answered with a non-2xx status."""

    def __init__(self, message: str, *, url: str, status_code: int, body: Any) -> None:
        super().__init__(message, url=url)
        self.status_code = status_code
        self.body = body


class NotifySuccess(BaseModel):
    model_config = ConfigDict(frozen=True)

    status_code: int
    body: Any = None


def create_http_client() -> httpx.AsyncClient:
    return httpx.AsyncClient()


class SolrUpdaterNotifier:
    """Issues exactly one re-index request per call; never retries."""

    def __init__(self, *, client: httpx.AsyncClient, base_url: str, timeout_s: float) -> None:
        if timeout_s <= 0:
            raise ValueError("timeout_s must be > 0")

        self._client = client
        self._base_url = base_url.rstrip("/")
        self._timeout_s = timeout_s

    def endpoint(self, table: str, row_id: int) -> str:
        return f"{self._base_url}/{table}/{row_id}"

    async def notify(self, table: str, row_id: int) -> NotifySuccess:
        url = self.endpoint(table, row_id)
        try:
            response = await self._client.post(
                url,
                content=b"",
                headers=_JSON_HEADERS,
                timeout=self._timeout_s,
            )
        except httpx.TimeoutException as exc:
            raise DownstreamTimeout(
                f"solr-updater call timed out after {self._timeout_s}s: {exc!r}",
                url=url,
            ) from exc
        except httpx.TransportError as exc:
            raise DownstreamTransportError(
                f"solr-updater call failed: {exc!r}",
                url=url,
            ) from exc

        body = _response_body(response)
        if not response.is_success:
            raise DownstreamStatusError(
                f"solr-updater returned HTTP {response.status_code}",
                url=url,
                status_code=response.status_code,
                body=body,
            )

        LOGGER.info(
            "solr_updater_synced",
            extra={
                "table": table,
                "row_id": row_id,
                "status_code": response.status_code,
                "response_body": body,
            },
        )
        return NotifySuccess(status_code=response.status_code, body=body)


def _response_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text
