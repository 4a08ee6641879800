"""
Downstream Connector — calls the two internal services (A and B).

Request:   POST {base_url}{path}   {"correlationId", "endpoint", "body"}
Response:  {"ok": bool, "httpStatus": int, "data": ...}
           Missing ``ok`` / ``httpStatus`` fall back to the transport status.

``invoke`` returns a successful DownstreamOutcome or raises a DispatchError
subclass; the consumer turns raised errors into failure/timeout outcomes.
Calls are not retried here: redelivery belongs to the queue.
"""
from __future__ import annotations

import abc
import structlog
from typing import Any, Optional

import httpx

from config.settings import DownstreamConfig
from core.errors import (
    ApplicationFailure, ConfigurationError, TransportFailure, TransportTimeout,
)
from models.schemas import DownstreamOutcome, OutcomeKind

logger = structlog.get_logger()


class DownstreamClient(abc.ABC):
    """Abstract base for downstream service clients."""

    @abc.abstractmethod
    async def invoke(self, path: str, payload: dict[str, Any]) -> DownstreamOutcome:
        ...

    async def close(self):
        return None


def _join(base_url: str, path: str) -> str:
    return f"{base_url.rstrip('/')}{path if path.startswith('/') else '/' + path}"


class RESTDownstreamClient(DownstreamClient):
    """
    httpx-based client for the private API in front of services A and B.
    One AsyncClient is created lazily and reused across invocations.
    """

    def __init__(self, config: DownstreamConfig = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.config = config or DownstreamConfig()
        self._transport = transport
        self.client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {"content-type": "application/json"}
            if self.config.api_key:
                headers["x-api-key"] = self.config.api_key

            self.client = httpx.AsyncClient(
                headers=headers,
                timeout=self.config.timeout_ms / 1000.0,
                transport=self._transport,
            )
        return self.client

    async def invoke(self, path: str, payload: dict[str, Any]) -> DownstreamOutcome:
        if not self.config.base_url:
            raise ConfigurationError("INTERNAL_API_URL not set")

        client = await self._get_client()
        url = _join(self.config.base_url, path)
        try:
            response = await client.post(url, json=payload)
        except httpx.TimeoutException as e:
            raise TransportTimeout(f"Timed out calling {path}") from e
        except httpx.TransportError as e:
            raise TransportFailure(f"Transport error calling {path}: {e}") from e

        return self._parse(response)

    @staticmethod
    def _parse(response: httpx.Response) -> DownstreamOutcome:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {"data": body}

        ok = body["ok"] if isinstance(body.get("ok"), bool) else response.is_success
        declared = body.get("httpStatus")
        if isinstance(declared, int) and not isinstance(declared, bool):
            http_status = declared
        else:
            http_status = response.status_code

        if not ok:
            err = body.get("error") if isinstance(body.get("error"), dict) else {}
            raise ApplicationFailure(
                err.get("message") or f"HTTP {http_status}",
                http_status=http_status,
                code=err.get("code"),
            )

        return DownstreamOutcome(
            kind=OutcomeKind.SUCCESS,
            http_status=http_status,
            data=body.get("data", body),
        )

    async def close(self):
        if self.client:
            await self.client.aclose()


class MockDownstreamClient(DownstreamClient):
    """
    Echo client for development: mirrors the internal services' contract,
    ``{ok: true, httpStatus: 200, data: {<side>Processed: true, echo}}``.
    """

    def __init__(self):
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def invoke(self, path: str, payload: dict[str, Any]) -> DownstreamOutcome:
        self.calls.append((path, payload))
        side = path.rstrip("/").rsplit("/", 1)[-1].replace("lambda", "").lower() or "x"
        logger.debug("mock_downstream_invoke", path=path,
                     correlation_id=payload.get("correlationId"))
        return DownstreamOutcome(
            kind=OutcomeKind.SUCCESS,
            http_status=200,
            data={f"{side}Processed": True, "echo": payload},
        )


def create_downstream_client(config: DownstreamConfig = None) -> DownstreamClient:
    """Factory function to create the appropriate downstream client."""
    config = config or DownstreamConfig()
    if not config.base_url and config.use_mock:
        logger.warning("using_mock_downstream", reason="no base_url configured")
        return MockDownstreamClient()
    return RESTDownstreamClient(config)
