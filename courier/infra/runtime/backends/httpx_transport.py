"""
HTTPX Transport
===============

Production transport over ``httpx.AsyncClient``.

  - Joins ``url`` onto ``base_url``, sends params, headers and body
  - Decodes JSON bodies when the server says so, text otherwise
  - Statuses rejected by ``validate_status`` raise ServerError/ClientError
  - ``httpx.TimeoutException`` → timeout kind, other ``httpx.RequestError``
    → network kind
  - Honours ``descriptor.cancel_token`` for in-flight cancellation
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import httpx

from courier.core.exceptions import NetworkError, RequestTimeoutError, error_from_status
from courier.infra.telemetry import get_logger
from courier.models.request import RequestDescriptor
from courier.models.response import Response
from courier.utils.cancellation import run_cancellable
from courier.utils.keys import build_url

logger = get_logger(__name__)

StatusValidator = Callable[[int], bool]


def default_validate_status(status: int) -> bool:
    return 200 <= status < 300


def _is_json_response(resp: httpx.Response) -> bool:
    ctype = resp.headers.get("content-type", "")
    return "application/json" in ctype or "+json" in ctype


def _decode_body(resp: httpx.Response) -> Any:
    if not resp.content:
        return None
    if _is_json_response(resp):
        try:
            return resp.json()
        except ValueError:
            logger.debug("response_json_decode_failed", status=resp.status_code)
    return resp.text


def _body_kwargs(data: Any) -> dict[str, Any]:
    if data is None:
        return {}
    if isinstance(data, (bytes, bytearray, str)):
        return {"content": data}
    return {"json": data}


class HttpxTransport:
    """
    Transport backed by a shared ``httpx.AsyncClient``.

    Usage:
        async with HttpxTransport(timeout_s=10) as transport:
            client = Client(transport=transport, base_url="https://api.example.com")

        # Tests
        transport = HttpxTransport(transport=httpx.MockTransport(handler))
    """

    def __init__(
        self,
        *,
        client: httpx.AsyncClient | None = None,
        timeout_s: float = 30.0,
        validate_status: StatusValidator = default_validate_status,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=timeout_s, transport=transport)
        self._timeout_s = timeout_s
        self._validate_status = validate_status

    async def __call__(self, request: RequestDescriptor) -> Response:
        return await run_cancellable(request.cancel_token, self._send(request))

    async def _send(self, request: RequestDescriptor) -> Response:
        url = build_url(request.url, request.base_url)
        params = {k: v for k, v in request.params.items() if v is not None}
        timeout = request.timeout_s if request.timeout_s is not None else self._timeout_s

        try:
            resp = await self._client.request(
                request.method.value,
                url,
                params=params or None,
                headers=request.headers or None,
                timeout=timeout,
                **_body_kwargs(request.data),
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(
                f"Request timed out after {timeout}s", request=request
            ) from exc
        except httpx.RequestError as exc:
            raise NetworkError(
                f"Network error while sending request: {exc}", request=request
            ) from exc

        data = _decode_body(resp)
        headers = dict(resp.headers)
        if not self._validate_status(resp.status_code):
            raise error_from_status(
                resp.status_code,
                request=request,
                status_text=resp.reason_phrase,
                headers=headers,
                data=data,
            )

        return Response(
            status=resp.status_code,
            status_text=resp.reason_phrase,
            headers=headers,
            data=data,
            request=request,
        )

    async def aclose(self) -> None:
        """Close the underlying client if this transport created it."""
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> HttpxTransport:
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
