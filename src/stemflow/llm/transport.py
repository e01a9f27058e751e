from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import replace
from typing import AsyncIterator

import aiohttp

from stemflow.core.models import HttpRequest, RequestOptions, Response, StreamChunk
from stemflow.llm.adapters import get_provider_adapter
from stemflow.llm.errors import NetworkError, UpstreamError
from stemflow.llm.settings import ApiCredentials
from stemflow.llm.stream import get_stream_decoder

logger = logging.getLogger(__name__)

_NETWORK_ERRORS: tuple[type[BaseException], ...] = (
    aiohttp.ClientConnectionError,
    aiohttp.ClientPayloadError,
    asyncio.TimeoutError,
    ConnectionResetError,
)


def _authorize(provider: str, request: HttpRequest, api_key: str) -> tuple[dict[str, str], dict[str, str]]:
    headers = dict(request.headers)
    params: dict[str, str] = {}
    if provider == "gemini":
        params["key"] = api_key
    elif provider == "anthropic":
        headers["x-api-key"] = api_key
    else:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers, params


def _error_message(status: int, body: str) -> str:
    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, str) and error:
            return error
        if isinstance(error, dict) and isinstance(error.get("message"), str) and error["message"]:
            return error["message"]
    if body.strip():
        return body.strip()
    return f"Upstream error (status {status})"


async def _raise_for_status(response: aiohttp.ClientResponse, provider: str) -> None:
    if 200 <= response.status < 300:
        return
    body = await response.text(errors="replace")
    raise UpstreamError(
        _error_message(response.status, body),
        status=response.status,
        body=body,
        provider=provider,
    )


class ProviderClient:
    """Sends vendor-neutral requests to the configured provider over HTTP."""

    def __init__(self, *, timeout_seconds: float) -> None:
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)

    def _prepare(self, options: RequestOptions, credentials: ApiCredentials) -> tuple[HttpRequest, dict, dict]:
        adapter = get_provider_adapter(options.provider)
        request = adapter.build_request(options, base_url=credentials.base_url)
        headers, params = _authorize(options.provider, request, credentials.key)
        return request, headers, params

    async def complete(self, options: RequestOptions, credentials: ApiCredentials) -> Response:
        options = replace(options, stream=False)
        request, headers, params = self._prepare(options, credentials)
        logger.debug("Sending completion request. provider=%s model=%s", options.provider, options.model)
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(request.url, json=request.body, headers=headers, params=params) as response:
                    await _raise_for_status(response, options.provider)
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = None
        except _NETWORK_ERRORS as exc:
            raise NetworkError(
                f"Network error: Failed to reach AI provider ({type(exc).__name__})",
                provider=options.provider,
            ) from exc
        return get_provider_adapter(options.provider).parse_response(payload)

    async def stream(self, options: RequestOptions, credentials: ApiCredentials) -> AsyncIterator[StreamChunk]:
        options = replace(options, stream=True)
        request, headers, params = self._prepare(options, credentials)
        headers["Accept"] = "text/event-stream"
        decoder = get_stream_decoder(options.provider)
        logger.debug("Opening completion stream. provider=%s model=%s", options.provider, options.model)
        try:
            async with aiohttp.ClientSession(timeout=self._timeout) as session:
                async with session.post(request.url, json=request.body, headers=headers, params=params) as response:
                    await _raise_for_status(response, options.provider)
                    async for chunk in decoder(response.content.iter_any()):
                        yield chunk
        except _NETWORK_ERRORS as exc:
            raise NetworkError(
                f"Network error: Failed to reach AI provider ({type(exc).__name__})",
                provider=options.provider,
            ) from exc
