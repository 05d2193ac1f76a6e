# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_auth_broker

"""
Outbound HTTP helpers: an SSRF-safe transport and bounded JSON requests to providers.
"""

import ipaddress
import json
import socket
from dataclasses import dataclass
from typing import Any

import anyio
import httpx

from coreason_auth_broker.exceptions import OversizedResponseError, ProviderUnreachableError, SecurityError
from coreason_auth_broker.utils.logger import logger

DEFAULT_MAX_RESPONSE_BYTES = 1_000_000


class SafeHTTPTransport(httpx.AsyncHTTPTransport):
    """
    A secure HTTP transport that enforces DNS pinning to prevent SSRF/DNS Rebinding attacks.

    It resolves the hostname to an IP address, validates the IP against blocked ranges
    (private, loopback, link-local, multicast), and then forces the connection to that specific IP
    while preserving the original Host header and SNI for SSL verification.
    """

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        hostname = request.url.host

        # Literal IP addresses are validated directly
        try:
            ip_obj = ipaddress.ip_address(hostname)
        except ValueError:
            ip_obj = None
        if ip_obj is not None:
            self._validate_ip(ip_obj, hostname)
            return await super().handle_async_request(request)

        try:
            addr_infos = await anyio.to_thread.run_sync(socket.getaddrinfo, hostname, None, 0, socket.SOCK_STREAM)
        except socket.gaierror as e:
            logger.warning(f"DNS resolution failed for {hostname}: {e}")
            raise ProviderUnreachableError(f"DNS resolution failed for {hostname}") from e

        # Connect only to the first resolved address that passes validation
        target_ip: str | None = None
        for _, _, _, _, sockaddr in addr_infos:
            try:
                candidate = ipaddress.ip_address(sockaddr[0])
                self._validate_ip(candidate, hostname)
            except (SecurityError, ValueError):
                continue
            target_ip = str(candidate)
            break

        if not target_ip:
            logger.error(f"Security violation: No valid public IP found for {hostname}")
            raise SecurityError(f"Security violation: No valid public IP found for {hostname}")

        request.extensions["sni_hostname"] = hostname
        if "Host" not in request.headers:
            request.headers["Host"] = request.url.netloc.decode("ascii")
        request.url = request.url.copy_with(host=target_ip)

        logger.debug(f"DNS Pinned: {hostname} -> {target_ip}")
        return await super().handle_async_request(request)

    def _validate_ip(self, ip_obj: Any, hostname: str) -> None:
        if (
            ip_obj.is_private
            or ip_obj.is_loopback
            or ip_obj.is_link_local
            or ip_obj.is_reserved
            or ip_obj.is_multicast
        ):
            logger.warning(f"Security violation: Blocked access to {hostname} ({ip_obj})")
            raise SecurityError(f"Access to {hostname} ({ip_obj}) is blocked")


@dataclass(frozen=True)
class JsonResponse:
    """Status code and decoded body of a provider response. `body` is None when it is not JSON."""

    status_code: int
    body: Any


async def request_json(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    *,
    timeout: float | None = None,
    max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    **kwargs: Any,
) -> JsonResponse:
    """
    Sends a request and reads at most `max_bytes` of the response body.

    Args:
        client: The async HTTP client.
        method: HTTP method.
        url: Target URL.
        timeout: Overall deadline in seconds for the whole exchange, on top of the client's own timeouts.
        max_bytes: Maximum accepted body size.
        **kwargs: Passed through to `httpx.AsyncClient.stream` (data, headers, ...).

    Returns:
        JsonResponse with the status code and the decoded body.

    Raises:
        ProviderUnreachableError: On connection failures and timeouts.
        OversizedResponseError: If the body exceeds `max_bytes`.
    """
    try:
        with anyio.fail_after(timeout):
            async with client.stream(method, url, **kwargs) as response:
                content_length = response.headers.get("Content-Length")
                if content_length and content_length.isdigit() and int(content_length) > max_bytes:
                    raise OversizedResponseError(f"Response from {url} too large")

                content = bytearray()
                async for chunk in response.aiter_bytes():
                    content.extend(chunk)
                    if len(content) > max_bytes:
                        raise OversizedResponseError(f"Response from {url} too large")
                status_code = response.status_code
    except TimeoutError as e:
        raise ProviderUnreachableError(f"{method} {url} timed out") from e
    except httpx.HTTPError as e:
        raise ProviderUnreachableError(f"{method} {url} failed: {type(e).__name__}") from e

    try:
        body = json.loads(content) if content else None
    except ValueError:
        body = None
    return JsonResponse(status_code=status_code, body=body)


async def safe_json_fetch(
    client: httpx.AsyncClient,
    url: str,
    method: str = "GET",
    *,
    timeout: float | None = None,
    max_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    **kwargs: Any,
) -> dict[str, Any]:
    """
    Fetches a JSON object, treating any non-2xx status or non-object body as the provider being unavailable.

    Raises:
        ProviderUnreachableError: On network failures, error statuses and non-JSON bodies.
        OversizedResponseError: If the body exceeds `max_bytes`.
    """
    response = await request_json(client, method, url, timeout=timeout, max_bytes=max_bytes, **kwargs)
    if not 200 <= response.status_code < 300:
        raise ProviderUnreachableError(f"{method} {url} returned HTTP {response.status_code}")
    if not isinstance(response.body, dict):
        raise ProviderUnreachableError(f"{method} {url} did not return a JSON object")
    return response.body
