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
Provider connection test: checks that a registered provider is reachable and publishes the
endpoints the broker needs. Nothing is cached; every check talks to the provider.
"""

from typing import Any

import httpx

from coreason_auth_broker.discovery import DISCOVERY_PATH
from coreason_auth_broker.exceptions import AuthBrokerError
from coreason_auth_broker.models import (
    DiscoveryValidation,
    FieldValidation,
    OAuth2EndpointValidation,
    OAuth2ProviderConfig,
    OIDCProviderConfig,
    ProviderValidationResult,
)
from coreason_auth_broker.transport import DEFAULT_MAX_RESPONSE_BYTES, request_json, safe_json_fetch
from coreason_auth_broker.utils.logger import logger

REQUIRED_ENDPOINTS = ("authorization_endpoint", "token_endpoint", "userinfo_endpoint")


class ConnectionChecker:
    """
    Runs connection tests against providers.

    Attributes:
        client (httpx.AsyncClient): The HTTP client for provider calls.
        timeout (float | None): Deadline in seconds for each outbound call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        timeout: float | None = None,
        max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
    ) -> None:
        self.client = client
        self.timeout = timeout
        self.max_response_bytes = max_response_bytes

    async def check(self, provider: OIDCProviderConfig | OAuth2ProviderConfig) -> ProviderValidationResult:
        """
        Tests a provider configuration against the live provider.

        Provider failures are reported in the result, never raised.
        """
        client_id = FieldValidation.passed(provider.client_id)
        if isinstance(provider, OIDCProviderConfig):
            issuer, discovery = await self._check_oidc(provider)
            valid = issuer.valid and discovery.reachable and _all_valid(
                discovery.discovery_url,
                discovery.authorization_endpoint,
                discovery.token_endpoint,
                discovery.userinfo_endpoint,
            )
            result = ProviderValidationResult(
                provider=provider.name, valid=valid, client_id=client_id, issuer=issuer, oidc_discovery=discovery
            )
        else:
            endpoints = await self._check_oauth2(provider)
            valid = _all_valid(
                endpoints.authorization_endpoint,
                endpoints.token_endpoint,
                endpoints.userinfo_endpoint,
                endpoints.scopes,
            )
            result = ProviderValidationResult(
                provider=provider.name, valid=valid, client_id=client_id, oauth2_endpoints=endpoints
            )

        logger.info(f"Connection test for provider '{provider.name}': {'passed' if result.valid else 'failed'}")
        return result

    async def _check_oidc(self, provider: OIDCProviderConfig) -> tuple[FieldValidation, DiscoveryValidation]:
        url = f"{provider.issuer.rstrip('/')}{DISCOVERY_PATH}"
        try:
            document = await safe_json_fetch(
                self.client, url, timeout=self.timeout, max_bytes=self.max_response_bytes
            )
        except AuthBrokerError as e:
            logger.warning(f"Connection test could not fetch {url}: {e}")
            unknown = FieldValidation.failed(None, "Could not retrieve endpoint from discovery")
            return (
                FieldValidation.failed(provider.issuer, "Failed to fetch OIDC discovery document"),
                DiscoveryValidation(
                    reachable=False,
                    discovery_url=FieldValidation.failed(url, str(e)),
                    authorization_endpoint=unknown,
                    token_endpoint=unknown,
                    userinfo_endpoint=unknown,
                ),
            )

        if document.get("issuer") == provider.issuer:
            issuer = FieldValidation.passed(provider.issuer)
        else:
            issuer = FieldValidation.failed(
                provider.issuer, f"Discovery document names issuer {document.get('issuer')!r}"
            )

        endpoints = {key: _published_endpoint(document, key) for key in REQUIRED_ENDPOINTS}
        if all(check.valid for check in endpoints.values()):
            discovery_url = FieldValidation.passed(url)
        else:
            discovery_url = FieldValidation.failed(url, "Discovery document is missing required fields")

        return issuer, DiscoveryValidation(
            reachable=True,
            discovery_url=discovery_url,
            supported_scopes=_strings(document.get("scopes_supported")),
            supported_grant_types=_strings(document.get("grant_types_supported")),
            **endpoints,
        )

    async def _check_oauth2(self, provider: OAuth2ProviderConfig) -> OAuth2EndpointValidation:
        if provider.scopes:
            scopes = FieldValidation.passed(" ".join(provider.scopes))
        else:
            scopes = FieldValidation.failed(None, "OAuth2 provider requires scopes to be configured")
        return OAuth2EndpointValidation(
            authorization_endpoint=await self._check_endpoint(provider.authorization_url, "GET"),
            token_endpoint=await self._check_endpoint(provider.token_url, "POST"),
            userinfo_endpoint=await self._check_endpoint(provider.userinfo_url, "GET"),
            scopes=scopes,
        )

    async def _check_endpoint(self, url: str, method: str) -> FieldValidation:
        """
        Sends an unauthenticated request. Any answer below 500 counts as reachable, except
        405 which means the endpoint refuses `method`.
        """
        try:
            response = await request_json(
                self.client, method, url, timeout=self.timeout, max_bytes=self.max_response_bytes
            )
        except AuthBrokerError as e:
            return FieldValidation.failed(url, f"Endpoint not reachable: {e}")
        if response.status_code == 405:
            return FieldValidation.failed(url, f"Endpoint does not accept {method}")
        if response.status_code >= 500:
            return FieldValidation.failed(url, f"Endpoint answered HTTP {response.status_code}")
        return FieldValidation.passed(url, "Endpoint is reachable")


def _published_endpoint(document: dict[str, Any], key: str) -> FieldValidation:
    value = document.get(key)
    if isinstance(value, str) and value:
        return FieldValidation.passed(value)
    return FieldValidation.failed(None, f"{key} missing from discovery document")


def _strings(value: Any) -> tuple[str, ...]:
    if not isinstance(value, list):
        return ()
    return tuple(item for item in value if isinstance(item, str))


def _all_valid(*checks: FieldValidation) -> bool:
    return all(check.valid for check in checks)
