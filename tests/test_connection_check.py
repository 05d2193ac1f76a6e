# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_auth_broker

import httpx
import pytest

from conftest import ISSUER, OAUTH2_BASE, FakeIdP
from coreason_auth_broker.connection_check import ConnectionChecker
from coreason_auth_broker.models import OAuth2ProviderConfig, OIDCProviderConfig, ValidationLevel


@pytest.fixture
def checker(idp: FakeIdP) -> ConnectionChecker:
    return ConnectionChecker(idp.client(), timeout=5.0)


@pytest.mark.asyncio
async def test_oidc_reports_published_metadata(
    checker: ConnectionChecker, idp: FakeIdP, oidc_config: OIDCProviderConfig
) -> None:
    idp.discovery["scopes_supported"] = ["openid", "email", 7]
    idp.discovery["grant_types_supported"] = ["authorization_code", "refresh_token"]

    result = await checker.check(oidc_config)

    assert result.valid is True
    assert result.oidc_discovery is not None
    assert result.oidc_discovery.discovery_url.value == f"{ISSUER}/.well-known/openid-configuration"
    assert result.oidc_discovery.supported_scopes == ("openid", "email")
    assert result.oidc_discovery.supported_grant_types == ("authorization_code", "refresh_token")


@pytest.mark.asyncio
async def test_oidc_is_never_cached(checker: ConnectionChecker, idp: FakeIdP, oidc_config: OIDCProviderConfig) -> None:
    await checker.check(oidc_config)
    await checker.check(oidc_config)
    assert idp.count("/.well-known/openid-configuration") == 2
    assert idp.count("/jwks") == 0


@pytest.mark.asyncio
async def test_oidc_issuer_mismatch(checker: ConnectionChecker, idp: FakeIdP, oidc_config: OIDCProviderConfig) -> None:
    idp.discovery["issuer"] = "https://evil.example.com"

    result = await checker.check(oidc_config)

    assert result.valid is False
    assert result.issuer is not None
    assert result.issuer.valid is False
    assert "https://evil.example.com" in result.issuer.notes[0].text
    assert result.issuer.notes[0].level is ValidationLevel.ERROR


@pytest.mark.asyncio
async def test_oidc_error_status(oidc_config: OIDCProviderConfig, log_messages: list[str]) -> None:
    checker = ConnectionChecker(httpx.AsyncClient(transport=httpx.MockTransport(lambda request: httpx.Response(404))))

    result = await checker.check(oidc_config)

    assert result.valid is False
    assert result.oidc_discovery is not None
    assert result.oidc_discovery.reachable is False
    assert "HTTP 404" in result.oidc_discovery.discovery_url.notes[0].text
    assert any("Connection test for provider 'corporate-sso': failed" in m for m in log_messages)


@pytest.mark.asyncio
async def test_oauth2_requires_scopes(
    checker: ConnectionChecker, idp: FakeIdP, oauth2_config: OAuth2ProviderConfig
) -> None:
    result = await checker.check(oauth2_config.model_copy(update={"scopes": []}))

    assert result.valid is False
    assert result.oauth2_endpoints is not None
    assert result.oauth2_endpoints.scopes.valid is False
    assert result.oauth2_endpoints.token_endpoint.valid is True


@pytest.mark.asyncio
@pytest.mark.parametrize(("status", "reachable"), [(200, True), (401, True), (404, True), (405, False), (502, False)])
async def test_oauth2_endpoint_status(oauth2_config: OAuth2ProviderConfig, status: int, reachable: bool) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/login/oauth/token":
            return httpx.Response(status, text="nope")
        return httpx.Response(200, json={})

    checker = ConnectionChecker(httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    result = await checker.check(oauth2_config)

    assert result.oauth2_endpoints is not None
    token = result.oauth2_endpoints.token_endpoint
    assert token.valid is reachable
    assert token.value == f"{OAUTH2_BASE}/login/oauth/token"
    assert result.valid is reachable
