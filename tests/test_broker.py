# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_auth_broker

import socket
from unittest.mock import AsyncMock, patch

import httpx
import pytest

from conftest import CLIENT_ID, CLIENT_SECRET, ISSUER, OAUTH2_BASE, FakeIdP
from coreason_auth_broker.broker import AuthBroker, to_auth_error
from coreason_auth_broker.config import BrokerSettings
from coreason_auth_broker.exceptions import (
    AuthError,
    AuthErrorKind,
    IssuerMismatchError,
    OversizedResponseError,
    SignatureVerificationError,
    TokenInvalidReason,
)
from coreason_auth_broker.models import GrantType, OAuth2ProviderConfig, OIDCProviderConfig, TokenRequest
from coreason_auth_broker.registry import ProviderRegistry


@pytest.fixture
def settings() -> BrokerSettings:
    return BrokerSettings(pii_salt="test-salt")


@pytest.fixture
def broker(
    settings: BrokerSettings, idp: FakeIdP, oidc_config: OIDCProviderConfig, oauth2_config: OAuth2ProviderConfig
) -> AuthBroker:
    registry = ProviderRegistry([oidc_config, oauth2_config])
    return AuthBroker(settings, registry=registry, client=idp.client())


def _password_request() -> TokenRequest:
    return TokenRequest(grant_type=GrantType.PASSWORD, username="octocat", password="pw-123")


def test_to_auth_error_keeps_reason() -> None:
    error = to_auth_error(SignatureVerificationError("bad"), "corporate-sso")
    assert error.kind is AuthErrorKind.TOKEN_INVALID
    assert error.reason is TokenInvalidReason.BAD_SIGNATURE
    assert error.provider == "corporate-sso"
    assert error.detail == "bad"


def test_to_auth_error_mapping() -> None:
    assert to_auth_error(OversizedResponseError("big")).kind is AuthErrorKind.PROVIDER_UNREACHABLE
    assert to_auth_error(IssuerMismatchError("iss")).kind is AuthErrorKind.INVALID_PROVIDER_CONFIG
    existing = AuthError(AuthErrorKind.UNKNOWN_PROVIDER)
    assert to_auth_error(existing) is existing


@pytest.mark.asyncio
async def test_oauth2_password_end_to_end(broker: AuthBroker, log_messages: list[str]) -> None:
    identity = await broker.authenticate("github", _password_request())

    assert identity.username == "octocat"
    assert identity.subject == "u-1"
    assert identity.display_name == "Octo Cat"
    assert identity.organizations == ("gh-octocat",)
    assert identity.provider == "github"
    # Only the anonymized user id is logged
    assert any("Authenticated user" in m for m in log_messages)
    assert not any("octocat" in m or "u-1" in m for m in log_messages)


@pytest.mark.asyncio
async def test_oidc_bearer_end_to_end(broker: AuthBroker, idp: FakeIdP) -> None:
    identity = await broker.authenticate_bearer("corporate-sso", idp.id_token())

    assert identity.username == "alice"
    assert identity.roles == ("admin", "viewer")
    assert identity.email_verified is True
    assert identity.organizations == ("default",)


@pytest.mark.asyncio
async def test_oidc_authorization_code_end_to_end(broker: AuthBroker, idp: FakeIdP) -> None:
    idp.token_body = {"access_token": "at", "id_token": idp.id_token()}
    identity = await broker.authenticate(
        "corporate-sso", TokenRequest(grant_type=GrantType.AUTHORIZATION_CODE, code="c-1")
    )
    assert identity.subject == "user-123"


@pytest.mark.asyncio
async def test_unknown_provider(broker: AuthBroker, idp: FakeIdP) -> None:
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate("nope", _password_request())
    assert exc_info.value.kind is AuthErrorKind.UNKNOWN_PROVIDER
    assert idp.requests == []


@pytest.mark.asyncio
async def test_disabled_provider_is_unknown(broker: AuthBroker, idp: FakeIdP) -> None:
    broker.registry.set_enabled("github", False)
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate("github", _password_request())
    assert exc_info.value.kind is AuthErrorKind.UNKNOWN_PROVIDER
    assert idp.requests == []


@pytest.mark.asyncio
async def test_unreachable_provider(broker: AuthBroker, idp: FakeIdP) -> None:
    idp.failing = True
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate("github", _password_request())
    assert exc_info.value.kind is AuthErrorKind.PROVIDER_UNREACHABLE
    assert exc_info.value.retryable is True


@pytest.mark.asyncio
async def test_rejected_credentials_do_not_leak(broker: AuthBroker, idp: FakeIdP) -> None:
    idp.token_status = 400
    idp.token_body = {"error": "invalid_grant", "error_description": "User octocat does not exist"}

    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate("github", _password_request())

    error = exc_info.value
    assert error.kind is AuthErrorKind.TOKEN_INVALID
    assert error.reason is TokenInvalidReason.REJECTED_BY_PROVIDER
    assert error.retryable is False
    assert str(error) == "The provided credentials are invalid."
    assert "octocat" not in str(error)
    assert "github.example.com" not in str(error)
    assert "github.example.com" in error.detail


@pytest.mark.asyncio
async def test_missing_username_claim(broker: AuthBroker, idp: FakeIdP, log_messages: list[str]) -> None:
    idp.userinfo = {"id": 1}
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate("github", _password_request())
    assert exc_info.value.kind is AuthErrorKind.MISSING_USERNAME_CLAIM
    assert any("missing_username_claim" in m for m in log_messages)


@pytest.mark.asyncio
async def test_bearer_on_oauth2_provider(broker: AuthBroker) -> None:
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate_bearer("github", "a.b.c")
    assert exc_info.value.kind is AuthErrorKind.UNSUPPORTED_GRANT


@pytest.mark.asyncio
async def test_bearer_empty_token(broker: AuthBroker) -> None:
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate_bearer("corporate-sso", "  ")
    assert exc_info.value.kind is AuthErrorKind.INVALID_REQUEST


@pytest.mark.asyncio
async def test_bearer_expired(broker: AuthBroker, idp: FakeIdP) -> None:
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate_bearer("corporate-sso", idp.id_token(exp=1))
    assert exc_info.value.kind is AuthErrorKind.TOKEN_INVALID
    assert exc_info.value.reason is TokenInvalidReason.EXPIRED


@pytest.mark.asyncio
async def test_password_grant_on_oidc_provider(broker: AuthBroker) -> None:
    with pytest.raises(AuthError) as exc_info:
        await broker.authenticate("corporate-sso", _password_request())
    assert exc_info.value.kind is AuthErrorKind.UNSUPPORTED_GRANT


def test_list_providers_has_no_secrets(broker: AuthBroker) -> None:
    providers = broker.list_providers()
    assert [p.name for p in providers] == ["corporate-sso", "github"]
    assert CLIENT_SECRET not in str([p.model_dump() for p in providers])

    broker.registry.set_enabled("github", False)
    assert [p.name for p in broker.list_providers()] == ["corporate-sso"]


def test_register_provider_wraps_errors(broker: AuthBroker, oidc_config: OIDCProviderConfig) -> None:
    with pytest.raises(AuthError) as exc_info:
        broker.register_provider(oidc_config)
    assert exc_info.value.kind is AuthErrorKind.INVALID_PROVIDER_CONFIG
    assert "already registered" in exc_info.value.detail


def test_insecure_provider_rejected_by_default(settings: BrokerSettings) -> None:
    broker = AuthBroker(settings, client=httpx.AsyncClient())
    with pytest.raises(AuthError):
        broker.register_provider(
            {
                "name": "local",
                "providerType": "oidc",
                "issuer": "http://localhost:8080",
                "clientId": "cid",
                "clientSecret": "secret",
                "organizationAssignment": {"type": "static", "organizationName": "dev"},
            }
        )


def test_anonymize_is_keyed(settings: BrokerSettings) -> None:
    broker = AuthBroker(settings, client=httpx.AsyncClient())
    other = AuthBroker(BrokerSettings(pii_salt="other-salt"), client=httpx.AsyncClient())
    assert broker._anonymize("github:u-1") == broker._anonymize("github:u-1")
    assert broker._anonymize("github:u-1") != other._anonymize("github:u-1")
    assert "u-1" not in broker._anonymize("github:u-1")


@pytest.mark.asyncio
async def test_internal_client_lifecycle(settings: BrokerSettings) -> None:
    broker = AuthBroker(settings)
    assert broker._internal_client is True

    with patch.object(broker._client, "aclose", new_callable=AsyncMock) as mock_close:
        async with broker:
            pass
        mock_close.assert_awaited_once()


@pytest.mark.asyncio
async def test_external_client_not_closed(settings: BrokerSettings) -> None:
    client = httpx.AsyncClient()
    broker = AuthBroker(settings, client=client)
    assert broker._internal_client is False

    with patch.object(client, "aclose", new_callable=AsyncMock) as mock_close:
        async with broker:
            pass
        mock_close.assert_not_called()


def test_local_dev_accepts_http(settings: BrokerSettings) -> None:
    broker = AuthBroker(settings.model_copy(update={"unsafe_local_dev": True}), client=httpx.AsyncClient())
    broker.register_provider(
        {
            "name": "local",
            "providerType": "oidc",
            "issuer": "http://localhost:8080",
            "clientId": "cid",
            "clientSecret": "secret",
            "organizationAssignment": {"type": "static", "organizationName": "dev"},
        }
    )
    assert "local" in broker.registry


@pytest.mark.asyncio
async def test_dns_failure_is_retryable(settings: BrokerSettings, oidc_config: OIDCProviderConfig) -> None:
    broker = AuthBroker(settings, registry=ProviderRegistry([oidc_config]))
    request = TokenRequest(grant_type=GrantType.AUTHORIZATION_CODE, code="c-1")

    async with broker:
        with patch("socket.getaddrinfo", side_effect=socket.gaierror(-3, "Temporary failure in name resolution")):
            with pytest.raises(AuthError) as exc_info:
                await broker.authenticate("corporate-sso", request)

    assert exc_info.value.kind is AuthErrorKind.PROVIDER_UNREACHABLE
    assert exc_info.value.retryable is True


def test_list_providers_flags_default(
    settings: BrokerSettings, idp: FakeIdP, oidc_config: OIDCProviderConfig, oauth2_config: OAuth2ProviderConfig
) -> None:
    registry = ProviderRegistry([oidc_config, oauth2_config], default_provider="github")
    broker = AuthBroker(settings, registry=registry, client=idp.client())

    assert {p.name: p.is_default for p in broker.list_providers()} == {"corporate-sso": False, "github": True}
    assert broker.list_providers()[1].model_dump(by_alias=True)["isDefault"] is True

    broker.registry.set_enabled("github", False)
    assert [p.is_default for p in broker.list_providers()] == [False]


@pytest.mark.asyncio
async def test_authorization_url_oidc(broker: AuthBroker, idp: FakeIdP) -> None:
    url = httpx.URL(await broker.authorization_url("corporate-sso", "https://app.example.com/callback"))

    assert str(url).startswith(f"{ISSUER}/authorize?")
    assert url.params["response_type"] == "code"
    assert url.params["client_id"] == CLIENT_ID
    assert url.params["redirect_uri"] == "https://app.example.com/callback"
    assert url.params["scope"] == "openid profile email"
    assert url.params["state"] == "corporate-sso"
    assert idp.count("/.well-known/openid-configuration") == 1


@pytest.mark.asyncio
async def test_authorization_url_oauth2(broker: AuthBroker, idp: FakeIdP) -> None:
    url = httpx.URL(await broker.authorization_url("github", "https://app.example.com/callback", state="s-42"))

    assert str(url).startswith(f"{OAUTH2_BASE}/login/oauth/authorize?")
    assert url.params == httpx.QueryParams(
        {
            "response_type": "code",
            "client_id": CLIENT_ID,
            "redirect_uri": "https://app.example.com/callback",
            "state": "s-42",
            "scope": "read:user",
        }
    )
    assert idp.requests == []


@pytest.mark.asyncio
async def test_authorization_url_errors(broker: AuthBroker, idp: FakeIdP) -> None:
    with pytest.raises(AuthError) as exc_info:
        await broker.authorization_url("github", "/relative/callback")
    assert exc_info.value.kind is AuthErrorKind.INVALID_REQUEST

    with pytest.raises(AuthError) as exc_info:
        await broker.authorization_url("nope", "https://app.example.com/callback")
    assert exc_info.value.kind is AuthErrorKind.UNKNOWN_PROVIDER

    del idp.discovery["authorization_endpoint"]
    with pytest.raises(AuthError) as exc_info:
        await broker.authorization_url("corporate-sso", "https://app.example.com/callback")
    assert exc_info.value.kind is AuthErrorKind.INVALID_PROVIDER_CONFIG


@pytest.mark.asyncio
async def test_test_provider_oidc(broker: AuthBroker, log_messages: list[str]) -> None:
    result = await broker.test_provider("corporate-sso")

    assert result.valid is True
    assert result.provider == "corporate-sso"
    assert result.client_id.value == CLIENT_ID
    assert result.issuer is not None and result.issuer.valid is True
    discovery = result.oidc_discovery
    assert discovery is not None
    assert discovery.reachable is True
    assert discovery.authorization_endpoint.value == f"{ISSUER}/authorize"
    assert discovery.token_endpoint.value == f"{ISSUER}/token"
    assert discovery.userinfo_endpoint.value == f"{ISSUER}/userinfo"
    assert result.oauth2_endpoints is None
    assert any("Connection test for provider 'corporate-sso': passed" in m for m in log_messages)


@pytest.mark.asyncio
async def test_test_provider_oidc_missing_endpoint(broker: AuthBroker, idp: FakeIdP) -> None:
    del idp.discovery["userinfo_endpoint"]

    result = await broker.test_provider("corporate-sso")

    assert result.valid is False
    assert result.oidc_discovery is not None
    assert result.oidc_discovery.reachable is True
    assert result.oidc_discovery.token_endpoint.valid is True
    assert result.oidc_discovery.userinfo_endpoint.valid is False
    assert result.oidc_discovery.discovery_url.valid is False


@pytest.mark.asyncio
async def test_test_provider_unreachable(broker: AuthBroker, idp: FakeIdP) -> None:
    idp.failing = True

    result = await broker.test_provider("corporate-sso")

    assert result.valid is False
    assert result.issuer is not None and result.issuer.valid is False
    assert result.oidc_discovery is not None
    assert result.oidc_discovery.reachable is False
    assert result.oidc_discovery.authorization_endpoint.valid is False


@pytest.mark.asyncio
async def test_test_provider_oauth2(broker: AuthBroker, idp: FakeIdP) -> None:
    broker.registry.set_enabled("github", False)

    result = await broker.test_provider("github")

    assert result.valid is True
    endpoints = result.oauth2_endpoints
    assert endpoints is not None
    assert endpoints.authorization_endpoint.value == f"{OAUTH2_BASE}/login/oauth/authorize"
    assert endpoints.scopes.value == "read:user"
    assert [r.method for r in idp.requests] == ["GET", "POST", "GET"]

    idp.failing = True
    result = await broker.test_provider("github")
    assert result.valid is False
    assert result.oauth2_endpoints is not None
    assert result.oauth2_endpoints.token_endpoint.valid is False


@pytest.mark.asyncio
async def test_test_provider_unknown(broker: AuthBroker) -> None:
    with pytest.raises(AuthError) as exc_info:
        await broker.test_provider("nope")
    assert exc_info.value.kind is AuthErrorKind.UNKNOWN_PROVIDER
