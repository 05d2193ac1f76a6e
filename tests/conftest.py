# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_auth_broker

import os

# Keep test runs from writing the rotating log file
os.environ.setdefault("COREASON_LOG_FILE", "")

import socket
import time
from collections.abc import Generator
from typing import Any
from unittest.mock import MagicMock, patch

import anyio
import httpx
import pytest
from authlib.jose import JsonWebKey, jwt

from coreason_auth_broker.models import OAuth2ProviderConfig, OIDCProviderConfig
from coreason_auth_broker.utils.logger import logger

ISSUER = "https://idp.example.com"
OAUTH2_BASE = "https://github.example.com"
CLIENT_ID = "broker-client"
CLIENT_SECRET = "s3cr3t-value"


@pytest.fixture(autouse=True)
def mock_dns_resolution() -> Generator[MagicMock, None, None]:
    """
    Globally patches socket.getaddrinfo to return a safe public IP by default.
    Tests of the SSRF checks patch socket.getaddrinfo again with their own answers.
    """
    safe_response = [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("8.8.8.8", 443))]

    with patch("socket.getaddrinfo", return_value=safe_response) as mock:
        yield mock


@pytest.fixture
def log_messages() -> Generator[list[str], None, None]:
    logs: list[str] = []
    handler_id = logger.add(logs.append, level="DEBUG", format="{message}")
    yield logs
    logger.remove(handler_id)


class Clock:
    """Manually advanced clock for cache and cooldown tests."""

    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def generate_key(kid: str, kty: str = "RSA") -> Any:
    if kty == "EC":
        return JsonWebKey.generate_key("EC", "P-256", is_private=True, options={"kid": kid})
    return JsonWebKey.generate_key("RSA", 2048, is_private=True, options={"kid": kid})


class FakeIdP:
    """
    In-memory identity provider served through httpx.MockTransport.

    Serves discovery, JWKS, token and userinfo endpoints and records every request it receives.
    """

    def __init__(self, keys: list[Any], issuer: str = ISSUER) -> None:
        self.issuer = issuer
        self.keys = keys
        self.discovery: dict[str, Any] = {
            "issuer": issuer,
            "jwks_uri": f"{issuer}/jwks",
            "authorization_endpoint": f"{issuer}/authorize",
            "token_endpoint": f"{issuer}/token",
            "userinfo_endpoint": f"{issuer}/userinfo",
        }
        self.token_status = 200
        self.token_body: dict[str, Any] = {"access_token": "at-123", "token_type": "Bearer", "expires_in": 300}
        self.userinfo_status = 200
        self.userinfo: dict[str, Any] = {"sub": "u-1", "login": "octocat", "name": "Octo Cat"}
        self.failing = False
        self.delay = 0.0
        self.requests: list[httpx.Request] = []

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.delay:
            await anyio.sleep(self.delay)
        if self.failing:
            raise httpx.ConnectError("Connection refused", request=request)

        path = request.url.path
        if path.endswith("/.well-known/openid-configuration"):
            return httpx.Response(200, json=self.discovery)
        if path.endswith("/jwks"):
            return httpx.Response(200, json={"keys": [k.as_dict(is_private=False) for k in self.keys]})
        if path.endswith("/token"):
            return httpx.Response(self.token_status, json=self.token_body)
        if path.endswith("/userinfo"):
            return httpx.Response(self.userinfo_status, json=self.userinfo)
        return httpx.Response(404)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def count(self, suffix: str) -> int:
        return sum(1 for r in self.requests if r.url.path.endswith(suffix))

    def token_forms(self) -> list[dict[str, str]]:
        return [
            dict(httpx.QueryParams(r.content.decode()))
            for r in self.requests
            if r.url.path.endswith("/token")
        ]

    def id_token(self, key: Any | None = None, alg: str = "RS256", **overrides: Any) -> str:
        key = key or self.keys[0]
        now = int(time.time())
        claims: dict[str, Any] = {
            "iss": self.issuer,
            "aud": CLIENT_ID,
            "sub": "user-123",
            "preferred_username": "alice",
            "name": "Alice Liddell",
            "email": "alice@example.com",
            "email_verified": True,
            "groups": ["admin", "viewer"],
            "iat": now,
            "exp": now + 3600,
        }
        claims.update(overrides)
        claims = {k: v for k, v in claims.items() if v is not None}
        header = {"alg": alg, "kid": key.as_dict()["kid"]}
        return jwt.encode(header, claims, key).decode("utf-8")  # type: ignore[no-any-return]


@pytest.fixture
def rsa_key() -> Any:
    return generate_key("key-1")


@pytest.fixture
def idp(rsa_key: Any) -> FakeIdP:
    return FakeIdP([rsa_key])


@pytest.fixture
def oidc_config() -> OIDCProviderConfig:
    return OIDCProviderConfig(
        name="corporate-sso",
        display_name="Corporate SSO",
        issuer=ISSUER,
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        scopes=["openid", "profile", "email"],
        username_claim="preferred_username",
        role_claim="groups",
        organization_assignment={"type": "static", "organizationName": "default"},
    )


@pytest.fixture
def oauth2_config() -> OAuth2ProviderConfig:
    return OAuth2ProviderConfig(
        name="github",
        authorization_url=f"{OAUTH2_BASE}/login/oauth/authorize",
        token_url=f"{OAUTH2_BASE}/login/oauth/token",
        userinfo_url=f"{OAUTH2_BASE}/api/userinfo",
        client_id=CLIENT_ID,
        client_secret=CLIENT_SECRET,
        scopes=["read:user"],
        username_claim="login",
        organization_assignment={"type": "perUser", "organizationNamePrefix": "gh-"},
    )
