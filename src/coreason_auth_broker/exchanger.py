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
TokenExchanger component: grant exchanges against provider token endpoints and ID token validation.
"""

import time
from collections.abc import Callable
from typing import Any, assert_never, cast
from urllib.parse import urlparse

import httpx
from authlib.common.encoding import json_loads, to_bytes, urlsafe_b64decode
from authlib.jose import JsonWebToken
from authlib.jose.errors import (
    BadSignatureError,
    DecodeError,
    ExpiredTokenError,
    InvalidClaimError,
    InvalidTokenError,
    JoseError,
    MissingClaimError,
)
from authlib.jose.rfc7517 import Key
from opentelemetry import trace
from opentelemetry.trace import Status, StatusCode
from pydantic import ValidationError

from coreason_auth_broker.discovery import DiscoveryClient
from coreason_auth_broker.exceptions import (
    DiscoveryError,
    InvalidAudienceError,
    InvalidClientError,
    InvalidIssuerError,
    InvalidRequestError,
    ProviderUnreachableError,
    SignatureVerificationError,
    TokenExpiredError,
    TokenInvalidError,
    TokenInvalidReason,
    TokenNotYetValidError,
    UnsupportedGrantError,
)
from coreason_auth_broker.models import GrantType, OAuth2ProviderConfig, OIDCProviderConfig, TokenRequest
from coreason_auth_broker.models_internal import ProviderTokenResponse
from coreason_auth_broker.transport import DEFAULT_MAX_RESPONSE_BYTES, request_json
from coreason_auth_broker.utils.logger import logger

tracer = trace.get_tracer(__name__)

RawClaims = dict[str, Any]

SUPPORTED_GRANTS: dict[str, frozenset[GrantType]] = {
    "oauth2": frozenset({GrantType.PASSWORD, GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN}),
    "oidc": frozenset({GrantType.AUTHORIZATION_CODE, GrantType.REFRESH_TOKEN}),
}

DEFAULT_OIDC_SCOPE = "openid profile"


def decode_header(token: str) -> dict[str, Any]:
    """
    Decodes the protected header of a compact JWS without verifying it.

    Raises:
        TokenInvalidError: If the token is not a well-formed compact JWS.
    """
    parts = token.split(".")
    if len(parts) != 3:
        raise TokenInvalidError("Token is not a compact JWS", TokenInvalidReason.MALFORMED)
    try:
        header = json_loads(urlsafe_b64decode(to_bytes(parts[0])).decode("utf-8"))
    except (ValueError, TypeError) as e:
        raise TokenInvalidError("Token header is not valid JSON", TokenInvalidReason.MALFORMED) from e
    if not isinstance(header, dict):
        raise TokenInvalidError("Token header is not a JSON object", TokenInvalidReason.MALFORMED)
    return header


def build_grant_form(provider: OIDCProviderConfig | OAuth2ProviderConfig, request: TokenRequest) -> dict[str, str]:
    """
    Builds the form body for the provider's token endpoint.

    The configured client credentials are always used. `password` and `authorization_code` grants
    send the client secret along with their grant fields; `refresh_token` forwards only the refresh
    token and the client credentials.

    Raises:
        InvalidClientError: If the request names a client other than the configured one.
    """
    if request.client_id is not None and request.client_id != provider.client_id:
        raise InvalidClientError(f"Request client_id does not match provider '{provider.name}'")

    form = {
        "grant_type": request.grant_type.value,
        "client_id": provider.client_id,
        "client_secret": provider.client_secret.get_secret_value(),
    }
    if request.grant_type == GrantType.PASSWORD:
        form["username"] = cast(str, request.username)
        form["password"] = request.password.get_secret_value()  # type: ignore[union-attr]
        scope = request.scope or " ".join(provider.scopes)
        if scope:
            form["scope"] = scope
    elif request.grant_type == GrantType.AUTHORIZATION_CODE:
        form["code"] = cast(str, request.code)
        if request.redirect_uri:
            form["redirect_uri"] = request.redirect_uri
    elif request.grant_type == GrantType.REFRESH_TOKEN:
        form["refresh_token"] = request.refresh_token.get_secret_value()  # type: ignore[union-attr]
    else:
        assert_never(request.grant_type)
    return form


def build_authorization_url(
    endpoint: str,
    provider: OIDCProviderConfig | OAuth2ProviderConfig,
    redirect_uri: str,
    state: str | None = None,
) -> str:
    """
    Builds the provider login URL that starts an authorization_code flow.

    The provider's scopes are sent space-joined; OIDC providers without configured scopes request
    `DEFAULT_OIDC_SCOPE`. The state defaults to the provider id, so the callback can tell which
    provider answered.
    """
    params = {
        "response_type": "code",
        "client_id": provider.client_id,
        "redirect_uri": redirect_uri,
        "state": state or provider.name,
    }
    scope = " ".join(provider.scopes)
    if not scope and isinstance(provider, OIDCProviderConfig):
        scope = DEFAULT_OIDC_SCOPE
    if scope:
        params["scope"] = scope
    return str(httpx.URL(endpoint).copy_merge_params(params))


class TokenExchanger:
    """
    Performs the provider-specific protocol exchange and returns the raw identity claims.

    Attributes:
        client (httpx.AsyncClient): The HTTP client for provider calls.
        discovery (DiscoveryClient): Source of OIDC endpoints and signing keys.
        allowed_algorithms (list[str]): Accepted ID token signing algorithms.
        leeway (int): Clock skew tolerance in seconds for exp and nbf.
        timeout (float | None): Deadline in seconds for each outbound call.
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        discovery: DiscoveryClient,
        allowed_algorithms: list[str],
        leeway: int = 60,
        timeout: float | None = None,
        max_response_bytes: int = DEFAULT_MAX_RESPONSE_BYTES,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.client = client
        self.discovery = discovery
        self.allowed_algorithms = allowed_algorithms
        self.leeway = leeway
        self.timeout = timeout
        self.max_response_bytes = max_response_bytes
        self._clock = clock
        # Use a specific JsonWebToken instance to enforce allowed algorithms and reject others
        self.jwt = JsonWebToken(allowed_algorithms)

    async def exchange(self, provider: OIDCProviderConfig | OAuth2ProviderConfig, request: TokenRequest) -> RawClaims:
        """
        Exchanges a grant with the provider and returns the identity claims.

        Raises:
            UnsupportedGrantError: If the provider type does not support the grant.
            InvalidClientError: If the client credentials are rejected.
            TokenInvalidError: If the provider rejects the grant or the ID token is invalid.
            ProviderUnreachableError: On network failures, timeouts and provider errors.
        """
        if request.grant_type not in SUPPORTED_GRANTS[provider.provider_type]:
            raise UnsupportedGrantError(
                f"Grant '{request.grant_type.value}' is not supported for {provider.provider_type} providers"
            )

        if isinstance(provider, OAuth2ProviderConfig):
            return await self._exchange_oauth2(provider, request)
        if isinstance(provider, OIDCProviderConfig):
            return await self._exchange_oidc(provider, request)
        assert_never(provider)

    async def authorization_url(
        self, provider: OIDCProviderConfig | OAuth2ProviderConfig, redirect_uri: str, state: str | None = None
    ) -> str:
        """
        Returns the login URL for an authorization_code flow. OIDC providers use the discovery
        `authorization_endpoint`, OAuth2 providers their configured `authorization_url`.

        Raises:
            InvalidRequestError: If `redirect_uri` is not an absolute http(s) URL.
            DiscoveryError: If the issuer publishes no authorization endpoint.
            ProviderUnreachableError: If the discovery document cannot be fetched.
        """
        parsed = urlparse(redirect_uri)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise InvalidRequestError("redirect_uri must be an absolute http(s) URL")

        if isinstance(provider, OAuth2ProviderConfig):
            endpoint = provider.authorization_url
        else:
            document = await self.discovery.get_discovery(provider.issuer)
            if not document.authorization_endpoint:
                raise DiscoveryError(f"Discovery document for {provider.issuer} has no authorization_endpoint")
            endpoint = document.authorization_endpoint
        return build_authorization_url(endpoint, provider, redirect_uri, state)

    async def _exchange_oauth2(self, provider: OAuth2ProviderConfig, request: TokenRequest) -> RawClaims:
        form = build_grant_form(provider, request)
        tokens = await self._post_token(provider.token_url, form)
        return await self._fetch_userinfo(provider.userinfo_url, tokens.access_token.get_secret_value())

    async def _exchange_oidc(self, provider: OIDCProviderConfig, request: TokenRequest) -> RawClaims:
        document = await self.discovery.get_discovery(provider.issuer)
        if not document.token_endpoint:
            raise DiscoveryError(f"Discovery document for {provider.issuer} has no token_endpoint")
        if document.grant_types_supported and request.grant_type.value not in document.grant_types_supported:
            raise UnsupportedGrantError(f"Issuer {provider.issuer} does not support grant '{request.grant_type.value}'")

        form = build_grant_form(provider, request)
        tokens = await self._post_token(document.token_endpoint, form)

        if tokens.id_token is not None:
            return await self.validate_token(provider, tokens.id_token.get_secret_value())
        if document.userinfo_endpoint:
            return await self._fetch_userinfo(document.userinfo_endpoint, tokens.access_token.get_secret_value())
        raise TokenInvalidError(
            f"Token response from {provider.issuer} carried no id_token and no userinfo endpoint is published",
            TokenInvalidReason.MISSING_CLAIM,
        )

    async def _post_token(self, url: str, form: dict[str, str]) -> ProviderTokenResponse:
        """
        POSTs a form-encoded grant to a token endpoint.

        Raises:
            InvalidClientError: On an `invalid_client` answer.
            UnsupportedGrantError: On an `unsupported_grant_type` answer.
            TokenInvalidError: On any other 4xx answer.
            ProviderUnreachableError: On network failures, 5xx answers and unparseable bodies.
        """
        response = await request_json(
            self.client,
            "POST",
            url,
            data=form,
            headers={"Accept": "application/json"},
            timeout=self.timeout,
            max_bytes=self.max_response_bytes,
        )
        body = response.body if isinstance(response.body, dict) else {}

        if response.status_code >= 500 or response.status_code == 429:
            raise ProviderUnreachableError(f"Token endpoint {url} returned HTTP {response.status_code}")
        if response.status_code >= 400:
            error = body.get("error")
            if error == "invalid_client":
                raise InvalidClientError(f"Token endpoint {url} rejected the client credentials")
            if error == "unsupported_grant_type":
                raise UnsupportedGrantError(f"Token endpoint {url} does not support grant '{form['grant_type']}'")
            raise TokenInvalidError(
                f"Token endpoint {url} rejected the grant: {error or response.status_code}",
                TokenInvalidReason.REJECTED_BY_PROVIDER,
            )
        if response.status_code != 200:
            raise ProviderUnreachableError(f"Token endpoint {url} returned HTTP {response.status_code}")

        try:
            return ProviderTokenResponse(**body)
        except ValidationError as e:
            raise ProviderUnreachableError(f"Token endpoint {url} returned an invalid token response") from e

    async def _fetch_userinfo(self, url: str, access_token: str) -> RawClaims:
        """
        GETs the userinfo document with the access token as bearer credential.

        Raises:
            TokenInvalidError: If the provider refuses the access token (401/403).
            ProviderUnreachableError: On network failures, other error statuses and non-object bodies.
        """
        response = await request_json(
            self.client,
            "GET",
            url,
            headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            timeout=self.timeout,
            max_bytes=self.max_response_bytes,
        )
        if response.status_code in (401, 403):
            raise TokenInvalidError(
                f"Userinfo endpoint {url} refused the access token (HTTP {response.status_code})",
                TokenInvalidReason.REJECTED_BY_PROVIDER,
            )
        if response.status_code != 200:
            raise ProviderUnreachableError(f"Userinfo endpoint {url} returned HTTP {response.status_code}")
        if not isinstance(response.body, dict):
            raise ProviderUnreachableError(f"Userinfo endpoint {url} did not return a JSON object")
        return response.body

    async def validate_token(self, provider: OIDCProviderConfig, token: str) -> RawClaims:
        """
        Validates an OIDC token's signature and standard claims.

        Emits an OpenTelemetry span `validate_token`.

        Args:
            provider: The OIDC provider that issued the token.
            token: The raw JWT string (without "Bearer " prefix).

        Returns:
            RawClaims: The validated claims dictionary.

        Raises:
            TokenInvalidError: With the specific reason (expired, bad signature, issuer mismatch, ...).
            ProviderUnreachableError: If signing keys cannot be fetched.
        """
        with tracer.start_as_current_span("validate_token") as span:
            span.set_attribute("auth.provider", provider.name)
            try:
                claims = await self._validate(provider, token.strip())
            except TokenInvalidError as e:
                span.record_exception(e)
                span.set_status(Status(StatusCode.ERROR, e.reason.value))
                raise
            span.set_status(Status(StatusCode.OK))
            return claims

    async def _validate(self, provider: OIDCProviderConfig, token: str) -> RawClaims:
        header = decode_header(token)
        alg = header.get("alg")
        if alg not in self.allowed_algorithms:
            raise TokenInvalidError(f"Signing algorithm {alg!r} is not allowed", TokenInvalidReason.DISALLOWED_ALGORITHM)

        kid = header.get("kid")
        key = await self.discovery.get_signing_key(provider.issuer, kid if isinstance(kid, str) else None)
        key_alg = key.as_dict().get("alg")
        if key_alg and key_alg != alg:
            raise SignatureVerificationError(f"Token algorithm {alg!r} does not match key algorithm {key_alg!r}")

        claims_options = {
            "iss": {"essential": True, "value": provider.issuer},
            "aud": {"essential": True, "value": provider.client_id},
            "exp": {"essential": True},
            "nbf": {"essential": False},
        }
        try:
            claims = self._decode(token, key, claims_options)
        except ExpiredTokenError as e:
            raise TokenExpiredError(f"Token has expired: {e}") from e
        except InvalidClaimError as e:
            claim = getattr(e, "claim_name", "")
            if claim == "iss":
                raise InvalidIssuerError(f"Invalid issuer: {e}") from e
            if claim == "aud":
                raise InvalidAudienceError(f"Invalid audience: {e}") from e
            raise TokenInvalidError(f"Invalid claim: {e}", TokenInvalidReason.MALFORMED) from e
        except MissingClaimError as e:
            raise TokenInvalidError(f"Missing claim: {e}", TokenInvalidReason.MISSING_CLAIM) from e
        except InvalidTokenError as e:
            # Raised by authlib for nbf (and iat) in the future
            raise TokenNotYetValidError(f"Token is not valid yet: {e}") from e
        except BadSignatureError as e:
            raise SignatureVerificationError(f"Invalid signature: {e}") from e
        except DecodeError as e:
            raise TokenInvalidError(f"Malformed token: {e}", TokenInvalidReason.MALFORMED) from e
        except JoseError as e:
            raise TokenInvalidError(f"Token validation failed: {e}", TokenInvalidReason.MALFORMED) from e
        except ValueError as e:
            # Key type that cannot verify the token's algorithm
            raise SignatureVerificationError(f"Invalid signature or key mismatch: {e}") from e

        logger.debug(f"Token validated for provider '{provider.name}'")
        return dict(claims)

    def _decode(self, token: str, key: Key, claims_options: dict[str, Any]) -> Any:
        # Cast self.jwt to Any to bypass MyPy overload confusion or missing stubs
        jwt_any = cast("Any", self.jwt)
        claims = jwt_any.decode(token, key, claims_options=claims_options)
        claims.validate(now=int(self._clock()), leeway=self.leeway)
        return claims
