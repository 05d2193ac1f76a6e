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
AuthBroker component for orchestrating multi-provider authentication.
"""

import hashlib
import hmac
from collections.abc import Awaitable, Callable
from typing import Any

import httpx
from opentelemetry import trace
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.trace import Status, StatusCode

from coreason_auth_broker.config import BrokerSettings
from coreason_auth_broker.connection_check import ConnectionChecker
from coreason_auth_broker.discovery import DiscoveryClient
from coreason_auth_broker.exceptions import (
    AuthBrokerError,
    AuthError,
    AuthErrorKind,
    DiscoveryError,
    IdentityMappingError,
    InvalidClientError,
    InvalidProviderConfigError,
    InvalidRequestError,
    MissingUsernameClaimError,
    OversizedResponseError,
    ProviderUnreachableError,
    SecurityError,
    TokenInvalidError,
    UnknownProviderError,
    UnsupportedGrantError,
)
from coreason_auth_broker.exchanger import RawClaims, TokenExchanger
from coreason_auth_broker.identity_mapper import IdentityMapper
from coreason_auth_broker.models import (
    NormalizedIdentity,
    OAuth2ProviderConfig,
    OIDCProviderConfig,
    ProviderInfo,
    ProviderValidationResult,
    TokenRequest,
)
from coreason_auth_broker.registry import ProviderConfigModel, ProviderRegistry
from coreason_auth_broker.transport import SafeHTTPTransport
from coreason_auth_broker.utils.logger import logger

tracer = trace.get_tracer(__name__)

_ERROR_KINDS: list[tuple[type[AuthBrokerError], AuthErrorKind]] = [
    (InvalidProviderConfigError, AuthErrorKind.INVALID_PROVIDER_CONFIG),
    (UnknownProviderError, AuthErrorKind.UNKNOWN_PROVIDER),
    (UnsupportedGrantError, AuthErrorKind.UNSUPPORTED_GRANT),
    (InvalidRequestError, AuthErrorKind.INVALID_REQUEST),
    (InvalidClientError, AuthErrorKind.INVALID_CLIENT),
    (ProviderUnreachableError, AuthErrorKind.PROVIDER_UNREACHABLE),
    (OversizedResponseError, AuthErrorKind.PROVIDER_UNREACHABLE),
    (TokenInvalidError, AuthErrorKind.TOKEN_INVALID),
    (MissingUsernameClaimError, AuthErrorKind.MISSING_USERNAME_CLAIM),
    (IdentityMappingError, AuthErrorKind.MAPPING_ERROR),
    (DiscoveryError, AuthErrorKind.INVALID_PROVIDER_CONFIG),
    (SecurityError, AuthErrorKind.INVALID_PROVIDER_CONFIG),
]


def to_auth_error(error: AuthBrokerError, provider_id: str | None = None) -> AuthError:
    """Converts any inner error into the AuthError taxonomy."""
    if isinstance(error, AuthError):
        return error
    for error_type, kind in _ERROR_KINDS:
        if isinstance(error, error_type):
            reason = error.reason if isinstance(error, TokenInvalidError) else None
            return AuthError(kind, detail=str(error), provider=provider_id, reason=reason)
    return AuthError(AuthErrorKind.INVALID_PROVIDER_CONFIG, detail=str(error), provider=provider_id)


class AuthBroker:
    """
    Async orchestrator: resolves the provider, exchanges the credential and maps the identity.
    Handles resources via async context manager.

    Every failure leaves the broker as an `AuthError`; callers never see provider-specific errors.
    """

    def __init__(
        self,
        settings: BrokerSettings | None = None,
        registry: ProviderRegistry | None = None,
        client: httpx.AsyncClient | None = None,
        identity_mapper: IdentityMapper | None = None,
    ) -> None:
        """
        Initialize the AuthBroker.

        Args:
            settings: Broker settings. Defaults to `BrokerSettings()` (environment).
            registry: The provider registry. Defaults to an empty registry honoring `unsafe_local_dev`.
            client: External async client (optional). If not provided, a client is created, using
                `SafeHTTPTransport` unless `unsafe_local_dev` is set.
            identity_mapper: Custom mapper, e.g. with extra organization resolvers.
        """
        self.settings = settings or BrokerSettings()
        self.registry = registry or ProviderRegistry(allow_insecure=self.settings.unsafe_local_dev)
        self._internal_client = client is None

        if client is not None:
            self._client = client
        else:
            transport = None if self.settings.unsafe_local_dev else SafeHTTPTransport()
            self._client = httpx.AsyncClient(transport=transport, timeout=self.settings.http_timeout)

        # Instrument the client for distributed tracing
        HTTPXClientInstrumentor().instrument_client(self._client)

        self.discovery = DiscoveryClient(
            self._client,
            cache_ttl=self.settings.discovery_cache_ttl,
            refresh_cooldown=self.settings.refresh_cooldown,
            timeout=self.settings.http_timeout,
            max_response_bytes=self.settings.max_response_bytes,
        )
        self.exchanger = TokenExchanger(
            self._client,
            self.discovery,
            allowed_algorithms=self.settings.allowed_algorithms,
            leeway=self.settings.clock_skew_leeway,
            timeout=self.settings.http_timeout,
            max_response_bytes=self.settings.max_response_bytes,
        )
        self.identity_mapper = identity_mapper or IdentityMapper()
        self.connection_checker = ConnectionChecker(
            self._client,
            timeout=self.settings.http_timeout,
            max_response_bytes=self.settings.max_response_bytes,
        )

    async def __aenter__(self) -> "AuthBroker":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        if self._internal_client:
            await self._client.aclose()

    def _anonymize(self, value: str) -> str:
        """
        Anonymizes a value using HMAC-SHA256 with the configured salt.
        """
        return hmac.new(
            self.settings.pii_salt.get_secret_value().encode("utf-8"),
            value.encode("utf-8"),
            hashlib.sha256,
        ).hexdigest()

    def _resolve_provider(self, provider_id: str) -> ProviderConfigModel:
        provider = self.registry.get(provider_id)
        if not provider.enabled:
            raise UnknownProviderError(f"Provider '{provider_id}' is disabled")
        return provider

    async def _authenticate(
        self,
        span_name: str,
        provider_id: str,
        obtain_claims: Callable[[ProviderConfigModel], Awaitable[RawClaims]],
    ) -> NormalizedIdentity:
        with tracer.start_as_current_span(span_name) as span:
            span.set_attribute("auth.provider", provider_id)
            try:
                # One snapshot read; later registry edits do not affect this attempt
                provider = self._resolve_provider(provider_id)
                claims = await obtain_claims(provider)
                identity = self.identity_mapper.map_claims(provider, claims)
            except AuthBrokerError as e:
                error = to_auth_error(e, provider_id)
                self._log_failure(error)
                span.set_status(Status(StatusCode.ERROR, error.kind.value))
                raise error from e

            user_hash = self._anonymize(f"{provider_id}:{identity.subject}")
            logger.info(f"Authenticated user {user_hash} via provider '{provider_id}'")
            span.set_attribute("enduser.id", user_hash)
            span.set_status(Status(StatusCode.OK))
            return identity

    def _log_failure(self, error: AuthError) -> None:
        message = (
            f"Authentication via provider '{error.provider}' failed: {error.kind.value}"
            f"{f' ({error.reason.value})' if error.reason else ''}: {error.detail}"
        )
        if error.kind in (
            AuthErrorKind.MISSING_USERNAME_CLAIM,
            AuthErrorKind.PROVIDER_UNREACHABLE,
            AuthErrorKind.MAPPING_ERROR,
            AuthErrorKind.INVALID_PROVIDER_CONFIG,
        ):
            logger.warning(message)
        else:
            logger.info(message)

    async def authenticate(self, provider_id: str, request: TokenRequest) -> NormalizedIdentity:
        """
        Authenticates a token request against a provider.

        Args:
            provider_id: The registered provider id.
            request: The grant to exchange.

        Returns:
            NormalizedIdentity: The authenticated user's identity.

        Raises:
            AuthError: For every failure. `kind` tells the category; `detail` is for server logs only.
        """

        async def obtain_claims(provider: ProviderConfigModel) -> RawClaims:
            return await self.exchanger.exchange(provider, request)

        return await self._authenticate("authenticate", provider_id, obtain_claims)

    async def authenticate_bearer(self, provider_id: str, token: str) -> NormalizedIdentity:
        """
        Authenticates a bearer ID token issued by an OIDC provider, without any grant exchange.

        Raises:
            AuthError: For every failure. A non-OIDC provider yields `unsupported_grant`.
        """

        async def obtain_claims(provider: ProviderConfigModel) -> RawClaims:
            if not isinstance(provider, OIDCProviderConfig):
                raise UnsupportedGrantError(f"Provider '{provider.name}' does not issue verifiable bearer tokens")
            if not token or not token.strip():
                raise InvalidRequestError("Missing bearer token")
            return await self.exchanger.validate_token(provider, token)

        return await self._authenticate("authenticate_bearer", provider_id, obtain_claims)

    def list_providers(self) -> list[ProviderInfo]:
        """Lists enabled providers with display metadata only. The default provider is flagged."""
        default = self.registry.default_provider
        return [
            ProviderInfo.from_config(provider, is_default=provider.name == default) for provider in self.registry.list()
        ]

    async def authorization_url(self, provider_id: str, redirect_uri: str, state: str | None = None) -> str:
        """
        Returns the provider login URL that starts an authorization_code flow.

        Args:
            provider_id: The registered provider id.
            redirect_uri: Where the provider sends the user back with the code.
            state: Opaque value echoed back by the provider. Defaults to the provider id.

        Raises:
            AuthError: For every failure, as for `authenticate`.
        """
        try:
            provider = self._resolve_provider(provider_id)
            return await self.exchanger.authorization_url(provider, redirect_uri, state)
        except AuthBrokerError as e:
            error = to_auth_error(e, provider_id)
            self._log_failure(error)
            raise error from e

    async def test_provider(self, provider_id: str) -> ProviderValidationResult:
        """
        Runs a connection test against a registered provider, enabled or not.

        Raises:
            AuthError: With kind `unknown_provider` if the id is not registered. Provider failures
                are reported in the result.
        """
        try:
            provider = self.registry.get(provider_id)
        except AuthBrokerError as e:
            raise to_auth_error(e, provider_id) from e
        return await self.connection_checker.check(provider)

    def register_provider(self, config: OIDCProviderConfig | OAuth2ProviderConfig | dict[str, Any]) -> None:
        """
        Registers a provider.

        Raises:
            AuthError: With kind `invalid_provider_config` if the configuration is rejected.
        """
        try:
            self.registry.register(config)
        except AuthBrokerError as e:
            raise to_auth_error(e) from e
