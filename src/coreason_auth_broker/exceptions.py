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
Custom exceptions for the coreason-auth-broker package.

Inner components raise the specific subclasses below. The broker converts all of them
into a single `AuthError` before anything crosses the authentication boundary.
"""

from enum import StrEnum


class AuthBrokerError(Exception):
    """Base exception for all coreason-auth-broker errors."""


class InvalidProviderConfigError(AuthBrokerError):
    """Raised when a provider configuration is rejected at registration time."""


class UnknownProviderError(AuthBrokerError):
    """Raised when a provider id is not registered or the provider is disabled."""


class UnsupportedGrantError(AuthBrokerError):
    """Raised when a grant type is not supported by the provider type."""


class InvalidRequestError(AuthBrokerError):
    """Raised when a token request is malformed (missing or conflicting grant fields)."""


class InvalidClientError(AuthBrokerError):
    """Raised when the provider rejects the client credentials, or the request names another client."""


class ProviderUnreachableError(AuthBrokerError):
    """Raised on network failures, timeouts and 5xx answers. Retryable by the caller."""


class TokenInvalidReason(StrEnum):
    EXPIRED = "expired"
    NOT_YET_VALID = "not_yet_valid"
    BAD_SIGNATURE = "bad_signature"
    ISSUER_MISMATCH = "issuer_mismatch"
    AUDIENCE_MISMATCH = "audience_mismatch"
    UNKNOWN_KEY = "unknown_key"
    MALFORMED = "malformed"
    MISSING_CLAIM = "missing_claim"
    DISALLOWED_ALGORITHM = "disallowed_algorithm"
    REJECTED_BY_PROVIDER = "rejected_by_provider"


class TokenInvalidError(AuthBrokerError):
    """
    Raised when a credential is bad (expired, bad signature, wrong issuer or audience, etc.).
    Not retryable. The reason is meant for server-side logs only.
    """

    default_reason = TokenInvalidReason.MALFORMED

    def __init__(self, message: str, reason: TokenInvalidReason | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.default_reason


class TokenExpiredError(TokenInvalidError):
    """Raised when the provided token has expired."""

    default_reason = TokenInvalidReason.EXPIRED


class TokenNotYetValidError(TokenInvalidError):
    """Raised when the token's nbf claim lies in the future."""

    default_reason = TokenInvalidReason.NOT_YET_VALID


class SignatureVerificationError(TokenInvalidError):
    """Raised when the token's signature cannot be verified."""

    default_reason = TokenInvalidReason.BAD_SIGNATURE


class InvalidIssuerError(TokenInvalidError):
    """Raised when the token's issuer does not match the configured issuer."""

    default_reason = TokenInvalidReason.ISSUER_MISMATCH


class InvalidAudienceError(TokenInvalidError):
    """Raised when the token's audience does not include the configured client id."""

    default_reason = TokenInvalidReason.AUDIENCE_MISMATCH


class UnknownSigningKeyError(TokenInvalidError):
    """Raised when no key in the provider's JWKS matches the token's key id."""

    default_reason = TokenInvalidReason.UNKNOWN_KEY


class MissingUsernameClaimError(AuthBrokerError):
    """Raised when the configured username claim is absent from the provider's claims."""


class IdentityMappingError(AuthBrokerError):
    """Raised when identity mapping fails (e.g. malformed organization assignment policy)."""


class DiscoveryError(AuthBrokerError):
    """Raised when an OIDC discovery document or JWKS is invalid."""


class IssuerMismatchError(DiscoveryError):
    """Raised when the discovery document names a different issuer than the one configured."""


class OversizedResponseError(AuthBrokerError):
    """Raised when an HTTP response is too large."""


class SecurityError(AuthBrokerError):
    """Raised when an outbound request targets a blocked address."""


class AuthErrorKind(StrEnum):
    INVALID_PROVIDER_CONFIG = "invalid_provider_config"
    UNKNOWN_PROVIDER = "unknown_provider"
    UNSUPPORTED_GRANT = "unsupported_grant"
    INVALID_REQUEST = "invalid_request"
    INVALID_CLIENT = "invalid_client"
    PROVIDER_UNREACHABLE = "provider_unreachable"
    TOKEN_INVALID = "token_invalid"
    MISSING_USERNAME_CLAIM = "missing_username_claim"
    MAPPING_ERROR = "mapping_error"


_PUBLIC_MESSAGES: dict[AuthErrorKind, str] = {
    AuthErrorKind.INVALID_PROVIDER_CONFIG: "The authentication provider is misconfigured.",
    AuthErrorKind.UNKNOWN_PROVIDER: "Unknown authentication provider.",
    AuthErrorKind.UNSUPPORTED_GRANT: "The grant type is not supported by this provider.",
    AuthErrorKind.INVALID_REQUEST: "The token request is malformed.",
    AuthErrorKind.INVALID_CLIENT: "Client authentication failed.",
    AuthErrorKind.PROVIDER_UNREACHABLE: "The authentication provider is temporarily unavailable.",
    AuthErrorKind.TOKEN_INVALID: "The provided credentials are invalid.",
    AuthErrorKind.MISSING_USERNAME_CLAIM: "The provided credentials are invalid.",
    AuthErrorKind.MAPPING_ERROR: "The authentication provider is misconfigured.",
}


class AuthError(AuthBrokerError):
    """
    The single error type returned across the authentication boundary.

    Attributes:
        kind (AuthErrorKind): The error category.
        provider (str | None): The provider id the request targeted.
        reason (TokenInvalidReason | None): Set for `token_invalid` errors. Server-side only.
        detail (str): Diagnostic text for server logs. Never send this to a client.
    """

    def __init__(
        self,
        kind: AuthErrorKind,
        detail: str = "",
        provider: str | None = None,
        reason: TokenInvalidReason | None = None,
    ) -> None:
        super().__init__(_PUBLIC_MESSAGES[kind])
        self.kind = kind
        self.detail = detail
        self.provider = provider
        self.reason = reason

    @property
    def public_message(self) -> str:
        """Generic message, safe to return to an unauthenticated caller."""
        return _PUBLIC_MESSAGES[self.kind]

    @property
    def retryable(self) -> bool:
        return self.kind is AuthErrorKind.PROVIDER_UNREACHABLE

    def __repr__(self) -> str:
        return f"AuthError(kind={self.kind.value!r}, provider={self.provider!r}, reason={self.reason!r})"
