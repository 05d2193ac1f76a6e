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
Transport-agnostic handlers for the broker's inbound endpoints.

A web framework mounts these as ``POST /auth/{providerId}/token`` and ``GET /auth/providers``
and turns the returned HandlerResponse into its own response object.
"""

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from coreason_auth_broker.broker import AuthBroker, to_auth_error
from coreason_auth_broker.exceptions import AuthBrokerError, AuthError, AuthErrorKind
from coreason_auth_broker.models import TokenErrorResponse, TokenRequest

# AuthErrorKind -> (HTTP status, OAuth2 error code)
_OAUTH_ERRORS: dict[AuthErrorKind, tuple[int, str]] = {
    AuthErrorKind.INVALID_REQUEST: (400, "invalid_request"),
    AuthErrorKind.UNSUPPORTED_GRANT: (400, "unsupported_grant_type"),
    AuthErrorKind.TOKEN_INVALID: (400, "invalid_grant"),
    AuthErrorKind.MISSING_USERNAME_CLAIM: (400, "invalid_grant"),
    AuthErrorKind.INVALID_CLIENT: (401, "invalid_client"),
    AuthErrorKind.UNKNOWN_PROVIDER: (404, "invalid_request"),
    AuthErrorKind.PROVIDER_UNREACHABLE: (503, "temporarily_unavailable"),
    AuthErrorKind.MAPPING_ERROR: (500, "server_error"),
    AuthErrorKind.INVALID_PROVIDER_CONFIG: (500, "server_error"),
}

_NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


@dataclass(frozen=True)
class HandlerResponse:
    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)


def error_response(error: AuthError) -> HandlerResponse:
    """Renders an AuthError as an OAuth2 error body. Only the generic public message is exposed."""
    status_code, code = _OAUTH_ERRORS[error.kind]
    body = TokenErrorResponse(error=code, error_description=error.public_message)
    headers = dict(_NO_STORE)
    if error.kind is AuthErrorKind.PROVIDER_UNREACHABLE:
        headers["Retry-After"] = "5"
    return HandlerResponse(status_code=status_code, body=body.model_dump(), headers=headers)


async def token_endpoint(broker: AuthBroker, provider_id: str, form: Mapping[str, Any]) -> HandlerResponse:
    """
    Handles ``POST /auth/{providerId}/token`` with a form-encoded TokenRequest body.

    Returns:
        200 with the normalized identity, or an OAuth2 error body.
    """
    try:
        request = TokenRequest.from_form(form)
        identity = await broker.authenticate(provider_id, request)
    except AuthError as e:
        return error_response(e)
    except AuthBrokerError as e:
        return error_response(to_auth_error(e, provider_id))
    return HandlerResponse(status_code=200, body=identity.model_dump(mode="json"), headers=dict(_NO_STORE))


def providers_endpoint(broker: AuthBroker) -> HandlerResponse:
    """Handles ``GET /auth/providers``: enabled providers, display metadata only."""
    providers = [info.model_dump(mode="json", by_alias=True) for info in broker.list_providers()]
    return HandlerResponse(status_code=200, body={"providers": providers})
