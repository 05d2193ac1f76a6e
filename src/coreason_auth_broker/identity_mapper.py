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
IdentityMapper component for mapping provider claims to the internal NormalizedIdentity.
"""

from collections.abc import Mapping
from typing import Any, Protocol

from coreason_auth_broker.claims import extract_bool, extract_list, extract_string
from coreason_auth_broker.exceptions import AuthBrokerError, IdentityMappingError, MissingUsernameClaimError
from coreason_auth_broker.models import (
    DynamicOrganizationAssignment,
    NormalizedIdentity,
    OAuth2ProviderConfig,
    OIDCProviderConfig,
    OrganizationAssignmentType,
    PerUserOrganizationAssignment,
    StaticOrganizationAssignment,
)
from coreason_auth_broker.utils.logger import logger

DEFAULT_USERNAME_CLAIM = "sub"


class OrganizationResolver(Protocol):
    """Resolves the organizations of a user for one organization assignment variant."""

    def __call__(self, assignment: Any, claims: Mapping[str, Any], username: str) -> list[str]: ...


def _affixed(assignment: DynamicOrganizationAssignment | PerUserOrganizationAssignment, name: str) -> str:
    prefix = assignment.organization_name_prefix or ""
    suffix = assignment.organization_name_suffix or ""
    return f"{prefix}{name}{suffix}"


def resolve_static(assignment: StaticOrganizationAssignment, claims: Mapping[str, Any], username: str) -> list[str]:
    return [assignment.organization_name]


def resolve_dynamic(assignment: DynamicOrganizationAssignment, claims: Mapping[str, Any], username: str) -> list[str]:
    names = extract_list(claims, assignment.claim_path) or []
    return [_affixed(assignment, name) for name in names]


def resolve_per_user(
    assignment: PerUserOrganizationAssignment, claims: Mapping[str, Any], username: str
) -> list[str]:
    return [_affixed(assignment, username)]


DEFAULT_RESOLVERS: dict[str, OrganizationResolver] = {
    OrganizationAssignmentType.STATIC: resolve_static,
    OrganizationAssignmentType.DYNAMIC: resolve_dynamic,
    OrganizationAssignmentType.PER_USER: resolve_per_user,
}


class IdentityMapper:
    """
    Maps raw provider claims to the standardized internal NormalizedIdentity.

    Organization assignment is dispatched on the policy's `type` to a resolver. Additional
    policy variants are supported by registering a resolver for their type.
    """

    def __init__(self, resolvers: Mapping[str, OrganizationResolver] | None = None) -> None:
        self._resolvers: dict[str, OrganizationResolver] = dict(DEFAULT_RESOLVERS)
        if resolvers:
            self._resolvers.update(resolvers)

    def register_resolver(self, assignment_type: str, resolver: OrganizationResolver) -> None:
        self._resolvers[assignment_type] = resolver

    def _resolve_organizations(
        self, provider: OIDCProviderConfig | OAuth2ProviderConfig, claims: Mapping[str, Any], username: str
    ) -> tuple[str, ...]:
        assignment = provider.organization_assignment
        assignment_type = getattr(assignment, "type", None)
        resolver = self._resolvers.get(assignment_type) if isinstance(assignment_type, str) else None
        if resolver is None:
            raise IdentityMappingError(
                f"Provider '{provider.name}' has unsupported organization assignment type {assignment_type!r}"
            )

        organizations = resolver(assignment, claims, username)
        if not isinstance(organizations, list) or not all(isinstance(o, str) and o for o in organizations):
            raise IdentityMappingError(
                f"Organization assignment '{assignment_type}' of provider '{provider.name}' "
                "did not produce a list of organization names"
            )
        return tuple(dict.fromkeys(organizations))

    def map_claims(
        self, provider: OIDCProviderConfig | OAuth2ProviderConfig, claims: Mapping[str, Any]
    ) -> NormalizedIdentity:
        """
        Transform raw provider claims into a NormalizedIdentity.

        Args:
            provider: The provider that produced the claims.
            claims: Userinfo document or validated token claims.

        Returns:
            A populated NormalizedIdentity.

        Raises:
            MissingUsernameClaimError: If the username claim is absent.
            IdentityMappingError: If the organization assignment policy is malformed.
        """
        username_claim = provider.username_claim or DEFAULT_USERNAME_CLAIM
        try:
            username = extract_string(claims, username_claim)
            if username is None:
                logger.warning(
                    f"Provider '{provider.name}' returned no '{username_claim}' claim; "
                    "check the provider's usernameClaim setting"
                )
                raise MissingUsernameClaimError(
                    f"Username claim '{username_claim}' missing from claims of provider '{provider.name}'"
                )

            roles: list[str] = []
            if provider.role_claim:
                roles = extract_list(claims, provider.role_claim) or []

            identity = NormalizedIdentity(
                subject=extract_string(claims, "sub") or username,
                username=username,
                display_name=extract_string(claims, "name") or extract_string(claims, "preferred_username"),
                email=extract_string(claims, "email"),
                email_verified=extract_bool(claims, "email_verified"),
                roles=tuple(roles),
                organizations=self._resolve_organizations(provider, claims, username),
                provider=provider.name,
            )
        except AuthBrokerError:
            raise
        except Exception as e:
            logger.exception("Unexpected error during identity mapping")
            raise IdentityMappingError(f"Identity mapping error for provider '{provider.name}': {e}") from e

        logger.debug(f"Mapped identity from provider '{provider.name}' with {len(identity.roles)} roles")
        return identity
