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
Data models for the coreason-auth-broker package.
"""

import re
from collections.abc import Mapping
from enum import StrEnum
from typing import Annotated, Any, Literal
from urllib.parse import urlparse

from pydantic import (
    BaseModel,
    ConfigDict,
    Discriminator,
    Field,
    SecretStr,
    Tag,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from coreason_auth_broker.claims import parse_claim_path
from coreason_auth_broker.exceptions import InvalidRequestError, UnsupportedGrantError

PROVIDER_NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9.-]*[a-z0-9])?$")
PROVIDER_NAME_MAX_LENGTH = 253
ORG_NAME_PART_PATTERN = re.compile(r"^[a-z0-9.-]*$")


class ProviderType(StrEnum):
    OIDC = "oidc"
    OAUTH2 = "oauth2"


class GrantType(StrEnum):
    PASSWORD = "password"
    AUTHORIZATION_CODE = "authorization_code"
    REFRESH_TOKEN = "refresh_token"


class OrganizationAssignmentType(StrEnum):
    STATIC = "static"
    DYNAMIC = "dynamic"
    PER_USER = "perUser"


class _WireModel(BaseModel):
    """Frozen model accepting both snake_case names and camelCase wire aliases."""

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        alias_generator=to_camel,
        populate_by_name=True,
    )


def _validate_org_name_part(v: str | None) -> str | None:
    if v is not None and not ORG_NAME_PART_PATTERN.match(v):
        raise ValueError("Must contain only lowercase letters, numbers, dashes (-), and dots (.).")
    return v


def _validate_claim_path(v: str | None) -> str | None:
    if v is not None:
        parse_claim_path(v)
    return v


class StaticOrganizationAssignment(_WireModel):
    """Every user of the provider lands in one fixed organization."""

    type: Literal["static"] = "static"
    organization_name: str = Field(..., min_length=1)


class DynamicOrganizationAssignment(_WireModel):
    """Organizations are read from a claim, optionally wrapped with a prefix and suffix."""

    type: Literal["dynamic"] = "dynamic"
    claim_path: str
    organization_name_prefix: str | None = None
    organization_name_suffix: str | None = None

    @field_validator("claim_path")
    @classmethod
    def validate_claim_path(cls, v: str) -> str:
        return _validate_claim_path(v)  # type: ignore[return-value]

    @field_validator("organization_name_prefix", "organization_name_suffix")
    @classmethod
    def validate_affixes(cls, v: str | None) -> str | None:
        return _validate_org_name_part(v)


class PerUserOrganizationAssignment(_WireModel):
    """Each user gets a personal organization named after the username."""

    type: Literal["perUser"] = "perUser"
    organization_name_prefix: str | None = None
    organization_name_suffix: str | None = None

    @field_validator("organization_name_prefix", "organization_name_suffix")
    @classmethod
    def validate_affixes(cls, v: str | None) -> str | None:
        return _validate_org_name_part(v)


OrganizationAssignment = Annotated[
    StaticOrganizationAssignment | DynamicOrganizationAssignment | PerUserOrganizationAssignment,
    Field(discriminator="type"),
]


def _validate_absolute_url(v: str) -> str:
    v = v.strip()
    parsed = urlparse(v)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValueError("Must be an absolute http(s) URL.")
    return v


class _ProviderConfigBase(_WireModel):
    """
    Fields shared by every provider type.

    Attributes:
        name (str): The unique provider identifier (DNS subdomain shaped).
        display_name (str | None): Human-readable name for provider listings.
        enabled (bool): Disabled providers are kept but refuse authentication.
        scopes (list[str]): Scopes to request. No duplicates.
        organization_assignment (OrganizationAssignment): How users are placed into organizations.
        username_claim (str | None): Claim path of the username. Defaults to "sub" when mapping.
        role_claim (str | None): Claim path of the role list.
        client_id (str): The OAuth2 client id.
        client_secret (SecretStr): The OAuth2 client secret. Never logged.
    """

    name: str
    display_name: str | None = None
    enabled: bool = True
    scopes: list[str] = Field(default_factory=list)
    organization_assignment: OrganizationAssignment
    username_claim: str | None = None
    role_claim: str | None = None
    client_id: str
    client_secret: SecretStr

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if len(v) > PROVIDER_NAME_MAX_LENGTH or not PROVIDER_NAME_PATTERN.match(v):
            raise ValueError(
                "Provider name must be 1-253 lowercase letters, numbers, dashes (-) or dots (.), "
                "starting and ending with a letter or number."
            )
        return v

    @field_validator("scopes")
    @classmethod
    def validate_scopes(cls, v: list[str]) -> list[str]:
        seen: set[str] = set()
        for scope in v:
            if not scope.strip():
                raise ValueError("Scopes must not be empty strings.")
            if scope in seen:
                raise ValueError(f"Duplicate scope '{scope}'.")
            seen.add(scope)
        return v

    @field_validator("client_id")
    @classmethod
    def validate_client_id(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Client ID is required.")
        return v

    @field_validator("client_secret")
    @classmethod
    def validate_client_secret(cls, v: SecretStr) -> SecretStr:
        if not v.get_secret_value().strip():
            raise ValueError("Client secret is required.")
        return v

    @field_validator("username_claim", "role_claim")
    @classmethod
    def validate_claim_paths(cls, v: str | None) -> str | None:
        return _validate_claim_path(v)

    def urls(self) -> dict[str, str]:
        """Returns the populated URL-valued fields (`issuer` and `*_url`), keyed by field name."""
        return {
            name: value
            for name in type(self).model_fields
            if (name == "issuer" or name.endswith("_url")) and (value := getattr(self, name))
        }


class OIDCProviderConfig(_ProviderConfigBase):
    """OIDC provider. Endpoints and keys come from the issuer's discovery document."""

    provider_type: Literal["oidc"] = "oidc"
    issuer: str

    @field_validator("issuer")
    @classmethod
    def validate_issuer(cls, v: str) -> str:
        return _validate_absolute_url(v)


class OAuth2ProviderConfig(_ProviderConfigBase):
    """Plain OAuth2 provider with explicitly configured endpoints."""

    provider_type: Literal["oauth2"] = "oauth2"
    issuer: str | None = None
    authorization_url: str
    token_url: str
    userinfo_url: str

    @field_validator("authorization_url", "token_url", "userinfo_url")
    @classmethod
    def validate_urls(cls, v: str) -> str:
        return _validate_absolute_url(v)

    @field_validator("issuer")
    @classmethod
    def validate_issuer(cls, v: str | None) -> str | None:
        return _validate_absolute_url(v) if v else None


def _provider_type_of(value: Any) -> str | None:
    if isinstance(value, Mapping):
        return value.get("providerType", value.get("provider_type"))  # type: ignore[no-any-return]
    return getattr(value, "provider_type", None)


ProviderConfig = Annotated[
    Annotated[OIDCProviderConfig, Tag("oidc")] | Annotated[OAuth2ProviderConfig, Tag("oauth2")],
    Discriminator(_provider_type_of),
]


class TokenRequest(BaseModel):
    """
    OAuth2 token request as received on the token endpoint.

    Exactly one grant shape is populated per request.
    """

    model_config = ConfigDict(frozen=True, extra="ignore")

    grant_type: GrantType
    username: str | None = None
    password: SecretStr | None = None
    refresh_token: SecretStr | None = None
    code: str | None = None
    redirect_uri: str | None = None
    client_id: str | None = None
    client_secret: SecretStr | None = None
    scope: str | None = None

    @model_validator(mode="after")
    def validate_grant_shape(self) -> "TokenRequest":
        has_password = self.username is not None or self.password is not None
        populated = {
            GrantType.PASSWORD: has_password,
            GrantType.AUTHORIZATION_CODE: self.code is not None,
            GrantType.REFRESH_TOKEN: self.refresh_token is not None,
        }
        if self.grant_type == GrantType.PASSWORD and (self.username is None or self.password is None):
            raise ValueError("The password grant requires username and password.")
        if not populated[self.grant_type]:
            raise ValueError(f"The {self.grant_type.value} grant is missing its required fields.")
        conflicting = [g.value for g, present in populated.items() if present and g != self.grant_type]
        if conflicting:
            raise ValueError(f"Fields of other grants ({', '.join(conflicting)}) must not be sent.")
        return self

    @classmethod
    def from_form(cls, form: Mapping[str, Any]) -> "TokenRequest":
        """
        Parses a form-encoded token request body.

        Raises:
            UnsupportedGrantError: If the grant type is not one of the known grants.
            InvalidRequestError: If the grant type is missing or the grant fields are inconsistent.
        """
        data = {k: v for k, v in form.items() if v not in (None, "")}
        grant_type = data.get("grant_type")
        if grant_type is None:
            raise InvalidRequestError("Invalid token request: grant_type is required")
        if grant_type not in set(GrantType):
            raise UnsupportedGrantError(f"Unsupported grant type '{grant_type}'")
        try:
            return cls(**data)
        except ValidationError as e:
            reasons = "; ".join(err["msg"] for err in e.errors(include_url=False, include_input=False))
            raise InvalidRequestError(f"Invalid token request: {reasons}") from e


class NormalizedIdentity(BaseModel):
    """
    Provider-agnostic identity produced by a successful authentication.

    This model is frozen (immutable) to ensure integrity as it passes through the system.
    """

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        json_schema_extra={
            "example": {
                "subject": "f3b1c9e0",
                "username": "alice",
                "display_name": "Alice Liddell",
                "email": "alice@coreason.ai",
                "email_verified": True,
                "roles": ["admin", "viewer"],
                "organizations": ["default"],
                "provider": "corporate-sso",
            }
        },
    )

    subject: str = Field(..., description="The provider's stable subject identifier.")
    username: str = Field(..., description="The username resolved from the provider's username claim.")
    display_name: str | None = None
    email: str | None = None
    email_verified: bool | None = None
    roles: tuple[str, ...] = Field(default=(), description="Ordered role names, duplicates removed.")
    organizations: tuple[str, ...] = Field(default=(), description="Organization names, duplicates removed.")
    provider: str = Field(..., description="Id of the provider that authenticated the user.")

    def __repr__(self) -> str:
        # PII fields MUST be redacted in __repr__
        return (
            f"NormalizedIdentity(subject='<REDACTED>', "
            f"username='<REDACTED>', "
            f"email='<REDACTED>', "
            f"roles={self.roles!r}, "
            f"organizations={self.organizations!r}, "
            f"provider={self.provider!r})"
        )

    def __str__(self) -> str:
        return self.__repr__()


class ProviderInfo(BaseModel):
    """Public listing entry for a provider. Carries display metadata only, never secrets."""

    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)

    name: str
    display_name: str
    type: ProviderType
    issuer: str | None = None
    client_id: str
    auth_url: str | None = None
    token_url: str | None = None
    userinfo_url: str | None = None
    scopes: list[str] = Field(default_factory=list)
    username_claim: list[str] = Field(default_factory=list)
    is_default: bool = False

    @classmethod
    def from_config(
        cls, config: OIDCProviderConfig | OAuth2ProviderConfig, is_default: bool = False
    ) -> "ProviderInfo":
        username_claim = list(parse_claim_path(config.username_claim or "sub"))
        common: dict[str, Any] = {
            "name": config.name,
            "display_name": config.display_name or config.name,
            "client_id": config.client_id,
            "scopes": list(config.scopes),
            "username_claim": username_claim,
            "is_default": is_default,
        }
        if isinstance(config, OIDCProviderConfig):
            return cls(type=ProviderType.OIDC, issuer=config.issuer, **common)
        return cls(
            type=ProviderType.OAUTH2,
            issuer=config.issuer,
            auth_url=config.authorization_url,
            token_url=config.token_url,
            userinfo_url=config.userinfo_url,
            **common,
        )


class TokenErrorResponse(BaseModel):
    """OAuth2-style error body (RFC 6749 section 5.2)."""

    error: str
    error_description: str


class ValidationLevel(StrEnum):
    ERROR = "error"
    WARNING = "warning"
    INFO = "info"


class _ReportModel(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class ValidationNote(_ReportModel):
    level: ValidationLevel
    text: str


class FieldValidation(_ReportModel):
    """Outcome of checking one configuration field or endpoint."""

    valid: bool
    value: str | None = None
    notes: tuple[ValidationNote, ...] = ()

    @classmethod
    def passed(cls, value: str | None, note: str | None = None) -> "FieldValidation":
        notes = (ValidationNote(level=ValidationLevel.INFO, text=note),) if note else ()
        return cls(valid=True, value=value, notes=notes)

    @classmethod
    def failed(cls, value: str | None, error: str) -> "FieldValidation":
        return cls(valid=False, value=value, notes=(ValidationNote(level=ValidationLevel.ERROR, text=error),))


class DiscoveryValidation(_ReportModel):
    """OIDC discovery checks: reachability of the document and the endpoints it publishes."""

    reachable: bool
    discovery_url: FieldValidation
    authorization_endpoint: FieldValidation
    token_endpoint: FieldValidation
    userinfo_endpoint: FieldValidation
    supported_scopes: tuple[str, ...] = ()
    supported_grant_types: tuple[str, ...] = ()


class OAuth2EndpointValidation(_ReportModel):
    """OAuth2 checks: reachability of each configured endpoint and presence of scopes."""

    authorization_endpoint: FieldValidation
    token_endpoint: FieldValidation
    userinfo_endpoint: FieldValidation
    scopes: FieldValidation


class ProviderValidationResult(_ReportModel):
    """
    Connection test report for one provider. `valid` is False if any checked field failed.
    """

    provider: str
    valid: bool
    client_id: FieldValidation
    issuer: FieldValidation | None = None
    oidc_discovery: DiscoveryValidation | None = None
    oauth2_endpoints: OAuth2EndpointValidation | None = None
