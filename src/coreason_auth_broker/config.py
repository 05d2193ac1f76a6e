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
Configuration for the coreason-auth-broker package.
"""

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

ASYMMETRIC_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "PS384", "PS512", "ES256", "ES384", "ES512", "EdDSA"}
)


class BrokerSettings(BaseSettings):
    """
    Runtime settings shared by every configured provider.

    Attributes:
        http_timeout (float): Timeout in seconds for every call to a provider.
        discovery_cache_ttl (int): Lifetime in seconds of cached discovery documents and key sets.
        refresh_cooldown (float): Minimum seconds between key-id-miss refreshes of one issuer.
        clock_skew_leeway (int): Tolerance in seconds applied to exp and nbf.
        allowed_algorithms (list[str]): JWS algorithms accepted on ID tokens.
        unsafe_local_dev (bool): Accept plain HTTP provider URLs and private addresses.
        pii_salt (SecretStr): Salt for anonymizing user ids in logs and traces.
        max_response_bytes (int): Upper bound for any provider response body.
    """

    model_config = SettingsConfigDict(
        env_prefix="COREASON_BROKER_",
        case_sensitive=False,
    )

    http_timeout: float = Field(default=10.0, gt=0, description="Timeout in seconds for all IdP network operations.")
    discovery_cache_ttl: int = Field(default=12 * 60 * 60, gt=0)
    refresh_cooldown: float = Field(default=60.0, ge=0)
    clock_skew_leeway: int = Field(default=60, ge=0)
    allowed_algorithms: list[str] = Field(default_factory=lambda: ["RS256", "ES256"])
    unsafe_local_dev: bool = False
    pii_salt: SecretStr = SecretStr("coreason-unsafe-default-salt")
    max_response_bytes: int = Field(default=1_000_000, gt=0)

    @field_validator("allowed_algorithms")
    @classmethod
    def validate_algorithms(cls, v: list[str]) -> list[str]:
        """
        Rejects symmetric algorithms and 'none'. Only keys published in the provider's JWKS may verify tokens.
        """
        if not v:
            raise ValueError("At least one signing algorithm must be allowed.")
        rejected = [alg for alg in v if alg not in ASYMMETRIC_ALGORITHMS]
        if rejected:
            raise ValueError(f"Unsupported or unsafe signing algorithms: {', '.join(rejected)}")
        return v
