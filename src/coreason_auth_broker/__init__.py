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
Multi-provider authentication broker: aggregates OIDC and OAuth2 identity providers behind one normalized identity.
"""

__version__ = "0.1.0"
__author__ = "Gowtham A Rao"
__email__ = "gowtham.rao@coreason.ai"

from .broker import AuthBroker
from .config import BrokerSettings
from .connection_check import ConnectionChecker
from .discovery import DiscoveryClient
from .exceptions import AuthError, AuthErrorKind, TokenInvalidReason
from .exchanger import TokenExchanger
from .identity_mapper import IdentityMapper
from .models import (
    FieldValidation,
    GrantType,
    NormalizedIdentity,
    OAuth2ProviderConfig,
    OIDCProviderConfig,
    ProviderInfo,
    ProviderType,
    ProviderValidationResult,
    TokenRequest,
)
from .registry import ProviderRegistry

__all__ = [
    "AuthBroker",
    "AuthError",
    "AuthErrorKind",
    "BrokerSettings",
    "ConnectionChecker",
    "DiscoveryClient",
    "FieldValidation",
    "GrantType",
    "IdentityMapper",
    "NormalizedIdentity",
    "OAuth2ProviderConfig",
    "OIDCProviderConfig",
    "ProviderInfo",
    "ProviderRegistry",
    "ProviderType",
    "ProviderValidationResult",
    "TokenExchanger",
    "TokenInvalidReason",
    "TokenRequest",
]
