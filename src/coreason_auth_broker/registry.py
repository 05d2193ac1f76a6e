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
ProviderRegistry component holding the validated configuration of every provider.
"""

import threading
from collections.abc import Iterable, Mapping
from types import MappingProxyType
from typing import Any
from urllib.parse import urlparse

from pydantic import TypeAdapter, ValidationError

from coreason_auth_broker.exceptions import InvalidProviderConfigError, UnknownProviderError
from coreason_auth_broker.models import OAuth2ProviderConfig, OIDCProviderConfig, ProviderConfig
from coreason_auth_broker.utils.logger import logger

ProviderConfigModel = OIDCProviderConfig | OAuth2ProviderConfig

_provider_config_adapter: TypeAdapter[ProviderConfigModel] = TypeAdapter(ProviderConfig)


def parse_provider_config(data: Mapping[str, Any]) -> ProviderConfigModel:
    """
    Parses a raw provider configuration (camelCase or snake_case keys).

    Raises:
        InvalidProviderConfigError: If the configuration is structurally invalid. The message never
            includes submitted values, so secrets cannot leak through it.
    """
    try:
        return _provider_config_adapter.validate_python(dict(data))
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors(include_url=False, include_input=False)
        )
        name = data.get("name", "<unnamed>")
        raise InvalidProviderConfigError(f"Invalid configuration for provider '{name}': {problems}") from None


class ProviderRegistry:
    """
    Holds provider configurations keyed by provider id.

    The registry state is an immutable snapshot that is swapped atomically on every mutation.
    Readers never lock; writers serialize on a lock so that check-then-swap is atomic.

    Attributes:
        allow_insecure (bool): Accept plain HTTP URLs (local development only).
    """

    def __init__(
        self,
        providers: Iterable[ProviderConfigModel | Mapping[str, Any]] = (),
        allow_insecure: bool = False,
        default_provider: str | None = None,
    ) -> None:
        self.allow_insecure = allow_insecure
        self._write_lock = threading.Lock()
        self._snapshot: Mapping[str, ProviderConfigModel] = MappingProxyType({})
        self._default: str | None = None
        for provider in providers:
            self.register(provider)
        if default_provider is not None:
            self.set_default(default_provider)

    def _validate(self, config: ProviderConfigModel | Mapping[str, Any]) -> ProviderConfigModel:
        if isinstance(config, Mapping):
            config = parse_provider_config(config)
        elif not isinstance(config, (OIDCProviderConfig, OAuth2ProviderConfig)):
            raise InvalidProviderConfigError(f"Unsupported provider configuration type: {type(config).__name__}")

        for field, url in config.urls().items():
            scheme = urlparse(url).scheme
            if scheme == "https":
                continue
            if scheme == "http" and self.allow_insecure:
                logger.warning(f"Provider '{config.name}' uses insecure HTTP for {field} (local development mode)")
                continue
            raise InvalidProviderConfigError(
                f"Invalid configuration for provider '{config.name}': {field} must use HTTPS. "
                "Plain HTTP is only accepted in local development mode."
            )
        return config

    def register(self, config: ProviderConfigModel | Mapping[str, Any]) -> ProviderConfigModel:
        """
        Validates and stores a new provider configuration.

        Args:
            config: A provider config model or its raw mapping form.

        Returns:
            The stored configuration.

        Raises:
            InvalidProviderConfigError: If validation fails or the id is already registered.
                Nothing is stored in that case.
        """
        validated = self._validate(config)
        with self._write_lock:
            if validated.name in self._snapshot:
                raise InvalidProviderConfigError(f"Provider '{validated.name}' is already registered")
            self._snapshot = MappingProxyType({**self._snapshot, validated.name: validated})
        logger.info(f"Registered {validated.provider_type} provider '{validated.name}'")
        return validated

    def update(self, config: ProviderConfigModel | Mapping[str, Any]) -> ProviderConfigModel:
        """
        Replaces the configuration of an existing provider. The provider type cannot change.

        Raises:
            UnknownProviderError: If no provider with that id exists.
            InvalidProviderConfigError: If validation fails or the provider type differs.
        """
        validated = self._validate(config)
        with self._write_lock:
            current = self._snapshot.get(validated.name)
            if current is None:
                raise UnknownProviderError(f"Provider '{validated.name}' is not registered")
            if current.provider_type != validated.provider_type:
                raise InvalidProviderConfigError(
                    f"Provider '{validated.name}' is of type {current.provider_type}; "
                    f"its type cannot be changed to {validated.provider_type}"
                )
            self._snapshot = MappingProxyType({**self._snapshot, validated.name: validated})
        logger.info(f"Updated provider '{validated.name}'")
        return validated

    def set_enabled(self, provider_id: str, enabled: bool) -> ProviderConfigModel:
        """
        Enables or disables a provider.

        Raises:
            UnknownProviderError: If no provider with that id exists.
        """
        with self._write_lock:
            current = self._snapshot.get(provider_id)
            if current is None:
                raise UnknownProviderError(f"Provider '{provider_id}' is not registered")
            changed = current.model_copy(update={"enabled": enabled})
            self._snapshot = MappingProxyType({**self._snapshot, provider_id: changed})
        logger.info(f"Provider '{provider_id}' {'enabled' if enabled else 'disabled'}")
        return changed

    def remove(self, provider_id: str) -> None:
        with self._write_lock:
            if provider_id not in self._snapshot:
                raise UnknownProviderError(f"Provider '{provider_id}' is not registered")
            remaining = {k: v for k, v in self._snapshot.items() if k != provider_id}
            self._snapshot = MappingProxyType(remaining)
            if self._default == provider_id:
                self._default = None
        logger.info(f"Removed provider '{provider_id}'")

    def set_default(self, provider_id: str | None) -> None:
        """
        Marks a provider as the default one offered to users, or clears the default with None.

        Raises:
            UnknownProviderError: If no provider with that id exists.
        """
        with self._write_lock:
            if provider_id is not None and provider_id not in self._snapshot:
                raise UnknownProviderError(f"Provider '{provider_id}' is not registered")
            self._default = provider_id
        logger.info(f"Default provider set to {provider_id!r}")

    @property
    def default_provider(self) -> str | None:
        """The default provider id, or None when unset or when that provider is disabled."""
        provider_id = self._default
        if provider_id is None:
            return None
        config = self._snapshot.get(provider_id)
        return provider_id if config is not None and config.enabled else None

    def get(self, provider_id: str) -> ProviderConfigModel:
        """
        Returns the configuration of a provider, enabled or not.

        Raises:
            UnknownProviderError: If no provider with that id exists.
        """
        config = self._snapshot.get(provider_id)
        if config is None:
            raise UnknownProviderError(f"Provider '{provider_id}' is not registered")
        return config

    def list(self) -> tuple[ProviderConfigModel, ...]:
        """Returns the enabled providers in registration order."""
        return tuple(config for config in self._snapshot.values() if config.enabled)

    def snapshot(self) -> Mapping[str, ProviderConfigModel]:
        """Returns the current immutable snapshot of all providers, enabled or not."""
        return self._snapshot

    def __contains__(self, provider_id: object) -> bool:
        return provider_id in self._snapshot

    def __len__(self) -> int:
        return len(self._snapshot)
