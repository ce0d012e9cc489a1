"""
Copyright (c) 2025 Eric C. Mumford (@heymumford)
This file is part of TMBridge, licensed under the MIT License.
See LICENSE file for details.
"""

"""
Authentication material for source and target requests.
"""

import base64
from dataclasses import dataclass, replace
from typing import Any

from tmbridge.core.logging import get_logger
from tmbridge.errors import AuthenticationError, ConfigurationError
from tmbridge.models import AuthConfig, AuthLocation, AuthType
from tmbridge.url_template import UrlTemplateEngine

logger = get_logger("tmbridge.auth")

DEFAULT_AUTH_KEY = "Authorization"
DEFAULT_PAYLOADS = {
    AuthType.BASIC: "Basic {base64Credentials}",
}


@dataclass(frozen=True)
class AuthOptions:
    """Resolved authentication settings for one direction."""

    type: AuthType
    location: AuthLocation
    key: str | None = None
    payload: str | None = None


@dataclass
class RequestAuth:
    """Headers, query parameters and body fields to merge into a request."""

    headers: dict[str, str]
    params: dict[str, str]
    body: dict[str, Any]


class AuthenticationProvider:
    """
    Turns an auth scheme and a credential map into request material.

    Credentials are merged, never replaced, by ``update_credentials`` so that
    values discovered mid-run (a created section's id, for instance) can be
    added without losing the original secrets.
    """

    def __init__(self, credentials: dict[str, Any] | None = None):
        self.credentials: dict[str, Any] = dict(credentials or {})
        self.auth_options: AuthOptions | None = None
        self._engine = UrlTemplateEngine(strict=False)

    def initialize(self, auth_config: AuthConfig | None) -> None:
        """
        Load and validate an auth scheme.

        Args:
            auth_config: The scheme, or None for unauthenticated systems

        Raises:
            ConfigurationError: If the scheme lacks a required field
            AuthenticationError: If a required credential is missing
        """
        if auth_config is None:
            self.auth_options = None
            logger.debug("No authentication configured")
            return

        payload = auth_config.payload or DEFAULT_PAYLOADS.get(auth_config.type)
        key = auth_config.key
        if key is None and auth_config.type in (AuthType.BEARER, AuthType.BASIC):
            key = DEFAULT_AUTH_KEY

        self.auth_options = AuthOptions(
            type=auth_config.type, location=auth_config.location, key=key, payload=payload
        )
        self._derive_basic_credentials()
        self.validate()
        logger.debug(
            f"Authentication initialized: {auth_config.type.value} in {auth_config.location.value}"
        )

    def _derive_basic_credentials(self) -> None:
        if self.auth_options is None or self.auth_options.type != AuthType.BASIC:
            return
        if self.has_credential("base64Credentials"):
            return
        username = self.credentials.get("username")
        password = self.credentials.get("password")
        if username and password is not None:
            encoded = base64.b64encode(f"{username}:{password}".encode()).decode()
            self.credentials["base64Credentials"] = encoded

    def validate(self) -> None:
        """
        Check the loaded scheme against the current credentials.

        Raises:
            ConfigurationError: If the scheme lacks a required field
            AuthenticationError: If a required credential is missing
        """
        options = self.auth_options
        if options is None:
            return

        if options.type == AuthType.BEARER:
            if not options.payload or "{token}" not in options.payload:
                raise ConfigurationError(
                    "Bearer authentication requires a payload containing {token}",
                    {"auth_type": options.type.value},
                )
            if not self.has_credential("token"):
                raise AuthenticationError(
                    "Bearer authentication requires a token credential",
                    {"auth_type": options.type.value},
                )
        elif options.type == AuthType.BASIC:
            if not self.has_credential("base64Credentials"):
                raise AuthenticationError(
                    "Basic authentication requires base64Credentials",
                    {"auth_type": options.type.value},
                )
        elif options.type == AuthType.APIKEY:
            if not options.key:
                raise ConfigurationError(
                    "API key authentication requires a key field",
                    {"auth_type": options.type.value},
                )
            if not (self.has_credential("apiKey") or self.has_credential("api_key")):
                raise AuthenticationError(
                    "API key authentication requires an apiKey or api_key credential",
                    {"auth_type": options.type.value},
                )

    def processed_options(self) -> AuthOptions | None:
        """
        Auth settings with every known ``{credential}`` substituted.

        Placeholders without a matching credential are left in place.
        """
        options = self.auth_options
        if options is None:
            return None

        payload = options.payload
        if payload is None and options.type == AuthType.APIKEY:
            payload = self.get_credential("apiKey") or self.get_credential("api_key")
        elif payload is not None:
            payload = self._engine.substitute(payload, self.credentials, strict=False, by_field=False)
        return replace(options, payload=payload)

    def apply(
        self,
        headers: dict[str, str] | None = None,
        params: dict[str, str] | None = None,
        body: dict[str, Any] | None = None,
    ) -> RequestAuth:
        """
        Merge auth material into request parts according to the location.

        Args:
            headers: Existing headers
            params: Existing query parameters
            body: Existing JSON body fields

        Returns:
            New copies of the three parts
        """
        request = RequestAuth(dict(headers or {}), dict(params or {}), dict(body or {}))
        options = self.processed_options()
        if options is None or options.payload is None:
            return request

        key = options.key or DEFAULT_AUTH_KEY
        if options.location == AuthLocation.HEADER:
            request.headers[key] = options.payload
        elif options.location == AuthLocation.QUERY:
            request.params[key] = options.payload
        else:
            request.body[key] = options.payload
        return request

    def update_credentials(self, credentials: dict[str, Any]) -> None:
        """Merge new values into the credential map."""
        self.credentials = {**self.credentials, **credentials}
        self._derive_basic_credentials()
        logger.debug(f"Credentials updated: {sorted(credentials)}")

    def get_credential(self, key: str) -> Any:
        return self.credentials.get(key)

    def has_credential(self, key: str) -> bool:
        return self.credentials.get(key) is not None

    def has_authentication(self) -> bool:
        return self.auth_options is not None

    def validate_required_credentials(self, keys: list[str]) -> None:
        """
        Raises:
            AuthenticationError: If any key has no value
        """
        missing = [k for k in keys if not self.has_credential(k)]
        if missing:
            raise AuthenticationError(
                f"Missing required credentials: {', '.join(missing)}", {"missing": missing}
            )
