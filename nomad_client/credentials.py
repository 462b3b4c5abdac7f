"""Connection settings for authenticating with HashiCorp Nomad clusters."""

from __future__ import annotations

import logging
import os
import re
import ssl
import uuid
from typing import TYPE_CHECKING, Any, Literal

from pydantic import AliasChoices, Field, SecretStr, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import NomadConfigError

if TYPE_CHECKING:
    from .client import NomadClient

logger = logging.getLogger(__name__)

AuthMethod = Literal["token", "bearer", "mtls"]

_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]{8,}$")


def is_valid_token(token: str) -> bool:
    """Checks that a token looks like a Nomad ACL secret ID."""
    try:
        uuid.UUID(token)
        return True
    except ValueError:
        return bool(_TOKEN_PATTERN.match(token))


class NomadCredentials(BaseSettings):
    """Settings used to connect and authenticate with a HashiCorp Nomad cluster.

    Unset fields fall back to the standard Nomad CLI environment variables
    (`NOMAD_ADDR`, `NOMAD_TOKEN`, `NOMAD_NAMESPACE`, ...).

    Attributes:
        address: The address of the Nomad API (e.g. `http://127.0.0.1:4646`).
        token: The ACL token for authenticating with Nomad.
        namespace: The default Nomad namespace to use.
        region: The default Nomad region to use.
        auth_method: How the token is sent: `token` uses the `X-Nomad-Token`
            header, `bearer` an `Authorization` header, and `mtls` relies on
            client certificates alone.
        tls_ca_cert: Path to the CA certificate for TLS verification.
        tls_client_cert: Path to the client certificate for mutual TLS.
        tls_client_key: Path to the client key for mutual TLS.
        tls_skip_verify: Whether to skip TLS certificate verification.
        timeout: Request timeout in seconds.

    Example:
        Build a client from the environment:
        ```python
        from nomad_client.credentials import NomadCredentials

        async with NomadCredentials().get_client() as client:
            jobs = await client.jobs.list()
        ```
    """

    model_config = SettingsConfigDict(
        env_prefix="NOMAD_", populate_by_name=True, extra="ignore"
    )

    address: str = Field(
        default="http://127.0.0.1:4646",
        validation_alias=AliasChoices("address", "NOMAD_ADDR"),
        description="The address of the Nomad API.",
        examples=["http://127.0.0.1:4646", "https://nomad.example.com:4646"],
    )
    token: SecretStr | None = Field(
        default=None,
        validation_alias=AliasChoices("token", "NOMAD_TOKEN"),
        description="The ACL token for authenticating with Nomad.",
    )
    namespace: str | None = Field(
        default=None,
        validation_alias=AliasChoices("namespace", "NOMAD_NAMESPACE"),
        description="The default Nomad namespace to use.",
    )
    region: str | None = Field(
        default=None,
        validation_alias=AliasChoices("region", "NOMAD_REGION"),
        description="The default Nomad region to use.",
    )
    auth_method: AuthMethod = Field(
        default="token",
        description="How the client authenticates with Nomad.",
    )
    tls_ca_cert: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tls_ca_cert", "NOMAD_CACERT"),
        description="Path to the CA certificate for TLS verification.",
    )
    tls_client_cert: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tls_client_cert", "NOMAD_CLIENT_CERT"),
        description="Path to the client certificate for mutual TLS.",
    )
    tls_client_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("tls_client_key", "NOMAD_CLIENT_KEY"),
        description="Path to the client key for mutual TLS.",
    )
    tls_skip_verify: bool = Field(
        default=False,
        validation_alias=AliasChoices("tls_skip_verify", "NOMAD_SKIP_VERIFY"),
        description="Whether to skip TLS certificate verification.",
    )
    timeout: float = Field(
        default=30,
        description="Request timeout in seconds.",
    )

    @model_validator(mode="after")
    def _check_auth(self) -> "NomadCredentials":
        if self.auth_method == "mtls" and not (
            self.tls_client_cert and self.tls_client_key
        ):
            raise NomadConfigError(
                "mTLS authentication requires both tls_client_cert and tls_client_key"
            )
        if self.token is not None and not is_valid_token(
            self.token.get_secret_value()
        ):
            logger.warning(
                "Nomad token does not look like an ACL secret ID; "
                "requests may be rejected"
            )
        return self

    @property
    def secure(self) -> bool:
        return self.address.startswith("https://")

    def auth_headers(self) -> dict[str, str]:
        """Returns the headers that authenticate requests for `auth_method`."""
        if self.token is None or self.auth_method == "mtls":
            return {}
        secret = self.token.get_secret_value()
        if self.auth_method == "bearer":
            return {"Authorization": f"Bearer {secret}"}
        return {"X-Nomad-Token": secret}

    def default_params(self) -> dict[str, str]:
        """Returns the namespace and region query parameters sent by default."""
        params: dict[str, str] = {}
        if self.namespace:
            params["namespace"] = self.namespace
        if self.region:
            params["region"] = self.region
        return params

    def ssl_context(self) -> ssl.SSLContext | bool:
        """Builds the TLS verification setting for HTTPS addresses.

        Returns:
            ``False`` when verification is skipped, ``True`` for the system
            defaults, or an `ssl.SSLContext` carrying the configured CA and
            client certificates.

        Raises:
            NomadConfigError: If a configured certificate or key file does
                not exist.
        """
        for label, path in (
            ("CA certificate", self.tls_ca_cert),
            ("client certificate", self.tls_client_cert),
            ("client key", self.tls_client_key),
        ):
            if path and not os.path.isfile(path):
                raise NomadConfigError(f"Nomad TLS {label} not found: {path}")

        if self.tls_skip_verify:
            context = ssl.create_default_context()
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        elif self.tls_ca_cert:
            context = ssl.create_default_context(cafile=self.tls_ca_cert)
        elif self.tls_client_cert:
            context = ssl.create_default_context()
        else:
            return True

        if self.tls_client_cert:
            context.load_cert_chain(self.tls_client_cert, self.tls_client_key)
        elif self.tls_skip_verify:
            return False
        return context

    def httpx_kwargs(self) -> dict[str, Any]:
        """Returns the connection arguments for `HttpxTransport`.

        TLS settings are ignored for plain HTTP addresses.
        """
        kwargs: dict[str, Any] = {
            "base_url": self.address,
            "timeout": self.timeout,
        }
        if self.secure:
            kwargs["verify"] = self.ssl_context()
        return kwargs

    def get_client(self) -> "NomadClient":
        """Creates and returns a `NomadClient` configured with these settings."""
        from .client import NomadClient

        return NomadClient(credentials=self)
