"""
Azure Key Vault operations.

Wraps the certificate client used by the create, new-version and list
commands, logs every HTTP exchange at DEBUG, and checks that a vault is
reachable before any API call is made.
"""

import json
import socket
import ssl
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterator, Optional

from azure.core.exceptions import (
    AzureError,
    ClientAuthenticationError,
    ResourceNotFoundError,
    ServiceRequestTimeoutError,
    ServiceResponseTimeoutError,
)
from azure.core.rest import HttpRequest
from azure.identity import DefaultAzureCredential
from azure.keyvault.certificates import (
    CertificateClient,
    CertificatePolicy,
    CertificatePolicyAction,
    CertificateProperties,
    KeyVaultCertificate,
    LifetimeAction,
)

from .config_loader import CertificateTemplate
from .helpers import vault_host_for
from .logger import StructuredLogger


KEYVAULT_SCOPE = "https://vault.azure.net/.default"

REDACTED = "REDACTED"
_SENSITIVE_HEADERS = ("authorization", "proxy-authorization")


class KeyVaultError(Exception):
    """Raised when Key Vault operations fail."""
    pass


class AuthenticationError(KeyVaultError):
    """Raised when authentication to Key Vault fails."""
    pass


class CertificateNotFoundError(KeyVaultError):
    """Raised when a certificate does not exist in the vault."""
    pass


class DeadlineExceededError(KeyVaultError):
    """Raised when an operation runs past its timeout."""
    pass


class PreflightError(KeyVaultError):
    """Raised when the vault endpoint cannot be reached."""
    pass


@dataclass
class CertificateCreateRequest:
    """Body of a single create-certificate call."""
    policy: CertificatePolicy
    enabled: Optional[bool] = None
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class CreationReceipt:
    """Pending certificate operation returned by a create call."""
    id: str
    request_id: str
    status: str
    status_details: str


class _Deadline:
    """Monotonic budget shared by one or more requests."""

    def __init__(self, timeout: float):
        self.expires_at = time.monotonic() + timeout

    def remaining(self) -> float:
        remaining = self.expires_at - time.monotonic()
        if remaining <= 0:
            raise DeadlineExceededError("deadline exceeded before request was sent")
        return remaining


def _action_for(action: str):
    normalized = action.replace("_", "").replace("-", "").lower()
    for member in CertificatePolicyAction:
        if member.value.lower() == normalized:
            return member
    # Unknown actions are passed through for the service to judge
    return action


def build_create_request(template: CertificateTemplate) -> CertificateCreateRequest:
    """
    Turn a merged certificate template into a create request.

    Empty strings and zero numbers are left out of the request.

    Args:
        template: Fully merged template

    Returns:
        CertificateCreateRequest
    """
    policy_config = template.certificate_policy
    key = policy_config.key_properties
    x509 = policy_config.x509_certificate_properties

    lifetime_actions = [
        LifetimeAction(
            action=_action_for(la.action),
            lifetime_percentage=la.lifetime_percentage,
            days_before_expiry=la.days_before_expiry,
        )
        for la in policy_config.lifetime_actions
    ]

    policy = CertificatePolicy(
        issuer_name=policy_config.issuer_parameters.name or None,
        subject=x509.subject or None,
        san_dns_names=list(x509.subject_alternative_names) or None,
        exportable=key.exportable,
        key_type=key.key_type or None,
        key_size=key.key_size or None,
        reuse_key=key.reuse_key,
        content_type=policy_config.secret_properties.content_type or None,
        validity_in_months=x509.validity_in_months or None,
        lifetime_actions=lifetime_actions,
    )

    return CertificateCreateRequest(
        policy=policy,
        enabled=template.certificate_attributes.enabled,
        tags=dict(template.tags),
    )


def request_from_certificate(certificate: KeyVaultCertificate) -> CertificateCreateRequest:
    """Reuse the policy, enabled flag and tags of an existing certificate."""
    properties = certificate.properties
    return CertificateCreateRequest(
        policy=certificate.policy,
        enabled=properties.enabled,
        tags=dict(properties.tags or {}),
    )


def _drop_empty(value: Any) -> Any:
    if isinstance(value, dict):
        cleaned = {k: _drop_empty(v) for k, v in value.items()}
        return {k: v for k, v in cleaned.items() if v is not None and v != {}}
    if isinstance(value, list):
        return [_drop_empty(v) for v in value]
    return value


def _json_default(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray)):
        return value.hex()
    return str(value)


def request_to_dict(request: CertificateCreateRequest) -> Dict[str, Any]:
    """
    Describe a create request using the Key Vault REST field names.

    Args:
        request: Request to describe

    Returns:
        Nested dict with unset fields removed
    """
    policy = request.policy
    lifetime_actions = [
        {
            "trigger": {
                "lifetime_percentage": la.lifetime_percentage,
                "days_before_expiry": la.days_before_expiry,
            },
            "action": {"action_type": la.action},
        }
        for la in (policy.lifetime_actions or [])
    ]

    body = {
        "policy": {
            "key_props": {
                "exportable": policy.exportable,
                "kty": policy.key_type,
                "key_size": policy.key_size,
                "reuse_key": policy.reuse_key,
                "crv": policy.key_curve_name,
            },
            "secret_props": {
                "contentType": policy.content_type,
            },
            "x509_props": {
                "subject": policy.subject,
                "sans": {
                    "dns_names": policy.san_dns_names,
                    "emails": policy.san_emails,
                    "upns": policy.san_user_principal_names,
                },
                "ekus": policy.enhanced_key_usage,
                "key_usage": policy.key_usage,
                "validity_months": policy.validity_in_months,
            },
            "lifetime_actions": lifetime_actions,
            "issuer": {
                "name": policy.issuer_name,
                "cty": policy.certificate_type,
                "cert_transparency": policy.certificate_transparency,
            },
        },
        "attributes": {
            "enabled": request.enabled,
        },
        "tags": dict(request.tags),
    }
    return _drop_empty(body)


def properties_to_dict(properties: CertificateProperties) -> Dict[str, Any]:
    """Describe a certificate list entry."""
    return _drop_empty({
        "id": properties.id,
        "name": properties.name,
        "version": properties.version,
        "attributes": {
            "enabled": properties.enabled,
            "nbf": properties.not_before,
            "exp": properties.expires_on,
            "created": properties.created_on,
            "updated": properties.updated_on,
            "recoveryLevel": properties.recovery_level,
        },
        "tags": dict(properties.tags or {}),
        "x5t": properties.x509_thumbprint,
    })


def to_json(data: Dict[str, Any], indent: int = 2) -> str:
    """Render a dict built by this module as indented JSON."""
    return json.dumps(data, indent=indent, default=_json_default)


def redact_headers(headers: Any) -> Dict[str, str]:
    """Copy headers, hiding credentials."""
    return {
        name: (REDACTED if name.lower() in _SENSITIVE_HEADERS else value)
        for name, value in dict(headers).items()
    }


def _as_text(body: Any) -> Optional[str]:
    if body is None:
        return None
    if isinstance(body, (bytes, bytearray)):
        return body.decode("utf-8", errors="replace")
    return str(body)


class KeyVaultClient:
    """
    Client for Azure Key Vault certificate operations.

    Uses DefaultAzureCredential, so the Azure CLI login (``az login``) is
    picked up along with environment credentials and managed identity.
    One CertificateClient is kept per vault URL.
    """

    def __init__(self, logger: StructuredLogger, credential=None):
        """
        Initialize the Key Vault client.

        Args:
            logger: Logger receiving HTTP traces and errors
            credential: Azure credential (DefaultAzureCredential if None)
        """
        self.logger = logger
        self._credential = credential
        self._clients: Dict[str, CertificateClient] = {}

    def authenticate(self) -> None:
        """
        Acquire a Key Vault token from the ambient Azure sign-in.

        Raises:
            AuthenticationError: If no credential can produce a token
        """
        try:
            if self._credential is None:
                self._credential = DefaultAzureCredential()
            self._credential.get_token(KEYVAULT_SCOPE)
        except AzureError as e:
            self.logger.errorw(
                "keyvault authorization error. Log in with `az login`",
                err=str(e),
            )
            raise AuthenticationError(
                f"Failed to authenticate to Azure Key Vault: {e}"
            ) from e

    def _client(self, vault_url: str) -> CertificateClient:
        """Get the certificate client for a vault, creating it if necessary."""
        if self._credential is None:
            self.authenticate()

        client = self._clients.get(vault_url)
        if client is None:
            client = CertificateClient(
                vault_url=vault_url,
                credential=self._credential,
                raw_request_hook=self._log_request,
                raw_response_hook=self._log_response,
            )
            self._clients[vault_url] = client
        return client

    def _log_request(self, request) -> None:
        http_request = request.http_request
        body = getattr(http_request, "content", None)
        if body is None:
            body = getattr(http_request, "body", None)

        self.logger.debugw(
            "HTTP request",
            method=http_request.method,
            url=http_request.url,
            headers=redact_headers(http_request.headers),
            body=_as_text(body),
        )

    def _log_response(self, response) -> None:
        http_response = response.http_response
        try:
            body = http_response.text()
        except AzureError as e:
            body = f"<body not available: {e}>"

        self.logger.debugw(
            "HTTP response",
            status=http_response.status_code,
            url=response.http_request.url,
            headers=redact_headers(http_response.headers),
            body=body,
        )

    def _translate(self, error: AzureError, operation: str) -> KeyVaultError:
        if isinstance(error, (ServiceRequestTimeoutError, ServiceResponseTimeoutError)):
            return DeadlineExceededError(f"{operation} timed out: {error}")
        if isinstance(error, ClientAuthenticationError):
            return AuthenticationError(f"{operation} was not authorized: {error}")
        return KeyVaultError(f"{operation} failed: {error}")

    def get_certificate(
        self,
        vault_url: str,
        name: str,
        version: str = "",
        timeout: float = 30,
    ) -> KeyVaultCertificate:
        """
        Get a certificate with its policy, attributes and tags.

        Args:
            vault_url: Vault URL
            name: Certificate name
            version: Certificate version; empty means the latest
            timeout: Seconds allowed for the call

        Returns:
            KeyVaultCertificate

        Raises:
            CertificateNotFoundError: If the certificate does not exist
            KeyVaultError: If the call fails
        """
        deadline = _Deadline(timeout)
        client = self._client(vault_url)

        try:
            if version:
                return client.get_certificate_version(
                    name, version, timeout=deadline.remaining()
                )
            return client.get_certificate(name, timeout=deadline.remaining())
        except ResourceNotFoundError as e:
            raise CertificateNotFoundError(
                f"Certificate not found: {name} in {vault_url}"
            ) from e
        except AzureError as e:
            raise self._translate(e, f"get certificate {name}") from e

    def create_certificate(
        self,
        vault_url: str,
        name: str,
        request: CertificateCreateRequest,
        timeout: float = 30,
    ) -> CreationReceipt:
        """
        Ask the vault to create a certificate (or a new version of one).

        Sends one POST and returns the pending operation from its response;
        the operation is not polled.

        Args:
            vault_url: Vault URL
            name: Certificate name
            request: Policy, enabled flag and tags to use
            timeout: Seconds allowed for the whole call

        Returns:
            CreationReceipt describing the pending operation

        Raises:
            KeyVaultError: If the call fails or runs out of time
        """
        deadline = _Deadline(timeout)
        client = self._client(vault_url)

        http_request = HttpRequest(
            "POST",
            f"{vault_url.rstrip('/')}/certificates/{name}/create",
            params={"api-version": client.api_version},
            headers={"Content-Type": "application/json"},
            content=to_json(request_to_dict(request), indent=None),
        )

        try:
            response = client.send_request(http_request, timeout=deadline.remaining())
            response.raise_for_status()
            operation = response.json()
        except AzureError as e:
            raise self._translate(e, f"create certificate {name}") from e
        except ValueError as e:
            raise KeyVaultError(
                f"create certificate {name} returned an unreadable body: {e}"
            ) from e

        return CreationReceipt(
            id=operation.get("id") or "",
            request_id=operation.get("request_id") or "",
            status=operation.get("status") or "",
            status_details=operation.get("status_details") or "",
        )

    def list_certificates(
        self,
        vault_url: str,
        timeout: float = 30,
    ) -> Iterator[CertificateProperties]:
        """
        Lazily list certificates, fetching pages as they are consumed.

        One deadline covers the whole listing; each page request gets
        whatever budget is left.

        Args:
            vault_url: Vault URL
            timeout: Seconds allowed for the whole listing

        Yields:
            CertificateProperties for each certificate

        Raises:
            KeyVaultError: If a page request fails or time runs out
        """
        deadline = _Deadline(timeout)
        client = self._client(vault_url)
        continuation_token = None

        while True:
            try:
                pages = client.list_properties_of_certificates(
                    timeout=deadline.remaining()
                ).by_page(continuation_token=continuation_token)
                page = next(pages, None)
                if page is None:
                    return
                items = list(page)
            except AzureError as e:
                raise self._translate(e, "list certificates") from e

            for item in items:
                yield item

            continuation_token = pages.continuation_token
            if not continuation_token:
                return


def check_vault_reachable(vault_name: str, timeout: float = 30) -> None:
    """
    Open and close a TLS connection to the vault endpoint.

    Fails fast on DNS, TCP and TLS problems before the SDK is involved.

    Args:
        vault_name: Key Vault name
        timeout: Seconds allowed for connect and handshake

    Raises:
        PreflightError: If the endpoint cannot be reached
    """
    host = vault_host_for(vault_name)
    context = ssl.create_default_context()

    try:
        with socket.create_connection((host, 443), timeout=timeout) as sock:
            with context.wrap_socket(sock, server_hostname=host):
                pass
    except OSError as e:
        raise PreflightError(f"can't connect to vault {host}:443: {e}") from e
