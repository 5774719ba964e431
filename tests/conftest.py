"""
Pytest configuration and fixtures for kvcrutch tests.

Provides a sample configuration, a quiet logger and a mocked
KeyVaultClient so no test touches Azure or the network.
"""

import io
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from kvcrutch.config_loader import parse_config
from kvcrutch.keyvault import CertificateNotFoundError, CreationReceipt, KeyVaultClient
from kvcrutch.logger import setup_logger


SAMPLE_CONFIG = """\
version: "0.0.1"
lumberjacklogger: null
vault_name: kv1
certificate_create_parameters:
  certificate_attributes:
    enabled: false
  certificate_policy:
    key_properties:
      exportable: true
      key_type: RSA
      key_size: 2048
      reuse_key: false
    secret_properties:
      content_type: application/x-pkcs12
    x509_certificate_properties:
      subject: CN=example.com
      subject_alternative_names:
        - example.com
        - www.example.com
      validity_in_months: 6
    lifetime_actions:
      - trigger:
          lifetime_percentage: 80
        action: autorenew
      - trigger:
          days_before_expiry: 10
        action: EmailContacts
    issuer_parameters:
      name: Self
  tags:
    owner: platform
    cost_center: "42"
"""

VAULT_URL = "https://kv1.vault.azure.net"


@pytest.fixture(autouse=True)
def restore_excepthook(monkeypatch):
    """main() installs a crash hook; keep it from leaking between tests."""
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)


@pytest.fixture
def config():
    """Parsed sample configuration."""
    return parse_config(SAMPLE_CONFIG)


@pytest.fixture
def template(config):
    """Certificate template from the sample configuration."""
    return config.certificate_create_parameters


@pytest.fixture
def config_file(tmp_path):
    """Sample configuration written to disk."""
    path = tmp_path / "kvcrutch.yaml"
    path.write_text(SAMPLE_CONFIG)
    return path


@pytest.fixture
def logger():
    """Logger writing to throwaway streams."""
    return setup_logger(
        name="kvcrutch-test",
        use_colors=False,
        stdout=io.StringIO(),
        stderr=io.StringIO(),
    )


@pytest.fixture
def receipt():
    return CreationReceipt(
        id="https://kv1.vault.azure.net/certificates/c1/pending",
        request_id="req-123",
        status="inProgress",
        status_details="Pending certificate created.",
    )


@pytest.fixture
def vault_client(receipt):
    """KeyVaultClient mock where nothing exists yet and creates succeed."""
    client = MagicMock(spec=KeyVaultClient)
    client.get_certificate.side_effect = CertificateNotFoundError("not found")
    client.create_certificate.return_value = receipt
    return client


def make_properties(name, version="v1", enabled=True, tags=None):
    """Stand-in for azure.keyvault.certificates.CertificateProperties."""
    return SimpleNamespace(
        id=f"{VAULT_URL}/certificates/{name}/{version}",
        name=name,
        version=version,
        enabled=enabled,
        not_before=None,
        expires_on=None,
        created_on=None,
        updated_on=None,
        recovery_level="Recoverable+Purgeable",
        tags=tags or {},
        x509_thumbprint=b"\x01\x02",
    )
