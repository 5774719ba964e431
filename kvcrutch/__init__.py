"""
kvcrutch: Azure Key Vault certificate creation helper.

This package contains:
- keyvault: Azure Key Vault client and reachability check
- certificates: create, new-version and list commands
- config_loader: Configuration loading and validation
- helpers: Flag parsing and template overrides
- editor: Editor launch for config edit
- logger: Centralized logging setup
"""

__version__ = "0.1.0"

# Release builds overwrite these
BUILD_INFO = {
    "version": __version__,
    "commit": "devCommit",
    "date": "devDate",
    "built_by": "devBuiltBy",
}

from .logger import setup_logger, install_crash_hook  # noqa: E402
from .config_loader import (  # noqa: E402
    load_config,
    Config,
    CertificateTemplate,
    ConfigurationError,
    ConfigMissingError,
)
from .helpers import (  # noqa: E402
    FlagOverrides,
    FlagParseError,
    apply_flag_overrides,
    parse_tags,
    parse_duration,
    vault_url_for,
)
from .keyvault import (  # noqa: E402
    KeyVaultClient,
    KeyVaultError,
    CreationReceipt,
    check_vault_reachable,
)
from .certificates import (  # noqa: E402
    certificate_create,
    certificate_new_version,
    certificate_list,
    AlreadyExistsError,
    UserRefusedError,
)

__all__ = [
    # Logger
    "setup_logger",
    "install_crash_hook",
    # Config
    "load_config",
    "Config",
    "CertificateTemplate",
    "ConfigurationError",
    "ConfigMissingError",
    # Helpers
    "FlagOverrides",
    "FlagParseError",
    "apply_flag_overrides",
    "parse_tags",
    "parse_duration",
    "vault_url_for",
    # Key Vault
    "KeyVaultClient",
    "KeyVaultError",
    "CreationReceipt",
    "check_vault_reachable",
    # Certificates
    "certificate_create",
    "certificate_new_version",
    "certificate_list",
    "AlreadyExistsError",
    "UserRefusedError",
]
