"""
Configuration loading, validation, and parsing.

Loads the kvcrutch YAML configuration strictly (unknown or duplicate keys
are errors) and provides typed access to the default certificate template.
"""

import os
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import List, Dict, Any, Optional

import requests
import yaml


DEFAULT_CONFIG_PATH = "~/.config/kvcrutch.yaml"


class ConfigurationError(Exception):
    """Raised when configuration is invalid or missing."""
    pass


class ConfigMissingError(ConfigurationError):
    """Raised when the configuration file does not exist."""
    pass


@dataclass
class RotatingLogConfig:
    """Rolling JSON log file settings (the ``lumberjacklogger`` section)."""
    filename: str
    maxsize: int = 0       # megabytes
    maxbackups: int = 0
    maxage: int = 0        # days
    compress: bool = False


@dataclass
class CertificateAttributesConfig:
    """Attributes of the newly issued certificate."""
    enabled: bool = False


@dataclass
class KeyPropertiesConfig:
    """Key pair properties."""
    exportable: bool = False
    key_type: str = ""
    key_size: int = 0
    reuse_key: bool = False


@dataclass
class SecretPropertiesConfig:
    """Properties of the secret backing the certificate."""
    content_type: str = ""


@dataclass
class X509PropertiesConfig:
    """X.509 subject fields."""
    subject: str = ""
    subject_alternative_names: List[str] = field(default_factory=list)
    validity_in_months: int = 0


@dataclass
class LifetimeActionConfig:
    """
    A lifetime action and its trigger.

    Exactly one of lifetime_percentage / days_before_expiry should be set;
    Key Vault rejects the policy otherwise. None means unset.
    """
    action: str = ""
    lifetime_percentage: Optional[int] = None
    days_before_expiry: Optional[int] = None


@dataclass
class IssuerParametersConfig:
    """Certificate issuer."""
    name: str = ""


@dataclass
class CertificatePolicyConfig:
    """Certificate policy."""
    key_properties: KeyPropertiesConfig = field(default_factory=KeyPropertiesConfig)
    secret_properties: SecretPropertiesConfig = field(default_factory=SecretPropertiesConfig)
    x509_certificate_properties: X509PropertiesConfig = field(default_factory=X509PropertiesConfig)
    lifetime_actions: List[LifetimeActionConfig] = field(default_factory=list)
    issuer_parameters: IssuerParametersConfig = field(default_factory=IssuerParametersConfig)


@dataclass
class CertificateTemplate:
    """Everything needed to ask Key Vault to mint a certificate."""
    certificate_attributes: CertificateAttributesConfig = field(
        default_factory=CertificateAttributesConfig
    )
    certificate_policy: CertificatePolicyConfig = field(default_factory=CertificatePolicyConfig)
    tags: Dict[str, str] = field(default_factory=dict)


@dataclass
class Config:
    """Root configuration object."""
    version: str = ""
    lumberjacklogger: Optional[RotatingLogConfig] = None
    vault_name: str = ""
    certificate_create_parameters: CertificateTemplate = field(
        default_factory=CertificateTemplate
    )


class _StrictLoader(yaml.SafeLoader):
    """SafeLoader that refuses duplicate mapping keys."""

    def construct_mapping(self, node, deep=False):
        self.flatten_mapping(node)
        seen = set()
        for key_node, _ in node.value:
            key = self.construct_object(key_node, deep=deep)
            if key in seen:
                raise yaml.constructor.ConstructorError(
                    "while constructing a mapping",
                    node.start_mark,
                    f"found duplicate key {key!r}",
                    key_node.start_mark,
                )
            seen.add(key)
        return super().construct_mapping(node, deep=deep)


def _check_keys(data: Dict[str, Any], allowed: List[str], path: str) -> None:
    unknown = [k for k in data if k not in allowed]
    if unknown:
        raise ConfigurationError(
            f"Unknown key(s) in {path}: {', '.join(map(str, unknown))}"
        )


def _section(data: Dict[str, Any], key: str, path: str) -> Dict[str, Any]:
    """Return a nested mapping, treating a missing or null value as empty."""
    value = data.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigurationError(f"{path}.{key} must be a mapping")
    return value


def _get_bool(data: Dict[str, Any], key: str, path: str) -> bool:
    value = data.get(key)
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ConfigurationError(f"{path}.{key} must be true or false, got {value!r}")
    return value


def _get_int(data: Dict[str, Any], key: str, path: str) -> int:
    value = _get_optional_int(data, key, path)
    return 0 if value is None else value


def _get_optional_int(data: Dict[str, Any], key: str, path: str) -> Optional[int]:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigurationError(f"{path}.{key} must be an integer, got {value!r}")
    return value


def _as_str(value: Any, where: str) -> str:
    # YAML scalars like `team: 42` are accepted as strings
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigurationError(f"{where} must be a string, got {value!r}")
    return str(value)


def _get_str(data: Dict[str, Any], key: str, path: str) -> str:
    value = data.get(key)
    if value is None:
        return ""
    return _as_str(value, f"{path}.{key}")


def _get_str_list(data: Dict[str, Any], key: str, path: str) -> List[str]:
    value = data.get(key)
    if value is None:
        return []
    if not isinstance(value, list):
        raise ConfigurationError(f"{path}.{key} must be a list")
    return [_as_str(item, f"{path}.{key}[{i}]") for i, item in enumerate(value)]


def _parse_logger(data: Optional[Dict[str, Any]]) -> Optional[RotatingLogConfig]:
    """
    Parse the rolling log file section.

    Args:
        data: Raw ``lumberjacklogger`` data from YAML (may be null)

    Returns:
        RotatingLogConfig with a home-expanded filename, or None
    """
    if data is None:
        return None
    if not isinstance(data, dict):
        raise ConfigurationError("lumberjacklogger must be a mapping or null")

    path = "lumberjacklogger"
    _check_keys(data, ["filename", "maxsize", "maxbackups", "maxage", "compress"], path)

    filename = _get_str(data, "filename", path)
    if not filename:
        raise ConfigurationError("lumberjacklogger.filename is required")

    return RotatingLogConfig(
        filename=os.path.expanduser(filename),
        maxsize=_get_int(data, "maxsize", path),
        maxbackups=_get_int(data, "maxbackups", path),
        maxage=_get_int(data, "maxage", path),
        compress=_get_bool(data, "compress", path),
    )


def _parse_lifetime_actions(data: Any, path: str) -> List[LifetimeActionConfig]:
    if data is None:
        return []
    if not isinstance(data, list):
        raise ConfigurationError(f"{path} must be a list")

    actions = []
    for i, entry in enumerate(data):
        entry_path = f"{path}[{i}]"
        if not isinstance(entry, dict):
            raise ConfigurationError(f"{entry_path} must be a mapping")
        _check_keys(entry, ["trigger", "action"], entry_path)

        trigger = _section(entry, "trigger", entry_path)
        trigger_path = f"{entry_path}.trigger"
        _check_keys(trigger, ["lifetime_percentage", "days_before_expiry"], trigger_path)

        actions.append(LifetimeActionConfig(
            action=_get_str(entry, "action", entry_path),
            lifetime_percentage=_get_optional_int(trigger, "lifetime_percentage", trigger_path),
            days_before_expiry=_get_optional_int(trigger, "days_before_expiry", trigger_path),
        ))

    return actions


def _parse_policy(data: Dict[str, Any], path: str) -> CertificatePolicyConfig:
    """
    Parse the certificate policy section.

    Args:
        data: Raw ``certificate_policy`` data from YAML
        path: Dotted location used in error messages

    Returns:
        CertificatePolicyConfig instance
    """
    _check_keys(
        data,
        [
            "key_properties",
            "secret_properties",
            "x509_certificate_properties",
            "lifetime_actions",
            "issuer_parameters",
        ],
        path,
    )

    key_path = f"{path}.key_properties"
    key_data = _section(data, "key_properties", path)
    _check_keys(key_data, ["exportable", "key_type", "key_size", "reuse_key"], key_path)

    secret_path = f"{path}.secret_properties"
    secret_data = _section(data, "secret_properties", path)
    _check_keys(secret_data, ["content_type"], secret_path)

    x509_path = f"{path}.x509_certificate_properties"
    x509_data = _section(data, "x509_certificate_properties", path)
    _check_keys(
        x509_data,
        ["subject", "subject_alternative_names", "validity_in_months"],
        x509_path,
    )

    issuer_path = f"{path}.issuer_parameters"
    issuer_data = _section(data, "issuer_parameters", path)
    _check_keys(issuer_data, ["name"], issuer_path)

    return CertificatePolicyConfig(
        key_properties=KeyPropertiesConfig(
            exportable=_get_bool(key_data, "exportable", key_path),
            key_type=_get_str(key_data, "key_type", key_path),
            key_size=_get_int(key_data, "key_size", key_path),
            reuse_key=_get_bool(key_data, "reuse_key", key_path),
        ),
        secret_properties=SecretPropertiesConfig(
            content_type=_get_str(secret_data, "content_type", secret_path),
        ),
        x509_certificate_properties=X509PropertiesConfig(
            subject=_get_str(x509_data, "subject", x509_path),
            subject_alternative_names=_get_str_list(
                x509_data, "subject_alternative_names", x509_path
            ),
            validity_in_months=_get_int(x509_data, "validity_in_months", x509_path),
        ),
        lifetime_actions=_parse_lifetime_actions(
            data.get("lifetime_actions"), f"{path}.lifetime_actions"
        ),
        issuer_parameters=IssuerParametersConfig(
            name=_get_str(issuer_data, "name", issuer_path),
        ),
    )


def _parse_template(data: Dict[str, Any]) -> CertificateTemplate:
    """
    Parse the certificate creation template.

    Args:
        data: Raw ``certificate_create_parameters`` data from YAML

    Returns:
        CertificateTemplate instance
    """
    path = "certificate_create_parameters"
    _check_keys(data, ["certificate_attributes", "certificate_policy", "tags"], path)

    attributes_path = f"{path}.certificate_attributes"
    attributes = _section(data, "certificate_attributes", path)
    _check_keys(attributes, ["enabled"], attributes_path)

    tags_data = _section(data, "tags", path)
    tags = {
        _as_str(k, f"{path}.tags key"): _as_str(v, f"{path}.tags.{k}")
        for k, v in tags_data.items()
    }

    return CertificateTemplate(
        certificate_attributes=CertificateAttributesConfig(
            enabled=_get_bool(attributes, "enabled", attributes_path),
        ),
        certificate_policy=_parse_policy(
            _section(data, "certificate_policy", path),
            f"{path}.certificate_policy",
        ),
        tags=tags,
    )


def parse_config(text: str) -> Config:
    """
    Parse a configuration document.

    Args:
        text: YAML document

    Returns:
        Config instance

    Raises:
        ConfigurationError: If the YAML is invalid, has duplicate or
            unknown keys, or holds values of the wrong type
    """
    try:
        data = yaml.load(text, Loader=_StrictLoader)
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError("Configuration must be a YAML mapping")

    _check_keys(
        data,
        ["version", "lumberjacklogger", "vault_name", "certificate_create_parameters"],
        "configuration",
    )

    return Config(
        version=_get_str(data, "version", "configuration"),
        lumberjacklogger=_parse_logger(data.get("lumberjacklogger")),
        vault_name=_get_str(data, "vault_name", "configuration"),
        certificate_create_parameters=_parse_template(
            _section(data, "certificate_create_parameters", "configuration")
        ),
    )


def load_config(config_path: str) -> Config:
    """
    Load and validate configuration from a YAML file.

    Args:
        config_path: Path to the configuration file (``~`` is expanded)

    Returns:
        Validated Config instance

    Raises:
        ConfigMissingError: If the file does not exist
        ConfigurationError: If configuration is invalid
    """
    path = Path(os.path.expanduser(config_path))

    if not path.exists():
        raise ConfigMissingError(
            f"Configuration file not found: {path}. "
            "Run `kvcrutch config edit` to create one"
        )

    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(f"Failed to read configuration file: {e}") from e

    return parse_config(text)


def config_to_dict(config: Config) -> Dict[str, Any]:
    """
    Convert a Config back to the YAML document structure.

    Args:
        config: Config instance

    Returns:
        Plain dict suitable for yaml.safe_dump
    """
    template = config.certificate_create_parameters
    policy = template.certificate_policy
    key = policy.key_properties
    x509 = policy.x509_certificate_properties

    lifetime_actions = []
    for la in policy.lifetime_actions:
        trigger = {}
        if la.lifetime_percentage is not None:
            trigger["lifetime_percentage"] = la.lifetime_percentage
        if la.days_before_expiry is not None:
            trigger["days_before_expiry"] = la.days_before_expiry
        lifetime_actions.append({"trigger": trigger, "action": la.action})

    log = config.lumberjacklogger
    return {
        "version": config.version,
        "lumberjacklogger": None if log is None else {
            "filename": log.filename,
            "maxsize": log.maxsize,
            "maxbackups": log.maxbackups,
            "maxage": log.maxage,
            "compress": log.compress,
        },
        "vault_name": config.vault_name,
        "certificate_create_parameters": {
            "certificate_attributes": {
                "enabled": template.certificate_attributes.enabled,
            },
            "certificate_policy": {
                "key_properties": {
                    "exportable": key.exportable,
                    "key_type": key.key_type,
                    "key_size": key.key_size,
                    "reuse_key": key.reuse_key,
                },
                "secret_properties": {
                    "content_type": policy.secret_properties.content_type,
                },
                "x509_certificate_properties": {
                    "subject": x509.subject,
                    "subject_alternative_names": list(x509.subject_alternative_names),
                    "validity_in_months": x509.validity_in_months,
                },
                "lifetime_actions": lifetime_actions,
                "issuer_parameters": {
                    "name": policy.issuer_parameters.name,
                },
            },
            "tags": dict(template.tags),
        },
    }


def dump_config(config: Config) -> str:
    """Marshal a Config to YAML text that parse_config accepts."""
    return yaml.safe_dump(config_to_dict(config), sort_keys=False, default_flow_style=False)


def default_config_text() -> str:
    """Return the configuration document shipped inside the package."""
    return (
        resources.files("kvcrutch")
        .joinpath("static")
        .joinpath("kvcrutch.yaml")
        .read_text(encoding="utf-8")
    )


def _make_parent_dir(path: Path) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise ConfigurationError(
            f"Can't create configuration directory {path.parent}: {e}"
        ) from e


def write_default_config(config_path: str) -> bool:
    """
    Write the embedded default configuration if no file exists yet.

    Args:
        config_path: Destination path (``~`` is expanded)

    Returns:
        True if the file was written, False if it already existed
    """
    path = Path(os.path.expanduser(config_path))
    if path.exists():
        return False

    _make_parent_dir(path)
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(default_config_text())
    except FileExistsError:
        return False
    except OSError as e:
        raise ConfigurationError(f"Failed to write configuration file {path}: {e}") from e
    return True


def download_config(config_path: str, url: str, timeout: float = 30) -> Path:
    """
    Download a configuration document to a path that must not exist yet.

    Args:
        config_path: Destination path (``~`` is expanded)
        url: URL serving the YAML document as text
        timeout: Request timeout in seconds

    Returns:
        Path the document was written to

    Raises:
        ConfigurationError: If the download fails or the file exists
    """
    path = Path(os.path.expanduser(config_path))

    try:
        response = requests.get(url, headers={"Accept": "text/plain"}, timeout=timeout)
        response.raise_for_status()
    except requests.RequestException as e:
        raise ConfigurationError(f"Failed to download configuration from {url}: {e}") from e

    _make_parent_dir(path)
    try:
        with open(path, "x", encoding="utf-8") as f:
            f.write(response.text)
    except FileExistsError as e:
        raise ConfigurationError(
            f"Configuration file already exists, not overwriting: {path}"
        ) from e
    except OSError as e:
        raise ConfigurationError(f"Failed to write configuration file {path}: {e}") from e

    return path
