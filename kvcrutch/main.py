"""
kvcrutch - lean on me when `az keyvault` isn't quite as useful as needed.

Creates Azure Key Vault certificates from a YAML template with the full
set of create parameters, creates new versions of existing certificates,
and lists certificates.

Usage:
    # Create or edit the configuration file
    kvcrutch config edit

    # Create a certificate from the configured template
    kvcrutch certificate create --name my-cert

    # Override template values
    kvcrutch certificate create --name my-cert --subject CN=example.com \\
        --san example.com --san www.example.com --tag env=prod --validity 12

    # New version of an existing certificate, same policy
    kvcrutch certificate new-version --name my-cert

    # List certificates as JSON
    kvcrutch --vault-name my-vault certificate list
"""

import argparse
import os
import sys
from typing import List, Optional

from . import BUILD_INFO
from .certificates import (
    AlreadyExistsError,
    UserRefusedError,
    certificate_create,
    certificate_list,
    certificate_new_version,
)
from .config_loader import (
    DEFAULT_CONFIG_PATH,
    ConfigurationError,
    download_config,
    load_config,
    write_default_config,
)
from .editor import EditorError, open_in_editor
from .helpers import (
    FlagOverrides,
    FlagParseError,
    parse_duration,
    parse_tags,
    vault_url_for,
)
from .keyvault import (
    KeyVaultClient,
    KeyVaultError,
    PreflightError,
    check_vault_reachable,
)
from .logger import StructuredLogger, install_crash_hook, setup_logger


EXIT_OK = 0
EXIT_ERROR = 1
EXIT_CONFIG_ERROR = 2


def parse_arguments(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parse command-line arguments.

    Args:
        argv: Arguments without the program name (defaults to sys.argv[1:])

    Returns:
        Parsed arguments namespace
    """
    parser = argparse.ArgumentParser(
        prog="kvcrutch",
        description="Lean on me when `az keyvault` isn't quite as useful as needed",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  %(prog)s config edit
  %(prog)s certificate create --name my-cert --san www.example.com
  %(prog)s certificate new-version --name my-cert
  %(prog)s --vault-name my-vault certificate list
        """,
    )

    # Global options
    parser.add_argument(
        "--config-path", "-c",
        type=str,
        default=DEFAULT_CONFIG_PATH,
        help=f"Config filepath (default: {DEFAULT_CONFIG_PATH})",
    )
    parser.add_argument(
        "--vault-name", "-v",
        type=str,
        default="",
        help="Key Vault name (overrides vault_name in the config)",
    )
    parser.add_argument(
        "--timeout",
        type=str,
        default="30s",
        help="Limit each Key Vault operation to this duration, e.g. 30s, 1m, 1m30s (default: 30s)",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Show debug logging (including HTTP traces) on the console",
    )
    parser.add_argument(
        "--no-color",
        action="store_true",
        help="Disable colored output",
    )

    commands = parser.add_subparsers(dest="command", metavar="COMMAND")
    commands.required = True

    # config
    config_cmd = commands.add_parser("config", help="config commands")
    config_commands = config_cmd.add_subparsers(dest="config_command", metavar="COMMAND")
    config_commands.required = True

    config_edit = config_commands.add_parser(
        "edit",
        help="Edit or create configuration file. Uses $EDITOR as a fallback",
    )
    config_edit.add_argument(
        "--editor", "-e",
        type=str,
        default=None,
        help="Path to editor",
    )

    config_download = config_commands.add_parser(
        "download",
        help="Download a configuration file. Never overwrites an existing file",
    )
    config_download.add_argument(
        "--url",
        type=str,
        required=True,
        help="URL serving the YAML configuration as text",
    )

    # certificate
    certificate_cmd = commands.add_parser("certificate", help="work with certificates")
    certificate_commands = certificate_cmd.add_subparsers(
        dest="certificate_command", metavar="COMMAND"
    )
    certificate_commands.required = True

    create = certificate_commands.add_parser("create", help="create a certificate")
    create.add_argument(
        "--name", "-n",
        type=str,
        required=True,
        help="Certificate name in Key Vault",
    )
    create.add_argument(
        "--subject",
        type=str,
        default="",
        help="Certificate subject. Example: CN=example.com",
    )
    create.add_argument(
        "--san",
        action="append",
        default=[],
        dest="sans",
        help="Subject alternative DNS name (repeatable; replaces the configured list)",
    )
    create.add_argument(
        "--tag", "-t",
        action="append",
        default=[],
        dest="tags",
        help="Tag in key=value form (repeatable; replaces the configured tags)",
    )
    create.add_argument(
        "--validity",
        type=int,
        default=0,
        help="Validity in months",
    )
    create.add_argument(
        "--enabled", "-e",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Enable (or with --no-enabled, disable) the certificate on creation",
    )
    create.add_argument(
        "--issuer-name",
        type=str,
        default="",
        help="Issuer name, e.g. Self or a configured CA",
    )
    create.add_argument(
        "--new-version-ok",
        action="store_true",
        help="Confirm it's ok to create a new version of a certificate",
    )
    create.add_argument(
        "--skip-confirmation",
        action="store_true",
        help="Create cert without prompting for confirmation",
    )

    certificate_commands.add_parser("list", help="list certificates as JSON")

    new_version = certificate_commands.add_parser(
        "new-version",
        help="create a new version of a certificate with its current policy",
    )
    new_version.add_argument(
        "--name", "-n",
        type=str,
        required=True,
        help="Certificate name in Key Vault",
    )
    new_version.add_argument(
        "--skip-confirmation",
        action="store_true",
        help="Create cert without prompting for confirmation",
    )

    # version
    commands.add_parser("version", help="print kvcrutch build and version information")

    return parser.parse_args(argv)


def _print_version() -> None:
    print("Version and build information")
    for key, value in BUILD_INFO.items():
        print(f"  {key}: {value}")


def _run_config_command(
    args: argparse.Namespace, logger: StructuredLogger, timeout: float
) -> None:
    if args.config_command == "edit":
        if write_default_config(args.config_path):
            logger.infow("wrote default config", config_path=args.config_path)
        open_in_editor(args.config_path, logger, editor=args.editor)

    elif args.config_command == "download":
        path = download_config(args.config_path, args.url, timeout=timeout)
        logger.infow("downloaded config", config_path=str(path), url=args.url)


def _run_certificate_command(
    args: argparse.Namespace, logger: StructuredLogger, timeout: float
) -> None:
    # Parse flags before touching the network
    overrides = None
    if args.certificate_command == "create":
        overrides = FlagOverrides(
            subject=args.subject,
            sans=args.sans,
            tags=parse_tags(args.tags),
            validity_in_months=args.validity,
            enabled=args.enabled,
            issuer_name=args.issuer_name,
        )

    config = load_config(args.config_path)

    # Reconfigure with the log file from the config
    try:
        logger = setup_logger(
            verbose=args.verbose,
            use_colors=not args.no_color,
            log_config=config.lumberjacklogger,
        )
    except OSError as e:
        raise ConfigurationError(
            f"Can't open log file {config.lumberjacklogger.filename}: {e}"
        ) from e

    vault_name = args.vault_name or config.vault_name
    if not vault_name:
        raise ConfigurationError(
            "No vault name: pass --vault-name or set vault_name in the config"
        )
    vault_url = vault_url_for(vault_name)

    client = KeyVaultClient(logger)
    client.authenticate()

    try:
        check_vault_reachable(vault_name, timeout=timeout)
    except PreflightError as e:
        logger.errorw("can't connect to vault", vault_name=vault_name, err=str(e))
        raise

    if args.certificate_command == "create":
        certificate_create(
            logger,
            client,
            vault_url,
            timeout,
            name=args.name,
            template=config.certificate_create_parameters,
            overrides=overrides,
            new_version_ok=args.new_version_ok,
            skip_confirmation=args.skip_confirmation,
        )
    elif args.certificate_command == "new-version":
        certificate_new_version(
            logger,
            client,
            vault_url,
            timeout,
            name=args.name,
            skip_confirmation=args.skip_confirmation,
        )
    elif args.certificate_command == "list":
        certificate_list(logger, client, vault_url, timeout)


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point.

    Returns:
        Exit code (0 = success, 1 = error, 2 = configuration error)
    """
    args = parse_arguments(argv)
    args.config_path = os.path.expanduser(args.config_path)

    if args.command == "version":
        _print_version()
        return EXIT_OK

    # Console-only until the config (and its log file settings) is loaded
    logger = setup_logger(verbose=args.verbose, use_colors=not args.no_color)
    install_crash_hook(logger)

    try:
        timeout = parse_duration(args.timeout)

        if args.command == "config":
            _run_config_command(args, logger, timeout)
        elif args.command == "certificate":
            _run_certificate_command(args, logger, timeout)

    except ConfigurationError as e:
        logger.errorw("Config error", err=str(e))
        return EXIT_CONFIG_ERROR

    except FlagParseError as e:
        logger.errorw("flag parsing error", err=str(e))
        return EXIT_ERROR

    except (
        KeyVaultError,
        AlreadyExistsError,
        UserRefusedError,
        EditorError,
    ) as e:
        logger.errorw("Fatal error", err=str(e), err_type=type(e).__name__)
        return EXIT_ERROR

    except OSError as e:
        logger.errorw(
            "Fatal error",
            err=str(e),
            err_type=type(e).__name__,
            path=getattr(e, "filename", None),
        )
        return EXIT_ERROR

    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
