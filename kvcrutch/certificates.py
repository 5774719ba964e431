"""
Certificate commands.

Each function here runs one ``kvcrutch certificate`` sub-command against
a KeyVaultClient: create, new-version and list.
"""

import sys
from enum import Enum
from typing import Optional, TextIO

from .config_loader import CertificateTemplate
from .helpers import FlagOverrides, apply_flag_overrides
from .keyvault import (
    CertificateCreateRequest,
    CreationReceipt,
    KeyVaultClient,
    KeyVaultError,
    build_create_request,
    properties_to_dict,
    request_from_certificate,
    request_to_dict,
    to_json,
)
from .logger import StructuredLogger


class AlreadyExistsError(Exception):
    """Raised when the certificate exists and a new version was not allowed."""
    pass


class UserRefusedError(Exception):
    """Raised when the operator does not confirm with 'yes'."""
    pass


class CreateStage(Enum):
    """Steps of a certificate creation, in order."""
    EXISTENCE_CHECK = "existence_check"
    PROMPT = "prompt"
    SUBMIT = "submit"
    DONE = "done"


def confirm_creation(
    vault_url: str,
    request: CertificateCreateRequest,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
) -> None:
    """
    Show the resolved request and ask the operator to type 'yes'.

    Args:
        vault_url: Vault the certificate will be created in
        request: Request that will be sent
        stdin: Input stream (defaults to sys.stdin)
        stdout: Output stream (defaults to sys.stdout)

    Raises:
        UserRefusedError: Unless the answer is exactly 'yes' (surrounding
            whitespace ignored); end of input counts as a refusal
    """
    stdin = stdin or sys.stdin
    stdout = stdout or sys.stdout

    rendered = to_json(request_to_dict(request)).replace("\n", "\n  ")
    stdout.write(
        f"A certificate will be created in keyvault '{vault_url}' "
        "with the following parameters:\n"
    )
    stdout.write(f"  {rendered}\n")
    stdout.write("Type 'yes' to continue: ")
    stdout.flush()

    confirmation = stdin.readline().strip()
    if confirmation != "yes":
        raise UserRefusedError(f"confirmation not 'yes': {confirmation!r}")


def _submit(
    logger: StructuredLogger,
    client: KeyVaultClient,
    vault_url: str,
    name: str,
    request: CertificateCreateRequest,
    timeout: float,
    message: str,
) -> CreationReceipt:
    try:
        receipt = client.create_certificate(vault_url, name, request, timeout=timeout)
    except KeyVaultError as e:
        logger.errorw(
            "certificate creation error",
            cert_name=name,
            vault_url=vault_url,
            stage=CreateStage.SUBMIT.value,
            err=str(e),
        )
        raise

    logger.infow(
        message,
        cert_name=name,
        created_id=receipt.id,
        request_id=receipt.request_id,
        status=receipt.status,
        status_details=receipt.status_details,
    )
    return receipt


def certificate_create(
    logger: StructuredLogger,
    client: KeyVaultClient,
    vault_url: str,
    timeout: float,
    name: str,
    template: CertificateTemplate,
    overrides: FlagOverrides,
    new_version_ok: bool = False,
    skip_confirmation: bool = False,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
) -> CreationReceipt:
    """
    Create a certificate from the configured template and flag overrides.

    Steps:
    1. Merge overrides onto the template
    2. Unless new_version_ok, refuse if the certificate already exists.
       Any error from the lookup is taken to mean it does not. Someone
       else can still create the name between this check and step 4.
    3. Unless skip_confirmation, ask the operator to confirm
    4. Send the create request

    The lookup and the create call each get the full timeout.

    Args:
        logger: Logger for progress and errors
        client: Key Vault client
        vault_url: Vault URL
        timeout: Seconds allowed per remote call
        name: Certificate name
        template: Template loaded from the config
        overrides: Values taken from command-line flags
        new_version_ok: Allow creating a new version of an existing name
        skip_confirmation: Do not prompt
        stdin: Input stream for the prompt
        stdout: Output stream for the prompt

    Returns:
        CreationReceipt from the vault

    Raises:
        AlreadyExistsError: If the name exists and new_version_ok is False
        UserRefusedError: If the operator does not confirm
        KeyVaultError: If the create call fails
    """
    merged = apply_flag_overrides(template, overrides)
    request = build_create_request(merged)

    if not new_version_ok:
        try:
            client.get_certificate(vault_url, name, "", timeout=timeout)
        except KeyVaultError as e:
            logger.debugw("certificate not found, continuing", cert_name=name, reason=str(e))
        else:
            logger.errorw(
                "certificate already exists for name. "
                "Pass `--new-version-ok` to create a new version",
                cert_name=name,
                stage=CreateStage.EXISTENCE_CHECK.value,
            )
            raise AlreadyExistsError(
                f"certificate already exists for {name}; "
                "pass --new-version-ok to create a new version"
            )

    if not skip_confirmation:
        try:
            confirm_creation(vault_url, request, stdin=stdin, stdout=stdout)
        except UserRefusedError as e:
            logger.errorw(
                "Can't confirm creation",
                vault_url=vault_url,
                cert_name=name,
                stage=CreateStage.PROMPT.value,
                err=str(e),
            )
            raise

    receipt = _submit(logger, client, vault_url, name, request, timeout, "certificate created")
    logger.debugw("certificate create finished", cert_name=name, stage=CreateStage.DONE.value)
    return receipt


def certificate_new_version(
    logger: StructuredLogger,
    client: KeyVaultClient,
    vault_url: str,
    timeout: float,
    name: str,
    skip_confirmation: bool = False,
    stdin: Optional[TextIO] = None,
    stdout: Optional[TextIO] = None,
) -> CreationReceipt:
    """
    Create a new version of a certificate using its current policy.

    The policy, enabled flag and tags of the latest version are reused
    as they are; no flags or config values are applied.

    Args:
        logger: Logger for progress and errors
        client: Key Vault client
        vault_url: Vault URL
        timeout: Seconds allowed per remote call
        name: Certificate name
        skip_confirmation: Do not prompt
        stdin: Input stream for the prompt
        stdout: Output stream for the prompt

    Returns:
        CreationReceipt from the vault
    """
    try:
        certificate = client.get_certificate(vault_url, name, "", timeout=timeout)
    except KeyVaultError as e:
        logger.errorw(
            "Can't get certificate",
            vault_url=vault_url,
            cert_name=name,
            err=str(e),
        )
        raise

    request = request_from_certificate(certificate)

    if not skip_confirmation:
        try:
            confirm_creation(vault_url, request, stdin=stdin, stdout=stdout)
        except UserRefusedError as e:
            logger.errorw(
                "Can't confirm creation",
                vault_url=vault_url,
                cert_name=name,
                err=str(e),
            )
            raise

    return _submit(
        logger, client, vault_url, name, request, timeout,
        "certificate created (new version)",
    )


def certificate_list(
    logger: StructuredLogger,
    client: KeyVaultClient,
    vault_url: str,
    timeout: float,
    stdout: Optional[TextIO] = None,
) -> int:
    """
    Print every certificate in the vault as an indented JSON block.

    One timeout covers the whole listing, however many pages it takes.

    Args:
        logger: Logger for errors
        client: Key Vault client
        vault_url: Vault URL
        timeout: Seconds allowed for the whole listing
        stdout: Output stream (defaults to sys.stdout)

    Returns:
        Number of certificates printed
    """
    stdout = stdout or sys.stdout
    count = 0

    try:
        for properties in client.list_certificates(vault_url, timeout=timeout):
            stdout.write(to_json(properties_to_dict(properties)) + "\n")
            count += 1
    except KeyVaultError as e:
        logger.errorw(
            "Can't advance certs list",
            vault_url=vault_url,
            listed=count,
            err=str(e),
        )
        raise

    return count
