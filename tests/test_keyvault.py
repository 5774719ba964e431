import itertools
import json
import socket
import ssl
import threading
from types import SimpleNamespace
from unittest.mock import ANY, MagicMock, patch

import pytest
from azure.core.exceptions import (
    ClientAuthenticationError,
    HttpResponseError,
    ResourceNotFoundError,
    ServiceRequestTimeoutError,
)
from azure.keyvault.certificates import CertificatePolicy, CertificatePolicyAction

from kvcrutch.keyvault import (
    KEYVAULT_SCOPE,
    REDACTED,
    AuthenticationError,
    CertificateCreateRequest,
    CertificateNotFoundError,
    DeadlineExceededError,
    KeyVaultClient,
    KeyVaultError,
    PreflightError,
    build_create_request,
    check_vault_reachable,
    properties_to_dict,
    redact_headers,
    request_from_certificate,
    request_to_dict,
    to_json,
)

from conftest import VAULT_URL, make_properties


class _Pages:
    """Iterator of pages exposing continuation_token like ItemPaged.by_page()."""

    def __init__(self, page, continuation_token):
        self._pages = iter([page])
        self.continuation_token = continuation_token

    def __iter__(self):
        return self

    def __next__(self):
        return next(self._pages)


def _pager(pages):
    tokens = [None] + [f"page-{i}" for i in range(1, len(pages))]

    def by_page(continuation_token=None):
        index = tokens.index(continuation_token)
        next_token = tokens[index + 1] if index + 1 < len(pages) else None
        return _Pages(pages[index], next_token)

    pager = MagicMock()
    pager.by_page.side_effect = by_page
    return pager


@pytest.fixture
def sdk_client():
    with patch("kvcrutch.keyvault.CertificateClient") as client_cls:
        client_cls.return_value.api_version = "7.5"
        yield client_cls


@pytest.fixture
def kv(sdk_client):
    return KeyVaultClient(MagicMock(), credential=MagicMock())


class TestBuildCreateRequest:
    def test_maps_template(self, template):
        request = build_create_request(template)

        policy = request.policy
        assert policy.issuer_name == "Self"
        assert policy.subject == "CN=example.com"
        assert policy.san_dns_names == ["example.com", "www.example.com"]
        assert policy.exportable is True
        assert policy.key_type == "RSA"
        assert policy.key_size == 2048
        assert policy.reuse_key is False
        assert policy.content_type == "application/x-pkcs12"
        assert policy.validity_in_months == 6
        assert request.enabled is False
        assert request.tags == {"owner": "platform", "cost_center": "42"}

    def test_lifetime_actions(self, template):
        actions = build_create_request(template).policy.lifetime_actions

        assert actions[0].action == CertificatePolicyAction.auto_renew
        assert actions[0].lifetime_percentage == 80
        assert actions[0].days_before_expiry is None
        assert actions[1].action == CertificatePolicyAction.email_contacts
        assert actions[1].days_before_expiry == 10

    def test_zero_values_are_left_out(self, template):
        template.certificate_policy.key_properties.key_size = 0
        template.certificate_policy.x509_certificate_properties.subject_alternative_names = []

        policy = build_create_request(template).policy

        assert policy.key_size is None
        assert policy.san_dns_names is None


def test_request_to_dict_uses_rest_names(template):
    body = request_to_dict(build_create_request(template))

    assert body["policy"]["key_props"] == {
        "exportable": True,
        "kty": "RSA",
        "key_size": 2048,
        "reuse_key": False,
    }
    assert body["policy"]["secret_props"] == {"contentType": "application/x-pkcs12"}
    assert body["policy"]["x509_props"]["sans"] == {"dns_names": ["example.com", "www.example.com"]}
    assert body["policy"]["x509_props"]["validity_months"] == 6
    assert body["policy"]["issuer"] == {"name": "Self"}
    assert body["policy"]["lifetime_actions"][0] == {
        "trigger": {"lifetime_percentage": 80},
        "action": {"action_type": CertificatePolicyAction.auto_renew},
    }
    assert body["attributes"] == {"enabled": False}
    assert body["tags"] == {"owner": "platform", "cost_center": "42"}

    rendered = json.loads(to_json(body))
    assert rendered["policy"]["lifetime_actions"][0]["action"]["action_type"] == "AutoRenew"


def test_request_from_certificate_reuses_policy():
    policy = CertificatePolicy(issuer_name="Self", subject="CN=a")
    certificate = SimpleNamespace(
        policy=policy,
        properties=SimpleNamespace(enabled=True, tags=None),
    )

    request = request_from_certificate(certificate)

    assert request.policy is policy
    assert request.enabled is True
    assert request.tags == {}


def test_properties_to_dict():
    data = properties_to_dict(make_properties("c1", tags={"env": "prod"}))

    assert data["id"] == f"{VAULT_URL}/certificates/c1/v1"
    assert data["attributes"] == {"enabled": True, "recoveryLevel": "Recoverable+Purgeable"}
    assert data["tags"] == {"env": "prod"}
    assert json.loads(to_json(data))["x5t"] == "0102"


def test_redact_headers():
    headers = {
        "Authorization": "Bearer secret",
        "proxy-authorization": "Basic secret",
        "Accept": "application/json",
    }

    assert redact_headers(headers) == {
        "Authorization": REDACTED,
        "proxy-authorization": REDACTED,
        "Accept": "application/json",
    }


class TestAuthenticate:
    def test_gets_token_for_keyvault_scope(self):
        credential = MagicMock()

        KeyVaultClient(MagicMock(), credential=credential).authenticate()

        credential.get_token.assert_called_once_with(KEYVAULT_SCOPE)

    def test_uses_default_credential(self):
        with patch("kvcrutch.keyvault.DefaultAzureCredential") as credential_cls:
            KeyVaultClient(MagicMock()).authenticate()

        credential_cls.return_value.get_token.assert_called_once_with(KEYVAULT_SCOPE)

    def test_failure_mentions_az_login(self):
        logger = MagicMock()
        credential = MagicMock()
        credential.get_token.side_effect = ClientAuthenticationError("no login")

        with pytest.raises(AuthenticationError):
            KeyVaultClient(logger, credential=credential).authenticate()

        message = logger.errorw.call_args[0][0]
        assert "az login" in message


def test_client_is_cached_per_vault(kv, sdk_client):
    kv.get_certificate(VAULT_URL, "c1")
    kv.get_certificate(VAULT_URL, "c2")
    kv.get_certificate("https://kv2.vault.azure.net", "c1")

    assert sdk_client.call_count == 2
    assert sdk_client.call_args_list[0].kwargs["vault_url"] == VAULT_URL
    assert sdk_client.call_args_list[0].kwargs["raw_request_hook"] == kv._log_request
    assert sdk_client.call_args_list[0].kwargs["raw_response_hook"] == kv._log_response


class TestGetCertificate:
    def test_latest(self, kv, sdk_client):
        certificate = kv.get_certificate(VAULT_URL, "c1", timeout=5)

        sdk = sdk_client.return_value
        assert certificate is sdk.get_certificate.return_value
        sdk.get_certificate.assert_called_once_with("c1", timeout=ANY)
        assert 0 < sdk.get_certificate.call_args.kwargs["timeout"] <= 5

    def test_version(self, kv, sdk_client):
        kv.get_certificate(VAULT_URL, "c1", version="abc")

        sdk = sdk_client.return_value
        sdk.get_certificate_version.assert_called_once_with("c1", "abc", timeout=ANY)
        sdk.get_certificate.assert_not_called()

    def test_not_found(self, kv, sdk_client):
        sdk_client.return_value.get_certificate.side_effect = ResourceNotFoundError("nope")

        with pytest.raises(CertificateNotFoundError):
            kv.get_certificate(VAULT_URL, "c1")

    @pytest.mark.parametrize("error,expected", [
        (HttpResponseError("forbidden"), KeyVaultError),
        (ClientAuthenticationError("expired"), AuthenticationError),
        (ServiceRequestTimeoutError("slow"), DeadlineExceededError),
    ])
    def test_errors_are_translated(self, kv, sdk_client, error, expected):
        sdk_client.return_value.get_certificate.side_effect = error

        with pytest.raises(expected):
            kv.get_certificate(VAULT_URL, "c1")


class TestCreateCertificate:
    def _respond(self, sdk_client, body=None, error=None):
        response = MagicMock()
        response.status_code = 202
        response.json.return_value = body if body is not None else {
            "id": f"{VAULT_URL}/certificates/c1/pending",
            "request_id": "req-1",
            "status": "inProgress",
            "status_details": None,
        }
        if error is not None:
            response.raise_for_status.side_effect = error
        sdk_client.return_value.send_request.return_value = response
        return response

    def test_returns_receipt(self, kv, sdk_client, template):
        self._respond(sdk_client)

        receipt = kv.create_certificate(VAULT_URL, "c1", build_create_request(template), timeout=5)

        assert receipt.id == f"{VAULT_URL}/certificates/c1/pending"
        assert receipt.request_id == "req-1"
        assert receipt.status == "inProgress"
        assert receipt.status_details == ""

    def test_sends_one_post_and_does_not_poll(self, kv, sdk_client, template):
        self._respond(sdk_client)
        request = build_create_request(template)
        threads_before = set(threading.enumerate())

        kv.create_certificate(VAULT_URL, "c1", request, timeout=5)

        sdk = sdk_client.return_value
        sdk.send_request.assert_called_once_with(ANY, timeout=ANY)
        assert 0 < sdk.send_request.call_args.kwargs["timeout"] <= 5
        http_request = sdk.send_request.call_args[0][0]
        assert http_request.method == "POST"
        assert http_request.url.startswith(f"{VAULT_URL}/certificates/c1/create?")
        assert "api-version=7.5" in http_request.url

        body = json.loads(http_request.content)
        assert body == json.loads(to_json(request_to_dict(request)))
        assert body["policy"]["x509_props"]["subject"] == "CN=example.com"
        assert body["tags"] == {"owner": "platform", "cost_center": "42"}

        sdk.begin_create_certificate.assert_not_called()
        sdk.get_certificate_operation.assert_not_called()
        assert set(threading.enumerate()) == threads_before

    def test_empty_tags_and_unset_enabled_are_not_sent(self, kv, sdk_client):
        self._respond(sdk_client)
        request = CertificateCreateRequest(policy=CertificatePolicy(issuer_name="Self", subject="CN=a"))

        kv.create_certificate(VAULT_URL, "c1", request)

        body = json.loads(sdk_client.return_value.send_request.call_args[0][0].content)
        assert "tags" not in body
        assert "attributes" not in body

    def test_exhausted_timeout_sends_nothing(self, kv, sdk_client, template):
        with pytest.raises(DeadlineExceededError):
            kv.create_certificate(VAULT_URL, "c1", build_create_request(template), timeout=0)

        sdk_client.return_value.send_request.assert_not_called()

    def test_service_error(self, kv, sdk_client, template):
        self._respond(sdk_client, error=HttpResponseError("bad policy"))

        with pytest.raises(KeyVaultError, match="bad policy"):
            kv.create_certificate(VAULT_URL, "c1", build_create_request(template))

    def test_transport_timeout(self, kv, sdk_client, template):
        sdk_client.return_value.send_request.side_effect = ServiceRequestTimeoutError("slow")

        with pytest.raises(DeadlineExceededError):
            kv.create_certificate(VAULT_URL, "c1", build_create_request(template))

    def test_unreadable_body(self, kv, sdk_client, template):
        response = self._respond(sdk_client)
        response.json.side_effect = ValueError("Expecting value")

        with pytest.raises(KeyVaultError, match="unreadable body"):
            kv.create_certificate(VAULT_URL, "c1", build_create_request(template))


class TestListCertificates:
    def test_walks_every_page(self, kv, sdk_client):
        pages = [
            [make_properties("c1"), make_properties("c2")],
            [make_properties("c3"), make_properties("c4")],
            [make_properties("c5"), make_properties("c6")],
        ]
        sdk_client.return_value.list_properties_of_certificates.return_value = _pager(pages)

        names = [p.name for p in kv.list_certificates(VAULT_URL)]

        assert names == ["c1", "c2", "c3", "c4", "c5", "c6"]
        assert sdk_client.return_value.list_properties_of_certificates.call_count == 3

    def test_pages_are_fetched_lazily(self, kv, sdk_client):
        pages = [[make_properties("c1"), make_properties("c2")], [make_properties("c3")]]
        sdk_client.return_value.list_properties_of_certificates.return_value = _pager(pages)

        listing = kv.list_certificates(VAULT_URL)
        assert next(listing).name == "c1"
        assert next(listing).name == "c2"

        assert sdk_client.return_value.list_properties_of_certificates.call_count == 1

    def test_empty_vault(self, kv, sdk_client):
        sdk_client.return_value.list_properties_of_certificates.return_value = _pager([[]])

        assert list(kv.list_certificates(VAULT_URL)) == []

    def test_deadline_is_shared_across_pages(self, kv, sdk_client):
        pages = [[make_properties("c1")], [make_properties("c2")]]
        sdk = sdk_client.return_value
        sdk.list_properties_of_certificates.return_value = _pager(pages)

        # start at 0, first page at 1, second page at 11 with a 10s budget
        clock = itertools.chain([0.0, 1.0, 11.0], itertools.repeat(11.0))
        with patch("kvcrutch.keyvault.time.monotonic", side_effect=lambda: next(clock)):
            listing = kv.list_certificates(VAULT_URL, timeout=10)
            assert next(listing).name == "c1"
            with pytest.raises(DeadlineExceededError):
                next(listing)

        assert sdk.list_properties_of_certificates.call_count == 1
        assert sdk.list_properties_of_certificates.call_args.kwargs["timeout"] == pytest.approx(9.0)

    def test_page_error(self, kv, sdk_client):
        pager = MagicMock()
        pager.by_page.side_effect = HttpResponseError("throttled")
        sdk_client.return_value.list_properties_of_certificates.return_value = pager

        with pytest.raises(KeyVaultError, match="throttled"):
            list(kv.list_certificates(VAULT_URL))


class TestHttpTrace:
    def test_request_headers_are_redacted(self):
        logger = MagicMock()
        kv = KeyVaultClient(logger, credential=MagicMock())
        request = SimpleNamespace(http_request=SimpleNamespace(
            method="PUT",
            url=f"{VAULT_URL}/certificates/c1/create",
            headers={"Authorization": "Bearer secret", "Content-Type": "application/json"},
            content=None,
            body=b'{"policy": {}}',
        ))

        kv._log_request(request)

        logger.debugw.assert_called_once_with(
            "HTTP request",
            method="PUT",
            url=f"{VAULT_URL}/certificates/c1/create",
            headers={"Authorization": REDACTED, "Content-Type": "application/json"},
            body='{"policy": {}}',
        )

    def test_response_is_logged(self):
        logger = MagicMock()
        kv = KeyVaultClient(logger, credential=MagicMock())
        response = SimpleNamespace(
            http_request=SimpleNamespace(url=f"{VAULT_URL}/certificates"),
            http_response=SimpleNamespace(
                status_code=200,
                headers={"x-ms-request-id": "r1"},
                text=lambda: '{"value": []}',
            ),
        )

        kv._log_response(response)

        logger.debugw.assert_called_once_with(
            "HTTP response",
            status=200,
            url=f"{VAULT_URL}/certificates",
            headers={"x-ms-request-id": "r1"},
            body='{"value": []}',
        )


class TestCheckVaultReachable:
    def test_tls_handshake_with_vault_host(self):
        with patch("kvcrutch.keyvault.socket.create_connection") as connect, \
                patch("kvcrutch.keyvault.ssl.create_default_context") as context:
            check_vault_reachable("kv1", timeout=3)

        connect.assert_called_once_with(("kv1.vault.azure.net", 443), timeout=3)
        sock = connect.return_value.__enter__.return_value
        context.return_value.wrap_socket.assert_called_once_with(
            sock, server_hostname="kv1.vault.azure.net"
        )

    @pytest.mark.parametrize("error", [
        socket.gaierror("Name or service not known"),
        ConnectionRefusedError("refused"),
        socket.timeout("timed out"),
    ])
    def test_connection_failure(self, error):
        with patch("kvcrutch.keyvault.socket.create_connection", side_effect=error):
            with pytest.raises(PreflightError, match="kv1.vault.azure.net"):
                check_vault_reachable("kv1", timeout=3)

    def test_handshake_failure(self):
        with patch("kvcrutch.keyvault.socket.create_connection"), \
                patch("kvcrutch.keyvault.ssl.create_default_context") as context:
            context.return_value.wrap_socket.side_effect = ssl.SSLError("bad cert")
            with pytest.raises(PreflightError):
                check_vault_reachable("kv1")
