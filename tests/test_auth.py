"""Tests for authentication protocols."""

import time
import unittest
from unittest.mock import MagicMock, Mock

import requests

from credkit import (
    CREDKIT,
    AuthenticationProtocol,
    AuthProtocolError,
    CallableAuthenticationProtocol,
    CredentialRecord,
    DelegatedAuthenticationProtocol,
    TokenEndpointProtocol,
)


def _response(status_code=200, json_data=None):
    response = Mock(spec=requests.Response)
    response.status_code = status_code
    response.json.return_value = json_data or {}
    if status_code >= 400:
        response.raise_for_status.side_effect = requests.HTTPError(f"{status_code} Error", response=response)
    return response


class TestAuthenticationProtocol(unittest.TestCase):
    """Tests for the abstract base class."""

    def test_cannot_instantiate_abstract_class(self):
        with self.assertRaises(TypeError):
            AuthenticationProtocol()  # type: ignore[abstract]


class TestCallableAuthenticationProtocol(unittest.TestCase):
    """Tests for CallableAuthenticationProtocol."""

    def test_returns_record_from_function(self):
        record = CredentialRecord(token="T1", expires_at=time.time() + 900)
        protocol = CallableAuthenticationProtocol(lambda secret: record, name="moon")

        self.assertIs(protocol.authenticate("S1"), record)

    def test_passes_user_secret(self):
        func = Mock(return_value=CredentialRecord(token="T1", expires_at=1.0))
        CallableAuthenticationProtocol(func).authenticate("S1")

        func.assert_called_once_with("S1")

    def test_wraps_unexpected_exceptions(self):
        cause = ConnectionError("reset")
        protocol = CallableAuthenticationProtocol(Mock(side_effect=cause), name="moon")

        with self.assertRaises(AuthProtocolError) as ctx:
            protocol.authenticate("S1")

        self.assertEqual(ctx.exception.reason, "protocol_error")
        self.assertIs(ctx.exception.cause, cause)
        self.assertIn("moon", ctx.exception.message)

    def test_credkit_errors_pass_through(self):
        error = AuthProtocolError("bad secret", reason="invalid_grant")
        protocol = CallableAuthenticationProtocol(Mock(side_effect=error))

        with self.assertRaises(AuthProtocolError) as ctx:
            protocol.authenticate("S1")
        self.assertIs(ctx.exception, error)

    def test_rejects_non_record_results(self):
        protocol = CallableAuthenticationProtocol(lambda secret: {"token": "T1"})

        with self.assertRaises(AuthProtocolError) as ctx:
            protocol.authenticate("S1")
        self.assertEqual(ctx.exception.reason, "invalid_response")

    def test_requires_callable(self):
        with self.assertRaises(AssertionError):
            CallableAuthenticationProtocol("not callable")  # type: ignore[arg-type]


class TestTokenEndpointProtocolInit(unittest.TestCase):
    """Tests for TokenEndpointProtocol initialization."""

    def setUp(self):
        CREDKIT.reset()

    def tearDown(self):
        CREDKIT.reset()

    def test_requires_http_url(self):
        with self.assertRaises(AssertionError):
            TokenEndpointProtocol(token_url="ftp://example.com", client_id="c")

    def test_requires_client_id(self):
        with self.assertRaises(AssertionError):
            TokenEndpointProtocol(token_url="https://example.com/token", client_id="")

    def test_timeout_defaults_to_config(self):
        CREDKIT.configure(session={"request_timeout": 12})
        session = MagicMock(spec=requests.Session)
        session.post.return_value = _response(json_data={"access_token": "T1", "expires_in": 60})

        protocol = TokenEndpointProtocol(token_url="https://example.com/token", client_id="c", session=session)
        protocol.authenticate("S1")

        self.assertEqual(session.post.call_args.kwargs["timeout"], 12)


class TestTokenEndpointProtocolAuthenticate(unittest.TestCase):
    """Tests for TokenEndpointProtocol.authenticate()."""

    def setUp(self):
        self.session = MagicMock(spec=requests.Session)
        self.protocol = TokenEndpointProtocol(
            token_url="https://accounts.example.com/connect/token",
            client_id="my-client",
            extra_fields={"scope": "openid"},
            timeout=5,
            session=self.session,
        )

    def test_posts_form_with_secret(self):
        self.session.post.return_value = _response(json_data={"access_token": "T1", "expires_in": 900})

        self.protocol.authenticate("S1")

        call = self.session.post.call_args
        self.assertEqual(call.args[0], "https://accounts.example.com/connect/token")
        self.assertEqual(call.kwargs["data"]["session_token"], "S1")
        self.assertEqual(call.kwargs["data"]["client_id"], "my-client")
        self.assertEqual(call.kwargs["data"]["scope"], "openid")
        self.assertEqual(call.kwargs["headers"]["Content-Type"], "application/x-www-form-urlencoded")
        self.assertEqual(call.kwargs["timeout"], 5)

    def test_builds_record_from_response(self):
        self.session.post.return_value = _response(
            json_data={"access_token": "T1", "expires_in": 900, "id_token": "abc"}
        )

        before = time.time()
        record = self.protocol.authenticate("S1")

        self.assertEqual(record.token, "T1")
        self.assertGreaterEqual(record.issued_at, before)
        self.assertAlmostEqual(record.expires_at - record.issued_at, 900)
        self.assertEqual(record.metadata, {"id_token": "abc"})

    def test_defaults_expires_in(self):
        self.session.post.return_value = _response(json_data={"access_token": "T1"})

        record = self.protocol.authenticate("S1")

        self.assertAlmostEqual(
            record.expires_at - record.issued_at, TokenEndpointProtocol.DEFAULT_EXPIRES_IN
        )

    def test_http_error(self):
        self.session.post.return_value = _response(status_code=400)

        with self.assertRaises(AuthProtocolError) as ctx:
            self.protocol.authenticate("S1")

        self.assertEqual(ctx.exception.reason, "http_error")
        self.assertIn("400", ctx.exception.message)
        self.assertIsInstance(ctx.exception.cause, requests.HTTPError)

    def test_network_error(self):
        self.session.post.side_effect = requests.ConnectionError("unreachable")

        with self.assertRaises(AuthProtocolError) as ctx:
            self.protocol.authenticate("S1")
        self.assertEqual(ctx.exception.reason, "network_error")

    def test_missing_access_token(self):
        self.session.post.return_value = _response(json_data={"expires_in": 900})

        with self.assertRaises(AuthProtocolError) as ctx:
            self.protocol.authenticate("S1")

        self.assertEqual(ctx.exception.reason, "invalid_response")
        self.assertIn("access_token", ctx.exception.message)

    def test_invalid_json(self):
        response = _response()
        response.json.side_effect = ValueError("Expecting value")
        self.session.post.return_value = response

        with self.assertRaises(AuthProtocolError) as ctx:
            self.protocol.authenticate("S1")
        self.assertEqual(ctx.exception.reason, "invalid_response")


class TestDelegatedAuthenticationProtocol(unittest.TestCase):
    """Tests for DelegatedAuthenticationProtocol."""

    def setUp(self):
        self.upstream_record = CredentialRecord(token="CORAL", expires_at=time.time() + 3600)
        self.upstream_client = Mock()
        self.upstream_client.ensure_fresh.return_value = self.upstream_record
        self.manager = Mock()
        self.manager.get_client.return_value = self.upstream_client

    def test_exchanges_upstream_credential(self):
        record = CredentialRecord(token="WEB", expires_at=time.time() + 7200)
        exchange = Mock(return_value=record)
        protocol = DelegatedAuthenticationProtocol(self.manager, "coral", exchange)

        self.assertIs(protocol.authenticate("S1"), record)
        self.manager.get_client.assert_called_once_with("S1", "coral")
        exchange.assert_called_once_with(self.upstream_record)

    def test_wraps_exchange_failures(self):
        protocol = DelegatedAuthenticationProtocol(self.manager, "coral", Mock(side_effect=KeyError("token")))

        with self.assertRaises(AuthProtocolError) as ctx:
            protocol.authenticate("S1")
        self.assertEqual(ctx.exception.reason, "exchange_failed")

    def test_upstream_errors_propagate(self):
        self.upstream_client.ensure_fresh.side_effect = AuthProtocolError("coral login failed")
        exchange = Mock()
        protocol = DelegatedAuthenticationProtocol(self.manager, "coral", exchange)

        with self.assertRaises(AuthProtocolError):
            protocol.authenticate("S1")
        exchange.assert_not_called()


if __name__ == "__main__":
    unittest.main()
