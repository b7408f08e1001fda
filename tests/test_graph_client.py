"""
Tests for the Microsoft Graph client and client-credential token provider.
"""
from unittest.mock import MagicMock, patch

import pytest
import requests

from conftest import json_response
from flwins_portal.config import ConfigurationError
from flwins_portal.graph_client import (
    GRAPH_BASE_URL,
    ClientCredentialTokenProvider,
    GraphClient,
    GraphError,
    GraphTokenError,
    GraphTransportError,
)


def _provider():
    return ClientCredentialTokenProvider("tenant", "client", "secret")


class TestTokenProvider:
    """Client-credential token acquisition."""

    def test_missing_credentials_raise_configuration_error(self):
        provider = ClientCredentialTokenProvider("tenant", None, "secret", label="EFSMOD")
        with pytest.raises(ConfigurationError) as excinfo:
            provider.get_token()
        assert "EFSMOD" in str(excinfo.value)
        assert excinfo.value.details == {"tenant_id": True, "client_id": False, "client_secret": True}

    @patch("flwins_portal.graph_client.msal.ConfidentialClientApplication")
    def test_returns_access_token(self, mock_app_cls):
        mock_app_cls.return_value.acquire_token_for_client.return_value = {"access_token": "token-1"}
        assert _provider().get_token() == "token-1"
        mock_app_cls.assert_called_once_with(
            client_id="client",
            client_credential="secret",
            authority="https://login.microsoftonline.com/tenant",
        )

    @patch("flwins_portal.graph_client.msal.ConfidentialClientApplication")
    def test_no_token_reuse_between_calls(self, mock_app_cls):
        mock_app_cls.return_value.acquire_token_for_client.side_effect = [
            {"access_token": "first"},
            {"access_token": "second"},
        ]
        provider = _provider()
        assert provider.get_token() == "first"
        assert provider.get_token() == "second"
        assert mock_app_cls.call_count == 2

    @patch("flwins_portal.graph_client.msal.ConfidentialClientApplication")
    def test_token_error_payload(self, mock_app_cls):
        mock_app_cls.return_value.acquire_token_for_client.return_value = {
            "error": "invalid_client",
            "error_description": "Bad secret",
        }
        with pytest.raises(GraphTokenError) as excinfo:
            _provider().get_token()
        assert excinfo.value.error == "invalid_client"
        assert excinfo.value.description == "Bad secret"

    @patch("flwins_portal.graph_client.msal.ConfidentialClientApplication")
    def test_unreachable_token_endpoint(self, mock_app_cls):
        mock_app_cls.side_effect = requests.ConnectionError("offline")
        with pytest.raises(GraphTransportError):
            _provider().get_token()


class TestGraphClient:
    """Graph requests and error parsing."""

    def test_requires_a_credential(self):
        with pytest.raises(ValueError):
            GraphClient()

    def test_cleared_credentials_raise_value_error(self):
        session = MagicMock()
        client = GraphClient(access_token="delegated", session=session)
        client._access_token = None

        with pytest.raises(ValueError):
            client.get_me()
        session.request.assert_not_called()

    def test_get_me_uses_delegated_token(self):
        session = MagicMock()
        session.request.return_value = json_response(200, {"id": "user-1", "displayName": "Ana"})
        client = GraphClient(access_token="delegated", session=session)

        assert client.get_me()["displayName"] == "Ana"
        method, url = session.request.call_args.args
        assert method == "GET"
        assert url == f"{GRAPH_BASE_URL}/me"
        headers = session.request.call_args.kwargs["headers"]
        assert headers["Authorization"] == "Bearer delegated"
        assert session.request.call_args.kwargs["timeout"] == 30

    def test_error_body_is_parsed(self):
        session = MagicMock()
        session.request.return_value = json_response(
            403, {"error": {"code": "Authorization_RequestDenied", "message": "Insufficient privileges"}}
        )
        client = GraphClient(access_token="delegated", session=session)

        with pytest.raises(GraphError) as excinfo:
            client.create_user({"displayName": "Ana"})
        assert excinfo.value.status_code == 403
        assert excinfo.value.error == "Authorization_RequestDenied"
        assert excinfo.value.description == "Insufficient privileges"

    def test_non_json_error_body(self):
        session = MagicMock()
        session.request.return_value = json_response(500, None, text="upstream exploded")
        client = GraphClient(access_token="delegated", session=session)

        with pytest.raises(GraphError) as excinfo:
            client.create_invitation({"invitedUserEmailAddress": "ana@x.com"})
        assert excinfo.value.status_code == 500
        assert excinfo.value.description == "upstream exploded"

    def test_transport_failure(self):
        session = MagicMock()
        session.request.side_effect = requests.Timeout("timed out")
        client = GraphClient(access_token="delegated", session=session)

        with pytest.raises(GraphTransportError):
            client.get_me()

    def test_list_verified_domains(self):
        session = MagicMock()
        session.request.return_value = json_response(
            200,
            {"value": [{"verifiedDomains": [{"name": "contoso.onmicrosoft.com", "isInitial": True}]}]},
        )
        client = GraphClient(access_token="delegated", session=session)

        assert client.list_verified_domains() == [{"name": "contoso.onmicrosoft.com", "isInitial": True}]
        assert session.request.call_args.kwargs["params"] == {"$select": "verifiedDomains"}

    @patch("flwins_portal.graph_client.msal.ConfidentialClientApplication")
    def test_app_only_token_from_provider(self, mock_app_cls):
        mock_app_cls.return_value.acquire_token_for_client.return_value = {"access_token": "app-token"}
        session = MagicMock()
        session.request.return_value = json_response(201, {"id": "new-user"})
        client = GraphClient(token_provider=_provider(), session=session)

        assert client.create_user({"displayName": "Ana"}) == {"id": "new-user"}
        kwargs = session.request.call_args.kwargs
        assert kwargs["headers"]["Authorization"] == "Bearer app-token"
        assert kwargs["json"] == {"displayName": "Ana"}
