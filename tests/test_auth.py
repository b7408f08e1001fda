"""
Tests for principal resolution against the App Service authentication proxy.
"""
import base64
from unittest.mock import MagicMock

import pytest
import requests

from conftest import encode_principal, json_response, principal_headers
from flwins_portal.auth import (
    AuthenticationError,
    PrincipalDecodeError,
    SessionEndpointUnavailable,
    decode_header_principal,
    fetch_session_principal,
    require_principal,
    resolve_principal,
)

OID_CLAIM = "http://schemas.microsoft.com/identity/claims/objectidentifier"

SESSION_ENTRY = {
    "user_id": "ana@x.com",
    "provider_name": "aad",
    "access_token": "delegated-token",
    "user_claims": [
        {"typ": OID_CLAIM, "val": "object-id-1"},
        {"typ": "name", "val": "Ana Lopez"},
        {"typ": "preferred_username", "val": "ana@x.com"},
    ],
}


class TestSessionEndpoint:
    """The platform session endpoint is the authority."""

    def test_no_cookies_skips_the_call(self):
        session = MagicMock()
        assert fetch_session_principal("https://portal.example.org", None, session=session) is None
        session.get.assert_not_called()

    def test_principal_from_session_entry(self):
        session = MagicMock()
        session.get.return_value = json_response(200, [SESSION_ENTRY])

        principal = fetch_session_principal(
            "https://portal.example.org/", "AppServiceAuthSession=abc", session=session
        )

        assert principal.user_id == "object-id-1"
        assert principal.user_details == "ana@x.com"
        assert principal.identity_provider == "aad"
        assert principal.access_token == "delegated-token"
        assert principal.source == "session"
        url = session.get.call_args.args[0]
        assert url == "https://portal.example.org/.auth/me"
        assert session.get.call_args.kwargs["headers"]["Cookie"] == "AppServiceAuthSession=abc"

    def test_unauthenticated_session(self):
        session = MagicMock()
        session.get.return_value = json_response(401, {"message": "Unauthorized"})
        assert fetch_session_principal("https://portal.example.org", "c=1", session=session) is None

    def test_empty_identity_list(self):
        session = MagicMock()
        session.get.return_value = json_response(200, [])
        assert fetch_session_principal("https://portal.example.org", "c=1", session=session) is None

    def test_redirect_is_reported_as_unavailable(self):
        session = MagicMock()
        response = json_response(301)
        response.headers = {"Location": "https://portal.example.org/.auth/me"}
        session.get.return_value = response

        with pytest.raises(SessionEndpointUnavailable):
            fetch_session_principal("http://portal.example.org", "c=1", session=session)
        assert session.get.call_args.kwargs["allow_redirects"] is False


class TestHeaderPrincipal:
    """Compatibility fallback through the injected principal headers."""

    def test_decode_headers(self):
        principal = decode_header_principal(
            principal_headers("abc123", name="ana@x.com", access_token="token")
        )
        assert principal.user_id == "abc123"
        assert principal.user_details == "ana@x.com"
        assert principal.identity_provider == "aad"
        assert principal.access_token == "token"
        assert principal.claim("email") == "ana@x.com"
        assert principal.source == "header"

    def test_unpadded_payload(self):
        encoded = encode_principal([("name", "Ana")], user_id="abc123").rstrip("=")
        principal = decode_header_principal({"X-MS-CLIENT-PRINCIPAL": encoded})
        assert principal.user_id == "abc123"

    def test_missing_header(self):
        assert decode_header_principal({}) is None

    def test_undecodable_header(self):
        with pytest.raises(PrincipalDecodeError):
            decode_header_principal({"X-MS-CLIENT-PRINCIPAL": "%%%not-base64%%%"})

    def test_non_object_payload(self):
        encoded = base64.b64encode(b"[1, 2, 3]").decode("ascii")
        with pytest.raises(PrincipalDecodeError):
            decode_header_principal({"X-MS-CLIENT-PRINCIPAL": encoded})


class TestResolution:
    """Authority order and failure handling."""

    def test_session_wins_over_headers(self):
        session = MagicMock()
        session.get.return_value = json_response(200, [SESSION_ENTRY])
        headers = dict(principal_headers("header-user"), Cookie="c=1")

        principal = resolve_principal("https://portal.example.org", headers, session=session)
        assert principal.user_id == "object-id-1"

    def test_unreachable_session_falls_back_to_headers(self):
        session = MagicMock()
        session.get.side_effect = requests.ConnectionError("offline")
        headers = dict(principal_headers("header-user"), Cookie="c=1")

        principal = resolve_principal("https://portal.example.org", headers, session=session)
        assert principal.user_id == "header-user"

    def test_redirecting_session_falls_back_to_headers(self):
        session = MagicMock()
        session.get.return_value = json_response(301)
        headers = dict(principal_headers("header-user"), Cookie="c=1")

        principal = resolve_principal("http://portal.example.org", headers, session=session)
        assert principal.user_id == "header-user"

    def test_without_base_url_only_headers_are_read(self):
        session = MagicMock()
        headers = dict(principal_headers("header-user"), Cookie="c=1")

        principal = resolve_principal(None, headers, session=session)

        assert principal.user_id == "header-user"
        session.get.assert_not_called()

    def test_session_principal_borrows_header_token(self):
        entry = dict(SESSION_ENTRY, access_token=None)
        session = MagicMock()
        session.get.return_value = json_response(200, [entry])
        headers = {"Cookie": "c=1", "X-MS-TOKEN-AAD-ACCESS-TOKEN": "header-token"}

        principal = resolve_principal("https://portal.example.org", headers, session=session)
        assert principal.access_token == "header-token"

    def test_require_principal_without_identity(self):
        with pytest.raises(AuthenticationError):
            require_principal("https://portal.example.org", {})

    def test_to_user(self):
        principal = decode_header_principal(principal_headers("abc123", name="ana@x.com"))
        assert principal.to_user() == {
            "userId": "abc123",
            "userDetails": "ana@x.com",
            "identityProvider": "aad",
            "name": "Ana Lopez",
            "email": "ana@x.com",
        }
