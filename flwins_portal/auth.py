"""Resolve the signed-in user from the App Service authentication proxy.

The platform session endpoint (``/.auth/me``) is the authority for who is
signed in. The ``X-MS-CLIENT-PRINCIPAL`` headers injected by the proxy are only
consulted when that endpoint is unreachable or reports nothing.
"""
from __future__ import annotations

import base64
import binascii
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

import requests


logger = logging.getLogger(__name__)

SESSION_ENDPOINT_PATH = "/.auth/me"
LOGIN_PATH = "/.auth/login/aad"
LOGOUT_PATH = "/.auth/logout"
REQUEST_TIMEOUT = 30

PRINCIPAL_HEADER = "X-MS-CLIENT-PRINCIPAL"
PRINCIPAL_ID_HEADER = "X-MS-CLIENT-PRINCIPAL-ID"
PRINCIPAL_NAME_HEADER = "X-MS-CLIENT-PRINCIPAL-NAME"
PRINCIPAL_IDP_HEADER = "X-MS-CLIENT-PRINCIPAL-IDP"
ACCESS_TOKEN_HEADER = "X-MS-TOKEN-AAD-ACCESS-TOKEN"
ZUMO_HEADER = "X-ZUMO-AUTH"

_USER_ID_CLAIMS = (
    "http://schemas.microsoft.com/identity/claims/objectidentifier",
    "oid",
    "sub",
    "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/nameidentifier",
)


class AuthenticationError(RuntimeError):
    """Raised when the request carries no valid signed-in principal."""


class PrincipalDecodeError(RuntimeError):
    """Raised when the principal header cannot be decoded."""


class SessionEndpointUnavailable(requests.RequestException):
    """Raised when the session endpoint answers with a redirect instead of an identity."""


@dataclass
class Principal:
    """The authenticated identity handed over by the platform's auth proxy."""

    user_id: str
    identity_provider: Optional[str] = None
    user_details: Optional[str] = None
    claims: List[Tuple[str, str]] = field(default_factory=list)
    access_token: Optional[str] = None
    source: str = "session"

    def claim(self, *claim_types: str) -> Optional[str]:
        """Return the first non-empty value among the given claim types, in order."""

        return _claim_value(self.claims, claim_types)

    def claims_payload(self) -> List[Dict[str, str]]:
        return [{"typ": typ, "val": val} for typ, val in self.claims]

    def to_user(self) -> Dict[str, Any]:
        return {
            "userId": self.user_id,
            "userDetails": self.user_details,
            "identityProvider": self.identity_provider,
            "name": self.claim("name", "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/name"),
            "email": self.claim(
                "email",
                "preferred_username",
                "http://schemas.xmlsoap.org/ws/2005/05/identity/claims/emailaddress",
            ),
        }


def _normalize_claims(raw: Iterable[Any]) -> List[Tuple[str, str]]:
    claims: List[Tuple[str, str]] = []
    for entry in raw or []:
        if not isinstance(entry, Mapping):
            continue
        typ = str(entry.get("typ") or "").strip()
        val = entry.get("val")
        if not typ or val is None:
            continue
        claims.append((typ, str(val).strip()))
    return claims


def _principal_from_session_entry(entry: Mapping[str, Any]) -> Optional[Principal]:
    claims = _normalize_claims(entry.get("user_claims") or [])
    # user_id on the session entry is the sign-in name; the object id claim is the stable key.
    user_id = _claim_value(claims, _USER_ID_CLAIMS) or str(entry.get("user_id") or "").strip()
    if not user_id:
        return None
    return Principal(
        user_id=user_id,
        identity_provider=entry.get("provider_name"),
        user_details=entry.get("user_id"),
        claims=claims,
        access_token=entry.get("access_token") or None,
        source="session",
    )


def _claim_value(claims: List[Tuple[str, str]], claim_types: Iterable[str]) -> Optional[str]:
    for claim_type in claim_types:
        for typ, val in claims:
            if typ == claim_type and val:
                return val
    return None


def fetch_session_principal(
    base_url: str,
    cookies: Optional[str],
    zumo_token: Optional[str] = None,
    session: Optional[Any] = None,
) -> Optional[Principal]:
    """Ask the platform session endpoint who owns the caller's cookies.

    Returns ``None`` when the endpoint reports no identity. Network failures
    and redirects propagate as ``requests.RequestException``.
    """

    if not cookies and not zumo_token:
        return None

    headers = {"Accept": "application/json"}
    if cookies:
        headers["Cookie"] = cookies
    if zumo_token:
        headers[ZUMO_HEADER] = zumo_token

    http = session or requests
    response = http.get(
        base_url.rstrip("/") + SESSION_ENDPOINT_PATH,
        headers=headers,
        timeout=REQUEST_TIMEOUT,
        allow_redirects=False,
    )
    if 300 <= response.status_code < 400:
        # HTTPS-only sites redirect plain HTTP; that says nothing about the caller.
        raise SessionEndpointUnavailable(
            f"Session endpoint redirected to {response.headers.get('Location') or 'an unknown location'}."
        )
    if response.status_code != 200:
        logger.info("Session endpoint returned status %s; no principal.", response.status_code)
        return None

    try:
        payload = response.json()
    except ValueError:
        logger.warning("Session endpoint returned a non-JSON body.")
        return None

    entries = payload if isinstance(payload, list) else [payload]
    for entry in entries:
        if isinstance(entry, Mapping):
            principal = _principal_from_session_entry(entry)
            if principal:
                return principal
    return None


def decode_header_principal(headers: Mapping[str, str]) -> Optional[Principal]:
    """Decode the ``X-MS-CLIENT-PRINCIPAL`` header family into a principal."""

    encoded = headers.get(PRINCIPAL_HEADER)
    if not encoded:
        return None

    try:
        padded = encoded + "=" * (-len(encoded) % 4)
        decoded = json.loads(base64.b64decode(padded).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, ValueError) as exc:
        raise PrincipalDecodeError(f"Failed to decode client principal: {exc}") from exc
    if not isinstance(decoded, Mapping):
        raise PrincipalDecodeError("Client principal header is not a JSON object.")

    claims = _normalize_claims(decoded.get("claims") or [])
    user_id = headers.get(PRINCIPAL_ID_HEADER) or decoded.get("userId") or _claim_value(claims, _USER_ID_CLAIMS)
    if not user_id:
        return None
    return Principal(
        user_id=str(user_id).strip(),
        identity_provider=headers.get(PRINCIPAL_IDP_HEADER) or decoded.get("auth_typ") or decoded.get("identityProvider"),
        user_details=headers.get(PRINCIPAL_NAME_HEADER) or decoded.get("userDetails"),
        claims=claims,
        access_token=headers.get(ACCESS_TOKEN_HEADER) or None,
        source="header",
    )


def resolve_principal(
    base_url: Optional[str],
    headers: Mapping[str, str],
    session: Optional[Any] = None,
) -> Optional[Principal]:
    """Resolve the caller's principal, preferring the platform session endpoint.

    ``base_url`` must come from configuration. Without one the session endpoint
    is skipped and only the principal headers are read.
    """

    principal = None
    if base_url:
        try:
            principal = fetch_session_principal(
                base_url,
                headers.get("Cookie"),
                headers.get(ZUMO_HEADER),
                session=session,
            )
        except requests.RequestException as exc:
            logger.warning("Session endpoint unreachable, falling back to principal headers: %s", exc)
            principal = None

    if principal is not None:
        if not principal.access_token:
            principal.access_token = headers.get(ACCESS_TOKEN_HEADER) or None
        return principal
    return decode_header_principal(headers)


def require_principal(
    base_url: Optional[str],
    headers: Mapping[str, str],
    session: Optional[Any] = None,
) -> Principal:
    principal = resolve_principal(base_url, headers, session=session)
    if principal is None:
        raise AuthenticationError("User not authenticated")
    return principal


__all__ = [
    "AuthenticationError",
    "LOGIN_PATH",
    "LOGOUT_PATH",
    "Principal",
    "PrincipalDecodeError",
    "SessionEndpointUnavailable",
    "decode_header_principal",
    "fetch_session_principal",
    "require_principal",
    "resolve_principal",
]
