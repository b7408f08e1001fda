"""Microsoft Graph helper utilities."""
from __future__ import annotations

from typing import Any, Dict, List, Optional

import msal
import requests

from .config import ConfigurationError


GRAPH_SCOPE = ["https://graph.microsoft.com/.default"]
GRAPH_BASE_URL = "https://graph.microsoft.com/v1.0"
AUTHORITY_BASE_URL = "https://login.microsoftonline.com"
REQUEST_TIMEOUT = 30

PROFILE_SELECT = (
    "id,displayName,givenName,surname,mail,userPrincipalName,jobTitle,department,"
    "officeLocation,businessPhones,mobilePhone,streetAddress,city,state,postalCode"
)


class GraphClientError(RuntimeError):
    """Base exception for Microsoft Graph operations."""


class GraphError(GraphClientError):
    """Raised when Azure AD or Microsoft Graph returns a non-success response."""

    def __init__(self, status_code: int, error: str, description: str) -> None:
        super().__init__(f"{status_code}: {error} - {description}")
        self.status_code = status_code
        self.error = error
        self.description = description


class GraphTokenError(GraphError):
    """Raised when the token endpoint does not hand back an access token."""


class GraphTransportError(GraphClientError):
    """Raised when Azure AD or Microsoft Graph cannot be reached."""


class ClientCredentialTokenProvider:
    """Acquire app-only Graph tokens with the OAuth2 client-credentials grant.

    Every call builds a fresh MSAL application, so no token outlives the call
    that requested it.
    """

    def __init__(
        self,
        tenant_id: Optional[str],
        client_id: Optional[str],
        client_secret: Optional[str],
        label: str = "Microsoft Graph",
    ) -> None:
        self.tenant_id = tenant_id
        self.client_id = client_id
        self.client_secret = client_secret
        self.label = label

    @property
    def has_credentials(self) -> bool:
        return bool(self.tenant_id and self.client_id and self.client_secret)

    @property
    def authority(self) -> str:
        return f"{AUTHORITY_BASE_URL}/{self.tenant_id}"

    def get_token(self) -> str:
        if not self.has_credentials:
            raise ConfigurationError(
                f"Missing {self.label} client credentials (tenant_id/client_id/client_secret).",
                details={
                    "tenant_id": bool(self.tenant_id),
                    "client_id": bool(self.client_id),
                    "client_secret": bool(self.client_secret),
                },
            )

        try:
            app = msal.ConfidentialClientApplication(
                client_id=self.client_id,
                client_credential=self.client_secret,
                authority=self.authority,
            )
            result = app.acquire_token_for_client(scopes=GRAPH_SCOPE)
        except requests.RequestException as exc:
            raise GraphTransportError(f"Unable to reach the {self.label} token endpoint: {exc}") from exc
        except ValueError as exc:
            # MSAL raises ValueError when authority discovery fails.
            raise GraphTokenError(0, "authority_error", str(exc)) from exc

        if not result or "access_token" not in result:
            result = result or {}
            raise GraphTokenError(
                status_code=0,
                error=result.get("error", "token_error"),
                description=result.get("error_description", f"Unable to acquire {self.label} token."),
            )
        return str(result["access_token"])


class GraphClient:
    """Lightweight Microsoft Graph client.

    Requests are authorised either with a token provider (app-only calls) or
    with a delegated access token handed over by the caller.
    """

    def __init__(
        self,
        token_provider: Optional[ClientCredentialTokenProvider] = None,
        access_token: Optional[str] = None,
        session: Optional[requests.Session] = None,
    ) -> None:
        if token_provider is None and not access_token:
            raise ValueError("GraphClient requires a token provider or an access token.")
        self._token_provider = token_provider
        self._access_token = access_token
        self._session = session or requests.Session()

    # ------------------------------------------------------------------ #
    # Token handling / HTTP helpers                                      #
    # ------------------------------------------------------------------ #
    def _acquire_token(self) -> str:
        if self._access_token:
            return self._access_token
        if self._token_provider is None:
            raise ValueError("GraphClient requires a token provider or an access token.")
        return self._token_provider.get_token()

    def _request(self, method: str, path: str, **kwargs: Any) -> Dict[str, Any]:
        url = GRAPH_BASE_URL + path
        headers = kwargs.pop("headers", {}) or {}
        headers.setdefault("Authorization", f"Bearer {self._acquire_token()}")
        headers.setdefault("Accept", "application/json")
        if "json" in kwargs:
            headers.setdefault("Content-Type", "application/json")

        try:
            response = self._session.request(
                method,
                url,
                timeout=REQUEST_TIMEOUT,
                headers=headers,
                **kwargs,
            )
        except requests.RequestException as exc:
            raise GraphTransportError(f"{method} {path} failed: {exc}") from exc

        if response.status_code == 204:
            return {}

        if response.status_code >= 400:
            try:
                payload = response.json()
                error = payload.get("error", {})
                code = error.get("code", "GraphError")
                message = error.get("message", response.text)
            except (ValueError, AttributeError):
                code = "GraphError"
                message = response.text or "Unknown Graph error."
            raise GraphError(response.status_code, code, message)

        try:
            return response.json()
        except ValueError as exc:
            raise GraphError(response.status_code, "InvalidResponse", "Graph returned a non-JSON body.") from exc

    # ------------------------------------------------------------------ #
    # Directory helpers                                                  #
    # ------------------------------------------------------------------ #
    def get_me(self, select: str = PROFILE_SELECT) -> Dict[str, Any]:
        return self._request("GET", "/me", params={"$select": select})

    def list_verified_domains(self) -> List[Dict[str, Any]]:
        result = self._request("GET", "/organization", params={"$select": "verifiedDomains"})
        organizations = result.get("value") or []
        if not organizations:
            return []
        return list(organizations[0].get("verifiedDomains") or [])

    def create_user(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/users", json=payload)

    def create_invitation(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        return self._request("POST", "/invitations", json=payload)


__all__ = [
    "ClientCredentialTokenProvider",
    "GraphClient",
    "GraphClientError",
    "GraphError",
    "GraphTokenError",
    "GraphTransportError",
    "GRAPH_BASE_URL",
    "PROFILE_SELECT",
]
