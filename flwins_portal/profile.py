"""Merge App Service auth claims with live Microsoft Graph data."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from .auth import Principal
from .graph_client import GraphClient, GraphClientError
from .models import Profile


logger = logging.getLogger(__name__)

_XMLSOAP = "http://schemas.xmlsoap.org/ws/2005/05/identity/claims"
_MS_IDENTITY = "http://schemas.microsoft.com/identity/claims"

# Recognised claim types per profile field, checked in order. Identity
# providers and token versions spell the same claim differently.
CLAIM_ALIASES: Dict[str, Tuple[str, ...]] = {
    "id": ("oid", f"{_MS_IDENTITY}/objectidentifier"),
    "displayName": ("name", f"{_XMLSOAP}/name"),
    "firstName": ("given_name", f"{_XMLSOAP}/givenname"),
    "lastName": ("family_name", f"{_XMLSOAP}/surname"),
    "email": (
        "email",
        "emails",
        f"{_XMLSOAP}/emailaddress",
        "preferred_username",
        "upn",
        f"{_XMLSOAP}/upn",
    ),
    "userPrincipalName": ("upn", f"{_XMLSOAP}/upn"),
    "jobTitle": ("jobTitle", "job_title", "extension_JobTitle"),
    "department": ("department", "extension_Department"),
    "officeLocation": ("officeLocation", "office_location"),
    "workPhone": ("businessPhone", "extension_WorkPhone"),
    "phone": ("phone_number", "mobilePhone", f"{_XMLSOAP}/mobilephone"),
    "address": ("street_address", "streetAddress", f"{_XMLSOAP}/streetaddress"),
    "city": ("city", f"{_XMLSOAP}/locality"),
    "state": ("state", f"{_XMLSOAP}/stateorprovince"),
    "zipCode": ("postal_code", "postalCode", f"{_XMLSOAP}/postalcode"),
}


@dataclass
class ProfileResult:
    profile: Profile
    auth_provider: Optional[str]
    claims: List[Dict[str, str]]
    graph: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "profile": self.profile.to_dict(),
            "authProvider": self.auth_provider,
            "claims": self.claims,
            "graph": self.graph,
        }


def profile_from_claims(
    principal: Principal,
    aliases: Optional[Dict[str, Tuple[str, ...]]] = None,
) -> Profile:
    """Build a profile from claim values, first recognised alias wins."""

    profile = Profile()
    for field_name, claim_types in (aliases or CLAIM_ALIASES).items():
        value = principal.claim(*claim_types)
        if value:
            setattr(profile, field_name, value)
    return profile


def graph_fields(me: Dict[str, Any]) -> Dict[str, Any]:
    """Map a Graph ``/me`` payload onto profile field names."""

    phones = me.get("businessPhones") or []
    return {
        "id": me.get("id"),
        "displayName": me.get("displayName"),
        "firstName": me.get("givenName"),
        "lastName": me.get("surname"),
        "email": me.get("mail") or me.get("userPrincipalName"),
        "userPrincipalName": me.get("userPrincipalName"),
        "jobTitle": me.get("jobTitle"),
        "department": me.get("department"),
        "officeLocation": me.get("officeLocation"),
        "workPhone": phones[0] if phones else None,
        "phone": me.get("mobilePhone"),
        "address": me.get("streetAddress"),
        "city": me.get("city"),
        "state": me.get("state"),
        "zipCode": me.get("postalCode"),
    }


def _delegated_graph_client(access_token: str) -> GraphClient:
    return GraphClient(access_token=access_token)


def aggregate_profile(
    principal: Principal,
    graph_factory: Callable[[str], GraphClient] = _delegated_graph_client,
) -> ProfileResult:
    """Claims first, then Graph ``/me`` on top when a delegated token is available."""

    profile = profile_from_claims(principal)
    graph_payload: Optional[Dict[str, Any]] = None

    if principal.access_token:
        try:
            graph_payload = graph_factory(principal.access_token).get_me()
        except GraphClientError as exc:
            logger.warning(
                "Graph profile lookup failed for %s, using claims only: %s",
                principal.user_id,
                exc,
            )
        else:
            profile.overlay(graph_fields(graph_payload))

    return ProfileResult(
        profile=profile,
        auth_provider=principal.identity_provider,
        claims=principal.claims_payload(),
        graph=graph_payload,
    )


__all__ = [
    "CLAIM_ALIASES",
    "ProfileResult",
    "aggregate_profile",
    "graph_fields",
    "profile_from_claims",
]
