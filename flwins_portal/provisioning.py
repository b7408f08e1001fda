"""Create or invite directory accounts for intake submissions."""
from __future__ import annotations

import logging
import re
import secrets
import threading
import unicodedata
from typing import Any, Callable, Dict, Iterable, List, Optional
from urllib.parse import quote

from .auth import LOGIN_PATH
from .config import ConfigurationError, GraphConfig, InvitationConfig
from .graph_client import ClientCredentialTokenProvider, GraphClient
from .models import (
    CreatedAccount,
    IntakeRecord,
    IntakeValidationError,
    InvitationResult,
    is_valid_email,
)


logger = logging.getLogger(__name__)

PASSWORD_UPPER = "ABCDEFGHJKLMNPQRSTUVWXYZ"
PASSWORD_LOWER = "abcdefghijkmnopqrstuvwxyz"
PASSWORD_DIGITS = "23456789"
PASSWORD_SPECIAL = "!@#$%^&*()-_=+[]{}"
PASSWORD_CLASS_COUNT = 4
PASSWORD_MAX_EXTRA = 4

MAIL_NICKNAME_MAX_LENGTH = 64
DEFAULT_DISPLAY_NAME = "New User"
DEFAULT_INVITE_DISPLAY_NAME = "FLWINS User"

_NICKNAME_FORBIDDEN = re.compile(r"[^A-Za-z0-9._-]")
_US_STATE_CODE = re.compile(r"^[A-Za-z]{2}$")
_random = secrets.SystemRandom()


class ProvisioningError(RuntimeError):
    """Raised when an account cannot be provisioned from the intake data."""


# ---------------------------------------------------------------------- #
# Naming / credential helpers                                            #
# ---------------------------------------------------------------------- #
def sanitize_nickname(value: Optional[str], fallback: str = "user", max_length: int = MAIL_NICKNAME_MAX_LENGTH) -> str:
    normalized = unicodedata.normalize("NFKD", value or "")
    ascii_value = normalized.encode("ascii", "ignore").decode("ascii")
    cleaned = _NICKNAME_FORBIDDEN.sub("", ascii_value)
    return (cleaned or fallback)[:max_length]


def make_mail_nickname(
    first_name: Optional[str] = None,
    last_name: Optional[str] = None,
    email: Optional[str] = None,
) -> str:
    """Local part of the email when there is one, otherwise ``first.last``."""

    if email and "@" in email:
        return sanitize_nickname(email.split("@", 1)[0])
    base = ".".join(part.strip() for part in (first_name, last_name) if part and part.strip())
    return sanitize_nickname(base)


def make_display_name(
    first_name: Optional[str],
    last_name: Optional[str],
    display_name: Optional[str] = None,
    default: str = DEFAULT_DISPLAY_NAME,
) -> str:
    combined = " ".join(part.strip() for part in (first_name, last_name) if part and part.strip())
    return combined or (display_name or "").strip() or default


def generate_initial_password() -> str:
    """16 to 20 characters with at least four of each character class, shuffled."""

    characters: List[str] = []
    for charset in (PASSWORD_UPPER, PASSWORD_LOWER, PASSWORD_DIGITS, PASSWORD_SPECIAL):
        characters.extend(_random.choice(charset) for _ in range(PASSWORD_CLASS_COUNT))
    everything = PASSWORD_UPPER + PASSWORD_LOWER + PASSWORD_DIGITS + PASSWORD_SPECIAL
    characters.extend(_random.choice(everything) for _ in range(_random.randint(0, PASSWORD_MAX_EXTRA)))
    _random.shuffle(characters)
    return "".join(characters)


def pick_verified_domain(domains: Iterable[Dict[str, Any]]) -> Optional[str]:
    """Prefer the default domain, then the initial one, then any verified one."""

    candidates = [domain for domain in domains or [] if domain.get("name")]
    for predicate in (
        lambda domain: domain.get("isDefault"),
        lambda domain: domain.get("isInitial"),
        lambda domain: domain.get("isVerified", True),
    ):
        for domain in candidates:
            if predicate(domain):
                return str(domain["name"])
    return None


class VerifiedDomainCache:
    """Single-entry memo for the tenant's verified domain.

    The value never expires; ``invalidate`` clears it.
    """

    def __init__(self) -> None:
        self._value: Optional[str] = None
        self._lock = threading.Lock()

    @property
    def value(self) -> Optional[str]:
        return self._value

    def get_or_load(self, loader: Callable[[], str]) -> str:
        cached = self._value
        if cached:
            return cached
        loaded = loader()
        with self._lock:
            if self._value is None:
                self._value = loaded
            return self._value

    def invalidate(self) -> None:
        with self._lock:
            self._value = None


# ---------------------------------------------------------------------- #
# Same-tenant creation                                                   #
# ---------------------------------------------------------------------- #
class AccountProvisioner:
    """Create member users in the primary tenant."""

    def __init__(
        self,
        graph: GraphClient,
        upn_domain: Optional[str] = None,
        domain_cache: Optional[VerifiedDomainCache] = None,
    ) -> None:
        self._graph = graph
        self._upn_domain = upn_domain
        self._domain_cache = domain_cache or VerifiedDomainCache()

    def verified_domain(self) -> str:
        def _load() -> str:
            domain = pick_verified_domain(self._graph.list_verified_domains())
            if not domain:
                raise ProvisioningError("No verified domains found in tenant.")
            return domain

        return self._domain_cache.get_or_load(_load)

    def resolve_user_principal_name(self, email: Optional[str], nickname: str) -> str:
        """``UPN_DOMAIN`` override first, then the email verbatim, then the tenant domain."""

        if self._upn_domain:
            return f"{nickname}@{self._upn_domain}"
        if email:
            return email
        return f"{nickname}@{self.verified_domain()}"

    def build_user_payload(
        self,
        intake: IntakeRecord,
        user_principal_name: str,
        mail_nickname: str,
        password: str,
        display_name: Optional[str] = None,
    ) -> Dict[str, Any]:
        email = (intake.email or "").strip()
        payload: Dict[str, Any] = {
            "accountEnabled": True,
            "displayName": make_display_name(intake.first_name, intake.last_name, display_name),
            "mailNickname": mail_nickname,
            "userPrincipalName": user_principal_name,
            "givenName": intake.first_name,
            "surname": intake.last_name,
            "jobTitle": intake.job_title,
            "department": intake.department,
            "officeLocation": intake.office_location,
            "mobilePhone": intake.phone,
            "businessPhones": [intake.work_phone] if intake.work_phone else None,
            "otherMails": [email] if email and email.lower() != user_principal_name.lower() else None,
            "streetAddress": intake.address,
            "city": intake.city,
            "state": intake.state,
            "postalCode": intake.zip_code,
            "usageLocation": "US" if intake.state and _US_STATE_CODE.match(intake.state) else None,
            "passwordProfile": {
                "forceChangePasswordNextSignIn": True,
                "password": password,
            },
        }
        # Graph rejects explicit nulls on several of these properties.
        return {key: value for key, value in payload.items() if value is not None}

    def create_user(self, intake: IntakeRecord, display_name: Optional[str] = None) -> CreatedAccount:
        email = (intake.email or "").strip()
        if not is_valid_email(email):
            raise IntakeValidationError("Creating an account requires a valid email address.")

        nickname = make_mail_nickname(intake.first_name, intake.last_name, email)
        user_principal_name = self.resolve_user_principal_name(email, nickname)
        password = generate_initial_password()
        payload = self.build_user_payload(
            intake, user_principal_name, nickname, password, display_name=display_name
        )
        created = self._graph.create_user(payload)
        logger.info("Created directory user %s for intake user %s.", user_principal_name, intake.user_id)
        return CreatedAccount(created_user=created, initial_password=password)


# ---------------------------------------------------------------------- #
# Cross-tenant invitation                                                #
# ---------------------------------------------------------------------- #
class InvitationProvisioner:
    """Invite external users into a tenant and hand back a redeemable link."""

    def __init__(
        self,
        graph: GraphClient,
        base_url: str,
        redirect_path: str,
        default_display_name: str = DEFAULT_INVITE_DISPLAY_NAME,
    ) -> None:
        if not base_url:
            raise ConfigurationError("An invitation base URL is required.")
        self._graph = graph
        self._base_url = base_url.rstrip("/")
        self._redirect_path = redirect_path if redirect_path.startswith("/") else f"/{redirect_path}"
        self._default_display_name = default_display_name

    @property
    def redirect_url(self) -> str:
        return f"{self._base_url}{self._redirect_path}"

    def login_link(self, email: str) -> str:
        return (
            f"{self._base_url}{LOGIN_PATH}"
            f"?post_login_redirect_uri={quote(self._redirect_path, safe='')}"
            f"&login_hint={quote(email, safe='')}"
        )

    def invite(self, intake: IntakeRecord, display_name: Optional[str] = None) -> InvitationResult:
        email = (intake.email or "").strip()
        if not email or "@" not in email:
            raise IntakeValidationError("An invitation requires a valid email address.")

        payload = {
            "invitedUserEmailAddress": email,
            "invitedUserDisplayName": make_display_name(
                intake.first_name, intake.last_name, display_name, default=self._default_display_name
            ),
            "sendInvitationMessage": False,
            "inviteRedirectUrl": self.redirect_url,
        }
        response = self._graph.create_invitation(payload)
        invited_user = response.get("invitedUser") or {}
        redeem_url = response.get("inviteRedeemUrl") or None
        login_link = self.login_link(email)
        logger.info("Created invitation for %s (invited user %s).", email, invited_user.get("id"))
        return InvitationResult(
            email=email,
            deep_link=redeem_url or login_link,
            login_link=login_link,
            invited_user_id=invited_user.get("id"),
            invited_user_principal_name=invited_user.get("userPrincipalName"),
            invite_redeem_url=redeem_url,
        )


# ---------------------------------------------------------------------- #
# Factories                                                              #
# ---------------------------------------------------------------------- #
def primary_token_provider(config: GraphConfig) -> ClientCredentialTokenProvider:
    return ClientCredentialTokenProvider(
        config.tenant_id, config.client_id, config.client_secret, label="Microsoft Graph"
    )


def efsmod_token_provider(config: InvitationConfig) -> ClientCredentialTokenProvider:
    return ClientCredentialTokenProvider(
        config.tenant_id, config.client_id, config.client_secret, label="EFSMOD"
    )


def build_account_provisioner(
    config: GraphConfig, domain_cache: Optional[VerifiedDomainCache] = None
) -> AccountProvisioner:
    graph = GraphClient(token_provider=primary_token_provider(config))
    return AccountProvisioner(graph, upn_domain=config.upn_domain, domain_cache=domain_cache)


def build_primary_inviter(config: GraphConfig, base_url: str, redirect_path: str) -> InvitationProvisioner:
    graph = GraphClient(token_provider=primary_token_provider(config))
    return InvitationProvisioner(graph, base_url, redirect_path)


def build_efsmod_inviter(config: InvitationConfig) -> InvitationProvisioner:
    if not config.is_configured:
        raise ConfigurationError(
            "Missing EFSMOD config (EFSMOD_TENANT_ID, EFSMOD_CLIENT_ID, EFSMOD_CLIENT_SECRET, EFSMOD_BASE_URL).",
            details={
                "EFSMOD_TENANT_ID": bool(config.tenant_id),
                "EFSMOD_CLIENT_ID": bool(config.client_id),
                "EFSMOD_CLIENT_SECRET": bool(config.client_secret),
                "EFSMOD_BASE_URL": bool(config.base_url),
            },
        )
    graph = GraphClient(token_provider=efsmod_token_provider(config))
    return InvitationProvisioner(graph, config.base_url or "", config.normalized_redirect_path)


__all__ = [
    "AccountProvisioner",
    "InvitationProvisioner",
    "ProvisioningError",
    "VerifiedDomainCache",
    "build_account_provisioner",
    "build_efsmod_inviter",
    "build_primary_inviter",
    "generate_initial_password",
    "make_display_name",
    "make_mail_nickname",
    "pick_verified_domain",
    "sanitize_nickname",
]
