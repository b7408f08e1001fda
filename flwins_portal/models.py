"""Data models for intake submissions and user profiles."""
from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Dict, Optional


# Maximum stored length per intake field, mirrors the IntakeForms column sizes.
INTAKE_FIELD_LIMITS: Dict[str, int] = {
    "email": 256,
    "firstName": 150,
    "lastName": 150,
    "department": 150,
    "jobTitle": 150,
    "officeLocation": 150,
    "workPhone": 50,
    "address": 500,
    "city": 150,
    "state": 50,
    "zipCode": 20,
    "phone": 50,
}
USER_ID_MAX_LENGTH = 255
DISPLAY_NAME_MAX_LENGTH = 256

_ATTRIBUTE_NAMES: Dict[str, str] = {
    "email": "email",
    "firstName": "first_name",
    "lastName": "last_name",
    "department": "department",
    "jobTitle": "job_title",
    "officeLocation": "office_location",
    "workPhone": "work_phone",
    "address": "address",
    "city": "city",
    "state": "state",
    "zipCode": "zip_code",
    "phone": "phone",
}


class IntakeValidationError(ValueError):
    """Raised when an intake submission is missing or has malformed required input."""


def clean_text(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    """Trim a free-text value, truncate it, and map empty input to ``None``."""

    if value is None:
        return None
    if not isinstance(value, str):
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            value = str(value)
        else:
            return None
    stripped = value.strip()
    if max_length is not None:
        stripped = stripped[:max_length].strip()
    return stripped or None


def is_valid_email(value: Optional[str]) -> bool:
    if not value or "@" not in value:
        return False
    local, _, domain = value.rpartition("@")
    return bool(local and domain)


@dataclass
class IntakeRecord:
    """One intake form row, keyed by the signed-in user's id."""

    user_id: str
    email: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    department: Optional[str] = None
    job_title: Optional[str] = None
    office_location: Optional[str] = None
    work_phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    phone: Optional[str] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_submission(
        cls,
        user_id: str,
        payload: Dict[str, Any],
        fallback_email: Optional[str] = None,
    ) -> "IntakeRecord":
        """Sanitise a submitted payload into a record.

        The submitted email wins; ``fallback_email`` (from the profile) is used
        when the payload carries none.
        """

        cleaned_user_id = clean_text(user_id, USER_ID_MAX_LENGTH)
        if not cleaned_user_id:
            raise IntakeValidationError("A user id is required.")

        values: Dict[str, Optional[str]] = {}
        for key, limit in INTAKE_FIELD_LIMITS.items():
            values[_ATTRIBUTE_NAMES[key]] = clean_text(payload.get(key), limit)

        email = values.pop("email") or clean_text(fallback_email, INTAKE_FIELD_LIMITS["email"])
        if not email:
            raise IntakeValidationError("Email is required.")
        if not is_valid_email(email):
            raise IntakeValidationError("Email address is not valid.")

        return cls(user_id=cleaned_user_id, email=email, **values)

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "IntakeRecord":
        raw_id = row.get("Id")
        return cls(
            id=str(raw_id) if raw_id is not None else None,
            user_id=row["UserId"],
            email=row["Email"],
            first_name=row.get("FirstName"),
            last_name=row.get("LastName"),
            department=row.get("Department"),
            job_title=row.get("JobTitle"),
            office_location=row.get("OfficeLocation"),
            work_phone=row.get("WorkPhone"),
            address=row.get("Address"),
            city=row.get("City"),
            state=row.get("State"),
            zip_code=row.get("ZipCode"),
            phone=row.get("Phone"),
            created_at=row.get("CreatedAt"),
            updated_at=row.get("UpdatedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"id": self.id, "userId": self.user_id}
        for key, attribute in _ATTRIBUTE_NAMES.items():
            payload[key] = getattr(self, attribute)
        payload["createdAt"] = self.created_at.isoformat() if self.created_at else None
        payload["updatedAt"] = self.updated_at.isoformat() if self.updated_at else None
        return payload

    @property
    def display_name(self) -> str:
        return " ".join(part for part in (self.first_name, self.last_name) if part)


@dataclass
class Profile:
    """Aggregated view of the signed-in user, built per request and never stored."""

    id: Optional[str] = None
    displayName: Optional[str] = None
    firstName: Optional[str] = None
    lastName: Optional[str] = None
    email: Optional[str] = None
    userPrincipalName: Optional[str] = None
    jobTitle: Optional[str] = None
    department: Optional[str] = None
    officeLocation: Optional[str] = None
    workPhone: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zipCode: Optional[str] = None

    @classmethod
    def field_names(cls) -> tuple[str, ...]:
        return tuple(item.name for item in fields(cls))

    def overlay(self, values: Dict[str, Any]) -> None:
        """Apply non-empty values on top of the current ones."""

        for name in self.field_names():
            cleaned = clean_text(values.get(name))
            if cleaned:
                setattr(self, name, cleaned)

    def populated(self) -> Dict[str, str]:
        return {name: value for name, value in self.to_dict().items() if value}

    def to_dict(self) -> Dict[str, Optional[str]]:
        return {name: getattr(self, name) for name in self.field_names()}


@dataclass
class InvitationResult:
    """Outcome of a cross-tenant invitation."""

    email: str
    deep_link: str
    login_link: str
    invited_user_id: Optional[str] = None
    invited_user_principal_name: Optional[str] = None
    invite_redeem_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "invitedUserId": self.invited_user_id,
            "invitedUserPrincipalName": self.invited_user_principal_name,
            "inviteRedeemUrl": self.invite_redeem_url,
            "deepLink": self.deep_link,
            "loginLink": self.login_link,
            "email": self.email,
        }


@dataclass
class CreatedAccount:
    """Outcome of a same-tenant user creation."""

    created_user: Dict[str, Any] = field(default_factory=dict)
    initial_password: str = ""

    @property
    def user_principal_name(self) -> Optional[str]:
        return self.created_user.get("userPrincipalName")


__all__ = [
    "CreatedAccount",
    "DISPLAY_NAME_MAX_LENGTH",
    "INTAKE_FIELD_LIMITS",
    "IntakeRecord",
    "IntakeValidationError",
    "InvitationResult",
    "Profile",
    "clean_text",
    "is_valid_email",
]
