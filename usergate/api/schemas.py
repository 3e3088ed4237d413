from __future__ import annotations

import re
import unicodedata
from typing import Any, Iterable, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from usergate.service.errors import ValidationError
from usergate.storage.models import ROLES

NAME_MIN_LENGTH = 3
NAME_MAX_LENGTH = 20
PASSWORD_MIN_LENGTH = 8
PASSWORD_MAX_LENGTH = 128
AGE_MIN = 18
AGE_MAX = 90

_VALUE_ERROR_PREFIX = "Value error, "

ModelT = TypeVar("ModelT", bound=BaseModel)

PASSWORD_RULES_MESSAGE = (
    "Password must include at least one uppercase letter, one lowercase letter, "
    "one number, and one special character"
)

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
_LOWER = re.compile(r"[a-z]")
_UPPER = re.compile(r"[A-Z]")
_DIGIT = re.compile(r"[0-9]")
# Any printable character that is not a letter, digit or whitespace
_SYMBOL = re.compile(r"[^\w\s]|_")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and drop zero-width characters used for spoofing."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    cleaned = "".join(c for c in value if c not in zero_width)
    return unicodedata.normalize("NFKC", cleaned)


def _require_text(value: Any, *, missing: str, empty: str, invalid: str) -> str:
    if value is None:
        raise ValueError(missing)
    if not isinstance(value, str):
        raise ValueError(invalid)
    value = value.strip()
    if not value:
        raise ValueError(empty)
    return value


def validate_name(value: Any) -> str:
    name = _require_text(
        value,
        missing="Please provide a name",
        empty="Name field is not allowed to be empty",
        invalid="Name must be a string",
    )
    if len(name) < NAME_MIN_LENGTH:
        raise ValueError("Name must be at least 3 characters long")
    if len(name) > NAME_MAX_LENGTH:
        raise ValueError("Name must not exceed 20 characters")
    return name.upper()


def validate_email(value: Any) -> str:
    raw = _require_text(
        value,
        missing="Please provide an email address",
        empty="Email field is not allowed to be empty",
        invalid="Invalid email address",
    )
    normalized = _normalize_unicode(raw.lower())
    if len(normalized) > 254:
        raise ValueError("Invalid email address")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("Invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("Invalid email address")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("Invalid email address")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("Invalid email address")
    return normalized


def validate_password_strength(value: Any) -> str:
    """Password policy applied before anything is hashed."""
    if value is None:
        raise ValueError("Please provide a password")
    if not isinstance(value, str):
        raise ValueError("Password must be a string")
    if not value:
        raise ValueError("Password field is not allowed to be empty")
    if len(value) < PASSWORD_MIN_LENGTH:
        raise ValueError("Password must be at least 8 characters long")
    if len(value) > PASSWORD_MAX_LENGTH:
        raise ValueError("Password must not exceed 128 characters")
    if not all(p.search(value) for p in (_LOWER, _UPPER, _DIGIT, _SYMBOL)):
        raise ValueError(PASSWORD_RULES_MESSAGE)
    return value


def validate_role(value: Any) -> str:
    role = _require_text(
        value,
        missing="Please provide a role",
        empty="Role field is not allowed to be empty",
        invalid="Role not allowed",
    )
    if role not in ROLES:
        raise ValueError("Role not allowed")
    return role


def validate_age(value: Any) -> int:
    # bool is an int subclass and strings are never coerced
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError("Please provide a valid age")
    if value <= 0:
        raise ValueError("Only positive numbers are allowed")
    if value < AGE_MIN:
        raise ValueError("Users age cannot be less than 18years")
    if value > AGE_MAX:
        raise ValueError("Users age cannot exceed 90years")
    return value


class RegisterRequest(BaseModel):
    """Body for self-registration and admin-created users."""

    name: Any = Field(default=None, validate_default=True)
    email: Any = Field(default=None, validate_default=True)
    password: Any = Field(default=None, validate_default=True)
    role: Any = Field(default=None, validate_default=True)

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> str:
        return validate_name(value)

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> str:
        return validate_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_password(cls, value: Any) -> str:
        return validate_password_strength(value)

    @field_validator("role", mode="before")
    @classmethod
    def _validate_role(cls, value: Any) -> str:
        return validate_role(value)


class CreateUserRequest(RegisterRequest):
    pass


class LoginRequest(BaseModel):
    email: Any = Field(default=None, validate_default=True)
    password: Any = Field(default=None, validate_default=True)

    @field_validator("email", mode="before")
    @classmethod
    def _validate_login_email(cls, value: Any) -> str:
        return validate_email(value)

    @field_validator("password", mode="before")
    @classmethod
    def _validate_login_password(cls, value: Any) -> str:
        if value is None:
            raise ValueError("Please provide a password")
        if not isinstance(value, str):
            raise ValueError("Password must be a string")
        if not value:
            raise ValueError("Password field is not allowed to be empty")
        return value


class UpdateUserRequest(BaseModel):
    """Partial update; only name, email and age are honoured."""

    model_config = ConfigDict(extra="ignore")

    name: Optional[str] = None
    email: Optional[str] = None
    age: Optional[int] = None

    @field_validator("name", mode="before")
    @classmethod
    def _validate_name(cls, value: Any) -> Optional[str]:
        return None if value is None else validate_name(value)

    @field_validator("email", mode="before")
    @classmethod
    def _validate_email(cls, value: Any) -> Optional[str]:
        return None if value is None else validate_email(value)

    @field_validator("age", mode="before")
    @classmethod
    def _validate_age(cls, value: Any) -> Optional[int]:
        return None if value is None else validate_age(value)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_none=True)


class UserResponse(BaseModel):
    id: str
    name: str
    email: str
    age: Optional[int] = None
    role: Literal["owner", "admin", "user"]
    created_at: str


class LoginUser(BaseModel):
    id: str
    name: str
    email: str
    role: Literal["owner", "admin", "user"]


class LoginResponse(BaseModel):
    message: str
    token: str
    user: LoginUser


class UserEnvelope(BaseModel):
    message: str
    user: UserResponse


class DeleteAllResponse(BaseModel):
    message: str
    deleted_count: int


class ErrorBody(BaseModel):
    message: str
    code: str
    errors: Optional[List[str]] = None


def error_messages(errors: Iterable[dict]) -> List[str]:
    """Flatten pydantic error dicts into the client-facing message list."""
    messages: List[str] = []
    for err in errors:
        msg = str(err.get("msg", "")).strip()
        if msg.startswith(_VALUE_ERROR_PREFIX):
            msg = msg[len(_VALUE_ERROR_PREFIX):]
        if msg and msg not in messages:
            messages.append(msg)
    return messages


def parse_body(model: Type[ModelT], payload: Any) -> ModelT:
    """Validate a decoded JSON body against ``model``.

    Used by gated routes, which read the body only after the gate has run.
    A missing body validates as an empty object.
    """
    if payload is None:
        payload = {}
    try:
        return model.model_validate(payload)
    except PydanticValidationError as exc:
        messages = error_messages(exc.errors())
        raise ValidationError(messages[0] if messages else None, errors=messages) from exc


def parse_update(payload: Any) -> UpdateUserRequest:
    return parse_body(UpdateUserRequest, payload)
