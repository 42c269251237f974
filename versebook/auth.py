import os
import re
from dataclasses import dataclass
from typing import Optional

from argon2 import PasswordHasher
from argon2.exceptions import InvalidHashError, VerifyMismatchError

USERS = "users"

EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PASSWORD_MIN_LEN = 12
PASSWORD_MAX_LEN = 128
AUTH_PEPPER = os.getenv("AUTH_PEPPER", "")
ARGON2_TIME_COST = int(os.getenv("ARGON2_TIME_COST", "2"))
ARGON2_MEMORY_COST = int(os.getenv("ARGON2_MEMORY_COST", "102400"))
ARGON2_PARALLELISM = int(os.getenv("ARGON2_PARALLELISM", "8"))

PASSWORD_HASHER = PasswordHasher(
    time_cost=ARGON2_TIME_COST,
    memory_cost=ARGON2_MEMORY_COST,
    parallelism=ARGON2_PARALLELISM,
)


@dataclass(frozen=True)
class Session:
    """The authenticated caller, handed explicitly to stores and services."""

    user_id: str
    email: Optional[str] = None


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


def validate_email(email: str) -> bool:
    if not email:
        return False
    return bool(EMAIL_PATTERN.match(email))


def password_problem(password: str) -> Optional[str]:
    if len(password or "") < PASSWORD_MIN_LEN:
        return "password too short"
    if len(password) > PASSWORD_MAX_LEN:
        return "password too long"
    return None


def _pepper_password(password: str) -> str:
    if not AUTH_PEPPER:
        return password
    return f"{password}{AUTH_PEPPER}"


def hash_password(password: str) -> str:
    return PASSWORD_HASHER.hash(_pepper_password(password))


def verify_password(password: str, stored: str) -> bool:
    try:
        return PASSWORD_HASHER.verify(stored, _pepper_password(password))
    except (VerifyMismatchError, InvalidHashError):
        return False


def get_user_by_email(documents, email: str) -> Optional[dict]:
    rows = documents.query(USERS, {"email": normalize_email(email)})
    return rows[0] if rows else None


def get_user_by_id(documents, user_id: str) -> Optional[dict]:
    return documents.get(USERS, user_id)


def create_user(documents, email: str, password: str) -> dict:
    return documents.insert(
        USERS,
        {"email": normalize_email(email), "password_hash": hash_password(password)},
    )


def update_last_login(documents, user_id: str, when: str) -> None:
    documents.update(USERS, user_id, {"last_login": when})
