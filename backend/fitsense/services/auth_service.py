# Overview: Live accounts: password hashing, account creation, member signup and login.

"""
Authentication Service

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor 12, BCRYPT_ROUNDS overrides)
- Minimum 8 characters with upper, lower, digit and special character
- Session tokens managed separately (see session_service.py)

Signup also gives the member a registry record. That step is best-effort:
the account is already committed and a registry failure is only logged.
"""

import bcrypt
import re

from flask import current_app

from ..extensions import db
from ..models import User
from ..models.accounts import ROLE_MEMBER, VALID_ROLES
from ..validation import ConflictError, ValidationError, normalize_email, normalize_phone
from fitsense.time_utils import utcnow
from . import notification_service, registry_service


class PasswordValidationError(ValidationError):
    """Raised when password doesn't meet strength requirements."""


def validate_password_strength(password: str) -> None:
    if not password or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")
    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")
    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")
    if not re.search(r"[!@#$%^&*(),.'\":{}|<>]", password):
        raise PasswordValidationError("Password must contain at least one special character")


def hash_password(password: str) -> str:
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    hashed = bcrypt.hashpw(password.encode('utf-8'), bcrypt.gensalt(rounds=rounds))
    return hashed.decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except (ValueError, TypeError):
        return False


def create_account(
    *,
    name: str,
    email: str | None,
    phone: str | None,
    password: str,
    role: str = ROLE_MEMBER,
    is_super_admin: bool = False,
) -> User:
    """
    Create a live account.

    Raises:
        ValidationError: missing name, no email and no phone, weak password
        ConflictError: email or phone already registered
    """
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required")
    if role not in VALID_ROLES:
        raise ValidationError(f"Invalid role: {role}")
    email = normalize_email(email)
    phone = normalize_phone(phone)
    if not email and not phone:
        raise ValidationError("email or phone is required")

    if email and db.session.query(User.id).filter(db.func.lower(User.email) == email).first():
        raise ConflictError("Email is already registered")
    if phone and db.session.query(User.id).filter(User.phone == phone).first():
        raise ConflictError("Phone is already registered")

    user = User(
        name=name,
        email=email,
        phone=phone,
        password_hash=hash_password(password),
        role=role,
        is_super_admin=is_super_admin,
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def signup_member(*, name: str, email: str | None, phone: str | None, password: str) -> tuple[User, object]:
    """
    Self-service signup.

    Returns (user, member_record); member_record is None if linking failed.
    """
    user = create_account(name=name, email=email, phone=phone, password=password, role=ROLE_MEMBER)

    record = None
    try:
        record = registry_service.link_account_to_registry(user)
        db.session.commit()
    except Exception:
        db.session.rollback()
        record = None
        current_app.logger.exception("Failed to link account %s to the member registry", user.id)

    notification_service.notify_user(
        user.id,
        "Welcome",
        f"Welcome to the gym, {user.name}!",
        notification_service.TYPE_WELCOME,
    )
    return user, record


def authenticate(identifier: str, password: str) -> User | None:
    """
    Look up an active account by email or phone and check the password.

    Updates last_login_at on success.
    """
    identifier = (identifier or "").strip()
    if not identifier or not password:
        return None

    user = db.session.query(User).filter(
        db.or_(db.func.lower(User.email) == identifier.lower(), User.phone == normalize_phone(identifier)),
        User.is_active.is_(True),
    ).first()
    if not user or not verify_password(password, user.password_hash):
        return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user
