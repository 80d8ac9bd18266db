"""Account lifecycle: registration, sessions, password reset and email change.

Every rejection is raised as an ``AuthError`` subclass carrying the HTTP status
and a user-facing message. Credential and reset-token failures are
deliberately generic so callers cannot tell which precondition failed.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from functools import lru_cache
from typing import Callable, Optional

from config import Settings, get_settings
from email_service import EmailDeliveryError, EmailService
from encryption import DecryptionError, EmailCipher, mask_email, normalize_email
from models import User
from repository import AuthRepository, CreateUserData, UniqueViolation
from schemas import RegisterIn
from security import (
    SessionClaims,
    SessionTokenSigner,
    generate_reset_token,
    hash_password,
    hash_reset_token,
    verify_password,
)

logger = logging.getLogger(__name__)

USERNAME_RE = re.compile(r"[a-zA-Z0-9_]{3,30}")
EMAIL_RE = re.compile(r"[^\s@]+@[^\s@]+\.[^\s@]+")
MAX_PASSWORD_LENGTH = 1000
MAX_DISPLAY_NAME_LENGTH = 50

PASSWORD_POLICY_MESSAGE = (
    "Password must be at least 8 characters and include uppercase, lowercase, "
    "and a number"
)


class AuthError(Exception):
    status_code = 400
    default_message = "Request failed"

    def __init__(self, message: Optional[str] = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class ValidationError(AuthError):
    status_code = 400
    default_message = "Invalid input"


class InvalidCredentials(AuthError):
    status_code = 401
    default_message = "Invalid username or password"


class InvalidOrExpiredToken(AuthError):
    status_code = 400
    default_message = "Invalid or expired reset token"


class ConflictError(AuthError):
    status_code = 409
    default_message = "Already exists"


class NotAuthenticated(AuthError):
    status_code = 401
    default_message = "Not authenticated"


class NotFound(AuthError):
    status_code = 404
    default_message = "User not found"


def validate_password(password: object) -> Optional[str]:
    """Return the policy violation message, or None when the password is acceptable."""
    if not password or not isinstance(password, str):
        return PASSWORD_POLICY_MESSAGE
    # Bounds the bcrypt work an attacker can request per call.
    if len(password) > MAX_PASSWORD_LENGTH:
        return "Password is too long"
    if len(password) < 8:
        return PASSWORD_POLICY_MESSAGE
    if not re.search(r"[A-Z]", password):
        return PASSWORD_POLICY_MESSAGE
    if not re.search(r"[a-z]", password):
        return PASSWORD_POLICY_MESSAGE
    if not re.search(r"[0-9]", password):
        return PASSWORD_POLICY_MESSAGE
    return None


def is_valid_email(email: object) -> bool:
    return isinstance(email, str) and EMAIL_RE.fullmatch(email) is not None


def _utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


@lru_cache(maxsize=None)
def _dummy_hash(rounds: int) -> str:
    # Compared against when the username is unknown so both failure paths
    # pay for one bcrypt check. Shared across services, which are per request.
    return hash_password("Dummy-password-0", rounds)


@dataclass(frozen=True)
class AuthResult:
    user: User
    token: str


class AuthService:
    def __init__(
        self,
        repo: AuthRepository,
        cipher: EmailCipher,
        signer: SessionTokenSigner,
        mailer: EmailService,
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.repo = repo
        self.cipher = cipher
        self.signer = signer
        self.mailer = mailer
        self.settings = settings or get_settings()
        self.clock = clock

    def _issue(self, user: User) -> str:
        return self.signer.issue(
            SessionClaims(
                user_id=user.id,
                username=user.username,
                token_version=user.token_version,
            )
        )

    def register(self, data: RegisterIn) -> AuthResult:
        username = data.username
        if not username or USERNAME_RE.fullmatch(username) is None:
            raise ValidationError(
                "Username must be 3-30 characters, alphanumeric and underscores only"
            )

        display_name = (data.display_name or "").strip()
        if not display_name or len(display_name) > MAX_DISPLAY_NAME_LENGTH:
            raise ValidationError("Display name must be 1-50 characters")

        password_error = validate_password(data.password)
        if password_error:
            raise ValidationError(password_error)

        if not is_valid_email(data.email):
            raise ValidationError("A valid email address is required")

        email = normalize_email(data.email)
        try:
            user = self.repo.create_user(
                CreateUserData(
                    username=username,
                    display_name=display_name,
                    password_hash=hash_password(
                        data.password, self.settings.salt_rounds
                    ),
                    email_hash=self.cipher.hash_email(email),
                    email_encrypted=self.cipher.encrypt_email(email),
                )
            )
        except UniqueViolation as exc:
            if exc.constraint == "email_hash":
                raise ConflictError("Email already registered") from exc
            raise ConflictError("Username already taken") from exc

        logger.info(f"user_registered: user_id={user.id}")
        return AuthResult(user=user, token=self._issue(user))

    def login(self, username: Optional[str], password: Optional[str]) -> AuthResult:
        if not username or not password:
            raise ValidationError("Username and password are required")
        if len(password) > MAX_PASSWORD_LENGTH:
            raise InvalidCredentials()

        user = self.repo.find_user_by_username(username)
        if user is None:
            verify_password(password, _dummy_hash(self.settings.salt_rounds))
            raise InvalidCredentials()
        if not verify_password(password, user.password_hash):
            raise InvalidCredentials()

        return AuthResult(user=user, token=self._issue(user))

    def logout(self, user_id: int) -> None:
        self.repo.increment_token_version(user_id)
        logger.info(f"sessions_revoked: user_id={user_id}")

    def check_session(self, token: Optional[str]) -> SessionClaims:
        claims = self.signer.verify(token or "")
        if claims is None:
            raise NotAuthenticated()
        current_version = self.repo.get_user_token_version(claims.user_id)
        if current_version is None or current_version != claims.token_version:
            raise NotAuthenticated()
        return claims

    def current_user(self, user_id: int) -> User:
        user = self.repo.find_user_by_id(user_id)
        if user is None:
            raise NotFound()
        return user

    def find_user(self, username: Optional[str]) -> User:
        if not username or USERNAME_RE.fullmatch(username) is None:
            raise ValidationError("A valid username is required")
        user = self.repo.find_user_by_username(username)
        if user is None:
            raise NotFound()
        return user

    def forgot_password(self, username: Optional[str]) -> None:
        """Start a password reset. Returns normally whether or not the user exists."""
        if not username or not isinstance(username, str):
            raise ValidationError("Username is required")

        user = self.repo.find_user_by_username(username)
        if user is None:
            return

        raw_token = generate_reset_token()
        expires_at = self.clock() + timedelta(
            seconds=self.settings.reset_token_expiry_secs
        )
        self.repo.create_password_reset_token(
            user.id, hash_reset_token(raw_token), expires_at
        )

        if not user.email_encrypted:
            logger.warning(f"forgot_password: user_id={user.id} has no email on record")
            return

        try:
            email = self.cipher.decrypt_email(user.email_encrypted)
        except DecryptionError as exc:
            logger.error(f"forgot_password: user_id={user.id} email unreadable: {exc}")
            return

        reset_url = f"{self.settings.app_base_url}/reset-password?token={raw_token}"
        try:
            self.mailer.send_password_reset_email(email, reset_url)
        except EmailDeliveryError as exc:
            logger.error(f"forgot_password: user_id={user.id} delivery failed: {exc}")
            return
        logger.info(f"forgot_password: reset email sent user_id={user.id}")

    def reset_password(
        self, raw_token: Optional[str], new_password: Optional[str]
    ) -> None:
        if not raw_token or not isinstance(raw_token, str):
            raise ValidationError("Reset token is required")

        password_error = validate_password(new_password)
        if password_error:
            raise ValidationError(password_error)

        now = self.clock()
        record = self.repo.find_valid_reset_token(hash_reset_token(raw_token), now)
        if record is None or record.used_at is not None or record.expires_at <= now:
            raise InvalidOrExpiredToken()

        password_hash = hash_password(new_password, self.settings.salt_rounds)
        if not self.repo.consume_reset_token(
            record.id, record.user_id, password_hash, now
        ):
            raise InvalidOrExpiredToken()
        logger.info(f"password_reset: user_id={record.user_id}")

    def change_email(
        self,
        user_id: int,
        current_password: Optional[str],
        new_email: Optional[str],
    ) -> str:
        """Replace the account email after re-checking the password; returns it masked."""
        if (
            not current_password
            or not isinstance(current_password, str)
            or len(current_password) > MAX_PASSWORD_LENGTH
        ):
            raise ValidationError("Current password is required")
        if not is_valid_email(new_email):
            raise ValidationError("A valid email address is required")

        user = self.current_user(user_id)
        if not verify_password(current_password, user.password_hash):
            raise InvalidCredentials("Current password is incorrect")

        email = normalize_email(new_email)
        try:
            self.repo.update_email(
                user.id, self.cipher.hash_email(email), self.cipher.encrypt_email(email)
            )
        except UniqueViolation as exc:
            raise ConflictError("Email already registered") from exc

        logger.info(f"email_changed: user_id={user.id}")
        return mask_email(email)

    def masked_email(self, user_id: int) -> Optional[str]:
        user = self.current_user(user_id)
        if not user.email_encrypted:
            return None
        return mask_email(self.cipher.decrypt_email(user.email_encrypted))
