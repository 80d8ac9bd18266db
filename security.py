import hashlib
import secrets
from dataclasses import dataclass
from typing import Optional

import bcrypt
from itsdangerous import BadData, URLSafeTimedSerializer

from config import Settings, get_settings

# bcrypt only reads the first 72 bytes; recent releases raise on longer input
# instead of truncating, so the cut is made here explicitly.
BCRYPT_MAX_BYTES = 72


def _bcrypt_input(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str, rounds: int = 10) -> str:
    return bcrypt.hashpw(_bcrypt_input(password), bcrypt.gensalt(rounds)).decode(
        "utf-8"
    )


def verify_password(plain: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(_bcrypt_input(plain), hashed.encode("utf-8"))
    except ValueError:
        return False


@dataclass(frozen=True)
class SessionClaims:
    user_id: int
    username: str
    token_version: int


class SessionTokenSigner:
    """Stateless signed session tokens.

    Signature and age are checked here; whether the embedded token version is
    still current is the caller's job (see AuthService.check_session).
    """

    def __init__(self, secret: str, max_age_secs: int) -> None:
        self.max_age_secs = max_age_secs
        self._serializer = URLSafeTimedSerializer(secret, salt="session-token")

    def issue(self, claims: SessionClaims) -> str:
        return self._serializer.dumps(
            {"uid": claims.user_id, "usr": claims.username, "tv": claims.token_version}
        )

    def verify(self, token: str) -> Optional[SessionClaims]:
        if not token:
            return None
        try:
            data = self._serializer.loads(token, max_age=self.max_age_secs)
        except BadData:
            return None
        if not isinstance(data, dict):
            return None

        user_id = data.get("uid")
        username = data.get("usr")
        token_version = data.get("tv")
        if not isinstance(user_id, int) or not isinstance(token_version, int):
            return None
        if not isinstance(username, str):
            return None
        return SessionClaims(
            user_id=user_id, username=username, token_version=token_version
        )


def get_session_signer(settings: Optional[Settings] = None) -> SessionTokenSigner:
    settings = settings or get_settings()
    return SessionTokenSigner(settings.jwt_secret, settings.token_expiry_secs)


def generate_reset_token() -> str:
    return secrets.token_hex(32)


def hash_reset_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
