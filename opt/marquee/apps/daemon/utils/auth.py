import secrets
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, Optional

import bcrypt
import jwt

MIN_PASSWORD_LENGTH = 4


class AuthError(Exception):
    """Raised when authentication or token validation fails."""


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


class AuthManager:
    def __init__(
        self,
        password_hash: str,
        token_secret: Optional[str],
        token_ttl_seconds: int = 3600,
        issuer: str = "marquee",
        on_password_change: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.password_hash = password_hash or ""
        self.token_secret = token_secret or secrets.token_urlsafe(48)
        self.token_ttl = max(int(token_ttl_seconds), 300)
        self.issuer = issuer
        self.on_password_change = on_password_change

    def verify_password(self, password: str) -> bool:
        if not self.password_hash:
            raise AuthError("Password hash not configured.")
        if not password:
            return False
        try:
            return bool(
                bcrypt.checkpw(password.encode("utf-8"), self.password_hash.encode("utf-8"))
            )
        except ValueError as exc:
            raise AuthError("Invalid password hash configuration.") from exc

    def change_password(self, current: str, new: str) -> None:
        """Replaces the admin password; raises ``ValueError`` for a rejected change."""
        if not self.verify_password(current):
            raise ValueError("Invalid current password")
        if not new or len(new) < MIN_PASSWORD_LENGTH:
            raise ValueError("New password too short")
        self.password_hash = hash_password(new)
        if self.on_password_change:
            self.on_password_change(self.password_hash)

    def issue_token(self, subject: str = "admin") -> Dict[str, object]:
        now = datetime.now(timezone.utc)
        expires = now + timedelta(seconds=self.token_ttl)
        payload = {
            "sub": subject,
            "iat": int(now.timestamp()),
            "exp": int(expires.timestamp()),
            "iss": self.issuer,
        }
        token = jwt.encode(payload, self.token_secret, algorithm="HS256")
        return {"ok": True, "token": token, "expires_at": expires.isoformat(), "expires_in": self.token_ttl}

    def verify_token(self, token: str) -> Dict[str, object]:
        try:
            payload = jwt.decode(
                token,
                self.token_secret,
                algorithms=["HS256"],
                options={"require": ["exp", "iat", "iss"]},
            )
        except jwt.ExpiredSignatureError as exc:
            raise AuthError("Token expired.") from exc
        except jwt.InvalidTokenError as exc:
            raise AuthError("Invalid token.") from exc

        if payload.get("iss") != self.issuer:
            raise AuthError("Invalid token issuer.")
        return payload
