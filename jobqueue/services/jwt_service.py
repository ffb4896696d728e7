"""
JWT token service for authenticating producers and operators.
"""
from datetime import timedelta
from jose import JWTError, jwt
from jobqueue.config import settings
from jobqueue.utils import utcnow


class JWTService:
    """Service for creating and verifying JWT tokens."""

    def create_token(self, subject: str, role: str, expires_minutes: int | None = None) -> str:
        """
        Create a JWT token.

        Args:
            subject: Service or user id the token is issued to
            role: ``admin`` (operators) or ``producer`` (services that enqueue work)
            expires_minutes: Override for JWT_EXPIRATION_MINUTES

        Returns:
            Encoded JWT token string
        """
        expires = utcnow() + timedelta(minutes=expires_minutes or settings.JWT_EXPIRATION_MINUTES)

        payload = {
            "sub": subject,
            "role": role,
            "exp": expires
        }

        return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)

    def verify_token(self, token: str) -> dict | None:
        """
        Verify and decode a JWT token.

        Returns:
            Decoded payload dict or None if invalid
        """
        try:
            return jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM]
            )
        except JWTError:
            return None
