"""
Manifest signing for audit snapshots.
"""
import hashlib
import hmac

from jobqueue.config import settings


class HmacManifestSigner:
    """Signs a manifest digest with a shared HMAC-SHA256 key."""

    def __init__(self, key: str, key_id: str = "default"):
        self.key = key
        self.key_id = key_id

    @classmethod
    def from_settings(cls) -> "HmacManifestSigner | None":
        if not settings.AUDIT_SNAPSHOT_SIGNING_KEY:
            return None
        return cls(settings.AUDIT_SNAPSHOT_SIGNING_KEY)

    def sign(self, digest: str) -> str:
        signature = hmac.new(self.key.encode(), digest.encode(), hashlib.sha256).hexdigest()
        return f"hmac-sha256:{self.key_id}:{digest}:{signature}"
