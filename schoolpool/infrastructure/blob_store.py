"""
Blob store adapter for arrival photos.

Uploads happen outside the engine; the engine only keeps the opaque
reference and, on demand, turns it into a time-limited URL. The URL
carries a JWT whose ``sub`` is the reference and whose ``exp`` bounds its
lifetime, so the file server can verify it without a database lookup.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional
from urllib.parse import quote

from jose import JWTError, jwt

from schoolpool.config import settings


class BlobStore:
    def signed_url(self, ref: str, ttl_seconds: int) -> str:
        raise NotImplementedError


class SignedUrlBlobStore(BlobStore):
    def __init__(
        self,
        base_url: str = settings.blob_base_url,
        signing_key: str = settings.blob_signing_key,
        algorithm: str = settings.blob_signing_algorithm,
    ):
        self.base_url = base_url.rstrip("/")
        self.signing_key = signing_key
        self.algorithm = algorithm

    def signed_url(self, ref: str, ttl_seconds: int) -> str:
        expire = datetime.now(timezone.utc) + timedelta(seconds=ttl_seconds)
        token = jwt.encode(
            {"sub": ref, "exp": expire}, self.signing_key, algorithm=self.algorithm
        )
        return f"{self.base_url}/{quote(ref)}?token={token}"

    def verify(self, token: str) -> Optional[str]:
        """Return the blob reference a token grants, or None if invalid/expired."""
        try:
            payload = jwt.decode(token, self.signing_key, algorithms=[self.algorithm])
        except JWTError:
            return None
        return payload.get("sub")
