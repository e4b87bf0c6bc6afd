"""
Download Authorizer - signed, time-limited artifact download tokens.

Token format: <job_id>.<expiry_epoch_seconds>.<hmac_sha256_hex>
The signature covers "<job_id>.<expiry>". Tokens are never stored; each
redemption recomputes the signature with the shared secret.
"""
import hashlib
import hmac
import logging
import time
from typing import Callable, Optional

logger = logging.getLogger(__name__)


def constant_time_compare(a: str, b: str) -> bool:
    """Compare two strings in constant time to prevent timing attacks."""
    return hmac.compare_digest(a.encode(), b.encode())


class DownloadAuthorizer:
    """Issues and verifies download tokens, and checks long-lived API keys."""

    def __init__(
        self,
        secret: str,
        api_key: Optional[str] = None,
        clock: Callable[[], float] = time.time,
    ):
        if not secret:
            raise ValueError("Download token secret is required")
        self._secret = secret.encode()
        self._api_key = api_key
        self._clock = clock

    def _sign(self, job_id: str, expiry: int) -> str:
        payload = f"{job_id}.{expiry}".encode()
        return hmac.new(self._secret, payload, hashlib.sha256).hexdigest()

    def issue(self, job_id: str, ttl_seconds: int) -> str:
        """Issue a token for job_id valid for ttl_seconds."""
        if "." in job_id:
            raise ValueError("Job ID must not contain '.'")
        expiry = int(self._clock()) + int(ttl_seconds)
        return f"{job_id}.{expiry}.{self._sign(job_id, expiry)}"

    def verify(self, token: Optional[str], expected_job_id: str) -> bool:
        """Check a token's shape, expiry, job binding and signature."""
        if not token:
            return False
        parts = token.split(".")
        if len(parts) != 3:
            return False

        job_id, expiry_raw, signature = parts
        try:
            expiry = int(expiry_raw)
        except ValueError:
            return False

        if self._clock() >= expiry:
            return False
        if not constant_time_compare(job_id, expected_job_id):
            return False
        return constant_time_compare(signature, self._sign(job_id, expiry))

    def check_api_key(self, api_key: Optional[str]) -> bool:
        """Check a long-lived API key. Always False when none is configured."""
        if not api_key or not self._api_key:
            return False
        return constant_time_compare(api_key, self._api_key)

    def authorize(
        self,
        job_id: str,
        api_key: Optional[str] = None,
        token: Optional[str] = None,
    ) -> bool:
        """Valid API key OR a token that verifies for this job."""
        if self.check_api_key(api_key):
            return True
        if self.verify(token, job_id):
            return True
        logger.warning(f"download_auth_failed job_id={job_id}")
        return False
