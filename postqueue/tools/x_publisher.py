"""
Async X API v2 publisher.

Uses ``httpx`` to call ``POST /2/tweets``.  This is the thin production
adapter behind the :class:`~postqueue.tools.publisher.Publisher` protocol:
it never raises for HTTP or transport failures, it folds them into a
:class:`~postqueue.tools.publisher.PublishResult` whose ``error`` message
carries the status code and reason so the resilience layer can classify it.
"""

import logging
import os
from typing import Any, Dict, List, Optional

import httpx

from postqueue.tools.publisher import PublishResult

logger = logging.getLogger(__name__)


class XPublisher:
    """Publishes posts through the X API v2.

    Args:
        bearer_token: User-context OAuth 2.0 bearer token.  Falls back to the
            ``X_API_BEARER_TOKEN`` environment variable.
        base_url: API root, e.g. ``https://api.twitter.com/2``.
        timeout: Per-request timeout in seconds.
        client: Optional pre-built ``httpx.AsyncClient`` (tests inject one
            backed by ``httpx.MockTransport``).

    Usage::

        publisher = XPublisher()
        result = await publisher.post("Hello world", None, user_id="u-1")
    """

    BASE_URL: str = "https://api.twitter.com/2"

    def __init__(
        self,
        bearer_token: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.bearer_token: str = bearer_token or os.environ.get("X_API_BEARER_TOKEN", "")
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.timeout = timeout
        self._client = client

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _auth_headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.bearer_token}",
            "Content-Type": "application/json",
        }

    @staticmethod
    def _build_payload(content: str, media_refs: Optional[List[str]]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"text": content}
        if media_refs:
            payload["media"] = {"media_ids": list(media_refs)}
        return payload

    async def _send(self, payload: Dict[str, Any]) -> httpx.Response:
        if self._client is not None:
            return await self._client.post(
                f"{self.base_url}/tweets",
                headers=self._auth_headers(),
                json=payload,
                timeout=self.timeout,
            )
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            return await client.post(
                f"{self.base_url}/tweets",
                headers=self._auth_headers(),
                json=payload,
            )

    # ------------------------------------------------------------------
    # Publisher protocol
    # ------------------------------------------------------------------

    async def post(
        self,
        content: str,
        media_refs: Optional[List[str]],
        user_id: str,
    ) -> PublishResult:
        """Create a post.

        Args:
            content: Post text.
            media_refs: Previously uploaded media ids, or ``None``.
            user_id: Owning user (for logs only; the token selects the account).

        Returns:
            ``PublishResult.ok(tweet_id)`` on 2xx, otherwise a failed result.
        """
        if not self.bearer_token:
            return PublishResult.failed("401 Unauthorized: X_API_BEARER_TOKEN is not configured")

        try:
            response = await self._send(self._build_payload(content, media_refs))
        except httpx.TimeoutException as exc:
            logger.warning("[PUBLISHER] X API timeout for user %s: %s", user_id, exc)
            return PublishResult.failed(f"Request timeout: {exc}")
        except httpx.TransportError as exc:
            logger.warning("[PUBLISHER] X API network error for user %s: %s", user_id, exc)
            return PublishResult.failed(f"Network connection error: {exc}")

        if response.is_success:
            try:
                tweet_id = response.json()["data"]["id"]
            except (ValueError, KeyError, TypeError):
                return PublishResult.failed(
                    f"Invalid response from X API: {response.text[:200]}"
                )
            logger.info("[PUBLISHER] X API post created: id=%s user=%s", tweet_id, user_id)
            return PublishResult.ok(str(tweet_id))

        reason = response.reason_phrase or "Error"
        detail = self._error_detail(response)
        message = f"{response.status_code} {reason}"
        if detail:
            message = f"{message}: {detail}"
        logger.warning("[PUBLISHER] X API post failed for user %s: %s", user_id, message)
        return PublishResult.failed(message)

    @staticmethod
    def _error_detail(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(data, dict):
            return str(data.get("detail") or data.get("title") or "")
        return ""


__all__ = ["XPublisher"]
