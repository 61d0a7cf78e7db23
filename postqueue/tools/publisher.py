"""
Posting collaborator boundary.

The job queue only knows this protocol: ``post(content, media_refs,
user_id)`` returning a :class:`PublishResult`.  Ordinary failures (network,
auth, rate limit) come back as ``PublishResult(success=False, error=...)``;
raising is reserved for programmer errors.
"""

from dataclasses import dataclass
from typing import List, Optional, Protocol


@dataclass
class PublishResult:
    """Outcome of a single publish call.

    Attributes:
        success: Whether the downstream accepted the post.
        external_id: Identifier assigned by the downstream on success.
        error: Human-readable failure message on failure.
    """

    success: bool
    external_id: Optional[str] = None
    error: Optional[str] = None

    @classmethod
    def ok(cls, external_id: str) -> "PublishResult":
        return cls(success=True, external_id=external_id)

    @classmethod
    def failed(cls, error: str) -> "PublishResult":
        return cls(success=False, error=error)


class Publisher(Protocol):
    """Anything that can deliver a post downstream."""

    async def post(
        self,
        content: str,
        media_refs: Optional[List[str]],
        user_id: str,
    ) -> PublishResult:
        ...


__all__ = ["PublishResult", "Publisher"]
