"""
Posting collaborators for the delivery pipeline.

- Publisher / PublishResult: the protocol the job queue delivers through
- XPublisher: X API v2 client (``POST /tweets``) over httpx
"""

from postqueue.tools.publisher import Publisher, PublishResult
from postqueue.tools.x_publisher import XPublisher

__all__ = [
    "Publisher",
    "PublishResult",
    "XPublisher",
]
