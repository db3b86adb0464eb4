"""
Content Source API Layer.

Clients for the content source endpoints that provide episode lists for tasks.
"""

from .client import DetailClient, parse_detail, parse_play_url
from .rate_limiter import AdaptiveRateLimiter

__all__ = ["AdaptiveRateLimiter", "DetailClient", "parse_detail", "parse_play_url"]
