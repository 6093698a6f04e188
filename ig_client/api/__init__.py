"""API modules for IG client."""

from .base import BaseAPIClient
from .markets import MarketAPI
from .navigation import MarketHierarchyCrawler, CrawlStats

__all__ = ["BaseAPIClient", "MarketAPI", "MarketHierarchyCrawler", "CrawlStats"]
