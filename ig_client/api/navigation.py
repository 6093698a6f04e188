"""
Market hierarchy crawler.

Breadth-first walk of the navigation tree with a depth bound. Each node
costs one pipeline call; leaf markets are deduplicated by epic, first
occurrence wins.
"""

import threading
from collections import deque
from dataclasses import dataclass
from typing import Optional
import logging

from .markets import MarketAPI
from ..exceptions import IGError, ValidationError, OperationCancelledError
from ..metrics import get_metrics
from ..models import MarketEntry, SessionSlot
from ..utils.retry import ResilientExecutor, RetryPolicy
from ..utils.structured_logging import get_logger

logger = logging.getLogger(__name__)
events = get_logger(__name__)


@dataclass
class CrawlStats:
    """Counters for the last completed crawl."""
    nodes_visited: int = 0
    markets_found: int = 0
    duplicates_dropped: int = 0
    max_depth_reached: int = 0


class MarketHierarchyCrawler:
    """
    Collects every market reachable from the root within max_depth levels.

    Abort-on-error: the first terminal failure of a node fetch propagates
    and the partial result is discarded.
    """

    def __init__(
        self,
        executor: ResilientExecutor,
        market_api: MarketAPI,
        max_depth: int = 5,
        retry_policy: Optional[RetryPolicy] = None
    ):
        """
        Initialize crawler.

        Args:
            executor: Pipeline each node fetch runs through
            market_api: Navigation endpoint client
            max_depth: Default depth bound (root is depth 0)
            retry_policy: Policy override for node fetches
        """
        if max_depth < 0:
            raise ValidationError(f"max_depth must be >= 0, got {max_depth}")
        self.executor = executor
        self.market_api = market_api
        self.max_depth = max_depth
        self.retry_policy = retry_policy
        self.last_stats: Optional[CrawlStats] = None

    def crawl(
        self,
        slot: SessionSlot,
        max_depth: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> list[MarketEntry]:
        """
        Walk the hierarchy breadth-first.

        Args:
            slot: Session holder (renewed in place by the pipeline)
            max_depth: Depth bound override; children are expanded only
                below this depth
            cancel_event: Checked before each node fetch

        Returns:
            Unique markets in first-seen order

        Raises:
            ValidationError: max_depth < 0
            OperationCancelledError: cancel_event was set
            Any terminal error from a node fetch
        """
        if max_depth is None:
            max_depth = self.max_depth
        if max_depth < 0:
            raise ValidationError(f"max_depth must be >= 0, got {max_depth}")

        stats = CrawlStats()
        markets: dict[str, MarketEntry] = {}
        queue: deque[tuple[Optional[str], int]] = deque([(None, 0)])
        seen: set[Optional[str]] = {None}

        logger.info(f"Crawling market hierarchy (max_depth={max_depth})")

        while queue:
            if cancel_event is not None and cancel_event.is_set():
                logger.warning(f"Crawl cancelled after {stats.nodes_visited} nodes")
                raise OperationCancelledError("Market hierarchy crawl cancelled")

            node_id, depth = queue.popleft()

            try:
                node = self.executor.execute(
                    slot,
                    lambda session: self.market_api.get_navigation_node(session, node_id),
                    retry_policy=self.retry_policy,
                    cancel_event=cancel_event
                )
            except OperationCancelledError:
                raise
            except IGError as e:
                logger.error(
                    f"Crawl aborted at node {node_id or 'root'} (depth {depth}): "
                    f"{type(e).__name__}: {e}"
                )
                raise

            stats.nodes_visited += 1
            stats.max_depth_reached = max(stats.max_depth_reached, depth)
            get_metrics().track_crawl_node()

            for market in node.markets:
                if market.epic in markets:
                    stats.duplicates_dropped += 1
                    continue
                markets[market.epic] = market

            if depth < max_depth:
                for child in node.children:
                    if child.id in seen:
                        continue
                    seen.add(child.id)
                    queue.append((child.id, depth + 1))

        stats.markets_found = len(markets)
        self.last_stats = stats

        events.info(
            "crawl_finished",
            markets=stats.markets_found,
            nodes=stats.nodes_visited,
            duplicates=stats.duplicates_dropped,
            max_depth_reached=stats.max_depth_reached
        )
        return list(markets.values())
