"""
Market API client.

Read-only access to the market navigation catalog.
"""

from typing import Optional
from urllib.parse import quote
import logging

from pydantic import ValidationError as PydanticValidationError

from .base import BaseAPIClient
from ..config import IGSettings
from ..models import Session, NavigationNode, MarketNavigationResponse
from ..exceptions import MarketDataError

logger = logging.getLogger(__name__)

NAVIGATION_PATH = "marketnavigation"


class MarketAPI(BaseAPIClient):
    """
    Market API client.

    Every method takes the session to authenticate with, so calls can be
    driven by the request pipeline.
    """

    def __init__(self, settings: IGSettings, base_url: Optional[str] = None):
        """
        Initialize Market API client.

        Args:
            settings: Client settings
            base_url: Override for settings.rest_base_url
        """
        super().__init__(settings=settings, base_url=base_url)

    def get_navigation_node(
        self,
        session: Session,
        node_id: Optional[str] = None
    ) -> NavigationNode:
        """
        Fetch one navigation node.

        Args:
            session: Authenticated session
            node_id: Node to fetch (None = top level)

        Returns:
            Node with child references and directly attached markets

        Raises:
            MarketDataError: If the response cannot be parsed
            CredentialsExpiredError, RateLimitError, APIError: From the transport
        """
        path = NAVIGATION_PATH if node_id is None else f"{NAVIGATION_PATH}/{quote(node_id, safe='')}"

        data = self.get(path, session, version=1)

        try:
            parsed = MarketNavigationResponse.model_validate(data)
        except PydanticValidationError as e:
            logger.error(f"Malformed navigation response for node {node_id}: {e}")
            raise MarketDataError(f"Malformed navigation response: {e}", node_id=node_id) from e

        logger.debug(
            f"Node {node_id or 'root'}: {len(parsed.nodes)} children, "
            f"{len(parsed.markets)} markets"
        )

        return NavigationNode(
            id=node_id,
            children=parsed.nodes,
            markets=parsed.markets
        )
