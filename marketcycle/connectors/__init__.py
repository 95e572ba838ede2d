"""External collaborators: the ranking feed and the chain."""

from marketcycle.connectors.base import BaseConnector, ConnectorInfo
from marketcycle.connectors.chain import BaseChainClient, Web3ChainClient
from marketcycle.connectors.ranking_feed import BaseRankingFeed, RankingFeedClient

__all__ = [
    "BaseConnector",
    "ConnectorInfo",
    "BaseChainClient",
    "Web3ChainClient",
    "BaseRankingFeed",
    "RankingFeedClient",
]
