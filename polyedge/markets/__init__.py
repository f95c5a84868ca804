"""Market snapshots and the classifier / filter stage of the scan cycle."""

from polyedge.markets.classifier import (
    classify,
    filter_markets,
    group_markets,
    partition,
    prioritize,
    rejection_reason,
)
from polyedge.markets.models import MarketCategory, MarketRecord, OutcomeToken

__all__ = [
    "MarketCategory",
    "MarketRecord",
    "OutcomeToken",
    "classify",
    "filter_markets",
    "group_markets",
    "partition",
    "prioritize",
    "rejection_reason",
]
