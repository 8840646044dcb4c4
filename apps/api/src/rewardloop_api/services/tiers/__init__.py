from .tier_service import (
    OrderEarning,
    OrderPointsQuote,
    RedemptionQuote,
    TierService,
    TierStatus,
    order_points,
    redemption_limits,
)

__all__ = [
    "OrderEarning",
    "OrderPointsQuote",
    "RedemptionQuote",
    "TierService",
    "TierStatus",
    "order_points",
    "redemption_limits",
]
