"""Marketplace service layer: the public operation surface."""

from market_services.marketplace_service import MarketplaceService

__all__ = ["MarketplaceService"]
