"""
POS integration package.

The loyalty engine depends only on the interfaces in integrations.base;
SquareClient is the production implementation of all three.

Usage:
    from integrations.square import SquareClient

    client = SquareClient(integration.access_token_encrypted)
    order = await client.get_order(order_id)
"""

from integrations.base import CustomerDirectory, LoyaltyAccountBridge, OrderSource

__all__ = [
    "OrderSource",
    "CustomerDirectory",
    "LoyaltyAccountBridge",
]
