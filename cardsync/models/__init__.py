"""
Models package: export all SQLAlchemy models.
"""

from cardsync.models.base import Base
from cardsync.models.card import Card
from cardsync.models.card_price import CARD_PRICE_KEY, CardPrice
from cardsync.models.expansion import Expansion
from cardsync.models.sync_status import SyncStatus

__all__ = ["Base", "CARD_PRICE_KEY", "Card", "CardPrice", "Expansion", "SyncStatus"]
