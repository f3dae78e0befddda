"""Repository layer for data access."""

from genledger.repositories.image_entry import ImageEntryRepository

__all__ = ["ImageEntryRepository"]
