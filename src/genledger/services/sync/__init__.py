"""Bulk listing synchronization."""

from genledger.services.sync.bulk_merge import BulkMergeEngine, MergeResult
from genledger.services.sync.listing import ListingPost, parse_listing

__all__ = ["BulkMergeEngine", "ListingPost", "MergeResult", "parse_listing"]
