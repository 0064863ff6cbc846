"""Upstream fetchers for the sync orchestrator"""
from typing import Dict

from sync_orchestrator.connectors.base import UpstreamAPIError, UpstreamFetcher
from sync_orchestrator.connectors.meta_ads import MetaAdsFetcher
from sync_orchestrator.connectors.shopify import ShopifyFetcher
from sync_orchestrator.services.job_types import Platform


def build_fetchers() -> Dict[Platform, UpstreamFetcher]:
    """Default fetcher per platform"""
    return {
        Platform.ADS: MetaAdsFetcher(),
        Platform.COMMERCE: ShopifyFetcher(),
    }


__all__ = [
    "UpstreamAPIError",
    "UpstreamFetcher",
    "MetaAdsFetcher",
    "ShopifyFetcher",
    "build_fetchers",
]
