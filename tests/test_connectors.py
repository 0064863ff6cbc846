"""
Focused tests for upstream record normalization and error mapping.

Covers the pure parts of the fetchers:
  - natural keys per entity
  - record dates (Meta date_start, Shopify created_at in UTC)
  - Graph API error text (payload too large vs code/subcode detail)
  - entity validation

These do NOT hit the network.
"""
from datetime import date

import pytest

from sync_orchestrator.connectors import build_fetchers
from sync_orchestrator.connectors.base import UpstreamAPIError
from sync_orchestrator.connectors.meta_ads import MetaAdsFetcher
from sync_orchestrator.connectors.shopify import ShopifyFetcher, _window_bound
from sync_orchestrator.services.errors import ConnectionInvalidError, PayloadTooLargeError
from sync_orchestrator.services.job_types import Platform
from sync_orchestrator.services.rate_limit import is_rate_limit_error


# ────────────────────────────────────────────
# META ADS
# ────────────────────────────────────────────


class TestMetaNormalize:

    def test_campaign_row(self):
        row = {"campaign_id": "42", "date_start": "2024-03-01", "date_stop": "2024-03-01", "spend": "12.50"}
        record = MetaAdsFetcher._normalize("campaigns", row)

        assert record["natural_key"] == "42:2024-03-01"
        assert record["record_date"] == "2024-03-01"
        assert record["spend"] == 12.5
        assert record["campaign_id"] == "42"

    def test_demographic_row_keys_on_breakdowns(self):
        row = {"account_id": "7", "age": "25-34", "gender": "female", "date_start": "2024-03-01"}
        record = MetaAdsFetcher._normalize("demographics", row)

        assert record["natural_key"] == "7:25-34:female:2024-03-01"

    def test_missing_spend_is_zero(self):
        record = MetaAdsFetcher._normalize("insights", {"ad_id": "9", "date_start": "2024-03-01"})

        assert record["natural_key"] == "9:2024-03-01"
        assert record["spend"] == 0.0


class TestMetaErrors:

    def test_too_much_data_asks_for_a_split(self):
        body = {"error": {"message": "Please reduce the amount of data you're asking for, then retry your request", "code": 1}}

        with pytest.raises(PayloadTooLargeError):
            MetaAdsFetcher._raise_for_error(500, body)

    def test_throttle_keeps_code_and_subcode(self):
        body = {"error": {"message": "User request limit reached", "code": 17, "error_subcode": 2446079}}

        with pytest.raises(UpstreamAPIError) as exc:
            MetaAdsFetcher._raise_for_error(400, body)

        assert str(exc.value) == "Meta HTTP 400: User request limit reached (code 17, subcode 2446079)"
        assert is_rate_limit_error(exc.value)

    def test_generic_error_is_not_a_rate_limit(self):
        with pytest.raises(UpstreamAPIError) as exc:
            MetaAdsFetcher._raise_for_error(500, {"error": {"message": "An unknown error occurred", "code": 1}})

        assert exc.value.status == 500
        assert not is_rate_limit_error(exc.value)

    def test_expired_token_invalidates_the_connection(self):
        body = {"error": {"message": "Error validating access token: Session has expired", "code": 190}}

        with pytest.raises(ConnectionInvalidError) as exc:
            MetaAdsFetcher._raise_for_error(400, body)

        assert str(exc.value).startswith("connection_invalid: Meta HTTP 400: Error validating access token")


# ────────────────────────────────────────────
# SHOPIFY
# ────────────────────────────────────────────


class TestShopifyNormalize:

    def test_order_date_is_utc(self):
        row = {"id": 1001, "created_at": "2024-03-01T22:30:00-05:00", "total_price": "99.90"}
        record = ShopifyFetcher._normalize("orders", row)

        assert record["natural_key"] == "1001"
        assert record["record_date"] == "2024-03-02"
        assert record["total_price"] == 99.9

    def test_product_without_created_at(self):
        record = ShopifyFetcher._normalize("products", {"id": 5, "title": "Mug"})

        assert record["natural_key"] == "5"
        assert record["record_date"] is None
        assert "total_price" not in record

    def test_window_bound_is_utc_midnight(self):
        assert _window_bound(date(2024, 3, 1)) == "2024-03-01T00:00:00+00:00"


# ────────────────────────────────────────────
# REGISTRY
# ────────────────────────────────────────────


def test_build_fetchers_covers_every_platform():
    fetchers = build_fetchers()

    assert set(fetchers) == set(Platform)
    assert fetchers[Platform.ADS].entities == ["campaigns", "demographics", "insights"]
    assert fetchers[Platform.COMMERCE].entities == ["orders", "customers", "products"]


def test_unknown_entity_is_rejected():
    with pytest.raises(ValueError):
        ShopifyFetcher()._check_entity("refunds")
