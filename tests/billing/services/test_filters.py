"""Tests for listing filter translation."""

from datetime import datetime, timezone
from uuid import uuid4

import pytest

from billing.exceptions import InvalidInputError
from billing.models import InvoiceStatus, ListFilters, PaymentStatus
from billing.services.filters import build_where, parse_status, where_sql


class TestParseStatus:

    def test_none_and_empty(self):
        assert parse_status(None, InvoiceStatus) is None
        assert parse_status("", InvoiceStatus) is None

    def test_case_insensitive(self):
        assert parse_status("Completed", PaymentStatus) == PaymentStatus.COMPLETED

    def test_unknown_lists_valid(self):
        with pytest.raises(InvalidInputError, match="unpaid"):
            parse_status("settled", InvoiceStatus)


class TestBuildWhere:

    def test_no_filters(self):
        clauses, params = build_where(ListFilters(), "created_at", "total_cents", ["name"])

        assert clauses == []
        assert params == []
        assert where_sql(clauses) == ""

    def test_half_open_dates_and_inclusive_amounts(self):
        start = datetime(2025, 1, 1, tzinfo=timezone.utc)
        end = datetime(2025, 2, 1, tzinfo=timezone.utc)
        filters = ListFilters(start_date=start, end_date=end, min_amount_cents=100, max_amount_cents=900)

        clauses, params = build_where(filters, "i.created_at", "i.total_cents", [])

        assert clauses == [
            "i.created_at >= %s", "i.created_at < %s", "i.total_cents >= %s", "i.total_cents <= %s",
        ]
        assert params == [start, end, 100, 900]

    def test_search_spans_columns(self):
        clauses, params = build_where(ListFilters(search="  acme "), "d", "a", ["x.name", "y.ref"])

        assert clauses == ["(x.name ILIKE %s OR y.ref ILIKE %s)"]
        assert params == ["%acme%", "%acme%"]

    def test_blank_search_ignored(self):
        clauses, _ = build_where(ListFilters(search="   "), "d", "a", ["x.name"])

        assert clauses == []

    def test_where_sql_joins_with_and(self):
        assert where_sql(["a = %s", "b = %s"]) == "WHERE a = %s AND b = %s"


class TestListFiltersValidation:

    def test_inverted_dates_rejected(self):
        with pytest.raises(ValueError, match="start_date"):
            ListFilters(
                start_date=datetime(2025, 2, 1, tzinfo=timezone.utc),
                end_date=datetime(2025, 1, 1, tzinfo=timezone.utc),
            )

    def test_inverted_amounts_rejected(self):
        with pytest.raises(ValueError, match="min_amount_cents"):
            ListFilters(min_amount_cents=10, max_amount_cents=5)


class TestReferenceFilters:

    def test_advertiser_and_campaign_columns(self):
        advertiser_id, campaign_id = uuid4(), uuid4()
        filters = ListFilters(advertiser_id=advertiser_id, campaign_id=campaign_id)

        clauses, params = build_where(
            filters, "d", "a", [], advertiser_column="i.advertiser_id", campaign_column="i.campaign_id",
        )

        assert clauses == ["i.advertiser_id = %s", "i.campaign_id = %s"]
        assert params == [advertiser_id, campaign_id]

    def test_unsupported_reference_filter_rejected(self):
        filters = ListFilters(campaign_id=uuid4())

        with pytest.raises(InvalidInputError, match="campaign_id"):
            build_where(filters, "d", "a", [], advertiser_column="p.advertiser_id")
