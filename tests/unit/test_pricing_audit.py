"""Tests for the pricing document and the audit log."""

import json
import logging
import pytest
from datetime import datetime

import httpx

from app.core.scheduling.audit import AuditLogger, AuditStatus
from app.core.scheduling.pricing import (
    DEFAULT_PRICE_LIST,
    EXCERPT_CHARS,
    HttpPricingClient,
    StaticPricingClient,
    filter_pricing,
)


class TestFilterPricing:
    """Test filter_pricing."""

    DOCUMENT = (
        "Clinic Prices\n"
        "Cleaning - $90\n"
        "Filling - $120 first tooth\n"
        "Whitening - $300\n"
        "Cost of missed appointments: $25"
    )

    def test_relevant_lines(self):
        assert filter_pricing(self.DOCUMENT, "Cleaning") == (
            "Clinic Prices\nCleaning - $90\nCost of missed appointments: $25"
        )

    def test_no_treatment_returns_excerpt(self):
        long_document = "x" * (EXCERPT_CHARS * 2)
        assert filter_pricing(long_document) == "x" * EXCERPT_CHARS

    def test_nothing_relevant_returns_excerpt(self):
        assert filter_pricing("Open Monday to Friday", "Cleaning") == "Open Monday to Friday"


class TestPricingClients:
    """Test pricing clients."""

    @pytest.mark.asyncio
    async def test_static_default(self):
        text = await StaticPricingClient().get_pricing("Filling")

        assert "Filling: price $120" in text
        assert "Cleaning: price $90" in text
        assert "Insurance" not in text

    @pytest.mark.asyncio
    async def test_static_full_document(self):
        assert await StaticPricingClient().get_pricing() == DEFAULT_PRICE_LIST[:EXCERPT_CHARS]

    @pytest.mark.asyncio
    async def test_http_fetch(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, text="Cleaning - $95"))
        client = HttpPricingClient("http://pricing.test/prices.txt", timeout=1, transport=transport)

        assert await client.get_pricing("Cleaning") == "Cleaning - $95"
        await client.close()

    @pytest.mark.asyncio
    async def test_http_error_raises(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(503))
        client = HttpPricingClient("http://pricing.test/prices.txt", timeout=1, transport=transport)

        with pytest.raises(httpx.HTTPError):
            await client.get_pricing("Cleaning")


class TestAuditLogger:
    """Test AuditLogger."""

    @pytest.fixture
    def audit(self):
        return AuditLogger(max_records=3)

    def test_record(self, audit):
        entry = audit.record(
            conversation_id="+15551234567",
            phone="+15551234567",
            status=AuditStatus.CONFIRMED,
            action="appointment_booked",
            practitioner="Dr GeneralA",
            start=datetime(2024, 1, 16, 10),
            end=datetime(2024, 1, 16, 10, 30),
            event_id="evt-1",
        )

        data = entry.to_dict()
        assert data["status"] == "confirmed"
        assert data["date_time"] == "2024-01-16T10:00:00 - 2024-01-16T10:30:00"
        assert audit.records == [entry]
        assert audit.follow_ups() == []

    def test_follow_up_logged_as_warning(self, audit, caplog):
        with caplog.at_level(logging.INFO, logger="app.audit"):
            audit.record(
                conversation_id="c1",
                phone="+15551234567",
                status=AuditStatus.NEEDS_FOLLOW_UP,
                action="booking_failed",
                error="conflict",
            )

        assert len(audit.follow_ups()) == 1
        record = caplog.records[-1]
        assert record.levelno == logging.WARNING
        payload = json.loads(record.getMessage())
        assert payload["status"] == "NEEDS FOLLOW-UP"
        assert payload["error"] == "conflict"

    def test_records_bounded(self, audit):
        for i in range(5):
            audit.record(f"c{i}", "+1555", AuditStatus.CANCELLED, "appointment_cancelled")

        assert [r.conversation_id for r in audit.records] == ["c2", "c3", "c4"]
