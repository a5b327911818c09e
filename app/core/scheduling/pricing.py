"""
Pricing document.

The clinic's price list is a plain-text document. For a given treatment
only the relevant lines are returned.
"""

import logging
from typing import Optional

import httpx

from app.config import get_settings

logger = logging.getLogger(__name__)

EXCERPT_CHARS = 500

DEFAULT_PRICE_LIST = """Dental Clinic Price List
Consultation: price $50 (15 minutes)
Cleaning: price $90 (30 minutes)
Filling: price $120 for the first tooth, $60 for each additional tooth
Braces Maintenance: price $80 per visit
Payment by card or cash. Insurance claims are handled at the front desk."""


def filter_pricing(document: str, treatment: Optional[str] = None) -> str:
    """
    Select the part of a price list relevant to a treatment.

    Lines mentioning the treatment, "price" or "cost" are kept. When no
    line qualifies (or no treatment is given) the start of the document
    is returned instead.
    """
    document = document.strip()
    if not treatment:
        return document[:EXCERPT_CHARS]

    needles = (treatment.lower(), "price", "cost")
    lines = [line.strip() for line in document.splitlines() if line.strip()]
    relevant = [line for line in lines if any(n in line.lower() for n in needles)]
    if relevant:
        return "\n".join(relevant)
    return document[:EXCERPT_CHARS]


class PricingClient:
    """Source of the price list."""

    async def fetch_document(self) -> str:
        raise NotImplementedError

    async def get_pricing(self, treatment: Optional[str] = None) -> str:
        return filter_pricing(await self.fetch_document(), treatment)

    async def close(self) -> None:
        return None


class StaticPricingClient(PricingClient):
    """Price list held in memory."""

    def __init__(self, document: str = DEFAULT_PRICE_LIST):
        self._document = document

    async def fetch_document(self) -> str:
        return self._document


class HttpPricingClient(PricingClient):
    """Price list fetched from a URL as plain text."""

    def __init__(
        self,
        url: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        settings = get_settings()
        self.url = url or settings.pricing_document_url
        self.timeout = timeout or settings.external_call_timeout_seconds
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout, transport=self._transport)
        return self._client

    async def fetch_document(self) -> str:
        """
        Download the price list.

        Raises:
            httpx.HTTPError: If the document cannot be fetched
        """
        client = await self._get_client()
        response = await client.get(self.url)
        response.raise_for_status()
        return response.text

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None


# Singleton
_client: Optional[PricingClient] = None


def get_pricing_client() -> PricingClient:
    """Get singleton pricing client."""
    global _client
    if _client is None:
        url = get_settings().pricing_document_url
        _client = HttpPricingClient(url) if url else StaticPricingClient()
    return _client


async def close_pricing_client() -> None:
    global _client
    if _client is not None:
        await _client.close()
        _client = None
