"""Tests for the Claude API client retry handling."""

import httpx
import pytest
from unittest.mock import AsyncMock, patch

from anthropic import APIConnectionError

from app.infra.claude import ClaudeClient, ClaudeClientError


def connection_error() -> APIConnectionError:
    return APIConnectionError(request=httpx.Request("POST", "https://api.anthropic.com/v1/messages"))


@pytest.fixture
def client():
    claude = ClaudeClient(api_key="test-key")
    claude._client.messages.create = AsyncMock(side_effect=connection_error())
    return claude


class TestRetries:
    """Test retry exhaustion."""

    @pytest.mark.asyncio
    async def test_no_attempts_raises_client_error(self, client):
        with pytest.raises(ClaudeClientError, match="Max retries exceeded"):
            await client._call_with_retry(
                messages=[{"role": "user", "content": "hi"}],
                system=None,
                model="test-model",
                max_tokens=16,
                temperature=0.0,
                max_retries=0,
            )

        client._client.messages.create.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_last_connection_error_is_raised(self, client):
        with patch("app.infra.claude.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(APIConnectionError):
                await client._call_with_retry(
                    messages=[{"role": "user", "content": "hi"}],
                    system=None,
                    model="test-model",
                    max_tokens=16,
                    temperature=0.0,
                )

        assert client._client.messages.create.await_count == 3

    @pytest.mark.asyncio
    async def test_generate_wraps_persistent_failure(self, client):
        with patch("app.infra.claude.asyncio.sleep", new=AsyncMock()):
            with pytest.raises(ClaudeClientError):
                await client.generate("hi")

        # Primary model and fallback model, three attempts each
        assert client._client.messages.create.await_count == 6
