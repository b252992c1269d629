from __future__ import annotations

from typing import Any

import httpx


class GenerationClient:
    """Thin client for the external story generation service."""

    def __init__(
        self,
        base_url: str,
        *,
        api_key: str | None = None,
        timeout_seconds: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}

    async def generate(self, request: dict[str, Any]) -> Any:
        async with httpx.AsyncClient(timeout=self.timeout_seconds, transport=self.transport) as client:
            response = await client.post(f"{self.base_url}/v1/stories/generate", json=request, headers=self.headers)
            response.raise_for_status()
            return response.json()
