from __future__ import annotations

from typing import Any

import httpx


class QueueClient:
    def __init__(
        self,
        base_url: str,
        module_id: str,
        api_key: str,
        *,
        worker_id: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.worker_id = worker_id
        self.transport = transport
        self.headers = {
            "X-Module-Id": module_id,
            "X-API-Key": api_key,
        }

    async def claim_next(self, limit: int = 5) -> list[dict[str, Any]]:
        payload: dict[str, Any] = {"limit": limit}
        if self.worker_id:
            payload["worker_id"] = self.worker_id
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/queue/claim-next", json=payload, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def submit_result(self, item_id: str, outcome: dict[str, Any]) -> dict[str, Any]:
        payload = dict(outcome)
        if self.worker_id:
            payload["worker_id"] = self.worker_id
        async with self._client() as client:
            response = await client.post(f"{self.base_url}/queue/{item_id}/result", json=payload, headers=self.headers)
            response.raise_for_status()
            return response.json()

    async def reset_stalled(self, limit: int = 100) -> dict[str, int]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/queue/reset-stalled",
                params={"limit": limit},
                headers=self.headers,
            )
            response.raise_for_status()
            payload = response.json()
            return {"reset": int(payload.get("reset", 0)), "failed": int(payload.get("failed", 0))}

    async def begin_stage(self, story_id: str, stage: str) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/stories/{story_id}/stages/{stage}/begin",
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    async def complete_stage(self, story_id: str, stage: str, *, automated: bool = True) -> dict[str, Any]:
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/stories/{story_id}/stages/{stage}/complete",
                json={"automated": automated},
                headers=self.headers,
            )
            response.raise_for_status()
            return response.json()

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=10.0, transport=self.transport)
