"""Async HTTP client for a remote consensus-tools server."""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import httpx

from consensus_tools.errors import ERRORS_BY_KIND, ConsensusToolsError


class ConsensusClient:
    """
    Thin wrapper over the server routes.

    Responses come back as plain dicts. Non-2xx responses raise the error
    class named by the body's ``kind``; nothing is retried.
    """

    def __init__(
        self,
        base_url: str,
        access_token: str = "",
        transport: httpx.AsyncBaseTransport | None = None,
        timeout: float = 30.0,
    ) -> None:
        headers = {"Authorization": f"Bearer {access_token}"} if access_token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, transport=transport, timeout=timeout
        )

    async def __aenter__(self) -> ConsensusClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        await self._http.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._http.request(method, path, **kwargs)
        if response.is_success:
            return response.json()
        try:
            body = response.json()
        except ValueError:
            body = {}
        kind = body.get("kind") if isinstance(body, dict) else None
        message = body.get("error") if isinstance(body, dict) else None
        error_cls = ERRORS_BY_KIND.get(kind or "", ConsensusToolsError)
        raise error_cls(message or f"{method} {path} failed with HTTP {response.status_code}")

    async def health(self) -> dict[str, Any]:
        return await self._request("GET", "/api/health")

    async def post_job(self, agent_id: str, **job: Any) -> dict[str, Any]:
        return await self._request("POST", "/api/jobs", json={"agent_id": agent_id, **job})

    async def list_jobs(
        self, status: str | None = None, tag: str | None = None, creator: str | None = None
    ) -> list[dict[str, Any]]:
        params = {k: v for k, v in {"status": status, "tag": tag, "creator": creator}.items() if v}
        data = await self._request("GET", "/api/jobs", params=params)
        return data["jobs"]

    async def get_job(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/jobs/{job_id}")

    async def get_status(self, job_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/api/jobs/{job_id}/status")

    async def claim_job(
        self, agent_id: str, job_id: str, stake_amount: float = 0.0, lease_seconds: int | None = None
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"agent_id": agent_id, "stake_amount": stake_amount}
        if lease_seconds:
            body["lease_seconds"] = lease_seconds
        return await self._request("POST", f"/api/jobs/{job_id}/claim", json=body)

    async def heartbeat(self, agent_id: str, job_id: str) -> dict[str, Any]:
        return await self._request("POST", f"/api/jobs/{job_id}/heartbeat", json={"agent_id": agent_id})

    async def submit_job(self, agent_id: str, job_id: str, **submission: Any) -> dict[str, Any]:
        return await self._request(
            "POST", f"/api/jobs/{job_id}/submit", json={"agent_id": agent_id, **submission}
        )

    async def vote(self, agent_id: str, job_id: str, **vote: Any) -> dict[str, Any]:
        return await self._request("POST", f"/api/jobs/{job_id}/vote", json={"agent_id": agent_id, **vote})

    async def resolve_job(
        self,
        agent_id: str,
        job_id: str,
        manual_winners: Sequence[str] | None = None,
        manual_submission_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"agent_id": agent_id}
        if manual_winners:
            body["manual_winners"] = list(manual_winners)
        if manual_submission_id:
            body["manual_submission_id"] = manual_submission_id
        return await self._request("POST", f"/api/jobs/{job_id}/resolve", json=body)

    async def get_balances(self) -> dict[str, float]:
        data = await self._request("GET", "/api/ledger")
        return data["balances"]

    async def get_balance(self, agent_id: str) -> float:
        data = await self._request("GET", f"/api/ledger/{agent_id}")
        return float(data["balance"])

    async def faucet(self, agent_id: str, amount: float) -> dict[str, Any]:
        return await self._request("POST", "/api/ledger/faucet", json={"agent_id": agent_id, "amount": amount})
