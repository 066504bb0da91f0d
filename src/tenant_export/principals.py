"""Lazy, cached lookup of role-assignment principals in Microsoft Graph."""

import asyncio
import logging
from typing import Any, Optional

from core.auth.credentials import GRAPH_AUDIENCE
from core.errors.exceptions import PipelineError

logger = logging.getLogger(__name__)

PRINCIPAL_FIELDS = ("displayName", "@odata.type", "userPrincipalName", "appId")


class PrincipalResolver:
    """
    Resolves principal ids to directory objects, at most once per id per run.

    Misses are cached too. Concurrent lookups of the same id share one
    in-flight request. Lookup failures never propagate: the caller gets None
    and emits the assignment with principalResolved=false.
    """

    def __init__(
        self,
        fetcher,
        graph_endpoint: str = "https://graph.microsoft.com",
        timeout_seconds: float = 10.0,
    ):
        self._fetcher = fetcher
        self._graph_endpoint = graph_endpoint.rstrip("/")
        self._timeout = timeout_seconds
        self._cache: dict[str, Optional[dict[str, Any]]] = {}
        self._inflight: dict[str, asyncio.Future] = {}
        self.lookups = 0

    async def resolve(self, principal_id: Optional[str]) -> Optional[dict[str, Any]]:
        if not principal_id:
            return None

        if principal_id in self._cache:
            return self._cache[principal_id]

        pending = self._inflight.get(principal_id)
        if pending is not None:
            return await asyncio.shield(pending)

        future = asyncio.get_running_loop().create_future()
        self._inflight[principal_id] = future
        try:
            result = await self._lookup(principal_id)
            self._cache[principal_id] = result
            future.set_result(result)
            return result
        finally:
            if not future.done():
                # Lookup did not complete; waiters fall back to unresolved
                future.set_result(None)
            self._inflight.pop(principal_id, None)

    async def _lookup(self, principal_id: str) -> Optional[dict[str, Any]]:
        self.lookups += 1
        url = f"{self._graph_endpoint}/v1.0/directoryObjects/{principal_id}"
        try:
            body = await asyncio.wait_for(
                self._fetcher.get_json(url, GRAPH_AUDIENCE),
                timeout=self._timeout,
            )
        except (PipelineError, asyncio.TimeoutError) as e:
            logger.debug(
                "Principal lookup failed",
                extra={
                    "principal_id": principal_id,
                    "error_type": type(e).__name__,
                    "error_message": str(e)[:200],
                },
            )
            return None

        return {key: body.get(key) for key in PRINCIPAL_FIELDS if body.get(key) is not None}


__all__ = ["PrincipalResolver", "PRINCIPAL_FIELDS"]
