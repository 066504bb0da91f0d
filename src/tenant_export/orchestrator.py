"""
One end-to-end export run.

    acquire tokens (both audiences) -> list root subscriptions
      -> per subscription, in a bounded pool of workers:
           Subscription event, then HierarchyWalker
             -> normalize -> BatchingEmitter -> sink
      -> final flush -> RunResult

Only a startup AuthError escapes run(). Every other failure is recorded in
RunResult.errors at the smallest scope it can be contained at, and sibling
subscriptions always continue.
"""

import asyncio
import contextlib
import logging
import time
import uuid
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any, Optional

from core.auth.credentials import GRAPH_AUDIENCE, MANAGEMENT_AUDIENCE, AzureCredentialProvider
from core.auth.token_provider import TokenProvider
from core.errors.exceptions import EventError, PipelineError
from core.logging.context import set_log_context
from core.logging.utilities import log_exception
from core.resilience.rate_limiter import RateLimiter, RateLimiterConfig
from tenant_export import metrics
from tenant_export.emitter import BatchingEmitter
from tenant_export.fetcher import PagedFetcher
from tenant_export.models import (
    ExportEvent,
    HierarchyNode,
    RunError,
    RunErrorScope,
    RunResult,
    SubscriptionState,
)
from tenant_export.normalizer import normalize
from tenant_export.principals import PrincipalResolver
from tenant_export.sinks import EventSink, create_sink
from tenant_export.walker import HierarchyWalker, subscription_node

logger = logging.getLogger(__name__)


class RunOrchestrator:
    """
    Sequences one export run.

    Collaborators may be injected (tests, alternative sinks); anything not
    injected is built from the config.
    """

    def __init__(
        self,
        config,
        token_provider: Optional[TokenProvider] = None,
        fetcher: Optional[PagedFetcher] = None,
        sink: Optional[EventSink] = None,
        run_id: Optional[str] = None,
        sleep: Optional[Callable[[float], Awaitable[None]]] = None,
    ):
        self.config = config
        self.run_id = run_id or uuid.uuid4().hex
        self._sleep = sleep

        self._tokens = token_provider or TokenProvider(
            AzureCredentialProvider(
                use_cli=config.use_cli,
                token_file=config.token_file,
                tenant_id=config.tenant_id,
            ),
            refresh_margin_seconds=config.token_refresh_margin_seconds,
            timeout_seconds=config.token_timeout_seconds,
            sleep=sleep,
        )
        self._fetcher = fetcher or PagedFetcher(
            self._tokens,
            rate_limit_per_second=config.rate_limit_per_second,
            max_retries=config.max_retries,
            backoff_base_seconds=config.backoff_base_seconds,
            backoff_max_seconds=config.backoff_max_seconds,
            request_timeout_seconds=config.request_timeout_seconds,
            sleep=sleep,
        )
        self._owns_fetcher = fetcher is None
        self._sink = sink or create_sink(config)

        self._result: Optional[RunResult] = None
        self._emitter: Optional[BatchingEmitter] = None
        self._cancel_event: Optional[asyncio.Event] = None

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def _acquire_startup_tokens(self) -> None:
        """Fail fast when either audience's token is unobtainable."""
        for audience in (MANAGEMENT_AUDIENCE, GRAPH_AUDIENCE):
            await self._tokens.get_token(audience)
        logger.info("Startup tokens acquired", extra=self._tokens.get_diagnostics())

    def _subscriptions_url(self, subscription_id: Optional[str] = None) -> str:
        path = "/subscriptions"
        if subscription_id:
            path += f"/{subscription_id}"
        return (
            f"{self.config.management_endpoint}{path}"
            f"?api-version={self.config.api_version('subscriptions')}"
        )

    async def _list_root_subscriptions(self) -> list[HierarchyNode]:
        scope = self.config.subscription_scope
        roots: list[HierarchyNode] = []

        if scope == "all":
            try:
                async for record in self._fetcher.fetch(
                    self._subscriptions_url(),
                    MANAGEMENT_AUDIENCE,
                    self.config.page_size,
                    stop=self._cancel_event,
                ):
                    self._add_root(roots, record)
            except PipelineError as e:
                self._record(RunError.from_exception(RunErrorScope.RUN, e))
                logger.error(
                    "Subscription listing failed",
                    extra={"error_type": type(e).__name__, "error_message": e.message[:200]},
                )
            return roots

        for subscription_id in scope:
            try:
                record = await self._fetcher.get_json(
                    self._subscriptions_url(subscription_id), MANAGEMENT_AUDIENCE
                )
            except PipelineError as e:
                self._record(
                    RunError.from_exception(
                        RunErrorScope.SUBSCRIPTION,
                        e,
                        source_id=f"/subscriptions/{subscription_id}",
                        subscription_id=subscription_id,
                    )
                )
                self._result.subscriptions_failed += 1
                logger.warning(
                    "Subscription lookup failed",
                    extra={
                        "source_id": subscription_id,
                        "error_type": type(e).__name__,
                        "error_message": e.message[:200],
                    },
                )
                continue
            self._add_root(roots, record)
        return roots

    def _add_root(self, roots: list[HierarchyNode], record: Any) -> None:
        node = subscription_node(record)
        if node.subscription_id:
            roots.append(node)
            return

        error = EventError("Subscription record carries no subscription id", source_id=node.id)
        self._record(RunError.from_exception(RunErrorScope.SUBSCRIPTION, error, source_id=node.id))
        self._result.subscriptions_failed += 1
        logger.warning(
            "Skipping subscription record without id",
            extra={"source_id": node.id, "error_type": type(error).__name__},
        )

    # ------------------------------------------------------------------
    # Node pipeline
    # ------------------------------------------------------------------

    def _record(self, error: RunError) -> None:
        self._result.errors.append(error)

    async def _handle_node(self, node: HierarchyNode) -> None:
        """normalize -> emit, recording failures at node scope."""
        self._result.nodes_visited += 1
        outcome = normalize(node, run_id=self.run_id)

        if isinstance(outcome, EventError):
            metrics.normalization_errors_counter.labels(kind=node.kind.value).inc()
            self._record(
                RunError.from_exception(
                    RunErrorScope.NODE,
                    outcome,
                    source_id=node.id or node.parent_id,
                    subscription_id=node.subscription_id,
                )
            )
            logger.warning(
                "Node could not be normalized",
                extra={
                    "kind": node.kind.value,
                    "parent_id": node.parent_id,
                    "error_message": outcome.message[:200],
                },
            )
            return

        if outcome.is_fallback:
            self._result.fallback_events += 1
            metrics.fallback_events_counter.labels(kind=node.kind.value).inc()

        await self._emit(outcome)

    async def _emit(self, event: ExportEvent) -> None:
        await self._emitter.emit(event)

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    async def _walk_subscription(
        self,
        root: HierarchyNode,
        walker: HierarchyWalker,
        semaphore: asyncio.Semaphore,
    ) -> None:
        async with semaphore:
            if self._cancel_event.is_set():
                logger.info(
                    "Cancellation requested, subscription not started",
                    extra={"source_id": root.id},
                )
                return

            set_log_context(subscription_id=root.subscription_id or "")

            await self._handle_node(root)
            if not root.id or not root.subscription_id:
                self._result.subscriptions_failed += 1
                return

            outcome = await walker.walk(root, self._handle_node)

            self._result.errors.extend(outcome.errors)
            if outcome.state is SubscriptionState.FAILED:
                self._result.subscriptions_failed += 1
            elif not outcome.cancelled:
                self._result.subscriptions_done += 1

    async def _run_workers(self, roots: list[HierarchyNode]) -> None:
        semaphore = asyncio.Semaphore(self.config.max_concurrent_subscriptions)
        walker = HierarchyWalker(
            self._fetcher,
            management_endpoint=self.config.management_endpoint,
            api_versions=self.config.api_versions,
            page_size=self.config.page_size,
            principal_resolver=(
                PrincipalResolver(
                    self._fetcher,
                    graph_endpoint=self.config.graph_endpoint,
                    timeout_seconds=self.config.principal_timeout_seconds,
                )
                if self.config.resolve_principals
                else None
            ),
            cancel_event=self._cancel_event,
        )

        tasks = [
            asyncio.create_task(
                self._walk_subscription(root, walker, semaphore),
                name=f"subscription-{root.subscription_id}",
            )
            for root in roots
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        for root, outcome in zip(roots, results):
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            if isinstance(outcome, Exception):
                self._result.subscriptions_failed += 1
                self._record(
                    RunError.from_exception(
                        RunErrorScope.SUBSCRIPTION,
                        outcome,
                        source_id=root.id,
                        subscription_id=root.subscription_id,
                    )
                )
                log_exception(logger, outcome, "Subscription worker crashed", source_id=root.id)

    async def _deadline(self, seconds: float) -> None:
        await asyncio.sleep(seconds)
        if not self._cancel_event.is_set():
            logger.warning("Run deadline reached, cancelling", extra={"duration_ms": seconds * 1000})
            self._cancel_event.set()

    # ------------------------------------------------------------------
    # Run
    # ------------------------------------------------------------------

    async def run(self, cancel_event: Optional[asyncio.Event] = None) -> RunResult:
        """
        Execute one run.

        Args:
            cancel_event: Set externally to stop starting new work. Pages in
                flight complete, buffered events are flushed, and the result
                reports cancelled=True.

        Returns:
            RunResult describing what succeeded and what failed

        Raises:
            AuthError: If a token for either audience cannot be obtained at
                startup
        """
        self._cancel_event = cancel_event or asyncio.Event()
        self._result = RunResult(run_id=self.run_id)
        self._emitter = BatchingEmitter(
            self._sink,
            batch_max_bytes=self.config.batch_max_bytes,
            batch_max_count=self.config.batch_max_count,
            max_retries=self.config.max_retries,
            backoff_base_seconds=self.config.backoff_base_seconds,
            backoff_max_seconds=self.config.backoff_max_seconds,
            rate_limiter=RateLimiter(
                RateLimiterConfig(
                    calls_per_second=self.config.sink_rate_limit_per_second,
                    name="sink",
                )
            ),
            sleep=self._sleep,
        )

        set_log_context(run_id=self.run_id, stage="export")
        start = time.perf_counter()
        logger.info(
            "Export run starting",
            extra={
                "operation": "run",
                "sink": self.config.sink_type,
                "subscriptions": (
                    0 if self.config.subscription_scope == "all"
                    else len(self.config.subscription_scope)
                ),
            },
        )

        await self._acquire_startup_tokens()

        deadline_task = None
        if self.config.run_timeout_seconds:
            deadline_task = asyncio.create_task(self._deadline(self.config.run_timeout_seconds))

        await self._sink.start()
        try:
            roots = await self._list_root_subscriptions()
            logger.info("Root subscriptions resolved", extra={"subscriptions": len(roots)})
            await self._run_workers(roots)
        finally:
            if deadline_task is not None:
                deadline_task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await deadline_task

            await self._emitter.flush()
            await self._sink.stop()
            if self._owns_fetcher:
                await self._fetcher.close()

        return self._finish(start)

    def _finish(self, start: float) -> RunResult:
        result = self._result
        result.events_emitted = self._emitter.events_emitted
        result.batches_sent = self._emitter.batches_sent
        result.batches_failed = self._emitter.batches_failed
        result.errors.extend(self._emitter.errors)
        result.cancelled = self._cancel_event.is_set()
        result.finished_at = datetime.now(timezone.utc)

        duration = time.perf_counter() - start
        metrics.run_duration_seconds.set(duration)
        logger.info(
            "Export run finished",
            extra={
                "operation": "run",
                "duration_ms": round(duration * 1000, 1),
                "nodes_visited": result.nodes_visited,
                "events_emitted": result.events_emitted,
                "batches_sent": result.batches_sent,
                "batches_failed": result.batches_failed,
                "fallback_events": result.fallback_events,
                "error_count": len(result.errors),
                "cancelled": result.cancelled,
            },
        )
        return result


async def run_export(
    config,
    cancel_event: Optional[asyncio.Event] = None,
    **collaborators: Any,
) -> RunResult:
    """Trigger boundary: one run with the given config."""
    return await RunOrchestrator(config, **collaborators).run(cancel_event)


__all__ = ["RunOrchestrator", "run_export"]
