"""Per-request metrics collector.

A pipeline request creates one ``MetricsCollector`` when it starts, calls the
``record_*`` methods as stages complete (in any order, any number of times),
and finishes with exactly one of ``success()`` or ``error()``. Finishing builds
an immutable ``MetricRecord`` and ingests it into the store. A collector that
is never finished produces nothing.

    with start_metrics(store, "/api/agent-orchestrator", user_input=text) as m:
        m.record_model("gpt-4o-mini", tokens).record_rag(3, 12, urls_verified=9)
        cards = await generate(...)
        m.record_results(len(cards))
    # success() on normal exit, error(str(exc)) if the block raised
"""

import logging
import threading
import time
from collections.abc import Callable, Sequence
from types import TracebackType
from typing import Any, Self
from uuid import uuid4

from src.config import get_settings
from src.observability.metrics import estimate_cost
from src.observability.models import MetricRecord
from src.observability.store import MetricsStore

logger = logging.getLogger(__name__)


def _new_record_id(endpoint: str) -> str:
    slug = endpoint.strip("/").replace("/", "-") or "root"
    return f"{slug}_{uuid4().hex[:12]}"


class MetricsCollector:
    """Accumulates telemetry for one logical request and finalizes it once."""

    def __init__(
        self,
        store: MetricsStore,
        endpoint: str,
        user_input: str | None = None,
        followup_answers: Any = None,
        *,
        slow_request_ms: float | None = None,
        costly_request_usd: float | None = None,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        if slow_request_ms is None or costly_request_usd is None:
            settings = get_settings()
            slow_request_ms = settings.slow_request_ms if slow_request_ms is None else slow_request_ms
            costly_request_usd = settings.costly_request_usd if costly_request_usd is None else costly_request_usd

        self._store = store
        self._monotonic = monotonic
        self._start = monotonic()
        self._slow_request_ms = slow_request_ms
        self._costly_request_usd = costly_request_usd

        self.id = _new_record_id(endpoint)
        self.timestamp = store.now()
        self.endpoint = endpoint
        self.user_input = user_input
        self.followup_answers = followup_answers

        self.model_used: str | None = None
        self.tokens_used = 0
        self.approach: str | None = None
        self.stages_completed: tuple[str, ...] | None = None
        self.rag_searches: int | None = None
        self.rag_sources: int | None = None
        self.urls_verified: int | None = None
        self.cards_generated: int | None = None

        self.record: MetricRecord | None = None
        self._finished = False
        self._finish_lock = threading.Lock()

        logger.debug("Metrics started: %s (%s)", endpoint, self.id)

    @property
    def finished(self) -> bool:
        return self._finished

    # ------------------------------------------------------------------
    # Stage recorders: each overwrites its fields and returns self
    # ------------------------------------------------------------------

    def record_model(self, model: str, tokens_used: int) -> Self:
        self.model_used = model
        self.tokens_used = tokens_used
        logger.debug("Metrics %s: model=%s tokens=%d", self.id, model, tokens_used)
        return self

    def record_approach(self, approach: str, stages_completed: Sequence[str] | None = None) -> Self:
        self.approach = approach
        self.stages_completed = tuple(stages_completed) if stages_completed is not None else None
        logger.debug("Metrics %s: approach=%s stages=%s", self.id, approach, self.stages_completed)
        return self

    def record_rag(self, searches: int, sources: int, urls_verified: int | None = None) -> Self:
        self.rag_searches = searches
        self.rag_sources = sources
        self.urls_verified = urls_verified
        logger.debug("Metrics %s: rag searches=%d sources=%d urls_verified=%s", self.id, searches, sources, urls_verified)
        return self

    def record_results(self, cards_generated: int) -> Self:
        self.cards_generated = cards_generated
        return self

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def success(self) -> MetricRecord | None:
        """Finish as successful. Returns the record, or None if already finished."""
        return self._finish(success=True, error_message=None)

    def error(self, message: str) -> MetricRecord | None:
        """Finish as failed. Returns the record, or None if already finished."""
        return self._finish(success=False, error_message=message)

    def _finish(self, *, success: bool, error_message: str | None) -> MetricRecord | None:
        with self._finish_lock:
            if self._finished:
                logger.warning("Metrics %s already finished; ignoring second finalization", self.id)
                return None
            self._finished = True

        latency_ms = (self._monotonic() - self._start) * 1000
        model = self.model_used or "unknown"

        record = MetricRecord(
            id=self.id,
            timestamp=self.timestamp,
            endpoint=self.endpoint,
            latency_ms=latency_ms,
            success=success,
            error_message=error_message,
            tokens_used=self.tokens_used,
            model_used=model,
            estimated_cost=estimate_cost(model, self.tokens_used),
            approach=self.approach,
            stages_completed=self.stages_completed,
            rag_searches=self.rag_searches,
            rag_sources=self.rag_sources,
            urls_verified=self.urls_verified,
            user_input=self.user_input,
            followup_answers=self.followup_answers,
            cards_generated=self.cards_generated,
        )
        self.record = record
        self._store.ingest(record)

        logger.info(
            "Metrics finished: %s %s in %.0fms, $%.4f",
            record.endpoint,
            "success" if success else "error",
            latency_ms,
            record.estimated_cost,
        )
        if latency_ms > self._slow_request_ms:
            logger.warning("Slow response: %s took %.0fms", record.endpoint, latency_ms)
        if record.estimated_cost > self._costly_request_usd:
            logger.warning("Costly request: %s cost $%.4f", record.endpoint, record.estimated_cost)

        return record

    # ------------------------------------------------------------------
    # Context manager
    # ------------------------------------------------------------------

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        if self._finished:
            return
        if exc is None:
            self.success()
        else:
            self.error(str(exc) or type(exc).__name__)


def start_metrics(
    store: MetricsStore,
    endpoint: str,
    user_input: str | None = None,
    followup_answers: Any = None,
) -> MetricsCollector:
    """Start collecting metrics for one request to ``endpoint``."""
    return MetricsCollector(store, endpoint, user_input, followup_answers)


def record_simple_success(
    store: MetricsStore,
    endpoint: str,
    latency_ms: float,
    model: str,
    tokens: int,
    cards_generated: int | None = None,
) -> MetricRecord:
    """Ingest a successful record in one call, for callers that time themselves."""
    record = MetricRecord(
        id=_new_record_id(endpoint),
        timestamp=store.now(),
        endpoint=endpoint,
        latency_ms=latency_ms,
        success=True,
        tokens_used=tokens,
        model_used=model,
        estimated_cost=estimate_cost(model, tokens),
        cards_generated=cards_generated,
    )
    store.ingest(record)
    return record


def record_simple_error(
    store: MetricsStore,
    endpoint: str,
    latency_ms: float,
    error_message: str,
) -> MetricRecord:
    """Ingest a failed record in one call."""
    record = MetricRecord(
        id=_new_record_id(endpoint),
        timestamp=store.now(),
        endpoint=endpoint,
        latency_ms=latency_ms,
        success=False,
        error_message=error_message,
        model_used="none",
    )
    store.ingest(record)
    return record
