"""LangChain callback handler that feeds a MetricsCollector.

Create one ``CollectorCallbackHandler`` per request, wrapping that request's
collector, and pass it via ``config["callbacks"]``.  Token usage is summed
across every LLM call in the run; retriever calls count as RAG searches and
the documents they return as sources.

The handler never finalizes the collector; the request owner still calls
``success()`` or ``error()``.  All callback methods are wrapped in
try/except so a metrics failure cannot crash a request.
"""

import logging
from collections.abc import Sequence
from typing import Any
from uuid import UUID

from langchain_core.callbacks import BaseCallbackHandler
from langchain_core.documents import Document
from langchain_core.outputs import LLMResult

from src.observability.collector import MetricsCollector

logger = logging.getLogger(__name__)


class CollectorCallbackHandler(BaseCallbackHandler):
    """Translates LLM and retriever callbacks into collector stage records."""

    def __init__(self, collector: MetricsCollector) -> None:
        super().__init__()
        self.collector = collector
        self.total_tokens = 0
        self.models: list[str] = []
        self.searches = 0
        self.sources = 0

    # ------------------------------------------------------------------
    # LLM callbacks
    # ------------------------------------------------------------------

    def on_llm_end(
        self,
        response: LLMResult,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        try:
            llm_output = response.llm_output
            if not llm_output:
                return

            model_name: str = llm_output.get("model_name", "") or "unknown"
            if model_name not in self.models:
                self.models.append(model_name)

            token_usage: dict[str, int] | None = llm_output.get("token_usage")
            if token_usage:
                total = token_usage.get("total_tokens")
                if total is None:
                    total = token_usage.get("prompt_tokens", 0) + token_usage.get("completion_tokens", 0)
                self.total_tokens += total

            self.collector.record_model(self._model_label(), self.total_tokens)
        except Exception:
            logger.debug("metrics: on_llm_end failed", exc_info=True)

    def _model_label(self) -> str:
        """Single model name, or "mixed" when the run used several."""
        if len(self.models) == 1:
            return self.models[0]
        return "mixed"

    # ------------------------------------------------------------------
    # Retriever callbacks
    # ------------------------------------------------------------------

    def on_retriever_end(
        self,
        documents: Sequence[Document],
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        try:
            self.searches += 1
            self.sources += len(documents)
            self.collector.record_rag(self.searches, self.sources, self.collector.urls_verified)
        except Exception:
            logger.debug("metrics: on_retriever_end failed", exc_info=True)

    def on_retriever_error(
        self,
        error: BaseException,
        *,
        run_id: UUID,
        parent_run_id: UUID | None = None,
        **kwargs: Any,
    ) -> None:
        try:
            self.searches += 1
            self.collector.record_rag(self.searches, self.sources, self.collector.urls_verified)
        except Exception:
            logger.debug("metrics: on_retriever_error failed", exc_info=True)
