# app/pipeline.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from .answering.composer import AnswerComposer, NoAnswerSignal
from .answering.formatting import HANDOFF_MESSAGE, format_answer, no_context_message
from .escalation import EscalationNotifier
from .metrics import rag_chat_outcomes_total
from .retrieval import ContextRetriever

logger = logging.getLogger(__name__)


@dataclass
class ChatResult:
    answer: str
    outcome: str  # "answered" | "no_context" | "escalated"


@dataclass
class ChatPipeline:
    """retrieve -> compose -> escalate when there is nothing to say."""

    retriever: ContextRetriever
    composer: AnswerComposer
    notifier: EscalationNotifier
    answer_header: str = ""
    fallback_index_url: str = ""
    rewrite_query: bool = False

    async def answer(self, question: str, connection_id: Optional[str] = None) -> ChatResult:
        logger.info("Question: %r (connection=%s)", question, connection_id)

        query = question
        if self.rewrite_query:
            query = await self.composer.rewrite_query(question)

        passages = await self.retriever.retrieve(query)
        if not passages:
            logger.info("No passages found; escalating")
            await self.notifier.escalate(question, connection_id)
            return self._done(no_context_message(self.fallback_index_url), "no_context")

        logger.debug("Context sent to model (head): %s", passages[0].content[:300])
        outcome = await self.composer.compose(question, passages, rewritten=query)
        if isinstance(outcome, NoAnswerSignal):
            logger.info("Model gave no answer (%s); escalating", outcome.reason)
            await self.notifier.escalate(question, connection_id)
            return self._done(HANDOFF_MESSAGE, "escalated")

        return self._done(format_answer(outcome.text, passages, self.answer_header), "answered")

    @staticmethod
    def _done(answer: str, outcome: str) -> ChatResult:
        rag_chat_outcomes_total.labels(outcome=outcome).inc()
        return ChatResult(answer=answer, outcome=outcome)
