from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence, Union
import logging
import textwrap

from ..gemini import GeminiClient, Generation
from ..retrieval import Passage

logger = logging.getLogger(__name__)

NO_ANSWER_SENTINEL = "NO_INFORMATION"


@dataclass(frozen=True)
class Answer:
    text: str


@dataclass(frozen=True)
class NoAnswerSignal:
    reason: str  # "sentinel" | "safety" | "empty"


Outcome = Union[Answer, NoAnswerSignal]


def _format_passages(passages: Sequence[Passage]) -> str:
    lines = []
    for i, p in enumerate(passages, start=1):
        lines.append(f"[{i}] {p.content}")
    return "\n\n---\n\n".join(lines)


def build_answer_prompt(question: str, passages: Sequence[Passage], rewritten: Optional[str] = None) -> str:
    rules = textwrap.dedent(f"""\
        You are a helpful assistant answering from a reference library.
        Rules:
        1. Answer the question using the reference passages.
        2. If the passages only touch on the topic, you may reason from general knowledge,
           but say clearly that you are doing so.
        3. If the passages are unrelated to the question, reply exactly: {NO_ANSWER_SENTINEL}
        4. Keep the answer short and friendly.
    """).strip()
    understood = f" (understood as: {rewritten})" if rewritten and rewritten != question else ""
    return (
        f"{rules}\n\nReference passages:\n---\n{_format_passages(passages)}\n---\n\n"
        f'Question: "{question}"{understood}\n\nAnswer:'
    )


def build_conservative_prompt(question: str, passages: Sequence[Passage]) -> str:
    rules = textwrap.dedent(f"""\
        Summarise, in neutral and factual language, what the reference passages say that is
        relevant to the question. Quote nothing sensitive and give no advice beyond the passages.
        If nothing is relevant, reply exactly: {NO_ANSWER_SENTINEL}
    """).strip()
    return (
        f"{rules}\n\nReference passages:\n---\n{_format_passages(passages)}\n---\n\n"
        f'Question: "{question}"\n\nSummary:'
    )


def build_rewrite_prompt(question: str) -> str:
    return (
        f'Rewrite the question "{question}" using precise domain terminology. '
        "Return only the rewritten question."
    )


class AnswerComposer:
    """Turns retrieved passages plus a question into an Answer, or signals that there is none."""

    def __init__(
        self,
        gemini: GeminiClient,
        *,
        temperature: float = 0.3,
        max_output_tokens: Optional[int] = None,
        safety_fallback: bool = True,
    ):
        self.gemini = gemini
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.safety_fallback = safety_fallback

    async def rewrite_query(self, question: str) -> str:
        """Best effort: any failure or empty reply returns the question unchanged."""
        try:
            gen = await self.gemini.generate(build_rewrite_prompt(question), temperature=0.1)
        except Exception as e:
            logger.warning("Query rewrite failed, using original question: %r", e)
            return question
        rewritten = gen.text.strip().strip('"').strip()
        if not rewritten or gen.safety_truncated:
            return question
        logger.info("Rewrote query %r -> %r", question, rewritten)
        return rewritten

    async def compose(
        self,
        question: str,
        passages: Sequence[Passage],
        *,
        rewritten: Optional[str] = None,
    ) -> Outcome:
        gen = await self.gemini.generate(
            build_answer_prompt(question, passages, rewritten),
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
        )

        if gen.safety_truncated and self.safety_fallback:
            logger.info("Answer blocked (finish=%s, block=%s); retrying conservatively",
                        gen.finish_reason, gen.blocked)
            gen = await self.gemini.generate(
                build_conservative_prompt(question, passages),
                temperature=0.0,
                max_output_tokens=self.max_output_tokens,
            )

        return interpret(gen)


def interpret(gen: Generation) -> Outcome:
    """Classify a provider reply as an Answer or a NoAnswerSignal."""
    if gen.safety_truncated:
        return NoAnswerSignal("safety")
    text = (gen.text or "").strip()
    if NO_ANSWER_SENTINEL in text:
        return NoAnswerSignal("sentinel")
    if not text:
        return NoAnswerSignal("empty")
    return Answer(text)
