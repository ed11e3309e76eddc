"""Grounded answer composition.

Top-ranked chunks become a numbered evidence list; the model is asked to
answer from that list only and cite it with bracketed indices. Citations in
the reply are checked against the list before the answer is returned.
"""

from __future__ import annotations

from dataclasses import dataclass
import logging
import re

from knowledge_scout.errors import GenerationFailed
from knowledge_scout.llm import LLMClient
from knowledge_scout.services.rag.types import Answer, AnswerSource, ScoredChunk

logger = logging.getLogger(__name__)

DONT_KNOW = "I don't know"
NO_EVIDENCE_ANSWER = "I don't know. No evidence was found."

SYSTEM_PROMPT = (
    "You are an assistant answering a user's question using ONLY the evidence provided. "
    "Never use outside knowledge."
)

_CITATION_PATTERN = re.compile(r"\[(\d+(?:\s*,\s*\d+)*)\]")
_DONT_KNOW_PATTERN = re.compile(r"^\W*i\s+(?:don['’]t|do\s+not)\s+know", re.IGNORECASE)


@dataclass(frozen=True)
class Evidence:
    index: int
    doc_id: str
    title: str
    page: int
    score: float
    snippet: str


def truncate_snippet(text: str, limit: int) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return text[:limit].rstrip() + "…"


def build_evidence(hits: list[ScoredChunk], *, snippet_chars: int) -> list[Evidence]:
    return [
        Evidence(
            index=index,
            doc_id=hit.document_id,
            title=hit.document_title,
            page=hit.page_number,
            score=hit.score,
            snippet=truncate_snippet(hit.text, snippet_chars),
        )
        for index, hit in enumerate(hits, start=1)
    ]


def build_prompt(query: str, evidence: list[Evidence], scope_mode: str) -> str:
    lines = [f'User question:\n"""{query}"""', "", "Evidence:"]
    for item in evidence:
        lines.append("")
        lines.append(
            f'[{item.index}] (document:"{item.title}" id:{item.doc_id} '
            f"page:{item.page} score:{item.score:.4f})"
        )
        lines.append(item.snippet)

    instructions = [
        "Use ONLY the evidence above.",
        "For every claim include an inline citation with the evidence number, like [1] or [1, 3].",
        f'If the evidence is not sufficient to answer, reply exactly: "{DONT_KNOW}".',
    ]
    if scope_mode == "multi":
        instructions.append(
            "The evidence may come from several documents: combine them into one answer "
            "and say which document each point comes from."
        )
    instructions.append("Keep the answer concise.")

    lines.append("")
    lines.append("INSTRUCTIONS:")
    lines.extend(f"{number}) {text}" for number, text in enumerate(instructions, start=1))
    lines.append("")
    lines.append("Answer:")
    return "\n".join(lines)


def verify_citations(text: str, evidence_count: int) -> tuple[str, set[int]]:
    """Drop citation indices outside ``1..evidence_count``; return text and cited indices."""
    cited: set[int] = set()
    removed = False

    def replace(match: re.Match[str]) -> str:
        nonlocal removed
        indices = [int(part) for part in match.group(1).split(",")]
        valid = [index for index in indices if 1 <= index <= evidence_count]
        if len(valid) != len(indices):
            removed = True
        cited.update(valid)
        if not valid:
            return ""
        return "[" + ", ".join(str(index) for index in valid) + "]"

    cleaned = _CITATION_PATTERN.sub(replace, text)
    if removed:
        cleaned = re.sub(r"[ \t]+([.,;:!?])", r"\1", cleaned)
        cleaned = re.sub(r"[ \t]{2,}", " ", cleaned)
    return cleaned.strip(), cited


def is_dont_know(text: str) -> bool:
    return bool(_DONT_KNOW_PATTERN.match(text))


def no_evidence_answer() -> Answer:
    return Answer(text=NO_EVIDENCE_ANSWER, confidence=0.0, sources=[])


class AnswerComposer:
    def __init__(self, *, llm_client: LLMClient, snippet_chars: int = 500) -> None:
        self._llm_client = llm_client
        self._snippet_chars = snippet_chars

    async def compose(self, query: str, hits: list[ScoredChunk], scope_mode: str) -> Answer:
        if not hits:
            return no_evidence_answer()

        evidence = build_evidence(hits, snippet_chars=self._snippet_chars)
        result = await self._llm_client.generate_answer(
            system=SYSTEM_PROMPT,
            prompt=build_prompt(query, evidence, scope_mode),
        )

        text, cited = verify_citations(result.answer, len(evidence))
        if not text:
            raise GenerationFailed(
                f"model={result.model} returned no answer text besides citations",
                attempts=1,
            )

        if is_dont_know(text) or not cited:
            confidence = 0.0
        else:
            confidence = round(max(evidence[index - 1].score for index in cited), 6)

        logger.info(
            "answer composed model=%s fallback=%s evidence=%s cited=%s confidence=%s",
            result.model,
            result.used_fallback,
            len(evidence),
            sorted(cited),
            confidence,
        )
        return Answer(
            text=text,
            confidence=confidence,
            sources=[
                AnswerSource(
                    doc_id=item.doc_id,
                    title=item.title,
                    page=item.page,
                    score=round(item.score, 6),
                    snippet=item.snippet,
                    cited=item.index in cited,
                )
                for item in evidence
            ],
            model=result.model,
            used_fallback=result.used_fallback,
        )
