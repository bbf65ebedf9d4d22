"""
NoteX Backend — AI Job Runner
===============================

What:  Summaries, flashcards, quizzes and explanations over user text.
Why:   The paid "AI study tools" of the app; each job costs a free-plan user
       one credit and is logged in ai_jobs.
How:   1. Validate input length
       2. Pre-check credits (no model call for an empty balance)
       3. Generate through the injected LLMService (retry + circuit breaker)
       4. Parse the model output
       5. Charge the credit and append the AI_Job row in the same transaction

       A model failure raises before step 5, so failed jobs cost nothing.
"""

import hashlib
import json
import logging
import re
from typing import Any, Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from notex.exceptions import ValidationError
from notex.models.ledger import JOB_EXPLAIN, JOB_FLASHCARDS, JOB_QUIZ, JOB_SUMMARY
from notex.models.user import User
from notex.services.ledger_service import LedgerService
from notex.services.llm_base import LLMService

logger = logging.getLogger(__name__)

MIN_TEXT_LENGTH = 50
MAX_TEXT_LENGTH = 50_000
MAX_ITEMS = 20

SUMMARY_PROMPT = (
    "You are a study assistant. Summarize the following text in clear bullet points. "
    "Focus on key concepts, important facts, and main ideas. Keep it concise and "
    "student-friendly.\n\nText:\n{text}"
)

FLASHCARDS_PROMPT = """Create {count} flashcards from this text. Format each as:
Q: [Question]
A: [Answer]

Make questions test understanding, not just memorization. Keep answers concise.

Text:
{text}"""

QUIZ_PROMPT = """Create a {count}-question quiz from this text. Include multiple choice and true/false questions.

Format each question as JSON:
{{
  "question": "Question text?",
  "type": "multiple_choice" or "true_false",
  "options": ["A", "B", "C", "D"],
  "correct": "B",
  "explanation": "Brief explanation"
}}

Return ONLY a JSON array, no other text.

Text:
{text}"""

EXPLAIN_QUESTION_PROMPT = "Explain this concept to a student in simple terms: {question}\n\nContext: {context}"
EXPLAIN_TEXT_PROMPT = "Explain this text in simple, student-friendly language:\n{text}"

# Returned when the model answers with something that is not a JSON array
FALLBACK_QUIZ = [
    {
        "question": "Sample question from your text?",
        "type": "multiple_choice",
        "options": ["Option A", "Option B", "Option C", "Option D"],
        "correct": "A",
        "explanation": "Quiz generation in progress",
    }
]

_FENCE_RE = re.compile(r"```(?:json)?\s*")


def fingerprint(text: str) -> str:
    """MD5 of the first 1000 characters; identifies repeated inputs in ai_jobs."""
    return hashlib.md5(text[:1000].encode("utf-8")).hexdigest()


def parse_flashcards(raw: str) -> List[Dict[str, Any]]:
    """Split `Q: ... / A: ...` blocks into cards; incomplete blocks are dropped."""
    cards: List[Dict[str, Any]] = []
    for block in re.split(r"\n\s*\n", raw.strip()):
        question = answer = None
        for line in block.splitlines():
            line = line.strip()
            if line.startswith("Q:") and question is None:
                question = line[2:].strip()
            elif line.startswith("A:") and answer is None:
                answer = line[2:].strip()
        if question and answer:
            cards.append({"id": len(cards) + 1, "question": question, "answer": answer})
    return cards


def parse_quiz(raw: str) -> List[Dict[str, Any]]:
    cleaned = _FENCE_RE.sub("", raw).strip()
    try:
        quiz = json.loads(cleaned)
    except json.JSONDecodeError:
        logger.warning("Quiz output was not valid JSON; returning placeholder quiz")
        return [dict(item) for item in FALLBACK_QUIZ]
    if not isinstance(quiz, list):
        return [dict(item) for item in FALLBACK_QUIZ]
    return quiz


def _require_text(text: Optional[str]) -> str:
    if not text or len(text) < MIN_TEXT_LENGTH:
        raise ValidationError(f"Text too short (min {MIN_TEXT_LENGTH} chars)", field="text")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError("Text too long (max 50k chars)", field="text")
    return text


def _require_count(count: int) -> int:
    if not 1 <= count <= MAX_ITEMS:
        raise ValidationError(f"Count must be between 1 and {MAX_ITEMS}", field="count")
    return count


class AIJobRunner:
    """Runs AI jobs for a user; LLM and ledger are injected."""

    def __init__(self, llm: LLMService, ledger: Optional[LedgerService] = None):
        self.llm = llm
        self.ledger = ledger or LedgerService()

    async def _run(
        self,
        db: AsyncSession,
        user: User,
        job_type: str,
        prompt: str,
        source_text: str,
        build_output,
    ) -> Dict[str, Any]:
        self.ledger.ensure_has_credits(user)
        raw = await self.llm.generate_text(prompt)
        output = build_output(raw)
        remaining = await self.ledger.consume_credit_for_ai_job(
            db, user, job_type, input_hash=fingerprint(source_text), output=output
        )
        logger.info("AI job %s completed for user %s", job_type, user.id)
        return {"output": output, "credits_remaining": remaining}

    async def summarize(self, db: AsyncSession, user: User, text: Optional[str]) -> Dict[str, Any]:
        text = _require_text(text)
        result = await self._run(
            db, user, JOB_SUMMARY, SUMMARY_PROMPT.format(text=text), text,
            lambda raw: {"summary": raw},
        )
        return {"summary": result["output"]["summary"], "credits_remaining": result["credits_remaining"]}

    async def flashcards(self, db: AsyncSession, user: User, text: Optional[str], count: int = 5) -> Dict[str, Any]:
        text = _require_text(text)
        count = _require_count(count)
        result = await self._run(
            db, user, JOB_FLASHCARDS, FLASHCARDS_PROMPT.format(count=count, text=text), text,
            lambda raw: {"flashcards": parse_flashcards(raw)},
        )
        cards = result["output"]["flashcards"]
        return {"flashcards": cards, "count": len(cards), "credits_remaining": result["credits_remaining"]}

    async def quiz(self, db: AsyncSession, user: User, text: Optional[str], count: int = 5) -> Dict[str, Any]:
        text = _require_text(text)
        count = _require_count(count)
        result = await self._run(
            db, user, JOB_QUIZ, QUIZ_PROMPT.format(count=count, text=text), text,
            lambda raw: {"quiz": parse_quiz(raw)},
        )
        quiz = result["output"]["quiz"]
        return {"quiz": quiz, "count": len(quiz), "credits_remaining": result["credits_remaining"]}

    async def explain(
        self, db: AsyncSession, user: User, text: Optional[str] = None, question: Optional[str] = None
    ) -> Dict[str, Any]:
        if not text and not question:
            raise ValidationError("Provide text or question", field="text")
        source = text or question
        if len(source) > MAX_TEXT_LENGTH or (question and len(question) > MAX_TEXT_LENGTH):
            raise ValidationError("Text too long (max 50k chars)", field="text")

        if question:
            prompt = EXPLAIN_QUESTION_PROMPT.format(question=question, context=text or "General explanation")
        else:
            prompt = EXPLAIN_TEXT_PROMPT.format(text=text)

        result = await self._run(
            db, user, JOB_EXPLAIN, prompt, source,
            lambda raw: {"explanation": raw},
        )
        return {"explanation": result["output"]["explanation"], "credits_remaining": result["credits_remaining"]}
