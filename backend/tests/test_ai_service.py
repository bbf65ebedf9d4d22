"""
NoteX Backend — AI Job Runner Tests
=====================================

What:  Tests for summaries, flashcards, quizzes and explanations.
How:   conftest.FakeLLM returns canned model output; credits and ai_jobs rows
       are checked in the per-test database.

Test Strategy:
    ✅ Output parsing (Q:/A: flashcards, fenced JSON quizzes, fallback quiz)
    ✅ Input length and count validation happen before any model call
    ✅ A successful job costs a free user one credit and logs one AI_Job
    ✅ A failed model call costs nothing
    ✅ Out of credits → no model call at all
"""

import pytest
from sqlalchemy import func, select

from notex.database import session_scope
from notex.exceptions import InsufficientCreditsError, LLMServiceError, ValidationError
from notex.models.ledger import JOB_FLASHCARDS, JOB_SUMMARY, AIJob
from notex.models.user import User
from notex.services.ai_service import (
    FALLBACK_QUIZ,
    AIJobRunner,
    fingerprint,
    parse_flashcards,
    parse_quiz,
)

from conftest import FakeLLM

LECTURE = (
    "Photosynthesis converts light energy into chemical energy. Chlorophyll in the "
    "thylakoid membranes absorbs light, driving the light-dependent reactions."
)


class TestParsing:

    def test_parse_flashcards(self):
        raw = (
            "Q: What absorbs light?\nA: Chlorophyll\n\n"
            "Q: Where does it happen?\nA: Thylakoid membranes\n\n"
            "Q: An unanswered question"
        )
        assert parse_flashcards(raw) == [
            {"id": 1, "question": "What absorbs light?", "answer": "Chlorophyll"},
            {"id": 2, "question": "Where does it happen?", "answer": "Thylakoid membranes"},
        ]

    def test_parse_quiz_strips_code_fences(self):
        raw = '```json\n[{"question": "Is the sky blue?", "type": "true_false", "correct": "True"}]\n```'
        quiz = parse_quiz(raw)
        assert quiz[0]["question"] == "Is the sky blue?"

    def test_parse_quiz_falls_back_on_invalid_json(self):
        quiz = parse_quiz("Sorry, I cannot do that.")
        assert quiz == FALLBACK_QUIZ
        quiz[0]["question"] = "mutated"
        assert FALLBACK_QUIZ[0]["question"] != "mutated"

    def test_fingerprint_uses_first_thousand_chars(self):
        assert fingerprint("a" * 1000) == fingerprint("a" * 1000 + "different tail")
        assert len(fingerprint(LECTURE)) == 32


class TestValidation:

    @pytest.mark.asyncio
    async def test_short_text_rejected_without_model_call(self, session_factory, make_user):
        llm = FakeLLM()
        user = await make_user()
        async with session_scope(session_factory) as db:
            with pytest.raises(ValidationError, match=r"Text too short \(min 50 chars\)"):
                await AIJobRunner(llm).summarize(db, user, "too short")
        assert llm.prompts == []

    @pytest.mark.asyncio
    async def test_long_text_rejected(self, session_factory, make_user):
        user = await make_user()
        async with session_scope(session_factory) as db:
            with pytest.raises(ValidationError, match="Text too long"):
                await AIJobRunner(FakeLLM()).summarize(db, user, "x" * 50_001)

    @pytest.mark.asyncio
    async def test_count_out_of_range_rejected(self, session_factory, make_user):
        user = await make_user()
        async with session_scope(session_factory) as db:
            with pytest.raises(ValidationError, match="Count must be between 1 and 20"):
                await AIJobRunner(FakeLLM()).flashcards(db, user, LECTURE, count=21)

    @pytest.mark.asyncio
    async def test_explain_needs_text_or_question(self, session_factory, make_user):
        user = await make_user()
        async with session_scope(session_factory) as db:
            with pytest.raises(ValidationError, match="Provide text or question"):
                await AIJobRunner(FakeLLM()).explain(db, user)


class TestJobs:

    @pytest.mark.asyncio
    async def test_summary_charges_one_credit(self, session_factory, make_user):
        seeded = await make_user(credits=10)
        llm = FakeLLM(["- Light becomes chemical energy"])
        async with session_scope(session_factory) as db:
            user = await db.get(User, seeded.id)
            result = await AIJobRunner(llm).summarize(db, user, LECTURE)

        assert result == {"summary": "- Light becomes chemical energy", "credits_remaining": 9}
        assert LECTURE in llm.prompts[0]
        async with session_scope(session_factory) as db:
            job = await db.scalar(select(AIJob).where(AIJob.user_id == seeded.id))
            assert job.job_type == JOB_SUMMARY
            assert job.input_hash == fingerprint(LECTURE)
            assert job.output == {"summary": "- Light becomes chemical energy"}

    @pytest.mark.asyncio
    async def test_flashcards_count_in_prompt(self, session_factory, make_user):
        seeded = await make_user()
        llm = FakeLLM(["Q: What absorbs light?\nA: Chlorophyll"])
        async with session_scope(session_factory) as db:
            user = await db.get(User, seeded.id)
            result = await AIJobRunner(llm).flashcards(db, user, LECTURE, count=3)

        assert result["count"] == 1
        assert result["flashcards"][0]["answer"] == "Chlorophyll"
        assert llm.prompts[0].startswith("Create 3 flashcards")
        async with session_scope(session_factory) as db:
            assert await db.scalar(select(AIJob.job_type)) == JOB_FLASHCARDS

    @pytest.mark.asyncio
    async def test_quiz_with_unparseable_output_uses_fallback(self, session_factory, make_user):
        seeded = await make_user()
        async with session_scope(session_factory) as db:
            user = await db.get(User, seeded.id)
            result = await AIJobRunner(FakeLLM(["not json"])).quiz(db, user, LECTURE)
        assert result["count"] == 1
        assert result["quiz"] == FALLBACK_QUIZ

    @pytest.mark.asyncio
    async def test_explain_question_uses_text_as_context(self, session_factory, make_user):
        seeded = await make_user()
        llm = FakeLLM(["Plants eat light."])
        async with session_scope(session_factory) as db:
            user = await db.get(User, seeded.id)
            result = await AIJobRunner(llm).explain(db, user, text="Chlorophyll", question="What is it?")
        assert result["explanation"] == "Plants eat light."
        assert "What is it?" in llm.prompts[0]
        assert "Context: Chlorophyll" in llm.prompts[0]

    @pytest.mark.asyncio
    async def test_subscriber_keeps_credits(self, session_factory, make_user):
        seeded = await make_user(plan="elite", credits=9999)
        async with session_scope(session_factory) as db:
            user = await db.get(User, seeded.id)
            result = await AIJobRunner(FakeLLM()).summarize(db, user, LECTURE)
        assert result["credits_remaining"] is None

    @pytest.mark.asyncio
    async def test_model_failure_costs_nothing(self, session_factory, make_user, failing_llm):
        seeded = await make_user(credits=4)
        with pytest.raises(LLMServiceError):
            async with session_scope(session_factory) as db:
                user = await db.get(User, seeded.id)
                await AIJobRunner(failing_llm).summarize(db, user, LECTURE)

        async with session_scope(session_factory) as db:
            assert (await db.get(User, seeded.id)).credits == 4
            assert await db.scalar(select(func.count(AIJob.id))) == 0

    @pytest.mark.asyncio
    async def test_no_credits_means_no_model_call(self, session_factory, make_user):
        seeded = await make_user(credits=0)
        llm = FakeLLM()
        async with session_scope(session_factory) as db:
            user = await db.get(User, seeded.id)
            with pytest.raises(InsufficientCreditsError):
                await AIJobRunner(llm).summarize(db, user, LECTURE)
        assert llm.prompts == []
