"""
NoteX Backend — Google Gemini Service Implementation
======================================================

What:  Concrete LLM service backed by Google Gemini text generation.
Why:   Summaries, flashcards, quizzes and explanations are all single-turn
       prompts; Gemini flash models answer them quickly and cheaply.
How:   Sends the prompt with generate_content_async, wrapped in a tenacity
       retry (exponential backoff + jitter) and a circuit breaker.
Who:   Built once by create_app() and stored on app.state; the AI job runner
       receives it through the get_llm_service dependency.

Resilience Strategy:
    1. Tenacity retry with exponential backoff + jitter for transient failures
    2. Circuit breaker to fail fast while Gemini is down
    3. Per-call timeout passed through request_options
"""

import logging
import time
import uuid
from typing import Optional

import google.generativeai as genai
from tenacity import (
    RetryError,
    before_sleep_log,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential_jitter,
)

from notex.exceptions import CircuitBreakerOpenError, LLMServiceError
from notex.services.llm_base import LLMService

logger = logging.getLogger(__name__)


# ══════════════════════════════════════════════════════════════════════════
# Circuit Breaker Implementation
# ══════════════════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Circuit breaker guarding the Gemini API.

    State Machine:
        CLOSED → failure_count reaches threshold → OPEN
        OPEN → recovery_timeout elapsed → HALF_OPEN (one test call)
        HALF_OPEN → success → CLOSED, failure → OPEN

    Not shared across worker processes; each uvicorn worker keeps its own.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"

    def __init__(self, failure_threshold: int = 5, recovery_timeout: int = 60):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time: Optional[float] = None

    def can_execute(self) -> bool:
        """
        Check if a request is allowed through.

        Raises:
            CircuitBreakerOpenError if OPEN and the recovery timeout hasn't elapsed.
        """
        if self.state == self.CLOSED:
            return True

        if self.state == self.OPEN:
            elapsed = time.time() - (self.last_failure_time or 0)
            if elapsed >= self.recovery_timeout:
                logger.info(
                    "Circuit breaker transitioning to HALF_OPEN after %.1fs",
                    elapsed,
                )
                self.state = self.HALF_OPEN
                return True
            remaining = int(self.recovery_timeout - elapsed)
            raise CircuitBreakerOpenError(recovery_time=max(remaining, 1))

        return True

    def record_success(self) -> None:
        if self.state == self.HALF_OPEN:
            logger.info("Circuit breaker transitioning to CLOSED (service recovered)")
        self.failure_count = 0
        self.state = self.CLOSED
        self.last_failure_time = None

    def record_failure(self) -> None:
        self.failure_count += 1
        self.last_failure_time = time.time()

        if self.state == self.HALF_OPEN:
            logger.warning("Circuit breaker returning to OPEN (test request failed)")
            self.state = self.OPEN
        elif self.failure_count >= self.failure_threshold:
            logger.warning(
                "Circuit breaker OPENING after %d consecutive failures",
                self.failure_count,
            )
            self.state = self.OPEN


# ══════════════════════════════════════════════════════════════════════════
# Gemini Service
# ══════════════════════════════════════════════════════════════════════════

class GeminiService(LLMService):
    """
    Google Gemini implementation of LLMService.

    Error Handling Chain:
        API call fails → tenacity retries (max_attempts with backoff)
        → All retries fail → record circuit breaker failure → LLMServiceError
        → Threshold reached → later calls rejected instantly (CircuitBreakerOpenError)
    """

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.0-flash-exp",
        max_attempts: int = 3,
        min_wait: float = 2,
        max_wait: float = 10,
        failure_threshold: int = 5,
        recovery_timeout: int = 60,
        timeout: int = 60,
    ):
        # The SDK keeps auth in module-level state
        if api_key:
            genai.configure(api_key=api_key)

        self.model_name = model_name
        self.model = genai.GenerativeModel(model_name)
        self.max_attempts = max_attempts
        self.timeout = timeout
        self.circuit_breaker = CircuitBreaker(
            failure_threshold=failure_threshold,
            recovery_timeout=recovery_timeout,
        )

        # Retry policy is bound per instance so it follows the injected settings
        self._call_gemini_with_retry = retry(
            retry=retry_if_exception_type(Exception),
            stop=stop_after_attempt(max_attempts),
            wait=wait_exponential_jitter(initial=min_wait, max=max_wait, jitter=1 if max_wait else 0),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=False,
        )(self._call_gemini)

        logger.info(
            "GeminiService initialized with model=%s, "
            "circuit_breaker(threshold=%d, recovery=%ds)",
            model_name,
            failure_threshold,
            recovery_timeout,
        )

    async def generate_text(self, prompt: str) -> str:
        """
        Generate text for a prompt.

        Flow:
            1. Check circuit breaker → may raise CircuitBreakerOpenError
            2. Call Gemini with retry logic
            3. Record success/failure in circuit breaker
        """
        request_id = str(uuid.uuid4())[:8]

        self.circuit_breaker.can_execute()

        logger.info("[%s] Gemini generation started (%d prompt chars)", request_id, len(prompt))

        try:
            result = await self._call_gemini_with_retry(prompt, request_id)
            self.circuit_breaker.record_success()
            return result

        except RetryError as e:
            self.circuit_breaker.record_failure()
            logger.error(
                "[%s] All Gemini retries exhausted: %s",
                request_id,
                str(e.last_attempt.exception()) if e.last_attempt else "Unknown error",
            )
            raise LLMServiceError(
                message="AI processing failed after multiple attempts. Please try again later.",
                retry_after=self.circuit_breaker.recovery_timeout,
                context={"request_id": request_id, "attempts": self.max_attempts},
            ) from e

    async def _call_gemini(self, prompt: str, request_id: str) -> str:
        """The actual API call; wrapped by the retry policy in __init__."""
        start_time = time.time()

        try:
            response = await self.model.generate_content_async(
                prompt,
                request_options={"timeout": self.timeout},
            )
            duration_ms = (time.time() - start_time) * 1000
            text = response.text.strip() if response.text else ""

            logger.info(
                "[%s] Gemini generation completed in %.0fms, %d chars",
                request_id,
                duration_ms,
                len(text),
            )
            return text

        except Exception as e:
            duration_ms = (time.time() - start_time) * 1000
            logger.warning(
                "[%s] Gemini API call failed after %.0fms: %s",
                request_id,
                duration_ms,
                str(e),
            )
            raise

    async def health_check(self) -> bool:
        """Lists available models (no token cost) to verify key and connectivity."""
        try:
            model_names = [m.name for m in genai.list_models()]
            target = f"models/{self.model_name}"
            if target not in model_names:
                logger.warning("Configured model %s not found in available models", target)
            return True
        except Exception as e:
            logger.warning("Gemini health check failed: %s", str(e))
            return False
