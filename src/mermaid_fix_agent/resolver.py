"""
Turns a finished repair run into one ``FinalOutcome``.

The model is asked for a final JSON object, but may not produce one, or
may produce one that disagrees with the tool results. Sources are tried in
a fixed order and whatever is chosen is re-validated; a result is never
reported as valid on the model's word alone.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass

from mermaid_fix_agent.events import SOUNDNESS_MISMATCH, EventBus, SoundnessMismatchEvent
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import FinalOutcome, RepairAttempt, RunContext, ValidationResult
from mermaid_fix_agent.utils.json_parse import parse_json_object
from mermaid_fix_agent.validation import DiagramValidator

logger = get_logger("resolver")

NO_STRUCTURED_OUTPUT = "Model did not return structured output. Refer to the transcript for details."
NO_TOOL_CALL = "Model did not call the fix tool"
RECHECK_TIMEOUT = "Final re-validation skipped: run deadline reached"


@dataclass
class Proposal:
    """A candidate final answer and where it came from."""

    code: str
    explanation: str
    source: str  # "partial", "text", "attempt", "original"


def select_winner(attempts: list[RepairAttempt] | tuple[RepairAttempt, ...]) -> RepairAttempt | None:
    """Earliest validated attempt, else the last attempt, else None."""
    for attempt in attempts:
        if attempt.validated:
            return attempt
    return attempts[-1] if attempts else None


def _explanation(value: object) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, list) and all(isinstance(v, str) for v in value):
        return "\n".join(value)
    return None


def _from_object(obj: dict | None, source: str) -> Proposal | None:
    if not obj:
        return None
    code = obj.get("fixedCode")
    if not isinstance(code, str) or not code.strip():
        return None
    return Proposal(code=code, explanation=_explanation(obj.get("explanation")) or "", source=source)


class StructuredOutputResolver:
    """
    Resolves the final answer of a run.

    Order of sources:
        1. the partial-object channel (backends with structured output)
        2. JSON parsed from the last step's text
        3. the winning tool attempt
        4. the original code
    """

    def __init__(
        self,
        validator: DiagramValidator,
        events: EventBus | None = None,
        structured_output: bool = True,
    ) -> None:
        self.validator = validator
        self.events = events or EventBus()
        self.structured_output = structured_output

    def propose(self, ctx: RunContext) -> Proposal:
        """Pick the candidate answer, before re-validation."""
        if self.structured_output:
            proposal = _from_object(ctx.partial_output, "partial")
            if proposal:
                return proposal

        proposal = _from_object(parse_json_object(ctx.last_text), "text")
        if proposal:
            return proposal

        winner = select_winner(ctx.attempts)
        if winner is not None and winner.candidate_code:
            explanation = winner.explanation or (
                f"Fixed using validator tool: {winner.validation_error or 'Validation passed'}"
            )
            return Proposal(winner.candidate_code, explanation, "attempt")

        return Proposal(
            ctx.original_code,
            ctx.transcript_text or NO_STRUCTURED_OUTPUT,
            "original",
        )

    async def resolve(self, ctx: RunContext) -> FinalOutcome:
        proposal = self.propose(ctx)
        logger.debug("Resolved proposal from %s", proposal.source)

        validation = await self._validate(ctx, proposal.code)
        if validation is None:
            return self._timed_out(ctx, proposal)
        await self._check_soundness(ctx, proposal.code, validation.is_valid, validation.error_message)

        if not validation.is_valid:
            # The model's final answer can be worse than a candidate the tool accepted
            for attempt in ctx.attempts:
                if not attempt.validated or attempt.candidate_code == proposal.code:
                    continue
                recheck = await self._validate(ctx, attempt.candidate_code)
                if recheck is None:
                    return self._timed_out(ctx, proposal)
                await self._check_soundness(
                    ctx, attempt.candidate_code, recheck.is_valid, recheck.error_message
                )
                if recheck.is_valid:
                    logger.info("Final answer failed validation; using validated attempt instead")
                    proposal = Proposal(
                        attempt.candidate_code,
                        attempt.explanation or proposal.explanation,
                        "attempt",
                    )
                    validation = recheck
                    break

        return self._outcome(ctx, proposal, validation.is_valid, validation.error_message)

    async def _validate(self, ctx: RunContext, code: str) -> ValidationResult | None:
        """Validate within the run deadline. Returns None once it has passed."""
        if ctx.deadline is None:
            return await self.validator.validate(code)
        remaining = ctx.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            return None
        try:
            return await asyncio.wait_for(self.validator.validate(code), timeout=remaining)
        except asyncio.TimeoutError:
            return None

    def _timed_out(self, ctx: RunContext, proposal: Proposal) -> FinalOutcome:
        """Unvalidated outcome for a run whose deadline passed before the re-check."""
        logger.warning("Run %s: deadline reached before final re-validation", ctx.run_id)
        ctx.finish_reason = "timeout"
        known = next(
            (
                a.validation_error
                for a in reversed(ctx.attempts)
                if a.candidate_code == proposal.code and a.validation_error
            ),
            None,
        )
        return self._outcome(ctx, proposal, False, known or RECHECK_TIMEOUT)

    def _outcome(
        self,
        ctx: RunContext,
        proposal: Proposal,
        validated: bool,
        error: str | None,
    ) -> FinalOutcome:
        attempts = ctx.attempts_snapshot()
        message: str | None = None

        if ctx.mode == "repair" and not attempts and not validated:
            success = False
            message = NO_TOOL_CALL
            error = ctx.entry_error or error
        else:
            success = validated or bool(attempts)
            if not validated and attempts:
                message = f"Made progress in {len(attempts)} attempt(s) but the diagram still has issues."

        return FinalOutcome(
            success=success,
            is_complete=validated,
            fixed_code=proposal.code,
            explanation=proposal.explanation,
            validated=validated,
            validation_error=None if validated else error,
            attempts=attempts,
            usage=ctx.usage,
            finish_reason=ctx.finish_reason or "stop",
            steps_count=len(ctx.steps),
            message=message,
            step=ctx.request_step + len(attempts) if ctx.mode == "repair" else None,
        )

    async def _check_soundness(
        self,
        ctx: RunContext,
        code: str,
        is_valid: bool,
        error: str | None,
    ) -> None:
        """Flag attempts the tool accepted but the final re-check rejects."""
        if is_valid:
            return
        if not any(a.validated and a.candidate_code == code for a in ctx.attempts):
            return
        logger.warning(
            "Soundness mismatch in run %s: validated attempt failed re-check: %s",
            ctx.run_id,
            error,
        )
        await self.events.emit(
            SOUNDNESS_MISMATCH,
            SoundnessMismatchEvent(run_id=ctx.run_id, candidate_code=code, recheck_error=error),
        )
