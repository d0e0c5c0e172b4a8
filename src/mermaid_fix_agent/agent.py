"""
The repair orchestrator.

Drives a model through a bounded tool-calling loop: each step the model
proposes a candidate through the validation tool, the validator answers,
and the loop stops once a candidate passes, the step budget runs out, or
the model stops calling the tool.

Example:
    config = RepairConfig.from_env()
    orchestrator = RepairOrchestrator.from_config(config)

    outcome = await orchestrator.repair(RepairRequest(code=broken, error=None))
    print(outcome.fixed_code)

    # Or stream events as they happen
    run = await orchestrator.start(RepairRequest(code=broken))
    async for event in run.events():
        print(event.type)
"""

from __future__ import annotations

import asyncio
import inspect
import re
import uuid
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypeVar

from mermaid_fix_agent.adapters.base import ModelBackend
from mermaid_fix_agent.adapters.registry import BackendRegistry
from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.context import (
    ContextCompactor,
    LatestToolResultCompactor,
    estimate_messages_tokens,
)
from mermaid_fix_agent.errors import BackendError, InputRejectedError
from mermaid_fix_agent.events import (
    RUN_END,
    RUN_START,
    STEP_END,
    STEP_START,
    TOOL_RESULT,
    EventBus,
    RunEndEvent,
    RunStartEvent,
    StepEndEvent,
    StepStartEvent,
    StreamEvent,
    ToolResultEvent,
)
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import (
    ChatRequest,
    ConversationStep,
    FinalOutcome,
    Message,
    RepairRequest,
    RunContext,
    ToolCall,
)
from mermaid_fix_agent.prompts import (
    CHAT_SYSTEM,
    CURRENT_STATE,
    LINE_FIX_SYSTEM,
    LINE_FIX_USER,
    REPAIR_SYSTEM,
    REPAIR_USER,
    PromptTemplateLoader,
    default_loader,
)
from mermaid_fix_agent.resolver import StructuredOutputResolver
from mermaid_fix_agent.tools import (
    LINE_FIX_TOOL_NAME,
    RepairTool,
    ToolResult,
    line_fix_definition,
    splice_line,
)
from mermaid_fix_agent.utils.json_parse import parse_streaming_json
from mermaid_fix_agent.validation import DiagramValidator
from mermaid_fix_agent.validation.sanitize import normalize_newlines

logger = get_logger("agent")

ALREADY_VALID = "Code is already valid. No changes required."
NOT_MERMAID = "Input is not a valid Mermaid diagram."
UNKNOWN_ERROR = "Unknown validation error"

_ERROR_LINE = re.compile(r"line\s+(\d+)", re.IGNORECASE)
_FENCED = re.compile(r"```(?:\s*mermaid)?\s*([\s\S]*?)```", re.IGNORECASE)

_T = TypeVar("_T")


class _StepTimeout(Exception):
    """Internal: the run's wall-clock deadline passed."""


class RepairOrchestrator:
    """
    Runs repair and chat sessions against one backend.

    The orchestrator itself holds no per-run state; every ``start()``
    creates a fresh ``RunContext``, so one instance can serve concurrent
    requests as long as the backend can.
    """

    def __init__(
        self,
        backend: ModelBackend,
        validator: DiagramValidator,
        config: RepairConfig | None = None,
        events: EventBus | None = None,
        compactor: ContextCompactor | None = None,
        prompts: PromptTemplateLoader | None = None,
    ) -> None:
        self.backend = backend
        self.validator = validator
        self.config = config or RepairConfig()
        self.events = events or EventBus()
        self.compactor = compactor or LatestToolResultCompactor()
        self.prompts = prompts or default_loader()
        self.tool = RepairTool(validator, name=self.config.tool_name)
        self.resolver = StructuredOutputResolver(
            validator,
            events=self.events,
            structured_output=self.config.structured_output and backend.supports_structured_output,
        )

    @classmethod
    def from_config(
        cls,
        config: RepairConfig,
        registry: BackendRegistry | None = None,
        validator: DiagramValidator | None = None,
        events: EventBus | None = None,
    ) -> RepairOrchestrator:
        """Build backend and validator from configuration."""
        registry = registry or BackendRegistry.with_defaults()
        return cls(
            backend=registry.create(config),
            validator=validator or DiagramValidator.from_config(config),
            config=config,
            events=events,
        )

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    async def start(self, request: RepairRequest) -> RepairRun:
        """
        Check the entry code and prepare a run.

        Raises:
            InputRejectedError: If the input does not look like Mermaid at all
        """
        entry = await self.validator.validate(request.code)
        if not entry.is_likely_mermaid:
            logger.info("Rejected input that does not look like Mermaid")
            raise InputRejectedError(NOT_MERMAID, validation_error=entry.error_message)

        ctx = RunContext(
            run_id=uuid.uuid4().hex[:12],
            original_code=request.code,
            mode="repair",
            entry_error=entry.error_message or request.error or UNKNOWN_ERROR,
            request_step=request.step,
        )
        logger.info(
            "Run %s: step=%d, %d chars, valid=%s", ctx.run_id, request.step, len(request.code), entry.is_valid
        )

        if entry.is_valid:
            ctx.entry_error = None
            outcome = FinalOutcome(
                success=True,
                is_complete=True,
                fixed_code=request.code,
                explanation=ALREADY_VALID,
                validated=True,
                finish_reason="already-valid",
                steps_count=0,
                step=request.step,
            )
            return RepairRun(self, ctx, system_prompt="", messages=[], outcome=outcome)

        system_prompt = self.prompts.render(REPAIR_SYSTEM, tool_name=self.tool.name)
        first = self.prompts.render(REPAIR_USER, code=request.code, error=ctx.entry_error)
        return RepairRun(self, ctx, system_prompt, [Message(role="user", content=first)])

    async def start_chat(self, request: ChatRequest) -> RepairRun:
        """Prepare a conversational generate/repair run (no entry check)."""
        system_prompt = self.prompts.render(CHAT_SYSTEM, tool_name=self.tool.name)
        if request.diagram_type and request.diagram_type.strip():
            system_prompt += f"\n\nPREFERRED DIAGRAM TYPE: {request.diagram_type.strip()}"
        if request.context and request.context.strip():
            system_prompt += f"\n\nADDITIONAL CONTEXT:\n{request.context.strip()}"

        messages: list[Message] = []
        for msg in request.messages:
            if msg.role == "system":
                system_prompt += f"\n\n{msg.content}"
            else:
                messages.append(msg)

        ctx = RunContext(
            run_id=uuid.uuid4().hex[:12],
            original_code=_last_fenced_block(messages),
            mode="chat",
        )
        logger.info("Chat run %s: %d message(s)", ctx.run_id, len(messages))
        return RepairRun(self, ctx, system_prompt, messages)

    async def repair(self, request: RepairRequest) -> FinalOutcome:
        """Run a repair to completion and return the outcome."""
        run = await self.start(request)
        return await run.collect()

    async def chat(self, request: ChatRequest) -> FinalOutcome:
        """Run a chat session to completion and return the outcome."""
        run = await self.start_chat(request)
        return await run.collect()

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def execute_tool(self, call: ToolCall, ctx: RunContext) -> ToolResult:
        if call.name != self.tool.name:
            logger.warning("Model called unknown tool: %s", call.name)
            return ToolResult(
                fixed_code="",
                explanation="",
                validated=False,
                validation_error=f"Unknown tool '{call.name}'. Use {self.tool.name}.",
            )
        return await self.tool.execute(call.arguments, ctx)


class RepairRun:
    """
    One repair session. Iterate ``events()`` once; ``outcome`` is set when
    the final ``result`` event has been produced.
    """

    def __init__(
        self,
        orchestrator: RepairOrchestrator,
        ctx: RunContext,
        system_prompt: str,
        messages: list[Message],
        outcome: FinalOutcome | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.ctx = ctx
        self.system_prompt = system_prompt
        self.transcript = list(messages)
        self.outcome = outcome
        self._started = False
        self._accumulated_text = ""
        self._pending: ToolResult | None = None  # latest failing candidate

    @property
    def run_id(self) -> str:
        return self.ctx.run_id

    async def collect(self) -> FinalOutcome:
        async for _ in self.events():
            pass
        assert self.outcome is not None
        return self.outcome

    async def events(self) -> AsyncIterator[StreamEvent]:
        if self._started:
            raise RuntimeError("RepairRun.events() can only be iterated once")
        self._started = True

        if self.outcome is not None:
            yield StreamEvent(type="result", outcome=self.outcome)
            return

        orch = self.orchestrator
        config = orch.config
        ctx = self.ctx
        loop = asyncio.get_running_loop()
        if config.timeout_seconds:
            ctx.deadline = loop.time() + config.timeout_seconds

        await orch.events.emit(
            RUN_START,
            RunStartEvent(
                run_id=ctx.run_id,
                mode=ctx.mode,
                max_steps=config.max_steps,
                entry_error=ctx.entry_error,
            ),
        )

        step = 0
        done = False

        line_number = self._fast_path_line()
        if line_number is not None and config.max_steps > 0:
            step += 1
            fast_events = self._line_fast_path(step, line_number)
            try:
                async for event in fast_events:
                    yield event
            finally:
                await fast_events.aclose()
            done = self._after_fast_path(ctx.steps[-1], step)

        while not done and step < config.max_steps:
            if ctx.deadline is not None and loop.time() >= ctx.deadline:
                ctx.finish_reason = "timeout"
                break
            step += 1
            step_events = self._run_step(step)
            try:
                async for event in step_events:
                    yield event
            finally:
                await step_events.aclose()
            done = self._after_step(ctx.steps[-1], step)

        if ctx.finish_reason is None:
            ctx.finish_reason = "max-steps"

        logger.info(
            "Run %s finished: %s after %d step(s), %d attempt(s), %d tokens",
            ctx.run_id,
            ctx.finish_reason,
            len(ctx.steps),
            len(ctx.attempts),
            ctx.usage.total_tokens,
        )
        yield StreamEvent(type="finish", finish_reason=ctx.finish_reason, usage=ctx.usage)

        self.outcome = await orch.resolver.resolve(ctx)
        await orch.events.emit(
            RUN_END,
            RunEndEvent(
                run_id=ctx.run_id,
                steps=len(ctx.steps),
                finish_reason=self.outcome.finish_reason,
                success=self.outcome.success,
                validated=self.outcome.validated,
            ),
        )
        yield StreamEvent(type="result", outcome=self.outcome)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _after_step(self, conv: ConversationStep, step: int) -> bool:
        """Apply the stop conditions. Returns True when the loop should end."""
        ctx = self.ctx
        if conv.finish_reason in ("error", "timeout"):
            ctx.finish_reason = conv.finish_reason
            return True
        if any(a.validated for a in conv.attempts):
            ctx.finish_reason = conv.finish_reason or "tool-calls"
            return True
        if not conv.attempts and not conv.tool_calls:
            ctx.finish_reason = conv.finish_reason or "stop"
            return True
        if step >= self.orchestrator.config.max_steps:
            ctx.finish_reason = "max-steps"
            return True
        return False

    def _after_fast_path(self, conv: ConversationStep, step: int) -> bool:
        # A failed fast path falls through to the regular loop
        ctx = self.ctx
        if conv.finish_reason == "timeout":
            ctx.finish_reason = "timeout"
            return True
        if any(a.validated for a in conv.attempts):
            ctx.finish_reason = "tool-calls"
            return True
        if step >= self.orchestrator.config.max_steps:
            ctx.finish_reason = "max-steps"
            return True
        return False

    def _step_messages(self, step: int) -> list[Message]:
        orch = self.orchestrator
        messages = orch.compactor.compact(self.transcript)
        if step > 1 and self._pending is not None:
            state = orch.prompts.render(
                CURRENT_STATE,
                step=step - 1,
                code=self._pending.fixed_code,
                error=self._pending.validation_error or UNKNOWN_ERROR,
                hints=self._pending.hints or "(none)",
                tool_name=orch.tool.name,
            )
            messages.append(Message(role="user", content=state))
        return messages

    async def _within_deadline(self, awaitable: Awaitable[_T]) -> _T:
        """Await within the run deadline; raises ``_StepTimeout`` past it."""
        if self.ctx.deadline is None:
            return await awaitable
        remaining = self.ctx.deadline - asyncio.get_running_loop().time()
        if remaining <= 0:
            if inspect.iscoroutine(awaitable):
                awaitable.close()
            raise _StepTimeout()
        try:
            return await asyncio.wait_for(awaitable, timeout=remaining)
        except asyncio.TimeoutError:
            raise _StepTimeout() from None

    async def _next_event(self, upstream: AsyncIterator[Any]) -> Any:
        """Await the next backend event within the run deadline."""
        return await self._within_deadline(upstream.__anext__())

    def _text_event(self, conv: ConversationStep, text: str) -> StreamEvent:
        conv.text += text
        self._accumulated_text += text
        if self.orchestrator.resolver.structured_output:
            self.ctx.partial_output = parse_streaming_json(conv.text.strip())
        return StreamEvent(
            type="text-delta",
            step=conv.index,
            text_delta=text,
            accumulated_text=self._accumulated_text,
        )

    async def _record_result(
        self,
        conv: ConversationStep,
        call: ToolCall,
        result: ToolResult,
        tool_name: str,
    ) -> StreamEvent:
        orch = self.orchestrator
        if call.name == orch.tool.name or tool_name == LINE_FIX_TOOL_NAME:
            attempt = result.to_attempt(conv.index, call.id)
            conv.attempts.append(attempt)
            self.ctx.attempts.append(attempt)
            self._pending = None if result.validated else result

        logger.debug(
            "Step %d tool %s -> validated=%s", conv.index, tool_name, result.validated
        )
        payload = result.to_dict()
        await orch.events.emit(
            TOOL_RESULT,
            ToolResultEvent(
                run_id=self.ctx.run_id,
                step=conv.index,
                tool_call_id=call.id,
                tool_name=tool_name,
                result=payload,
            ),
        )
        return StreamEvent(
            type="tool-result",
            step=conv.index,
            tool_name=tool_name,
            tool_call_id=call.id,
            result=payload,
        )

    async def _run_step(self, step: int) -> AsyncIterator[StreamEvent]:
        orch = self.orchestrator
        ctx = self.ctx
        messages = self._step_messages(step)
        conv = ConversationStep(index=step)
        ctx.steps.append(conv)
        ctx.partial_output = {}

        logger.debug(
            "Step %d: %d message(s), ~%d tokens",
            step,
            len(messages),
            estimate_messages_tokens(messages),
        )
        await orch.events.emit(
            STEP_START, StepStartEvent(run_id=ctx.run_id, step=step, message_count=len(messages))
        )

        tool_messages: list[Message] = []
        upstream = orch.backend.stream(messages, self.system_prompt, tools=[orch.tool.definition()])
        try:
            while True:
                try:
                    event = await self._next_event(upstream)
                except StopAsyncIteration:
                    break

                if event.type == "text_delta":
                    yield self._text_event(conv, event.text)
                elif event.type == "tool_call" and event.tool_call is not None:
                    call = event.tool_call
                    conv.tool_calls.append(call)
                    yield StreamEvent(
                        type="tool-call",
                        step=step,
                        tool_name=call.name,
                        tool_call_id=call.id,
                        args=call.arguments,
                    )
                    result = await self._within_deadline(orch.execute_tool(call, ctx))
                    tool_messages.append(
                        Message(
                            role="tool",
                            content=result.to_text(),
                            tool_call_id=call.id,
                            name=call.name,
                        )
                    )
                    yield await self._record_result(conv, call, result, call.name)
                elif event.type == "done":
                    conv.finish_reason = event.finish_reason
                    conv.usage += event.usage
                    ctx.usage += event.usage
                elif event.type == "error":
                    raise BackendError(event.error or "Backend reported an error")
        except _StepTimeout:
            logger.warning("Run %s timed out during step %d", ctx.run_id, step)
            conv.finish_reason = "timeout"
            yield StreamEvent(
                type="error",
                step=step,
                error=f"Repair timed out after {orch.config.timeout_seconds}s",
            )
        except Exception as e:
            logger.error("Backend failure in run %s step %d: %s", ctx.run_id, step, e)
            conv.finish_reason = "error"
            ctx.error = str(e) or e.__class__.__name__
            yield StreamEvent(type="error", step=step, error=ctx.error)
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

        if conv.text or conv.tool_calls:
            self.transcript.append(
                Message(role="assistant", content=conv.text, tool_calls=list(conv.tool_calls))
            )
        self.transcript.extend(tool_messages)

        await orch.events.emit(
            STEP_END,
            StepEndEvent(
                run_id=ctx.run_id,
                step=step,
                tool_call_count=len(conv.tool_calls),
                validated=any(a.validated for a in conv.attempts),
                finish_reason=conv.finish_reason,
            ),
        )

    # ------------------------------------------------------------------
    # Single-line fast path
    # ------------------------------------------------------------------

    def _fast_path_line(self) -> int | None:
        """Line number named by the entry error, when the fast path applies."""
        if not self.orchestrator.config.line_fast_path or self.ctx.mode != "repair":
            return None
        match = _ERROR_LINE.search(self.ctx.entry_error or "")
        if not match:
            return None
        return max(1, int(match.group(1)))

    async def _line_fast_path(self, step: int, line_number: int) -> AsyncIterator[StreamEvent]:
        """
        Ask for a replacement of just the failing line, then validate the
        spliced diagram. Failures fall through to the regular loop.
        """
        orch = self.orchestrator
        ctx = self.ctx
        conv = ConversationStep(index=step)
        ctx.steps.append(conv)

        lines = normalize_newlines(ctx.original_code).lstrip("\ufeff").split("\n")
        idx = min(len(lines) - 1, line_number - 1)
        prompt = orch.prompts.render(
            LINE_FIX_USER,
            line_number=line_number,
            prev_number=line_number - 1,
            prev_line=lines[idx - 1] if idx > 0 else "",
            target_line=lines[idx],
            next_number=line_number + 1,
            next_line=lines[idx + 1] if idx + 1 < len(lines) else "",
            error=ctx.entry_error,
            tool_name=LINE_FIX_TOOL_NAME,
        )
        logger.debug("Run %s: trying single-line fix for line %d", ctx.run_id, line_number)
        await orch.events.emit(STEP_START, StepStartEvent(run_id=ctx.run_id, step=step, message_count=1))

        call: ToolCall | None = None
        upstream = orch.backend.stream(
            [Message(role="user", content=prompt)],
            orch.prompts.render(LINE_FIX_SYSTEM),
            tools=[line_fix_definition()],
            tool_choice="required",
        )
        try:
            while True:
                try:
                    event = await self._next_event(upstream)
                except StopAsyncIteration:
                    break
                if event.type == "text_delta":
                    yield self._text_event(conv, event.text)
                elif event.type == "tool_call" and call is None and event.tool_call is not None:
                    call = event.tool_call
                elif event.type == "done":
                    conv.finish_reason = event.finish_reason
                    conv.usage += event.usage
                    ctx.usage += event.usage
                elif event.type == "error":
                    raise BackendError(event.error or "Backend reported an error")
        except _StepTimeout:
            conv.finish_reason = "timeout"
            yield StreamEvent(
                type="error",
                step=step,
                error=f"Repair timed out after {orch.config.timeout_seconds}s",
            )
            return
        except Exception as e:
            logger.warning("Fast path failed; falling back to multi-step repair: %s", e)
            call = None
        finally:
            aclose = getattr(upstream, "aclose", None)
            if aclose is not None:
                await aclose()

        replacement = call.arguments.get("replacement") if call is not None else None
        if call is not None and isinstance(replacement, str):
            conv.tool_calls.append(call)
            yield StreamEvent(
                type="tool-call",
                step=step,
                tool_name=call.name,
                tool_call_id=call.id,
                args=call.arguments,
            )
            explanation = call.arguments.get("explanation")
            if not isinstance(explanation, str) or not explanation:
                explanation = f"Replaced line {line_number}"
            candidate = splice_line(lines, idx, replacement)
            try:
                result = await self._within_deadline(
                    orch.tool.execute({"fixedCode": candidate, "explanation": explanation}, ctx)
                )
            except _StepTimeout:
                conv.finish_reason = "timeout"
                yield StreamEvent(
                    type="error",
                    step=step,
                    error=f"Repair timed out after {orch.config.timeout_seconds}s",
                )
            else:
                yield await self._record_result(conv, call, result, LINE_FIX_TOOL_NAME)

        await orch.events.emit(
            STEP_END,
            StepEndEvent(
                run_id=ctx.run_id,
                step=step,
                tool_call_count=len(conv.tool_calls),
                validated=any(a.validated for a in conv.attempts),
                finish_reason=conv.finish_reason,
            ),
        )


def _last_fenced_block(messages: list[Message]) -> str:
    """Last fenced code block in the user turns, or ""."""
    found = ""
    for msg in messages:
        if msg.role != "user":
            continue
        for match in _FENCED.finditer(msg.content):
            found = match.group(1).strip()
    return found
