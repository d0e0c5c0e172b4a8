"""HTTP surface using Starlette."""
from __future__ import annotations

import json
from typing import Any

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, StreamingResponse
from starlette.routing import Route

from mermaid_fix_agent.adapters.registry import BackendRegistry
from mermaid_fix_agent.agent import RepairOrchestrator, RepairRun
from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.encoder import encode_stream, failure_payload
from mermaid_fix_agent.errors import (
    InputRejectedError,
    MermaidFixError,
    RequestValidationError,
)
from mermaid_fix_agent.events import EventBus
from mermaid_fix_agent.logging import get_logger
from mermaid_fix_agent.models import ChatRequest, RepairRequest
from mermaid_fix_agent.validation import DiagramValidator

logger = get_logger("web.server")

NDJSON = "application/x-ndjson"


def _error_response(error: Exception) -> JSONResponse:
    """Map an exception raised before streaming to a JSON error response."""
    if isinstance(error, RequestValidationError):
        return JSONResponse({"error": error.to_dict()}, status_code=error.status_code)
    if isinstance(error, InputRejectedError):
        return JSONResponse(
            {"error": str(error), "validationError": error.validation_error},
            status_code=error.status_code,
        )
    if isinstance(error, MermaidFixError):
        return JSONResponse({"error": str(error)}, status_code=error.status_code)
    logger.error("Unhandled error: %s", error, exc_info=True)
    return JSONResponse({"error": str(error) or "Internal Server Error"}, status_code=500)


async def _read_json(request: Request) -> Any:
    try:
        return await request.json()
    except (json.JSONDecodeError, UnicodeDecodeError):
        raise RequestValidationError("Request body must be valid JSON") from None


def create_app(
    config: RepairConfig | None = None,
    registry: BackendRegistry | None = None,
    validator: DiagramValidator | None = None,
    events: EventBus | None = None,
) -> Starlette:
    """Create the repair service Starlette application.

    Args:
        config: Repair configuration (defaults to ``RepairConfig.from_env()``)
        registry: Backend registry (defaults to the built-in providers)
        validator: Validator shared by all requests
        events: Event bus for lifecycle hooks
    """
    _config = config or RepairConfig.from_env()
    _registry = registry or BackendRegistry.with_defaults()
    _validator = validator or DiagramValidator.from_config(_config)
    _events = events or EventBus()

    def _orchestrator() -> RepairOrchestrator:
        # A fresh backend per request; credentials are checked here
        return RepairOrchestrator.from_config(
            _config, registry=_registry, validator=_validator, events=_events
        )

    async def _start(
        orchestrator: RepairOrchestrator, request: RepairRequest | ChatRequest
    ) -> RepairRun:
        # The response owns the backend once a run exists; before that, close it here
        try:
            if isinstance(request, ChatRequest):
                return await orchestrator.start_chat(request)
            return await orchestrator.start(request)
        except BaseException:
            await orchestrator.backend.aclose()
            raise

    def _stream(run: RepairRun, orchestrator: RepairOrchestrator, request: Request) -> StreamingResponse:
        async def lines():
            try:
                async for line in encode_stream(
                    run.events(),
                    fallback=lambda exc: failure_payload(run.ctx.entry_error, exc),
                    is_disconnected=request.is_disconnected,
                ):
                    yield line
            finally:
                await orchestrator.backend.aclose()

        return StreamingResponse(
            lines(),
            media_type=NDJSON,
            headers={
                "Cache-Control": "no-cache",
                "X-Accel-Buffering": "no",
            },
        )

    async def _run(run: RepairRun, orchestrator: RepairOrchestrator) -> JSONResponse:
        try:
            outcome = await run.collect()
        finally:
            await orchestrator.backend.aclose()
        return JSONResponse(outcome.to_dict())

    async def api_fix(request: Request) -> Any:
        """Repair a diagram; JSON by default, NDJSON when streaming."""
        try:
            body = await _read_json(request)
            if isinstance(body, dict) and "messages" in body:
                chat_request = ChatRequest.from_dict(body)
                orchestrator = _orchestrator()
                run = await _start(orchestrator, chat_request)
                return _stream(run, orchestrator, request)

            repair_request = RepairRequest.from_dict(body)
            orchestrator = _orchestrator()
            run = await _start(orchestrator, repair_request)
        except Exception as e:
            return _error_response(e)

        if repair_request.stream or request.query_params.get("mode") == "stream":
            return _stream(run, orchestrator, request)
        try:
            return await _run(run, orchestrator)
        except Exception as e:
            return _error_response(e)

    async def api_chat(request: Request) -> Any:
        """Conversational generate/repair, always streamed."""
        try:
            chat_request = ChatRequest.from_dict(await _read_json(request))
            orchestrator = _orchestrator()
            run = await _start(orchestrator, chat_request)
        except Exception as e:
            return _error_response(e)
        return _stream(run, orchestrator, request)

    async def api_validate(request: Request) -> JSONResponse:
        """Validate a diagram without any model involvement."""
        try:
            body = await _read_json(request)
            code = body.get("code") if isinstance(body, dict) else None
            if not isinstance(code, str):
                raise RequestValidationError("Invalid validate request", {"code": ["Expected string"]})
            result = await _validator.validate(code)
        except Exception as e:
            return _error_response(e)
        return JSONResponse(result.to_dict())

    async def api_health(request: Request) -> JSONResponse:
        return JSONResponse({
            "status": "ok",
            "backend": _config.backend,
            "toolCalling": _config.tool_calling,
            "maxSteps": _config.max_steps,
        })

    routes = [
        Route("/api/fix", api_fix, methods=["POST"]),
        Route("/api/chat", api_chat, methods=["POST"]),
        Route("/api/validate", api_validate, methods=["POST"]),
        Route("/api/health", api_health, methods=["GET"]),
    ]

    return Starlette(routes=routes)


def run_server(config: RepairConfig | None = None, host: str = "127.0.0.1", port: int = 8080) -> None:
    """Run the repair service."""
    import uvicorn

    app = create_app(config=config)
    logger.info("Serving on http://%s:%d", host, port)
    uvicorn.run(app, host=host, port=port)
