"""
Mermaid Fix Agent - validator-guided repair of broken Mermaid diagrams.

A language model proposes candidate diagrams through a validation tool;
every candidate is checked by a real Mermaid parser, and the loop stops as
soon as one passes, the step limit runs out, or the model stops calling
the tool. The final answer is always re-validated before it is reported.

Example:
    from mermaid_fix_agent import RepairConfig, RepairOrchestrator, RepairRequest

    config = RepairConfig.from_env(backend="anthropic")
    orchestrator = RepairOrchestrator.from_config(config)

    outcome = await orchestrator.repair(
        RepairRequest(code="graph TD\\nA[Start(1)] --> B", error="Parse error on line 2")
    )
    print(outcome.validated, outcome.fixed_code)
"""

from mermaid_fix_agent.adapters import (
    AnthropicBackend,
    BackendEvent,
    BackendRegistry,
    JsonToolCallingBackend,
    ModelBackend,
    OpenAIBackend,
    ToolDefinition,
)
from mermaid_fix_agent.agent import RepairOrchestrator, RepairRun
from mermaid_fix_agent.config import RepairConfig
from mermaid_fix_agent.context import (
    ContextCompactor,
    LatestToolResultCompactor,
    NoopCompactor,
    estimate_message_tokens,
    estimate_messages_tokens,
    estimate_tokens,
)
from mermaid_fix_agent.encoder import EventStreamEncoder, encode_stream, failure_payload
from mermaid_fix_agent.errors import (
    BackendError,
    InputRejectedError,
    MermaidFixError,
    MissingCredentialError,
    ParserUnavailableError,
    RequestValidationError,
)
from mermaid_fix_agent.events import (
    RUN_END,
    RUN_START,
    SOUNDNESS_MISMATCH,
    STEP_END,
    STEP_START,
    TOOL_RESULT,
    EventBus,
    RunEndEvent,
    RunStartEvent,
    SoundnessMismatchEvent,
    StepEndEvent,
    StepStartEvent,
    StreamEvent,
    ToolResultEvent,
)
from mermaid_fix_agent.models import (
    ChatRequest,
    ConversationStep,
    FinalOutcome,
    LintError,
    LintFix,
    Message,
    RepairAttempt,
    RepairRequest,
    RunContext,
    TokenUsage,
    ToolCall,
    ValidationResult,
)
from mermaid_fix_agent.prompts import PromptTemplate, PromptTemplateLoader
from mermaid_fix_agent.resolver import StructuredOutputResolver, select_winner
from mermaid_fix_agent.tools import RepairTool, ToolResult
from mermaid_fix_agent.validation import (
    CallableParser,
    DiagramParser,
    DiagramValidator,
    MermaidCLIParser,
    ParseOutcome,
    detect_mermaid_intent,
    lint_mermaid,
    sanitize_mermaid,
)

__version__ = "0.1.0"

__all__ = [
    # Core
    "RepairOrchestrator",
    "RepairRun",
    "RepairConfig",
    "RepairTool",
    "ToolResult",
    "StructuredOutputResolver",
    "select_winner",
    # Models
    "ChatRequest",
    "ConversationStep",
    "FinalOutcome",
    "LintError",
    "LintFix",
    "Message",
    "RepairAttempt",
    "RepairRequest",
    "RunContext",
    "TokenUsage",
    "ToolCall",
    "ValidationResult",
    # Errors
    "MermaidFixError",
    "RequestValidationError",
    "InputRejectedError",
    "MissingCredentialError",
    "ParserUnavailableError",
    "BackendError",
    # Events
    "EventBus",
    "RUN_START",
    "RUN_END",
    "STEP_START",
    "STEP_END",
    "TOOL_RESULT",
    "SOUNDNESS_MISMATCH",
    "RunStartEvent",
    "RunEndEvent",
    "StepStartEvent",
    "StepEndEvent",
    "ToolResultEvent",
    "SoundnessMismatchEvent",
    "StreamEvent",
    # Encoding
    "EventStreamEncoder",
    "encode_stream",
    "failure_payload",
    # Validation
    "CallableParser",
    "DiagramParser",
    "DiagramValidator",
    "MermaidCLIParser",
    "ParseOutcome",
    "detect_mermaid_intent",
    "lint_mermaid",
    "sanitize_mermaid",
    # Context Management
    "ContextCompactor",
    "LatestToolResultCompactor",
    "NoopCompactor",
    "estimate_tokens",
    "estimate_message_tokens",
    "estimate_messages_tokens",
    # Backends
    "AnthropicBackend",
    "BackendEvent",
    "BackendRegistry",
    "JsonToolCallingBackend",
    "ModelBackend",
    "OpenAIBackend",
    "ToolDefinition",
    # Prompts
    "PromptTemplate",
    "PromptTemplateLoader",
]
