"""Public package interface for the project agent session orchestrator."""
from __future__ import annotations

try:  # pragma: no cover - fallback for very old Python versions
    from importlib import metadata as _metadata
except ImportError:  # pragma: no cover
    _metadata = None  # type: ignore[assignment]

if _metadata is not None:  # pragma: no cover - importlib metadata availability varies
    try:
        __version__ = _metadata.version("ai-project-agent")
    except Exception:  # pragma: no cover - fallback when not installed
        __version__ = "0.1.0"
else:  # pragma: no cover
    __version__ = "0.1.0"

# session must be imported before engine: the generation loop imports session submodules.
from . import core, providers, tools, session, engine
from .core import (
    CancellationToken,
    CostTracker,
    ModelPricing,
    Settings,
    StaticPriceTable,
    TokenUsage,
    configure_logging,
    get_logger,
    load_settings,
)
from .engine.react import GenerationLoop, GenerationResult
from .providers.llm import (
    LLMClient,
    LLMError,
    Message,
    ProviderResolver,
    ResolvedModel,
    StreamFinish,
    TextDelta,
    ToolCallDelta,
    TurnError,
    create_client,
    parse_provider_model,
)
from .session import (
    EventBus,
    InMemoryHistoryStore,
    JsonlHistoryStore,
    Session,
    SessionAlreadyExistsError,
    SessionConfig,
    SessionError,
    SessionManager,
    SessionNotFoundError,
)
from .tools import (
    MalformedToolCallError,
    ToolExecutionError,
    ToolInputError,
    ToolRegistry,
    ToolSpec,
)

__all__ = [
    "__version__",
    "CancellationToken",
    "CostTracker",
    "EventBus",
    "GenerationLoop",
    "GenerationResult",
    "InMemoryHistoryStore",
    "JsonlHistoryStore",
    "LLMClient",
    "LLMError",
    "MalformedToolCallError",
    "Message",
    "ModelPricing",
    "ProviderResolver",
    "ResolvedModel",
    "Session",
    "SessionAlreadyExistsError",
    "SessionConfig",
    "SessionError",
    "SessionManager",
    "SessionNotFoundError",
    "Settings",
    "StaticPriceTable",
    "StreamFinish",
    "TextDelta",
    "TokenUsage",
    "ToolCallDelta",
    "ToolExecutionError",
    "ToolInputError",
    "ToolRegistry",
    "ToolSpec",
    "TurnError",
    "configure_logging",
    "core",
    "create_client",
    "engine",
    "get_logger",
    "load_settings",
    "parse_provider_model",
    "providers",
    "session",
    "tools",
]
