"""Agent runs: prompt construction, CLI execution and output handling."""

from src.devpipeline.agents.orchestrator import (
    WORKFLOWS,
    AgentRunError,
    AgentRunOrchestrator,
    AgentRunOutcome,
    BatchRunResult,
    WorkflowDefinition,
    is_runnable,
    mode_for_review_status,
)
from src.devpipeline.agents.prompts import DefaultPromptBuilder, PromptBuilder, PromptContext
from src.devpipeline.agents.runner import (
    AgentRunner,
    AgentRunRequest,
    AgentRunResult,
    CliAgentRunner,
    parse_cli_output,
)

__all__ = [
    # Orchestration
    "WORKFLOWS",
    "AgentRunError",
    "AgentRunOrchestrator",
    "AgentRunOutcome",
    "BatchRunResult",
    "WorkflowDefinition",
    "is_runnable",
    "mode_for_review_status",
    # Prompts
    "DefaultPromptBuilder",
    "PromptBuilder",
    "PromptContext",
    # Runner
    "AgentRunner",
    "AgentRunRequest",
    "AgentRunResult",
    "CliAgentRunner",
    "parse_cli_output",
]
