"""Turn execution and approval orchestration core."""

from .backend import AgentBackend, supports_permission_mode, supports_planning
from .orchestrator import AgentLoop
from .types import ApprovalRequest, ApprovalResult, TurnContext, TurnResult, TurnUpdate

__all__ = [
    "AgentBackend",
    "AgentLoop",
    "ApprovalRequest",
    "ApprovalResult",
    "TurnContext",
    "TurnResult",
    "TurnUpdate",
    "supports_permission_mode",
    "supports_planning",
]
