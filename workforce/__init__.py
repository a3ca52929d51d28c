"""
Workforce Scheduler

Adaptive task scheduling, routing and escalation for a hierarchical
workforce of role-based agents, with team-lead performance reviews and
self-evaluating guidance amendments.
"""

__version__ = "0.1.0"

# Configuration
from workforce.config import Settings

# Composition
from workforce.app import DryRunExecutor, Runtime

# Escalation
from workforce.escalation import EscalationDecision, EscalationDetector, EscalationPolicy

# Orchestration
from workforce.orchestrator import Orchestrator, can_dispatch, priority_score

# Pattern detection
from workforce.patterns import DetectionReport, PatternDetector

# Recommendations
from workforce.recommendations import Recommendation, validate_recommendation

# Reviews
from workforce.review import ReviewEngine

# Organisation
from workforce.roles import DEFAULT_ORGANIZATION, SAFETY, Organization, TeamConfig

# Routing
from workforce.router import LearnedRouter

# Persistence
from workforce.store import MemoryStore, ResilientStore, SqlStore

# Core types
from workforce.types import (
    Amendment,
    CosReview,
    Escalation,
    ExecutionResult,
    HandoffRequest,
    HistoryEntry,
    Priority,
    RoutingDecision,
    Task,
    TaskStatus,
)

__all__ = [
    # Version
    "__version__",
    # Config
    "Settings",
    # Composition
    "Runtime",
    "DryRunExecutor",
    # Types
    "Task",
    "TaskStatus",
    "Priority",
    "ExecutionResult",
    "HandoffRequest",
    "HistoryEntry",
    "Escalation",
    "RoutingDecision",
    "Amendment",
    "CosReview",
    # Components
    "Orchestrator",
    "priority_score",
    "can_dispatch",
    "LearnedRouter",
    "EscalationDetector",
    "EscalationPolicy",
    "EscalationDecision",
    "PatternDetector",
    "DetectionReport",
    "ReviewEngine",
    "Recommendation",
    "validate_recommendation",
    # Organisation
    "Organization",
    "TeamConfig",
    "DEFAULT_ORGANIZATION",
    "SAFETY",
    # Stores
    "MemoryStore",
    "SqlStore",
    "ResilientStore",
]
