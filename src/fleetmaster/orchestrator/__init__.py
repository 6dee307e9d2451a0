"""Dispatch engine and fleet lifecycle management."""

from fleetmaster.orchestrator.convoy import ConvoyOutcome, ConvoyTracker
from fleetmaster.orchestrator.dispatcher import (
    BatchResult,
    DispatchAction,
    DispatchOptions,
    DispatchResult,
    Dispatcher,
    SideEffectOutcome,
)
from fleetmaster.orchestrator.feed import ActivityFeed
from fleetmaster.orchestrator.fleet import (
    FleetManager,
    ReclamationReport,
    ShutdownOptions,
    ShutdownPolicy,
    categorize_sessions,
    kill_order,
)
from fleetmaster.orchestrator.formula import Expansion, FormulaExpander
from fleetmaster.orchestrator.provisioner import SpawnInfo, SpawnOptions, WorkerProvisioner
from fleetmaster.orchestrator.targets import (
    ExplicitTarget,
    PooledTarget,
    SelfTarget,
    TargetResolver,
    WorkspaceTarget,
)

__all__ = [
    "ActivityFeed",
    "BatchResult",
    "ConvoyOutcome",
    "ConvoyTracker",
    "DispatchAction",
    "DispatchOptions",
    "DispatchResult",
    "Dispatcher",
    "ExplicitTarget",
    "Expansion",
    "FleetManager",
    "FormulaExpander",
    "PooledTarget",
    "ReclamationReport",
    "SelfTarget",
    "ShutdownOptions",
    "ShutdownPolicy",
    "SideEffectOutcome",
    "SpawnInfo",
    "SpawnOptions",
    "TargetResolver",
    "WorkerProvisioner",
    "WorkspaceTarget",
    "categorize_sessions",
    "kill_order",
]
