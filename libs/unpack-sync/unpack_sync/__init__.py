"""pass-ssh-unpack sync engine."""

from unpack_sync.actions import Action, ActionKind, Outcome, Plan, PlanError
from unpack_sync.engine import EngineState, RunOptions, RunSummary, StatusReport, UnpackSync
from unpack_sync.inventory import fetch_inventory, normalize
from unpack_sync.planner import ChangePlanner, Scope, plan_purge
from unpack_sync.teleport import TeleportImportResult, import_nodes

__all__ = [
    "Action",
    "ActionKind",
    "ChangePlanner",
    "EngineState",
    "Outcome",
    "Plan",
    "PlanError",
    "RunOptions",
    "RunSummary",
    "Scope",
    "StatusReport",
    "TeleportImportResult",
    "UnpackSync",
    "fetch_inventory",
    "import_nodes",
    "normalize",
    "plan_purge",
]

__version__ = "0.1.0"
