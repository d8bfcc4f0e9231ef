"""Session orchestration: registry, streams, permissions, stall detection and resume."""

from teamstream.orchestrator.activity import ActivitySupervisor
from teamstream.orchestrator.permissions import PermissionBroker
from teamstream.orchestrator.registry import SessionRegistry
from teamstream.orchestrator.resume import ResumeController, ResumeState, RunOutcome
from teamstream.orchestrator.service import Orchestrator
from teamstream.orchestrator.stream import SessionStream
from teamstream.orchestrator.workstate import (
    FileWorkStateReader,
    WorkStateReader,
    has_active_work,
)

__all__ = [
    "ActivitySupervisor",
    "FileWorkStateReader",
    "Orchestrator",
    "PermissionBroker",
    "ResumeController",
    "ResumeState",
    "RunOutcome",
    "SessionRegistry",
    "SessionStream",
    "WorkStateReader",
    "has_active_work",
]
