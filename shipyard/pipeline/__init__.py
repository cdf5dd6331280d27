"""Pipeline orchestration: state machine, durable state and history."""

from shipyard.pipeline.history import HistorySink
from shipyard.pipeline.orchestrator import Orchestrator
from shipyard.pipeline.state import StateStore

__all__ = [
    "HistorySink",
    "Orchestrator",
    "StateStore",
]
