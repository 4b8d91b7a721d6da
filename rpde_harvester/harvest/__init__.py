"""Feed scheduling: run control, per-feed workers and the sweep supervisor."""

from .collate import collate_snapshots
from .run_control import RunControl, RunState
from .scheduler import Scheduler, SweepReport
from .worker import FeedPhase, FeedSweepResult, FeedWorker, SweepOutcome

__all__ = [
    "collate_snapshots",
    "RunControl",
    "RunState",
    "Scheduler",
    "SweepReport",
    "FeedPhase",
    "FeedSweepResult",
    "FeedWorker",
    "SweepOutcome",
]
