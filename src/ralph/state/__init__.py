from ralph.state.checkpoint import ORIGINAL, CheckpointManager
from ralph.state.learnings import LearningsStore
from ralph.state.lock import ChangeLock

__all__ = ["ORIGINAL", "ChangeLock", "CheckpointManager", "LearningsStore"]
