"""
Reaper module.
Contains the periodic cleanup of stale workers and their orphaned jobs.
"""

from jobqueue.reaper.main import Reaper, run

__all__ = ["Reaper", "run"]
