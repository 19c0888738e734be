"""Background loops: follow-up sweeps, completion checks, escalation timers."""

from taskowner.crons.scheduler import OrchestrationScheduler

__all__ = ["OrchestrationScheduler"]
