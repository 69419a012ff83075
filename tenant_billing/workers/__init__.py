"""Background workers."""
from .overdue_sweep import OverdueSweep, SweepResult, start_overdue_sweep_worker

__all__ = ["OverdueSweep", "SweepResult", "start_overdue_sweep_worker"]
