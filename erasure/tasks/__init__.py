"""Background tasks for the erasure pipeline."""

from .erasure_sweep import ErasureSweepScheduler, run_sweep_once

__all__ = ["ErasureSweepScheduler", "run_sweep_once"]
