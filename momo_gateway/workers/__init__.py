"""Background workers for periodic maintenance."""
from .sweeper import run_sweep_cycle, start_sweeper

__all__ = ["run_sweep_cycle", "start_sweeper"]
