from .results import Lease, LeaseState, ReclaimDecision, StepResult, discard, run_step

__all__ = ["Lease", "LeaseState", "ReclaimDecision", "StepResult", "discard", "run_step"]
