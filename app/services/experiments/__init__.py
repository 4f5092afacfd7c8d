"""
Experiment registry: create experiments with their variants, toggle them
active, and record the per-variant metric snapshots the promotion engine
reads.
"""

from app.services.experiments.service import ExperimentService

__all__ = ["ExperimentService"]
