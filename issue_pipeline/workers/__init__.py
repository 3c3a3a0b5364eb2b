"""Phase workers: the components that do each phase's domain work."""

from issue_pipeline.workers.base import PhaseWorker

__all__ = ["PhaseWorker"]
