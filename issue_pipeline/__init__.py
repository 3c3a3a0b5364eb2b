"""issue-pipeline: multi-phase issue resolution orchestrator."""

__version__ = "0.1.0"
