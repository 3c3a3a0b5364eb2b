"""Core domain models for the issue pipeline.

Key Models:
    - Issue: A change request tracked through the pipeline
    - PhaseRecord: One persisted step (phase, attempt, verdict, artifact)
    - Artifact: Immutable output of one Phase Record
    - WorkflowContext: Read-only snapshot handed to workers
    - WorkerResult: Tagged result returned by workers

Example:
    >>> from issue_pipeline.models.domain import Artifact, WorkerResult
    >>> result = WorkerResult(artifact=Artifact(summary="done"), verdict=Verdict.CONTINUE)
"""
