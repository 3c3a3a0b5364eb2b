"""Workflow engine: issue storage, phase control, retries and finalization.

Key Components:
    - IssueStore: Durable per-issue storage with atomic, idempotent appends
    - PhaseController: Drives one issue through the phase state machine
    - RetryManager: Owns the bounded implement/verify Retry Counter
    - Finalizer: Archives an issue, writes its summary and commits the fix
    - PipelineOrchestrator: Start/resume/status surface over the controller

Type Definitions:
    - IssueIndex: TypedDict for the persisted issue index
    - PhaseRecordState: TypedDict for one persisted Phase Record
    - ArtifactDocument: TypedDict for a persisted artifact

Example:
    >>> from issue_pipeline.engine.orchestrator import PipelineOrchestrator
    >>> orchestrator = PipelineOrchestrator.from_settings(settings)
    >>> await orchestrator.start("fix-timeout-bug", title="Fix timeout bug")

Submodules are imported explicitly; the models import ``engine.types``, so
this package does not import the engine modules eagerly.
"""
