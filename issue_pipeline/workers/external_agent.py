"""Phase worker that runs an external agent CLI (Claude Code by default).

The prompt for each phase is rendered from ``prompts/phase.md.j2`` and
passed on stdin, since long prompts overflow the argument list. The agent
modifies the working tree directly and ends its output with one JSON
object carrying the verdict::

    {"verdict": "continue", "summary": "...", "content": "...",
     "files": ["src/client.py"], "notes": "...", "findings": []}

Output in ``--output-format stream-json`` form is accepted too; the final
``result`` event is unwrapped before looking for the object.
"""

import json
import subprocess
from pathlib import Path
from typing import Any

import structlog

from issue_pipeline.engine import transitions
from issue_pipeline.enums import Phase, Verdict
from issue_pipeline.exceptions import WorkerFatalError, WorkerInvocationError
from issue_pipeline.models.domain import Artifact, PhaseParameters, WorkerResult, WorkflowContext
from issue_pipeline.rendering.engine import SecureTemplateEngine
from issue_pipeline.utils.async_subprocess import run_command
from issue_pipeline.workers.base import PhaseWorker

log = structlog.get_logger(__name__)

PROMPT_TEMPLATE = "prompts/phase.md.j2"

_RESULT_KEYS = frozenset({"verdict", "summary", "content", "files", "notes", "findings"})

PHASE_INSTRUCTIONS: dict[Phase, str] = {
    Phase.RESEARCH: (
        "Investigate the problem. Locate the relevant code, reproduce the behavior if you can, "
        "and describe the root cause. Do not change any files."
    ),
    Phase.VALIDATE: (
        "Decide whether this is a real, actionable problem in this repository. "
        "Answer `reject` if it is not a bug, is already fixed or cannot be acted on; otherwise `continue`."
    ),
    Phase.PROPOSE: "Propose a concrete fix: the files to change, the approach, and how it will be tested.",
    Phase.REVIEW: "Review the proposal for correctness, scope and risk. Refine it where needed.",
    Phase.IMPLEMENT: "Implement the reviewed proposal in the working tree and list every file you changed.",
    Phase.VERIFY: (
        "Run the relevant tests and checks. Answer `terminal_success` when the fix is verified, "
        "`retry` when the implementation must be reworked."
    ),
}


def _allowed_verdicts(phase: Phase) -> list[str]:
    return [verdict.value for verdict in Verdict if transitions.is_valid(phase, verdict)]


def _find_result_object(text: str) -> dict[str, Any] | None:
    """Return the last JSON object in ``text`` that carries a verdict."""
    for line in reversed(text.strip().splitlines()):
        line = line.strip().strip("`")
        if not line.startswith("{"):
            continue
        try:
            parsed = json.loads(line)
        except json.JSONDecodeError:
            continue
        if not isinstance(parsed, dict):
            continue
        if "verdict" in parsed:
            return parsed
        # stream-json result event wrapping the agent's final text
        if parsed.get("type") == "result" and isinstance(parsed.get("result"), str):
            nested = _find_result_object(parsed["result"])
            if nested is not None:
                return nested
    return None


def parse_agent_output(output: str, phase: Phase, attempt: int) -> WorkerResult:
    """Turn the agent's raw output into a WorkerResult.

    Raises:
        WorkerFatalError: If no result object is found or its verdict is
            unknown.
    """
    result = _find_result_object(output)
    if result is None:
        raise WorkerFatalError("Agent output has no result object", phase=phase.value, attempt=attempt)

    try:
        verdict = Verdict(str(result["verdict"]).lower())
    except ValueError as e:
        raise WorkerFatalError(
            f"Agent returned unknown verdict {result['verdict']!r}", phase=phase.value, attempt=attempt
        ) from e

    files = result.get("files") or []
    findings = result.get("findings") or []
    artifact = Artifact(
        summary=str(result.get("summary") or ""),
        content=str(result.get("content") or ""),
        files=tuple(str(f) for f in files),
        data={k: v for k, v in result.items() if k not in _RESULT_KEYS},
    )
    notes = result.get("notes")
    return WorkerResult(
        artifact=artifact,
        verdict=verdict,
        notes=str(notes) if notes else None,
        findings=tuple(str(f) for f in findings),
    )


class ExternalAgentWorker(PhaseWorker):
    """Run one phase through an external agent CLI.

    Attributes:
        command: Agent command line; the prompt is written to its stdin.
        working_dir: Directory the agent runs in.
        renderer: Template engine for the phase prompt.
    """

    name = "external-agent"

    def __init__(
        self,
        command: list[str],
        working_dir: str | Path | None = None,
        renderer: SecureTemplateEngine | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.working_dir = Path(working_dir) if working_dir else None
        self.renderer = renderer or SecureTemplateEngine()

    def build_prompt(self, context: WorkflowContext, params: PhaseParameters) -> str:
        history = []
        for record in context.records:
            artifact = context.artifact_for(record)
            history.append(
                {
                    "phase": record.phase.value,
                    "attempt": record.attempt,
                    "verdict": record.verdict.value,
                    "summary": artifact.summary,
                    "content": artifact.content,
                }
            )
        return self.renderer.render(
            PROMPT_TEMPLATE,
            {
                "phase": params.phase.value,
                "attempt": params.attempt,
                "issue_id": params.issue_id,
                "title": context.issue.display_title,
                "description": context.issue.description,
                "history": history,
                "max_implement_attempts": params.max_implement_attempts,
                "instructions": params.options.get("instructions", PHASE_INSTRUCTIONS.get(params.phase, "")),
                "allowed_verdicts": _allowed_verdicts(params.phase),
            },
        )

    async def invoke(self, context: WorkflowContext, params: PhaseParameters) -> WorkerResult:
        prompt = self.build_prompt(context, params)
        command = self.command + list(params.options.get("extra_args", []))

        log.debug("running_agent", command=command[0], cwd=str(self.working_dir), prompt_length=len(prompt))
        try:
            stdout, stderr, _ = await run_command(*command, cwd=self.working_dir, check=True, input_text=prompt)
        except FileNotFoundError as e:
            raise WorkerInvocationError(
                f"Agent command not found: {command[0]}", phase=params.phase.value, attempt=params.attempt
            ) from e
        except subprocess.CalledProcessError as e:
            detail = (e.stderr or "").strip().splitlines()
            raise WorkerInvocationError(
                f"Agent exited with code {e.returncode}" + (f": {detail[-1]}" if detail else ""),
                phase=params.phase.value,
                attempt=params.attempt,
            ) from e

        log.info("agent_execution_complete", output_length=len(stdout), error_length=len(stderr))
        return parse_agent_output(stdout, params.phase, params.attempt)
