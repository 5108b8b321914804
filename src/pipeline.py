"""
Composite pipeline execution: ``prepare:<kind> ... run:<kind> ...``.

Every step is planned (arguments parsed, paths normalized, stdin captured)
before the first call to the engine. A prepare step followed by a run step
hands its instance over to the run step, and that instance is deleted once
the run step returns, whatever the outcome. A ``plan:<kind>`` step submits
a plan-only job and prints the tasks the engine would run.
"""

import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from typing import Callable, IO, List, Mapping, Optional, Union

from arguments import (
    PREPARE_KIND_LIQUIBASE,
    PREPARE_KIND_PSQL,
    liquibase_env,
    normalize_liquibase_args,
    normalize_psql_args,
    normalize_work_dir,
    relativize_liquibase_args,
    sanitize_liquibase_exec,
    use_windows_exec_mode,
    workspace_boundary,
)
from config import ExecutionContext
from errors import MissingValue, RemoteError, SqlrsError, UsageError
from models import (
    DeleteResult,
    Detached,
    PipelineStep,
    PlanTask,
    PreparedHandoff,
    PrepareJob,
    PrepareJobAccepted,
    PrepareJobRequest,
    RunRequest,
)
from prepare import PrepareJobClient
from progress import CleanupSpinner, PrepareProgress
from runner import execute_run, plan_run

logger = logging.getLogger(__name__)

RUN_SKIPPED_DETACHED = "prepare_detached"
RUN_SKIPPED_NOT_WATCHED = "prepare_not_watched"


def is_composite(args: List[str]) -> bool:
    return bool(args) and args[0].startswith(("prepare:", "plan:")) and any(
        a.startswith("run:") for a in args[1:]
    )


def split_commands(args: List[str]) -> List[PipelineStep]:
    """
    Split the command line into pipeline steps.

    Only ``prepare:<kind> ... run:<kind> ...`` forms a two-step pipeline
    (``plan:<kind>`` splits the same way and is then rejected by planning);
    everything after the first token otherwise belongs to that command.

    Raises:
        UsageError: If no command is given
    """
    if not args:
        raise UsageError("missing command")
    if is_composite(args):
        run_idx = next(i for i in range(1, len(args)) if args[i].startswith("run:"))
        return [
            PipelineStep(args[0], tuple(args[1:run_idx])),
            PipelineStep(args[run_idx], tuple(args[run_idx + 1 :])),
        ]
    return [PipelineStep(args[0], tuple(args[1:]))]


@dataclass
class PrepareArgs:
    """Parsed ``prepare:<kind>`` arguments."""

    image: str = ""
    watch: bool = True
    tool_args: List[str] = field(default_factory=list)
    show_help: bool = False


def parse_prepare_args(args: List[str]) -> PrepareArgs:
    """
    Parse ``[--image ID] [--watch|--no-watch] [--] <tool args...>``.

    Raises:
        MissingValue: If ``--image`` has no value
    """
    parsed = PrepareArgs()
    i = 0
    while i < len(args):
        arg = args[i]
        if arg == "--":
            parsed.tool_args = list(args[i + 1 :])
            return parsed
        if arg in ("--help", "-h"):
            parsed.show_help = True
            return parsed
        if arg == "--watch":
            parsed.watch = True
        elif arg == "--no-watch":
            parsed.watch = False
        elif arg == "--image":
            if i + 1 >= len(args) or not args[i + 1].strip():
                raise MissingValue("--image")
            parsed.image = args[i + 1].strip()
            i += 1
        elif arg.startswith("--image="):
            value = arg[len("--image=") :].strip()
            if not value:
                raise MissingValue("--image")
            parsed.image = value
        else:
            parsed.tool_args = list(args[i:])
            return parsed
        i += 1
    return parsed


class StdinOnce:
    """Standard input that may be consumed by a single step only."""

    def __init__(self, stream: Optional[IO]):
        self.stream = stream
        self.consumed = False

    def read(self):
        if self.consumed:
            raise UsageError("standard input can only be used by one step")
        self.consumed = True
        if self.stream is None:
            raise OSError("standard input is not available")
        return self.stream.read()


@dataclass
class PlannedPrepare:
    step: PipelineStep
    request: PrepareJobRequest
    watch: bool = True
    plan_only: bool = False


@dataclass
class PlannedRun:
    step: PipelineStep
    request: RunRequest
    handoff: bool = False


PlannedStep = Union[PlannedPrepare, PlannedRun]


class CompositePipelineExecutor:
    """Plans and executes one prepare and/or run pipeline against the engine."""

    def __init__(
        self,
        ctx: ExecutionContext,
        client_factory: Callable[[ExecutionContext], object],
        stdin: Optional[IO],
        stdout: IO,
        stderr: IO,
        getcwd: Callable[[], str] = os.getcwd,
        environ: Optional[Mapping[str, str]] = None,
        convert: Optional[Callable[[str], str]] = None,
        isatty: Optional[bool] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        spinner_factory: Callable[..., CleanupSpinner] = CleanupSpinner,
    ):
        """
        Initialize the executor.

        Args:
            ctx: Execution settings for this invocation
            client_factory: Builds the engine client on first use
            stdin: Standard input (read only for ``-f -``)
            stdout: Primary output stream
            stderr: Progress, warnings and tool stderr
            getcwd: Working directory provider
            environ: Environment for tool settings (defaults to os.environ)
            convert: Host-to-guest path converter, if the engine needs one
            isatty: Force interactive rendering on or off (None = detect)
            clock: Monotonic time source for watch timeouts
            sleep: Sleep function between status polls
            spinner_factory: Cleanup progress indicator factory
        """
        self.ctx = ctx
        self.client_factory = client_factory
        self.stdin = stdin
        self.stdout = stdout
        self.stderr = stderr
        self.getcwd = getcwd
        self.environ = os.environ if environ is None else environ
        self.convert = convert
        self.isatty = isatty
        self.clock = clock
        self.sleep = sleep
        self.spinner_factory = spinner_factory
        self._client = None

    def api(self):
        """Engine client, created on first use."""
        if self._client is None:
            self._client = self.client_factory(self.ctx)
        return self._client

    def _emit(self, line: str) -> None:
        self.stdout.write(line + "\n")
        self.stdout.flush()

    def _jobs(self) -> PrepareJobClient:
        progress = PrepareProgress(self.stderr, verbose=self.ctx.verbose, isatty=self.isatty)
        return PrepareJobClient(
            self.api(),
            progress=progress,
            timeout=self.ctx.watch_timeout,
            poll_interval=self.ctx.poll_interval,
            clock=self.clock,
            sleep=self.sleep,
        )

    # planning

    def plan(self, steps: List[PipelineStep]) -> List[PlannedStep]:
        """
        Validate the pipeline and normalize every step locally.

        Raises:
            UsageError: For malformed pipelines or arguments
            ConflictingInstanceReference: If a handed-off run also names --instance
        """
        if not steps:
            raise UsageError("missing command")
        if len(steps) > 1 and any(s.verb == "plan" for s in steps):
            raise UsageError("plan cannot be combined with other commands")
        if len(steps) > 2 or (
            len(steps) == 2 and (steps[0].verb != "prepare" or steps[1].verb != "run")
        ):
            raise UsageError("only prepare:<kind> followed by run:<kind> can be combined")

        cwd = self.getcwd()
        stdin = StdinOnce(self.stdin)
        planned: List[PlannedStep] = []
        for step in steps:
            if step.verb in ("prepare", "plan"):
                planned.append(self._plan_prepare(step, cwd, stdin))
            elif step.verb == "run":
                handoff = bool(planned) and isinstance(planned[-1], PlannedPrepare)
                request = plan_run(
                    step.kind,
                    list(step.args),
                    handoff=handoff,
                    workspace_root=self.ctx.workspace_root or None,
                    cwd=cwd,
                    stdin=stdin,
                )
                planned.append(PlannedRun(step=step, request=request, handoff=handoff))
            else:
                raise UsageError(f"unknown command: {step.name}")
        return planned

    def _plan_prepare(self, step: PipelineStep, cwd: str, stdin: StdinOnce) -> PlannedPrepare:
        kind = step.kind
        verb = step.verb
        if not kind:
            raise UsageError(f"missing {verb} kind (consider {verb}:psql)")
        if kind not in (PREPARE_KIND_PSQL, PREPARE_KIND_LIQUIBASE):
            raise UsageError(f"unknown {verb} kind: {kind}")

        parsed = parse_prepare_args(list(step.args))
        if parsed.show_help:
            raise UsageError(
                f"usage: sqlrs {step.name} [--image ID] [--watch|--no-watch] [--] <args...>"
            )
        image = parsed.image or self.ctx.image
        if not image:
            raise UsageError("Missing base image id (set --image or SQLRS_IMAGE)")
        logger.debug(f"Using base image {image}")

        boundary = workspace_boundary(self.ctx.mode, self.ctx.workspace_root, cwd)
        if kind == PREPARE_KIND_PSQL:
            normalized = normalize_psql_args(
                parsed.tool_args, boundary, cwd, stdin=stdin, convert=self.convert
            )
            request = PrepareJobRequest(
                prepare_kind=kind,
                image_id=image,
                psql_args=normalized.args,
                stdin=normalized.stdin,
            )
            return PlannedPrepare(
                step=step, request=request, watch=parsed.watch, plan_only=verb == "plan"
            )

        if not parsed.tool_args:
            raise UsageError("liquibase command is required")
        exec_path = sanitize_liquibase_exec(self.ctx.liquibase_exec)
        exec_mode = self.ctx.liquibase_exec_mode
        windows_mode = use_windows_exec_mode(exec_path, exec_mode)
        convert = None if windows_mode else self.convert

        lb_args = normalize_liquibase_args(parsed.tool_args, boundary, cwd, convert)
        if windows_mode:
            lb_args = relativize_liquibase_args(lb_args, self.ctx.workspace_root, cwd)
        request = PrepareJobRequest(
            prepare_kind=kind,
            image_id=image,
            liquibase_args=lb_args,
            liquibase_exec=exec_path or None,
            liquibase_exec_mode=exec_mode or None,
            liquibase_env=liquibase_env(self.environ),
            work_dir=normalize_work_dir(cwd, convert),
        )
        return PlannedPrepare(
            step=step, request=request, watch=parsed.watch, plan_only=verb == "plan"
        )

    # execution

    def execute(self, steps: List[PipelineStep]) -> int:
        """
        Run the pipeline.

        Returns:
            Process exit code (the run step's remote exit code, else 0)

        Raises:
            SqlrsError: For planning, submission, job or run failures
        """
        planned = self.plan(steps)
        if isinstance(planned[0], PlannedPrepare) and planned[0].plan_only:
            return self._run_plan(planned[0])
        composite = len(planned) > 1
        handoff: Optional[PreparedHandoff] = None

        for index, item in enumerate(planned):
            if isinstance(item, PlannedPrepare):
                job = self._run_prepare(item, composite)
                if job is None:
                    return 0
                if index == len(planned) - 1:
                    self._print_result(job)
                else:
                    handoff = PreparedHandoff(instance_id=job.result.instance_id)
                continue

            if handoff is None:
                return execute_run(self.api(), item.request, self.stdout, self.stderr)

            item.request.instance_ref = handoff.instance_id
            try:
                return execute_run(self.api(), item.request, self.stdout, self.stderr)
            finally:
                self.cleanup(handoff.instance_id)
        return 0

    def _run_prepare(self, item: PlannedPrepare, composite: bool) -> Optional[PrepareJob]:
        jobs = self._jobs()
        if not item.watch:
            self._print_refs(jobs.submit(item.request))
            if composite:
                self._emit(f"RUN_SKIPPED={RUN_SKIPPED_NOT_WATCHED}")
            return None

        outcome = jobs.run(item.request)
        if isinstance(outcome, Detached):
            self._print_refs(outcome)
            if composite:
                self._emit(f"RUN_SKIPPED={RUN_SKIPPED_DETACHED}")
            return None
        return outcome

    def _run_plan(self, item: PlannedPrepare) -> int:
        outcome = self._jobs().plan(item.request)
        if isinstance(outcome, Detached):
            self._print_refs(outcome)
            return 0
        if self.ctx.output == "json":
            self._emit(json.dumps(asdict(outcome)))
            return 0
        self._emit(f"Final state: {final_state_id(outcome.tasks)}")
        self._emit("Tasks:")
        for i, task in enumerate(outcome.tasks, 1):
            self._emit(f"  {i}. {format_plan_task(task)}")
        return 0

    def watch(self, job_id: str) -> int:
        """Re-attach to a prepare job and report its outcome."""
        job_id = (job_id or "").strip()
        if not job_id:
            raise UsageError("Missing job id")
        outcome = self._jobs().watch(job_id)
        if isinstance(outcome, Detached):
            self._print_refs(outcome)
            return 0
        self._print_result(outcome)
        return 0

    def _print_refs(self, refs: Union[PrepareJobAccepted, Detached]) -> None:
        self._emit(f"JOB_ID={refs.job_id}")
        self._emit(f"STATUS_URL={refs.status_url}")
        self._emit(f"EVENTS_URL={refs.events_url}")

    def _print_result(self, job: PrepareJob) -> None:
        if self.ctx.output == "json":
            self._emit(json.dumps(asdict(job.result)))
            return
        self._emit(f"DSN={job.result.dsn}")

    # cleanup

    def cleanup(self, instance_id: str) -> None:
        """
        Best-effort deletion of a handed-off instance.

        Never raises for engine failures; problems become one warning line on
        the error stream.
        """
        if not instance_id or not instance_id.strip():
            return
        result: Optional[DeleteResult] = None
        status = 0
        error: Optional[Exception] = None

        with self.spinner_factory(
            f"Deleting instance {instance_id}",
            self.stderr,
            verbose=self.ctx.verbose,
            isatty=self.isatty,
        ):
            try:
                result, status = self.api().delete_instance(instance_id)
            except (SqlrsError, ValueError) as e:
                error = e

        if isinstance(error, RemoteError) and error.status_code == 409:
            self._warn(f"cleanup blocked for instance {instance_id}: {error}")
            return
        if error is not None:
            if self.ctx.verbose:
                self._warn(f"cleanup failed for instance {instance_id}: {error}")
            else:
                self._warn(f"cleanup failed: {error}")
            return
        if status == 409 or result.is_blocked:
            self._warn(
                f"cleanup blocked for instance {instance_id}: {format_cleanup_result(result)}"
            )
            return
        logger.debug(f"Instance {instance_id} deleted")

    def _warn(self, line: str) -> None:
        self.stderr.write(line + "\n")
        self.stderr.flush()


def format_cleanup_result(result: DeleteResult) -> str:
    """Summarize why a deletion was refused."""
    parts = []
    if result.outcome.strip():
        parts.append(f"outcome={result.outcome}")
    if result.root.blocked.strip():
        parts.append(f"blocked={result.root.blocked}")
    if result.root.connections is not None:
        parts.append(f"connections={result.root.connections}")
    return ", ".join(parts) or "blocked"


def final_state_id(tasks: List[PlanTask]) -> str:
    """
    Find the state a plan ends in: the last prepared state or executed output.

    Raises:
        RemoteError: If no task names a final state
    """
    for task in reversed(tasks):
        if task.type == "prepare_instance":
            if task.input is not None and task.input.kind == "state" and task.input.id:
                return task.input.id
        elif task.type == "state_execute" and task.output_state_id:
            return task.output_state_id
    raise RemoteError("plan has no final state")


def _format_task_input(task: PlanTask) -> str:
    if task.input is None:
        return "unknown"
    if not task.input.kind:
        return task.input.id
    return f"{task.input.kind}:{task.input.id}"


def format_plan_task(task: PlanTask) -> str:
    if task.type == "plan":
        return f"plan (planner: {task.planner_kind})" if task.planner_kind else "plan"
    if task.type == "state_execute":
        cached = "n/a" if task.cached is None else ("yes" if task.cached else "no")
        return (
            f"state_execute input={_format_task_input(task)} hash={task.task_hash} "
            f"output={task.output_state_id} cached={cached}"
        )
    if task.type == "prepare_instance":
        mode = task.instance_mode or "unknown"
        return f"prepare_instance input={_format_task_input(task)} mode={mode}"
    return task.type
