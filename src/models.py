"""
Data models for the sqlrs client.

Wire records decode through ``from_dict`` and tolerate missing optional
fields; request records encode through ``to_dict`` and omit unset fields.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

TERMINAL_STATUSES = ("succeeded", "failed")


def _clean(payload: Dict[str, Any]) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None}


@dataclass
class JobError:
    """Failure reason reported by the engine."""

    message: str
    details: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["JobError"]:
        if not data:
            return None
        return cls(
            message=str(data.get("message") or ""),
            details=data.get("details") or None,
        )


@dataclass
class PrepareJobResult:
    """Outcome of a succeeded prepare job."""

    dsn: str
    instance_id: str
    state_id: str = ""
    image_id: str = ""
    prepare_kind: str = ""
    prepare_args_normalized: str = ""

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["PrepareJobResult"]:
        if not data:
            return None
        return cls(
            dsn=data.get("dsn", ""),
            instance_id=data.get("instance_id", ""),
            state_id=data.get("state_id", ""),
            image_id=data.get("image_id", ""),
            prepare_kind=data.get("prepare_kind", ""),
            prepare_args_normalized=data.get("prepare_args_normalized", ""),
        )


@dataclass
class TaskInput:
    """What a plan task starts from: an image or a state."""

    kind: str
    id: str

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> Optional["TaskInput"]:
        if not data:
            return None
        return cls(kind=str(data.get("kind") or ""), id=str(data.get("id") or ""))


@dataclass
class PlanTask:
    """One step of a prepare plan."""

    task_id: str
    type: str
    planner_kind: str = ""
    input: Optional[TaskInput] = None
    image_id: str = ""
    task_hash: str = ""
    output_state_id: str = ""
    cached: Optional[bool] = None
    instance_mode: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "PlanTask":
        cached = data.get("cached")
        return cls(
            task_id=data.get("task_id", ""),
            type=data.get("type", ""),
            planner_kind=data.get("planner_kind", ""),
            input=TaskInput.from_dict(data.get("input")),
            image_id=data.get("image_id", ""),
            task_hash=data.get("task_hash", ""),
            output_state_id=data.get("output_state_id", ""),
            cached=bool(cached) if cached is not None else None,
            instance_mode=data.get("instance_mode", ""),
        )


@dataclass
class PrepareJob:
    """Status resource of one prepare job."""

    job_id: str
    status: str  # "pending", "running", "succeeded", "failed"
    result: Optional[PrepareJobResult] = None
    error: Optional[JobError] = None
    prepare_kind: str = ""
    image_id: str = ""
    plan_only: bool = False
    prepare_args_normalized: str = ""
    tasks: List[PlanTask] = field(default_factory=list)

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @classmethod
    def from_dict(cls, data: Dict) -> "PrepareJob":
        return cls(
            job_id=data.get("job_id", ""),
            status=str(data.get("status", "")).lower(),
            result=PrepareJobResult.from_dict(data.get("result")),
            error=JobError.from_dict(data.get("error")),
            prepare_kind=data.get("prepare_kind", ""),
            image_id=data.get("image_id", ""),
            plan_only=bool(data.get("plan_only", False)),
            prepare_args_normalized=data.get("prepare_args_normalized", ""),
            tasks=[PlanTask.from_dict(t) for t in data.get("tasks") or []],
        )


@dataclass
class PlanResult:
    """Tasks the engine would run for a prepare request."""

    prepare_kind: str
    image_id: str
    prepare_args_normalized: str
    tasks: List[PlanTask]

    @classmethod
    def from_job(cls, job: PrepareJob) -> "PlanResult":
        return cls(
            prepare_kind=job.prepare_kind,
            image_id=job.image_id,
            prepare_args_normalized=job.prepare_args_normalized,
            tasks=list(job.tasks),
        )


@dataclass
class PrepareJobAccepted:
    """Engine response to a prepare submission."""

    job_id: str
    status_url: str
    events_url: str

    @classmethod
    def from_dict(cls, data: Dict) -> "PrepareJobAccepted":
        return cls(
            job_id=data.get("job_id", ""),
            status_url=data.get("status_url", ""),
            events_url=data.get("events_url", ""),
        )

    @classmethod
    def for_job(cls, job_id: str) -> "PrepareJobAccepted":
        """Default engine URLs for an already submitted job."""
        return cls(
            job_id=job_id,
            status_url=f"/v1/prepare-jobs/{job_id}",
            events_url=f"/v1/prepare-jobs/{job_id}/events",
        )


@dataclass
class PrepareJobEvent:
    """One line of a prepare job event stream."""

    type: str
    ts: str = ""
    status: str = ""
    message: str = ""
    task_id: str = ""
    result: Optional[PrepareJobResult] = None
    error: Optional[JobError] = None

    @classmethod
    def from_dict(cls, data: Dict) -> "PrepareJobEvent":
        return cls(
            type=str(data.get("type", "")),
            ts=str(data.get("ts", "")),
            status=str(data.get("status", "") or "").lower(),
            message=str(data.get("message", "") or ""),
            task_id=str(data.get("task_id", "") or ""),
            result=PrepareJobResult.from_dict(data.get("result")),
            error=JobError.from_dict(data.get("error")),
        )


@dataclass
class PrepareJobRequest:
    """Body of ``POST /v1/prepare-jobs``."""

    prepare_kind: str
    image_id: str
    psql_args: List[str] = field(default_factory=list)
    liquibase_args: List[str] = field(default_factory=list)
    liquibase_exec: Optional[str] = None
    liquibase_exec_mode: Optional[str] = None
    liquibase_env: Optional[Dict[str, str]] = None
    work_dir: Optional[str] = None
    stdin: Optional[str] = None
    plan_only: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return _clean(
            {
                "prepare_kind": self.prepare_kind,
                "image_id": self.image_id,
                "psql_args": self.psql_args or None,
                "liquibase_args": self.liquibase_args or None,
                "liquibase_exec": self.liquibase_exec or None,
                "liquibase_exec_mode": self.liquibase_exec_mode or None,
                "liquibase_env": self.liquibase_env or None,
                "work_dir": self.work_dir or None,
                "stdin": self.stdin,
                "plan_only": self.plan_only or None,
            }
        )


@dataclass
class Detached:
    """A watch that stopped observing before the job finished."""

    job_id: str
    status_url: str
    events_url: str


@dataclass
class Instance:
    """A provisioned database endpoint."""

    instance_id: str
    image_id: str = ""
    state_id: str = ""
    status: str = ""
    created_at: str = ""

    @classmethod
    def from_dict(cls, data: Dict) -> "Instance":
        return cls(
            instance_id=data.get("instance_id", ""),
            image_id=data.get("image_id", ""),
            state_id=data.get("state_id", ""),
            status=data.get("status", ""),
            created_at=data.get("created_at", ""),
        )


@dataclass
class DeleteNode:
    """One node of a deletion tree."""

    kind: str
    id: str
    blocked: str = ""
    connections: Optional[int] = None
    children: List["DeleteNode"] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Optional[Dict]) -> "DeleteNode":
        data = data or {}
        connections = data.get("connections")
        return cls(
            kind=data.get("kind", ""),
            id=data.get("id", ""),
            blocked=data.get("blocked") or "",
            connections=int(connections) if connections is not None else None,
            children=[cls.from_dict(c) for c in data.get("children") or []],
        )


@dataclass
class DeleteResult:
    """Outcome of an instance teardown request."""

    outcome: str
    root: DeleteNode
    dry_run: bool = False

    @property
    def is_blocked(self) -> bool:
        return self.outcome.strip().lower() == "blocked"

    @classmethod
    def from_dict(cls, data: Dict) -> "DeleteResult":
        return cls(
            outcome=str(data.get("outcome", "")),
            root=DeleteNode.from_dict(data.get("root")),
            dry_run=bool(data.get("dry_run", False)),
        )


@dataclass(frozen=True)
class PipelineStep:
    """One command of a pipeline, e.g. ``prepare:psql`` with its arguments."""

    name: str
    args: tuple = ()

    @property
    def verb(self) -> str:
        return self.name.split(":", 1)[0]

    @property
    def kind(self) -> str:
        if ":" not in self.name:
            return ""
        return self.name.split(":", 1)[1].strip().lower()


@dataclass(frozen=True)
class PreparedHandoff:
    """Instance produced by a prepare step for the following run step."""

    instance_id: str


@dataclass
class RunStep:
    """One invocation inside a run request."""

    args: List[str]
    stdin: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _clean({"args": list(self.args), "stdin": self.stdin})


@dataclass
class RunRequest:
    """Body of ``POST /v1/runs``."""

    instance_ref: str
    kind: str
    command: Optional[str] = None
    args: List[str] = field(default_factory=list)
    stdin: Optional[str] = None
    steps: List[RunStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return _clean(
            {
                "instance_ref": self.instance_ref,
                "kind": self.kind,
                "command": self.command or None,
                "args": list(self.args),
                "stdin": self.stdin,
                "steps": [s.to_dict() for s in self.steps] or None,
            }
        )


@dataclass
class HealthResponse:
    """Engine health report."""

    ok: bool
    version: str = ""
    instance_id: str = ""
    pid: int = 0

    @classmethod
    def from_dict(cls, data: Dict) -> "HealthResponse":
        return cls(
            ok=bool(data.get("ok", False)),
            version=data.get("version", ""),
            instance_id=data.get("instanceId", ""),
            pid=int(data.get("pid") or 0),
        )
