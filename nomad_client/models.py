"""
Typed structures for the Nomad objects this client reads and writes.

Models accept Nomad's PascalCase JSON directly (via field aliases) as well as
snake_case keyword arguments, and keep any fields they do not declare, so a
full job specification survives a load/dump round trip unchanged.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Generic, Literal, TypeVar

from pydantic import BaseModel, ConfigDict, Field

T = TypeVar("T")

JobType = Literal["service", "batch", "system", "sysbatch"]
AllocationStatus = Literal["pending", "running", "complete", "failed", "lost"]
TaskStateName = Literal["pending", "running", "dead"]
NodeSchedulingEligibility = Literal["eligible", "ineligible"]


class NomadModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    def to_api(self) -> dict[str, Any]:
        """Dumps the model in the shape the Nomad API expects."""
        return self.model_dump(by_alias=True, exclude_none=True)


class QueryOptions(BaseModel):
    """Query parameters shared by Nomad's read endpoints.

    Attributes:
        region: Region to forward the request to.
        namespace: Namespace to scope the query to (`*` for all).
        index: Blocking query index.
        wait: Maximum blocking time, e.g. `5m`.
        stale: Allow any server to answer, not only the leader.
        prefix: ID or name prefix filter.
        per_page: Page size for paginated endpoints.
        next_token: Pagination token from a previous `ListResponse`.
        filter: Server-side filter expression.
    """

    region: str | None = None
    namespace: str | None = None
    index: int | None = None
    wait: str | None = None
    stale: bool | None = None
    prefix: str | None = None
    per_page: int | None = None
    next_token: str | None = None
    filter: str | None = None

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        for name, value in self.model_dump(exclude_none=True).items():
            key = name.replace("_", "-") if name in ("per_page", "next_token") else name
            params[key] = str(value).lower() if isinstance(value, bool) else str(value)
        return params


class ListResponse(BaseModel, Generic[T]):
    """One page of a Nomad list endpoint."""

    items: list[T] = Field(default_factory=list)
    next_token: str | None = None


class WriteResponse(NomadModel):
    eval_id: str | None = Field(default=None, alias="EvalID")
    eval_create_index: int | None = Field(default=None, alias="EvalCreateIndex")
    job_modify_index: int | None = Field(default=None, alias="JobModifyIndex")
    index: int | None = Field(default=None, alias="Index")
    warnings: str | None = Field(default=None, alias="Warnings")


# Allocations and tasks


class TaskEvent(NomadModel):
    type: str = Field(default="", alias="Type")
    time: int = Field(default=0, alias="Time")
    message: str = Field(default="", alias="Message")
    display_message: str = Field(default="", alias="DisplayMessage")
    details: dict[str, str] = Field(default_factory=dict, alias="Details")
    fails_task: bool = Field(default=False, alias="FailsTask")
    exit_code: int | None = Field(default=None, alias="ExitCode")
    signal: int | None = Field(default=None, alias="Signal")
    kill_reason: str | None = Field(default=None, alias="KillReason")
    driver_error: str | None = Field(default=None, alias="DriverError")


class TaskState(NomadModel):
    state: str = Field(default="pending", alias="State")
    failed: bool = Field(default=False, alias="Failed")
    restarts: int = Field(default=0, alias="Restarts")
    last_restart: str | None = Field(default=None, alias="LastRestart")
    started_at: str | None = Field(default=None, alias="StartedAt")
    finished_at: str | None = Field(default=None, alias="FinishedAt")
    events: list[TaskEvent] | None = Field(default=None, alias="Events")


class AllocationDeploymentStatus(NomadModel):
    healthy: bool | None = Field(default=None, alias="Healthy")
    timestamp: str | None = Field(default=None, alias="Timestamp")
    canary: bool = Field(default=False, alias="Canary")
    modify_index: int = Field(default=0, alias="ModifyIndex")


class Allocation(NomadModel):
    id: str = Field(alias="ID")
    namespace: str | None = Field(default=None, alias="Namespace")
    eval_id: str | None = Field(default=None, alias="EvalID")
    name: str = Field(default="", alias="Name")
    node_id: str = Field(default="", alias="NodeID")
    node_name: str | None = Field(default=None, alias="NodeName")
    job_id: str = Field(default="", alias="JobID")
    task_group: str = Field(default="", alias="TaskGroup")
    desired_status: str | None = Field(default=None, alias="DesiredStatus")
    desired_description: str | None = Field(default=None, alias="DesiredDescription")
    client_status: str = Field(default="pending", alias="ClientStatus")
    client_description: str | None = Field(default=None, alias="ClientDescription")
    task_states: dict[str, TaskState] | None = Field(default=None, alias="TaskStates")
    deployment_id: str | None = Field(default=None, alias="DeploymentID")
    deployment_status: AllocationDeploymentStatus | None = Field(
        default=None, alias="DeploymentStatus"
    )
    next_allocation: str | None = Field(default=None, alias="NextAllocation")
    previous_allocation: str | None = Field(default=None, alias="PreviousAllocation")
    resources: dict[str, Any] | None = Field(default=None, alias="Resources")
    create_index: int = Field(default=0, alias="CreateIndex")
    modify_index: int = Field(default=0, alias="ModifyIndex")
    create_time: int = Field(default=0, alias="CreateTime")
    modify_time: int = Field(default=0, alias="ModifyTime")


class TaskSummary(BaseModel):
    name: str
    state: str
    failed: bool
    restarts: int


class AllocationSummary(BaseModel):
    id: str
    name: str
    status: str
    job_id: str
    node_id: str
    task_group: str
    tasks: list[TaskSummary]
    created_at: datetime
    modified_at: datetime


class TaskStatus(BaseModel):
    state: str
    failed: bool
    restarts: int
    events: list[TaskEvent]
    started_at: str | None = None
    finished_at: str | None = None


class TaskLogs(BaseModel):
    stdout: str = ""
    stderr: str = ""
    exit_code: int | None = None


class CpuUsage(BaseModel):
    percent: float = 0.0
    total: float = 0.0


class MemoryUsage(BaseModel):
    used: int = 0
    total: int = 0
    percent: float = 0.0


class TaskUsage(BaseModel):
    cpu_percent: float = 0.0
    memory_used: int = 0
    memory_percent: float = 0.0


class FormattedStats(BaseModel):
    """Allocation resource usage in MiB and percentages."""

    cpu: CpuUsage
    memory: MemoryUsage
    tasks: dict[str, TaskUsage] = Field(default_factory=dict)


class AllocationCounts(BaseModel):
    total: int = 0
    running: int = 0
    pending: int = 0
    complete: int = 0
    failed: int = 0
    lost: int = 0

    @classmethod
    def from_allocations(cls, allocations: list[Allocation]) -> "AllocationCounts":
        counts = cls(total=len(allocations))
        for alloc in allocations:
            status = alloc.client_status
            if status in ("running", "pending", "complete", "failed", "lost"):
                setattr(counts, status, getattr(counts, status) + 1)
        return counts


# Jobs


class Job(NomadModel):
    """A Nomad job specification or job listing stub."""

    id: str = Field(alias="ID")
    name: str | None = Field(default=None, alias="Name")
    type: str | None = Field(default=None, alias="Type")
    namespace: str | None = Field(default=None, alias="Namespace")
    region: str | None = Field(default=None, alias="Region")
    priority: int | None = Field(default=None, alias="Priority")
    datacenters: list[str] | None = Field(default=None, alias="Datacenters")
    node_pool: str | None = Field(default=None, alias="NodePool")
    task_groups: list[dict[str, Any]] | None = Field(default=None, alias="TaskGroups")
    meta: dict[str, str] | None = Field(default=None, alias="Meta")
    periodic: dict[str, Any] | None = Field(default=None, alias="Periodic")
    parameterized_job: dict[str, Any] | None = Field(
        default=None, alias="ParameterizedJob"
    )
    status: str | None = Field(default=None, alias="Status")
    status_description: str | None = Field(default=None, alias="StatusDescription")
    version: int | None = Field(default=None, alias="Version")
    stable: bool | None = Field(default=None, alias="Stable")


class TaskGroupSummary(NomadModel):
    queued: int = Field(default=0, alias="Queued")
    complete: int = Field(default=0, alias="Complete")
    failed: int = Field(default=0, alias="Failed")
    running: int = Field(default=0, alias="Running")
    starting: int = Field(default=0, alias="Starting")
    lost: int = Field(default=0, alias="Lost")
    unknown: int = Field(default=0, alias="Unknown")


class JobSummary(NomadModel):
    job_id: str = Field(default="", alias="JobID")
    namespace: str | None = Field(default=None, alias="Namespace")
    summary: dict[str, TaskGroupSummary] = Field(default_factory=dict, alias="Summary")
    children: dict[str, int] | None = Field(default=None, alias="Children")
    create_index: int = Field(default=0, alias="CreateIndex")
    modify_index: int = Field(default=0, alias="ModifyIndex")

    @property
    def running(self) -> int:
        return sum(tg.running for tg in self.summary.values())

    @property
    def desired(self) -> int:
        return sum(tg.running + tg.queued + tg.starting for tg in self.summary.values())


class Evaluation(NomadModel):
    id: str = Field(alias="ID")
    status: str = Field(default="pending", alias="Status")
    status_description: str | None = Field(default=None, alias="StatusDescription")
    type: str | None = Field(default=None, alias="Type")
    triggered_by: str | None = Field(default=None, alias="TriggeredBy")
    job_id: str | None = Field(default=None, alias="JobID")
    next_eval: str | None = Field(default=None, alias="NextEval")
    failed_tg_allocs: dict[str, Any] | None = Field(default=None, alias="FailedTGAllocs")


class JobPlan(NomadModel):
    annotations: dict[str, Any] | None = Field(default=None, alias="Annotations")
    diff: dict[str, Any] | None = Field(default=None, alias="Diff")
    failed_tg_allocs: dict[str, Any] | None = Field(default=None, alias="FailedTGAllocs")
    job_modify_index: int | None = Field(default=None, alias="JobModifyIndex")
    warnings: str | None = Field(default=None, alias="Warnings")


class JobValidation(NomadModel):
    error: str | None = Field(default=None, alias="Error")
    validation_errors: list[Any] | None = Field(default=None, alias="ValidationErrors")
    warnings: str | list[str] | None = Field(default=None, alias="Warnings")


class JobStatus(BaseModel):
    status: str
    summary: JobSummary


class JobHealth(BaseModel):
    is_healthy: bool
    status: str
    running_allocations: int = 0
    total_allocations: int = 0
    details: AllocationCounts = Field(default_factory=AllocationCounts)


class JobInfo(BaseModel):
    job: Job
    summary: JobSummary
    versions: list[Job]
    allocations: list[Allocation]
    deployments: list[dict[str, Any]]
    evaluations: list[Evaluation]
    periodic_info: dict[str, Any] | None = None


class HCLValidation(BaseModel):
    job: dict[str, Any] = Field(default_factory=dict)
    warnings: list[str] = Field(default_factory=list)
    validation_errors: list[str] = Field(default_factory=list)
    is_valid: bool = False


# Nodes and node pools


class Node(NomadModel):
    id: str = Field(alias="ID")
    datacenter: str | None = Field(default=None, alias="Datacenter")
    name: str = Field(default="", alias="Name")
    node_class: str | None = Field(default=None, alias="NodeClass")
    node_pool: str | None = Field(default=None, alias="NodePool")
    drain: bool = Field(default=False, alias="Drain")
    drain_strategy: dict[str, Any] | None = Field(default=None, alias="DrainStrategy")
    scheduling_eligibility: str = Field(
        default="eligible", alias="SchedulingEligibility"
    )
    status: str = Field(default="initializing", alias="Status")
    status_description: str | None = Field(default=None, alias="StatusDescription")
    node_resources: dict[str, Any] | None = Field(default=None, alias="NodeResources")
    attributes: dict[str, str] | None = Field(default=None, alias="Attributes")
    meta: dict[str, str] | None = Field(default=None, alias="Meta")
    create_index: int = Field(default=0, alias="CreateIndex")
    modify_index: int = Field(default=0, alias="ModifyIndex")

    @property
    def is_healthy(self) -> bool:
        return (
            self.status == "ready"
            and self.scheduling_eligibility == "eligible"
            and not self.drain
        )


class Utilization(BaseModel):
    cpu: float = 0.0
    memory: float = 0.0
    disk: float = 0.0


class NodeSummary(BaseModel):
    node: Node
    stats: dict[str, Any] = Field(default_factory=dict)
    allocations: list[Allocation] = Field(default_factory=list)
    is_healthy: bool = False
    utilization_percent: Utilization = Field(default_factory=Utilization)


class ClusterStats(BaseModel):
    total_nodes: int = 0
    healthy_nodes: int = 0
    draining_nodes: int = 0
    ineligible_nodes: int = 0
    down_nodes: int = 0
    nodes_by_class: dict[str, int] = Field(default_factory=dict)
    nodes_by_pool: dict[str, int] = Field(default_factory=dict)


class NodePoolSchedulerConfig(NomadModel):
    scheduler_algorithm: Literal["binpack", "spread"] | None = Field(
        default=None, alias="SchedulerAlgorithm"
    )
    memory_oversubscription_enabled: bool | None = Field(
        default=None, alias="MemoryOversubscriptionEnabled"
    )


class NodePool(NomadModel):
    name: str = Field(alias="Name")
    description: str | None = Field(default=None, alias="Description")
    meta: dict[str, str] | None = Field(default=None, alias="Meta")
    scheduler_configuration: NodePoolSchedulerConfig | None = Field(
        default=None, alias="SchedulerConfiguration"
    )
    create_index: int | None = Field(default=None, alias="CreateIndex")
    modify_index: int | None = Field(default=None, alias="ModifyIndex")

    @property
    def is_builtin(self) -> bool:
        return self.name in ("default", "all") or self.name.startswith("builtin-")


class PoolUtilization(BaseModel):
    pool: NodePool
    nodes_count: int = 0
    jobs_count: int = 0
    allocations_count: int = 0
    cpu_percent: float = 0.0
    memory_percent: float = 0.0


class PoolOverviewEntry(BaseModel):
    name: str
    nodes_count: int
    scheduler_algorithm: str
    memory_oversubscription: bool


class PoolsOverview(BaseModel):
    total_pools: int
    builtin_pools: int
    custom_pools: int
    pools: list[PoolOverviewEntry]


# Namespaces


class Namespace(NomadModel):
    name: str = Field(alias="Name")
    description: str | None = Field(default=None, alias="Description")
    quota: str | None = Field(default=None, alias="Quota")
    meta: dict[str, str] | None = Field(default=None, alias="Meta")
    capabilities: dict[str, Any] | None = Field(default=None, alias="Capabilities")
    create_index: int | None = Field(default=None, alias="CreateIndex")
    modify_index: int | None = Field(default=None, alias="ModifyIndex")


class JobCounts(BaseModel):
    total: int = 0
    running: int = 0
    pending: int = 0
    dead: int = 0


class NamespaceUsage(BaseModel):
    jobs: JobCounts
    allocations: AllocationCounts


# Cluster


class HealthStatus(BaseModel):
    healthy: bool
    leader: bool
    peers: int = 0
    servers: int = 0
    clients: int = 0
    issues: list[str] = Field(default_factory=list)


class ClusterInfo(BaseModel):
    name: str = "nomad"
    region: str = "global"
    datacenter: str = "dc1"
    version: str = "unknown"
    build: str = "unknown"
    revision: str = "unknown"


def from_nanoseconds(value: int) -> datetime:
    """Converts a Nomad nanosecond timestamp to an aware datetime."""
    return datetime.fromtimestamp(value / 1_000_000_000, tz=timezone.utc)
