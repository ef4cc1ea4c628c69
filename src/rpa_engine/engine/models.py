"""
Workflow graph and execution records.

Nodes form a closed tagged union discriminated on ``type``: each variant
carries only its own fields and is validated when the graph is built.
Wire names follow the designer's camelCase (``actionType``, ``workflowId``);
snake_case attribute names are accepted too.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from ..core.errors import GraphStructureError, UnsupportedNodeTypeError


# Results map key holding the caller-supplied input
INPUT_KEY = "input"


class NodeType(str, Enum):
    """Workflow node types."""
    START = "start"
    END = "end"
    TASK = "task"
    DECISION = "decision"
    BROWSER_ACTION = "browser_action"
    DELAY = "delay"
    API_CALL = "api_call"
    SCRIPT = "script"


class BrowserActionType(str, Enum):
    """Browser operations a BROWSER_ACTION node can request."""
    NAVIGATE = "navigate"
    CLICK = "click"
    TYPE = "type"
    SELECT = "select"
    WAIT_FOR_SELECTOR = "waitForSelector"
    WAIT_FOR_NAVIGATION = "waitForNavigation"
    SCREENSHOT = "screenshot"
    EXTRACT_DATA = "extractData"

    @classmethod
    def _missing_(cls, value):
        # Accept "WAIT_FOR_SELECTOR", "wait_for_selector", "waitforselector"
        if isinstance(value, str):
            key = value.replace("_", "").lower()
            for member in cls:
                if member.value.lower() == key:
                    return member
        return None


class ExecutionStatus(str, Enum):
    """Workflow execution lifecycle."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELED)


class WireModel(BaseModel):
    """Base for records exchanged with the designer and the orchestration substrate."""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=False,
    )

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Position(BaseModel):
    x: float = 0
    y: float = 0


class NodeBase(WireModel):
    """Fields shared by every node variant."""
    id: str = Field(min_length=1)
    name: str = ""
    description: Optional[str] = None
    position: Optional[Position] = None

    @model_validator(mode="after")
    def _default_name(self):
        if not self.name:
            self.name = self.id
        return self


class StartNode(NodeBase):
    type: Literal["start"]


class EndNode(NodeBase):
    type: Literal["end"]


class TaskNode(NodeBase):
    type: Literal["task"]


class DecisionNode(NodeBase):
    """Branching node. Its outgoing edges carry the conditions."""
    type: Literal["decision"]


class BrowserActionNode(NodeBase):
    type: Literal["browser_action"]
    action_type: BrowserActionType
    url: Optional[str] = None
    selector: Optional[str] = None
    text: Optional[str] = None
    timeout: Optional[int] = Field(default=None, gt=0)
    options: dict[str, Any] = Field(default_factory=dict)

    def to_action_spec(self) -> "BrowserActionSpec":
        return BrowserActionSpec(
            action_type=self.action_type,
            url=self.url,
            selector=self.selector,
            text=self.text,
            timeout=self.timeout,
            options=dict(self.options),
        )


class DelayNode(NodeBase):
    type: Literal["delay"]
    milliseconds: Optional[int] = Field(default=None, ge=0)


class ApiCallNode(NodeBase):
    type: Literal["api_call"]
    url: str = Field(min_length=1)
    method: str = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None

    @field_validator("method")
    @classmethod
    def _upper_method(cls, v: str) -> str:
        return v.upper()


class ScriptNode(NodeBase):
    type: Literal["script"]
    code: str
    context: dict[str, Any] = Field(default_factory=dict)


WorkflowNode = Annotated[
    Union[
        StartNode,
        EndNode,
        TaskNode,
        DecisionNode,
        BrowserActionNode,
        DelayNode,
        ApiCallNode,
        ScriptNode,
    ],
    Field(discriminator="type"),
]

_node_adapter: TypeAdapter = TypeAdapter(WorkflowNode)


class WorkflowEdge(WireModel):
    """Directed transition, optionally guarded by a boolean expression."""
    id: Optional[str] = None
    source: str
    target: str
    label: Optional[str] = None
    condition: Optional[str] = None

    @field_validator("condition")
    @classmethod
    def _blank_is_none(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and not v.strip():
            return None
        return v


class BrowserActionSpec(WireModel):
    """Browser action request handed to the session manager."""
    action_type: BrowserActionType
    url: Optional[str] = None
    selector: Optional[str] = None
    text: Optional[str] = None
    timeout: Optional[int] = Field(default=None, gt=0)
    options: dict[str, Any] = Field(default_factory=dict)


def parse_node(data: Any):
    """
    Build a typed node from a raw record.

    Raises:
        UnsupportedNodeTypeError: ``type`` is not a known node type
        GraphStructureError: record is malformed for its type
    """
    if isinstance(data, BaseModel):
        return data

    try:
        return _node_adapter.validate_python(data)
    except ValidationError as e:
        node_id = data.get("id") if isinstance(data, dict) else None
        for err in e.errors():
            if err["type"] == "union_tag_invalid":
                node_type = data.get("type") if isinstance(data, dict) else None
                raise UnsupportedNodeTypeError(
                    f"Unsupported node type: {node_type}",
                    node_type=str(node_type),
                    node_id=node_id,
                )
        raise GraphStructureError(f"Invalid node {node_id}: {e}", node_id=node_id)


def parse_edge(data: Any) -> WorkflowEdge:
    """Build an edge from a raw record."""
    if isinstance(data, WorkflowEdge):
        return data
    try:
        return WorkflowEdge.model_validate(data)
    except ValidationError as e:
        raise GraphStructureError(f"Invalid edge: {e}")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Workflow(WireModel):
    """A stored workflow definition."""
    id: str
    name: str = ""
    description: Optional[str] = None
    version: str = "1.0.0"
    nodes: list[WorkflowNode] = Field(default_factory=list)
    edges: list[WorkflowEdge] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)

    def validate_graph(self) -> list[str]:
        """
        Check structural invariants.

        Returns a list of warnings for suspicious but runnable graphs.

        Raises:
            GraphStructureError: graph cannot be executed
        """
        warnings: list[str] = []
        ids = [node.id for node in self.nodes]

        duplicates = sorted({i for i in ids if ids.count(i) > 1})
        if duplicates:
            raise GraphStructureError(f"Duplicate node ids: {', '.join(duplicates)}")

        if INPUT_KEY in ids:
            raise GraphStructureError(
                f"Node id '{INPUT_KEY}' is reserved for the execution input",
                node_id=INPUT_KEY,
            )

        starts = [node for node in self.nodes if node.type == NodeType.START]
        if not starts:
            raise GraphStructureError("Workflow has no start node")
        if len(starts) > 1:
            warnings.append(f"Multiple start nodes, using {starts[0].id}")

        known = set(ids)
        by_id = {node.id: node for node in self.nodes}
        outgoing: dict[str, list[WorkflowEdge]] = {}
        for edge in self.edges:
            if edge.source not in known:
                raise GraphStructureError(f"Edge source not found: {edge.source}", node_id=edge.source)
            if edge.target not in known:
                raise GraphStructureError(f"Edge target not found: {edge.target}", node_id=edge.source)
            outgoing.setdefault(edge.source, []).append(edge)

        for node_id, edges in outgoing.items():
            node = by_id[node_id]
            if node.type == NodeType.DECISION:
                if all(edge.condition for edge in edges):
                    warnings.append(f"Decision node {node_id} has no default edge")
            else:
                if any(edge.condition for edge in edges):
                    warnings.append(f"Condition on edge from non-decision node {node_id} is ignored")
                if len(edges) > 1:
                    warnings.append(f"Node {node_id} has {len(edges)} outgoing edges, only the first is followed")

        return warnings


class WorkflowExecution(WireModel):
    """One run of a workflow against some input."""
    id: str
    workflow_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    start_time: datetime = Field(default_factory=_utcnow)
    end_time: Optional[datetime] = None
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class RunRequest(WireModel):
    """Payload that starts an execution."""
    workflow_id: str
    execution_id: str
    nodes: list[dict[str, Any]]
    edges: list[dict[str, Any]]
    input: dict[str, Any] = Field(default_factory=dict)


class ExecutionOutcome(WireModel):
    """What the interpreter returns for a run."""
    execution_id: str
    workflow_id: str
    status: ExecutionStatus
    results: dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None


class StatusUpdate(WireModel):
    """Lifecycle transition pushed to the orchestration substrate."""
    execution_id: str
    status: ExecutionStatus
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None


class ExecutionStatusInfo(WireModel):
    """Answer to a status query."""
    execution_id: str
    status: ExecutionStatus
    result: Optional[Any] = None
    error: Optional[str] = None
