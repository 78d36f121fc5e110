from typing import List, Dict, Any, Optional, Union
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, field_validator

class NodeType(str, Enum):
    ACTION = "action"

DEFAULT_EDGE_TYPE = "custom"
EXPORT_VERSION = "1.0"

class DiffAction(str, Enum):
    ADD_NODE = "add_node"
    UPDATE_NODE = "update_node"
    DELETE_NODE = "delete_node"
    ADD_EDGE = "add_edge"
    DELETE_EDGE = "delete_edge"
    CLEAR_ALL = "clear_all"
    EXPLAIN = "explain"

class Position(BaseModel):
    # Finite only; JSON cannot carry inf/NaN back out of storage
    model_config = ConfigDict(allow_inf_nan=False)

    x: float = 0.0
    y: float = 0.0

class NodeData(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    label: str = ""

class FlowNode(BaseModel):
    # React Flow attaches width/height/selected/dragging etc.; keep them verbatim
    model_config = ConfigDict(extra="allow", use_enum_values=True, coerce_numbers_to_str=True)

    id: str
    type: NodeType = NodeType.ACTION
    position: Position = Field(default_factory=Position)
    data: NodeData = Field(default_factory=NodeData)

    @field_validator("type", mode="before")
    @classmethod
    def _single_variant(cls, value: Any) -> NodeType:
        # Every node is a universal action node, including the legacy dataSource/aiModel variants
        return NodeType.ACTION

    @property
    def label(self) -> str:
        return self.data.label

class FlowEdge(BaseModel):
    model_config = ConfigDict(extra="allow", coerce_numbers_to_str=True)

    id: str
    source: str
    target: str
    type: str = DEFAULT_EDGE_TYPE # Rendering hint only

class Connection(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    source: str
    target: str
    sourceHandle: Optional[str] = None
    targetHandle: Optional[str] = None

    def to_edge(self) -> FlowEdge:
        return FlowEdge(
            id=edge_id_for(self.source, self.target),
            source=self.source,
            target=self.target,
            type=DEFAULT_EDGE_TYPE,
        )

def edge_id_for(source: str, target: str) -> str:
    return f"edge-{source}-{target}"

class FlowSnapshot(BaseModel):
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)

    @classmethod
    def capture(cls, nodes: List[FlowNode], edges: List[FlowEdge]) -> "FlowSnapshot":
        """Deep structural copy; the snapshot shares nothing mutable with its inputs."""
        return cls(
            nodes=[n.model_copy(deep=True) for n in nodes],
            edges=[e.model_copy(deep=True) for e in edges],
        )

    def copy_graph(self):
        """Returns fresh (nodes, edges) lists safe to hand to the live graph."""
        clone = FlowSnapshot.capture(self.nodes, self.edges)
        return clone.nodes, clone.edges

    def matches(self, other: Optional["FlowSnapshot"]) -> bool:
        """Order-sensitive structural equality."""
        if other is None:
            return False
        return self.model_dump(mode="json") == other.model_dump(mode="json")

class SavedFlow(BaseModel):
    id: str
    name: str
    snapshot: FlowSnapshot
    timestamp: int

class PersistedState(BaseModel):
    """The durable record; undo history is deliberately not part of it."""
    nodes: List[FlowNode] = Field(default_factory=list)
    edges: List[FlowEdge] = Field(default_factory=list)
    savedFlows: List[SavedFlow] = Field(default_factory=list)

class ExportPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    nodes: List[FlowNode]
    edges: List[FlowEdge]
    # Round-tripped, never validated
    exportedAt: Any = None
    version: Any = None

class FlowDiff(BaseModel):
    """One structured graph instruction produced by the assistant."""
    model_config = ConfigDict(use_enum_values=True)

    action: DiffAction
    nodeId: Optional[str] = None
    nodeType: Optional[str] = None
    nodeLabel: Optional[str] = None
    nodePosition: Optional[Position] = None
    sourceId: Optional[str] = None
    targetId: Optional[str] = None
    edgeId: Optional[str] = None
    explanation: Optional[str] = None

class FlowDiffBatch(BaseModel):
    operations: List[FlowDiff]
    explanation: Optional[str] = None

AnyFlowDiff = Union[FlowDiff, FlowDiffBatch]

class DiffResult(BaseModel):
    applied: int = 0
    skipped: int = 0
    message: str = ""
    mode: str = "single" # single | batch | explain
