import logging
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

from pydantic import ValidationError

from flowstate.history import DEFAULT_HISTORY_SIZE, HistoryManager
from flowstate.persistence import SavedFlowRegistry, now_ms, parse_import, serialize_export
from flowstate.storage import DEFAULT_SESSION
from flowstate.visual_base_models import (
    Connection,
    FlowEdge,
    FlowNode,
    FlowSnapshot,
    PersistedState,
    SavedFlow,
)

logger = logging.getLogger("flowstate.graph_manager")

NodeLike = Union[FlowNode, Dict[str, Any]]
EdgeLike = Union[FlowEdge, Connection, Dict[str, Any]]

def _to_nodes(items: Sequence[NodeLike]) -> List[FlowNode]:
    return [n.model_copy(deep=True) if isinstance(n, FlowNode) else FlowNode.model_validate(n) for n in items]

def _to_edges(items: Sequence[EdgeLike]) -> List[FlowEdge]:
    return [e.model_copy(deep=True) if isinstance(e, FlowEdge) else FlowEdge.model_validate(e) for e in items]

class GraphManager:
    """
    Owns one session's live flow graph.

    Every mutating call records the pre-mutation snapshot, commits the new state,
    records the post-mutation snapshot and persists {nodes, edges, savedFlows}.
    History pushes deduplicate, so back-to-back mutations share their boundary
    snapshot and each undo steps back exactly one mutation.

    Nothing here raises on a missing id or malformed payload: those are no-ops or
    boolean failures. The one unchecked precondition is that set_nodes/set_edges
    receive well-typed node/edge sequences.
    """

    def __init__(self, session_id=DEFAULT_SESSION, storage=None, history_size: int = DEFAULT_HISTORY_SIZE,
                 clock: Callable[[], int] = now_ms):
        self.session_id = session_id
        self.storage = storage
        self.history = HistoryManager(history_size)
        self._clock = clock
        self._nodes: List[FlowNode] = []
        self._edges: List[FlowEdge] = []
        self.saved_flows = SavedFlowRegistry(clock=clock)
        self._hydrate()

    # --- Reads ---

    @property
    def nodes(self) -> List[FlowNode]:
        return [n.model_copy(deep=True) for n in self._nodes]

    @property
    def edges(self) -> List[FlowEdge]:
        return [e.model_copy(deep=True) for e in self._edges]

    def snapshot(self) -> FlowSnapshot:
        return FlowSnapshot.capture(self._nodes, self._edges)

    def get_node(self, node_id) -> Optional[FlowNode]:
        node = next((n for n in self._nodes if n.id == node_id), None)
        return node.model_copy(deep=True) if node else None

    def get_graph(self):
        return {
            "nodes": [n.model_dump(mode="json") for n in self._nodes],
            "edges": [e.model_dump(mode="json") for e in self._edges],
            "canUndo": self.can_undo(),
            "canRedo": self.can_redo(),
        }

    def assistant_context(self):
        """Read-only view of the graph handed to the assistant alongside a prompt."""
        return {
            "nodes": [
                {"id": n.id, "type": n.type, "label": n.data.label, "position": n.position.model_dump()}
                for n in self._nodes
            ],
            "edges": [{"id": e.id, "source": e.source, "target": e.target} for e in self._edges],
        }

    # --- Mutation API ---

    def set_nodes(self, nodes: Sequence[NodeLike], record_history: bool = True):
        self._commit(_to_nodes(nodes), self._edges, record_history)

    def set_edges(self, edges: Sequence[EdgeLike], record_history: bool = True):
        self._commit(self._nodes, _to_edges(edges), record_history)

    def set_graph(self, nodes: Sequence[NodeLike], edges: Sequence[EdgeLike]):
        """Replaces both collections as a single undo step."""
        self._commit(_to_nodes(nodes), _to_edges(edges))

    def add_node(self, node: NodeLike) -> Optional[FlowNode]:
        try:
            new_node = _to_nodes([node])[0]
        except ValidationError as e:
            logger.warning(f"add_node ignored, invalid node: {e.error_count()} error(s)")
            return None
        self._commit(self._nodes + [new_node], self._edges)
        return new_node.model_copy(deep=True)

    def add_edge(self, connection: EdgeLike) -> Optional[FlowEdge]:
        """Inserts a full edge verbatim, or synthesizes one from a bare source/target connection."""
        try:
            if isinstance(connection, FlowEdge):
                edge = connection.model_copy(deep=True)
            elif isinstance(connection, Connection):
                edge = connection.to_edge()
            elif isinstance(connection, dict) and "id" in connection:
                edge = FlowEdge.model_validate(connection)
            else:
                edge = Connection.model_validate(connection).to_edge()
        except ValidationError as e:
            logger.warning(f"add_edge ignored, invalid connection: {e.error_count()} error(s)")
            return None
        self._commit(self._nodes, self._edges + [edge])
        return edge.model_copy(deep=True)

    def update_node(self, node_id, updates: Dict[str, Any]) -> bool:
        """Shallow-merges top-level fields into the node with this id."""
        for i, node in enumerate(self._nodes):
            if node.id != node_id:
                continue
            try:
                merged = FlowNode.model_validate({**node.model_dump(), **updates})
            except ValidationError as e:
                logger.warning(f"update_node({node_id}) ignored: {e.error_count()} invalid field(s)")
                return False
            nodes = list(self._nodes)
            nodes[i] = merged
            self._commit(nodes, self._edges)
            return True

        logger.debug(f"update_node: no node '{node_id}'")
        return False

    def delete_node(self, node_id) -> bool:
        """Removes the node and every edge touching it."""
        if not any(n.id == node_id for n in self._nodes):
            logger.debug(f"delete_node: no node '{node_id}'")
            return False
        nodes = [n for n in self._nodes if n.id != node_id]
        edges = [e for e in self._edges if e.source != node_id and e.target != node_id]
        self._commit(nodes, edges)
        return True

    def delete_edge(self, edge_id) -> bool:
        if not any(e.id == edge_id for e in self._edges):
            logger.debug(f"delete_edge: no edge '{edge_id}'")
            return False
        self._commit(self._nodes, [e for e in self._edges if e.id != edge_id])
        return True

    def reset(self):
        self._commit([], [])

    # --- History ---

    def push_to_history(self, snapshot: Optional[FlowSnapshot] = None) -> bool:
        """Records the given snapshot, or the live graph (e.g. on drag end)."""
        if snapshot is None:
            snapshot = self.snapshot()
        return self.history.push(snapshot)

    def undo(self) -> bool:
        return self._restore(self.history.undo())

    def redo(self) -> bool:
        return self._restore(self.history.redo())

    def can_undo(self) -> bool:
        return self.history.can_undo()

    def can_redo(self) -> bool:
        return self.history.can_redo()

    # --- Saved flows, export/import ---

    def save_flow(self, name: str) -> str:
        flow = self.saved_flows.save(name, self.snapshot())
        self._persist()
        return flow.id

    def load_flow(self, flow_id) -> bool:
        flow = self.saved_flows.get(flow_id)
        if flow is None:
            logger.debug(f"load_flow: no saved flow '{flow_id}'")
            return False
        nodes, edges = flow.snapshot.copy_graph()
        self._commit(nodes, edges)
        return True

    def delete_flow(self, flow_id) -> bool:
        removed = self.saved_flows.delete(flow_id)
        if removed:
            self._persist()
        return removed

    def get_saved_flows(self) -> List[SavedFlow]:
        return [f.model_copy(deep=True) for f in self.saved_flows.newest_first()]

    def export_flow(self) -> str:
        return serialize_export(self._nodes, self._edges, self._clock())

    def import_flow(self, text) -> bool:
        payload = parse_import(text)
        if payload is None:
            return False
        self._commit(payload.nodes, payload.edges)
        logger.info(f"Imported {len(payload.nodes)} nodes and {len(payload.edges)} edges into '{self.session_id}'")
        return True

    # --- Internals ---

    def _commit(self, nodes: List[FlowNode], edges: List[FlowEdge], record_history: bool = True):
        # Unrecorded gesture frames still need a pre-gesture baseline to undo back to
        if record_history or not len(self.history):
            self.history.push(self.snapshot())
        self._nodes = list(nodes)
        self._edges = list(edges)
        if record_history:
            self.history.push(self.snapshot())
        self._persist()

    def _restore(self, snapshot: Optional[FlowSnapshot]) -> bool:
        if snapshot is None:
            return False
        self._nodes, self._edges = snapshot.nodes, snapshot.edges
        self._persist()
        return True

    def _persist(self):
        if self.storage is None:
            return
        self.storage.write(self.session_id, PersistedState(
            nodes=self._nodes,
            edges=self._edges,
            savedFlows=self.saved_flows.flows,
        ))

    def _hydrate(self):
        if self.storage is None:
            return
        state = self.storage.read(self.session_id)
        if state is None:
            return
        self._nodes = list(state.nodes)
        self._edges = list(state.edges)
        self.saved_flows = SavedFlowRegistry(state.savedFlows, clock=self._clock)
        logger.info(f"Hydrated session '{self.session_id}': {len(self._nodes)} nodes, {len(self._edges)} edges, {len(state.savedFlows)} saved flows")
