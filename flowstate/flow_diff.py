"""
Applies structured flow diffs produced by the assistant to a GraphManager.

A diff is one operation, an ordered batch of operations, or an explanation that
carries no mutation. References to nodes go through the resolver; anything that
does not resolve is skipped rather than treated as an error, since diffs come
from a best-effort interpreter.
"""
import json
import logging
import random
import re
from typing import Any, Dict, List, Optional, Sequence, Set, Tuple

from pydantic import ValidationError

from flowstate.graph_manager import GraphManager
from flowstate.resolver import resolve
from flowstate.visual_base_models import (
    DEFAULT_EDGE_TYPE,
    AnyFlowDiff,
    DiffAction,
    DiffResult,
    FlowDiff,
    FlowDiffBatch,
    FlowEdge,
    FlowNode,
    NodeData,
    NodeType,
    Position,
    edge_id_for,
)

logger = logging.getLogger("flowstate.flow_diff")

DEFAULT_NODE_LABEL = "New Node"
# Area new nodes land in when the diff gives no position
RANDOM_X_RANGE = (100.0, 600.0)
RANDOM_Y_RANGE = (100.0, 400.0)

def parse_flow_diff(payload: Any) -> Optional[AnyFlowDiff]:
    """
    Validates a diff payload: a dict, JSON text, or the assistant's
    ``{"response": ..., "flowDiff": {...}}`` envelope. Returns None when malformed.
    """
    if isinstance(payload, (FlowDiff, FlowDiffBatch)):
        return payload
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except (ValueError, RecursionError) as e:
            logger.warning(f"Flow diff is not valid JSON: {e}")
            return None
    if not isinstance(payload, dict):
        logger.warning(f"Flow diff must be an object, got {type(payload).__name__}")
        return None

    if "flowDiff" in payload:
        payload = payload["flowDiff"]
        if not isinstance(payload, dict):
            return None

    try:
        if "operations" in payload:
            return FlowDiffBatch.model_validate(payload)
        return FlowDiff.model_validate(payload)
    except ValidationError as e:
        logger.warning(f"Rejected flow diff: {e.error_count()} validation error(s)")
        return None

def generate_node_id(label: str, taken: Set[str], node_type: str = NodeType.ACTION.value) -> str:
    """'<type>-<label>' lower-cased with whitespace runs as hyphens, suffixed -1, -2... on collision."""
    slug = re.sub(r"\s+", "-", label.lower())
    base_id = f"{node_type}-{slug}"
    final_id = base_id
    counter = 1
    while final_id in taken:
        final_id = f"{base_id}-{counter}"
        counter += 1
    return final_id

def random_position(rng: random.Random) -> Position:
    return Position(x=rng.uniform(*RANDOM_X_RANGE), y=rng.uniform(*RANDOM_Y_RANGE))

# --- Planning: resolve one operation against a node/edge view ---

def _plan_add_node(op: FlowDiff, taken: Set[str], rng: random.Random) -> FlowNode:
    label = op.nodeLabel or DEFAULT_NODE_LABEL
    # The requested type still prefixes the id even though the node itself becomes an action
    return FlowNode(
        id=generate_node_id(label, taken, op.nodeType or NodeType.ACTION.value),
        position=op.nodePosition or random_position(rng),
        data=NodeData(label=label),
    )

def _plan_update_node(op: FlowDiff, nodes: Sequence[FlowNode]) -> Optional[Tuple[str, Dict[str, Any]]]:
    node = resolve(op.nodeId, nodes)
    if node is None:
        return None

    updates: Dict[str, Any] = {}
    if op.nodeLabel is not None:
        updates["data"] = {**node.data.model_dump(), "label": op.nodeLabel}
    if op.nodeType is not None:
        updates["type"] = op.nodeType
    if op.nodePosition is not None:
        updates["position"] = op.nodePosition.model_dump()
    if not updates:
        return None
    return node.id, updates

def _plan_delete_node(op: FlowDiff, nodes: Sequence[FlowNode]) -> Optional[str]:
    node = resolve(op.nodeId, nodes)
    return node.id if node else None

def _plan_add_edge(op: FlowDiff, nodes: Sequence[FlowNode], edges: Sequence[FlowEdge]) -> Optional[FlowEdge]:
    source = resolve(op.sourceId, nodes)
    target = resolve(op.targetId, nodes)
    if source is None or target is None:
        return None
    if any(e.source == source.id and e.target == target.id for e in edges):
        logger.debug(f"Edge {source.id} -> {target.id} already exists")
        return None
    return FlowEdge(id=edge_id_for(source.id, target.id), source=source.id, target=target.id, type=DEFAULT_EDGE_TYPE)

def _plan_delete_edge(op: FlowDiff, nodes: Sequence[FlowNode], edges: Sequence[FlowEdge]) -> Optional[List[FlowEdge]]:
    """Returns the remaining edges, or None when nothing would be removed."""
    if op.edgeId:
        remaining = [e for e in edges if e.id != op.edgeId]
    else:
        source = resolve(op.sourceId, nodes)
        target = resolve(op.targetId, nodes)
        if source is None or target is None:
            return None
        remaining = [e for e in edges if not (e.source == source.id and e.target == target.id)]
    if len(remaining) == len(edges):
        return None
    return remaining

# --- Application ---

def _apply_single(manager: GraphManager, op: FlowDiff, rng: random.Random) -> bool:
    """Resolves against the live graph and issues one mutation call."""
    action = op.action
    nodes = manager.nodes

    if action == DiffAction.ADD_NODE:
        return manager.add_node(_plan_add_node(op, {n.id for n in nodes}, rng)) is not None

    if action == DiffAction.UPDATE_NODE:
        plan = _plan_update_node(op, nodes)
        return plan is not None and manager.update_node(*plan)

    if action == DiffAction.DELETE_NODE:
        node_id = _plan_delete_node(op, nodes)
        return node_id is not None and manager.delete_node(node_id)

    if action == DiffAction.ADD_EDGE:
        edge = _plan_add_edge(op, nodes, manager.edges)
        return edge is not None and manager.add_edge(edge) is not None

    if action == DiffAction.DELETE_EDGE:
        if op.edgeId:
            return manager.delete_edge(op.edgeId)
        remaining = _plan_delete_edge(op, nodes, manager.edges)
        if remaining is None:
            return False
        manager.set_edges(remaining)
        return True

    if action == DiffAction.CLEAR_ALL:
        manager.reset()
        return True

    return False

def _apply_to_working_copy(op: FlowDiff, nodes: List[FlowNode], edges: List[FlowEdge],
                           live_ids: Set[str], rng: random.Random) -> Optional[Tuple[List[FlowNode], List[FlowEdge]]]:
    action = op.action

    if action == DiffAction.ADD_NODE:
        node = _plan_add_node(op, live_ids | {n.id for n in nodes}, rng)
        return nodes + [node], edges

    if action == DiffAction.UPDATE_NODE:
        plan = _plan_update_node(op, nodes)
        if plan is None:
            return None
        node_id, updates = plan
        try:
            updated = [
                FlowNode.model_validate({**n.model_dump(), **updates}) if n.id == node_id else n
                for n in nodes
            ]
        except ValidationError:
            return None
        return updated, edges

    if action == DiffAction.DELETE_NODE:
        node_id = _plan_delete_node(op, nodes)
        if node_id is None:
            return None
        return (
            [n for n in nodes if n.id != node_id],
            [e for e in edges if e.source != node_id and e.target != node_id],
        )

    if action == DiffAction.ADD_EDGE:
        edge = _plan_add_edge(op, nodes, edges)
        if edge is None:
            return None
        return nodes, edges + [edge]

    if action == DiffAction.DELETE_EDGE:
        remaining = _plan_delete_edge(op, nodes, edges)
        if remaining is None:
            return None
        return nodes, remaining

    if action == DiffAction.CLEAR_ALL:
        return [], []

    return None

def _apply_batch(manager: GraphManager, batch: FlowDiffBatch, rng: random.Random) -> DiffResult:
    """
    Operations run in order over an accumulating working copy, so each one sees
    the nodes and edges created by the ones before it. The result is committed
    once, as a single undo step.
    """
    nodes, edges = manager.nodes, manager.edges
    live_ids = {n.id for n in nodes}
    result = DiffResult(mode="batch")

    for op in batch.operations:
        if op.action == DiffAction.EXPLAIN:
            continue
        outcome = _apply_to_working_copy(op, nodes, edges, live_ids, rng)
        if outcome is None:
            logger.debug(f"Batch operation {op.action} skipped")
            result.skipped += 1
            continue
        nodes, edges = outcome
        result.applied += 1

    if result.applied:
        manager.set_graph(nodes, edges)
    return result

def apply_flow_diff(manager: GraphManager, diff: AnyFlowDiff, rng: Optional[random.Random] = None) -> DiffResult:
    rng = rng or random.Random()

    if isinstance(diff, FlowDiffBatch):
        logger.info(f"Applying batch of {len(diff.operations)} operation(s) to '{manager.session_id}'")
        result = _apply_batch(manager, diff, rng)
    elif diff.action == DiffAction.EXPLAIN:
        result = DiffResult(mode="explain")
    else:
        logger.info(f"Applying {diff.action} to '{manager.session_id}'")
        applied = _apply_single(manager, diff, rng)
        result = DiffResult(applied=int(applied), skipped=int(not applied))

    result.message = describe_flow_diff(diff)
    return result

def describe_flow_diff(diff: AnyFlowDiff) -> str:
    """The acknowledgement the assistant shows next to a diff."""
    if isinstance(diff, FlowDiffBatch):
        if diff.explanation:
            return diff.explanation
        return f"I'll apply {len(diff.operations)} changes to your flow."

    action = diff.action
    if action == DiffAction.ADD_NODE:
        return f"I'll add a node labeled \"{diff.nodeLabel or DEFAULT_NODE_LABEL}\" to your flow."
    if action == DiffAction.DELETE_NODE:
        return "I'll delete the node from your flow."
    if action == DiffAction.ADD_EDGE:
        return "I'll connect the nodes for you."
    if action == DiffAction.CLEAR_ALL:
        return "I'll clear all nodes and connections from your flow."
    if action == DiffAction.EXPLAIN:
        return diff.explanation or "This flow processes data through various stages."
    return f"I'll {action.replace('_', ' ', 1)} as requested."
