import json
import logging
import time
from typing import Callable, List, Optional, Sequence

from pydantic import ValidationError

from flowstate.visual_base_models import (
    EXPORT_VERSION,
    ExportPayload,
    FlowEdge,
    FlowNode,
    FlowSnapshot,
    SavedFlow,
)

logger = logging.getLogger("flowstate.persistence")

def now_ms() -> int:
    return int(time.time() * 1000)

class SavedFlowRegistry:
    """Named saved flows. Entries are immutable once created; only deletion removes them."""

    def __init__(self, flows: Optional[Sequence[SavedFlow]] = None, clock: Callable[[], int] = now_ms):
        self._flows: List[SavedFlow] = list(flows or [])
        self._clock = clock

    @property
    def flows(self) -> List[SavedFlow]:
        """Stored (insertion) order."""
        return list(self._flows)

    def save(self, name: str, snapshot: FlowSnapshot) -> SavedFlow:
        timestamp = self._clock()
        flow_id = f"flow-{timestamp}"
        # Two saves inside the same millisecond
        taken = {f.id for f in self._flows}
        counter = 1
        while flow_id in taken:
            flow_id = f"flow-{timestamp}-{counter}"
            counter += 1

        flow = SavedFlow(id=flow_id, name=name, snapshot=snapshot, timestamp=timestamp)
        self._flows.append(flow)
        logger.info(f"Saved flow '{name}' as {flow_id} ({len(snapshot.nodes)} nodes, {len(snapshot.edges)} edges)")
        return flow

    def get(self, flow_id: str) -> Optional[SavedFlow]:
        return next((f for f in self._flows if f.id == flow_id), None)

    def delete(self, flow_id: str) -> bool:
        before = len(self._flows)
        self._flows = [f for f in self._flows if f.id != flow_id]
        return len(self._flows) < before

    def newest_first(self) -> List[SavedFlow]:
        return sorted(self._flows, key=lambda f: f.timestamp, reverse=True)

def serialize_export(nodes: Sequence[FlowNode], edges: Sequence[FlowEdge], exported_at: int) -> str:
    payload = {
        "nodes": [n.model_dump(mode="json") for n in nodes],
        "edges": [e.model_dump(mode="json") for e in edges],
        "exportedAt": exported_at,
        "version": EXPORT_VERSION,
    }
    return json.dumps(payload, indent=2)

def parse_import(text) -> Optional[ExportPayload]:
    """
    Parses exported flow text.

    The shape check is the presence of list-typed ``nodes`` and ``edges``. Entries
    are then read leniently: numeric ids and labels become strings, missing
    position/data/type take their defaults and unknown keys are kept. An entry
    still fails when it is not an object, lacks an id (or an edge's endpoints) or
    has a non-finite coordinate. ``exportedAt`` and ``version`` are tolerated
    as-is. Returns None instead of raising on any malformed input.
    """
    try:
        parsed = json.loads(text)
    except (TypeError, ValueError, RecursionError) as e:
        logger.warning(f"Import rejected, not valid JSON: {e}")
        return None

    if not isinstance(parsed, dict):
        logger.warning("Import rejected, top level is not an object")
        return None
    if not isinstance(parsed.get("nodes"), list) or not isinstance(parsed.get("edges"), list):
        logger.warning("Import rejected, 'nodes' and 'edges' must both be arrays")
        return None

    try:
        return ExportPayload.model_validate(parsed)
    except ValidationError as e:
        logger.warning(f"Import rejected, {e.error_count()} invalid node/edge field(s)")
        return None
