"""
Maps a user- or assistant-supplied reference string to a concrete node.

Strategies are tried in order and the first match wins:
id, exact label (case-insensitive), partial label (case-insensitive), type.
"""
import logging
from typing import Callable, List, Optional, Sequence, Tuple

from flowstate.visual_base_models import FlowNode

logger = logging.getLogger("flowstate.resolver")

Resolver = Callable[[str, Sequence[FlowNode]], Optional[FlowNode]]

def by_id(reference: str, nodes: Sequence[FlowNode]) -> Optional[FlowNode]:
    return next((n for n in nodes if n.id == reference), None)

def by_label(reference: str, nodes: Sequence[FlowNode]) -> Optional[FlowNode]:
    ref = reference.lower()
    return next((n for n in nodes if n.data.label.lower() == ref), None)

def by_label_contains(reference: str, nodes: Sequence[FlowNode]) -> Optional[FlowNode]:
    ref = reference.lower()
    return next((n for n in nodes if ref in n.data.label.lower()), None)

def by_type(reference: str, nodes: Sequence[FlowNode]) -> Optional[FlowNode]:
    return next((n for n in nodes if n.type == reference), None)

RESOLVERS: List[Tuple[str, Resolver]] = [
    ("id", by_id),
    ("label", by_label),
    ("label_contains", by_label_contains),
    ("type", by_type),
]

def resolve_with_tier(reference: Optional[str], nodes: Sequence[FlowNode]) -> Tuple[Optional[FlowNode], Optional[str]]:
    """Returns (node, tier name), or (None, None) when nothing matches."""
    # A blank reference would substring-match every label
    if not reference or not reference.strip():
        return None, None

    for tier, strategy in RESOLVERS:
        node = strategy(reference, nodes)
        if node is not None:
            logger.debug(f"Resolved '{reference}' -> {node.id} via {tier}")
            return node, tier

    logger.debug(f"Could not resolve node reference '{reference}'")
    return None, None

def resolve(reference: Optional[str], nodes: Sequence[FlowNode]) -> Optional[FlowNode]:
    return resolve_with_tier(reference, nodes)[0]
