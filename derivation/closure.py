# /derivation/closure.py

from typing import Dict, List, NamedTuple, Optional, Set

from derivation.logger import get_logger
from derivation.models import DerivedMarkerCandidate, DerivedSlot, SceneMarker
from derivation.ontology import OntologyGraph

logger = get_logger(__name__)


class _FrontierNode(NamedTuple):
    tag_id: str
    slots: List[DerivedSlot]
    rule_id: Optional[str]  # rule that reached this node, None for the source marker


def _source_slots(marker: SceneMarker) -> List[DerivedSlot]:
    # Unlabelled slots can never match a slotMapping key.
    return [
        DerivedSlot(
            label=slot.slot_label,
            performer_id=str(slot.stashapp_performer_id) if slot.stashapp_performer_id is not None else None,
        )
        for slot in marker.slots
        if slot.slot_label
    ]


def apply_slot_mapping(slot_mapping: Dict[str, str], slots: List[DerivedSlot]) -> List[DerivedSlot]:
    """
    Carries performer assignments across a rule's label mapping.

    Only mapped labels survive. Every slot carrying a mapped label is kept,
    so a role filled by two performers stays filled by both. Output follows
    mapping order, then slot order. A mapping entry whose source label is not
    present on the node is skipped.
    """
    by_label: Dict[str, List[DerivedSlot]] = {}
    for slot in slots:
        by_label.setdefault(slot.label, []).append(slot)

    mapped = []
    for source_label, derived_label in slot_mapping.items():
        for slot in by_label.get(source_label, ()):
            mapped.append(DerivedSlot(label=derived_label, performer_id=slot.performer_id))
    return mapped


def compute_derived_markers(
    marker: SceneMarker,
    graph: OntologyGraph,
    max_depth: int = 3,
) -> List[DerivedMarkerCandidate]:
    """
    Computes every marker implied by `marker` through the ontology graph.

    Runs a pass per depth level, starting from the marker's primary tag. Each
    rule edge fires at most once per run, and at most `max_depth` passes are
    made, so cyclic configurations terminate. When a derived tag is reachable
    through several edges, the first one seen (by pass, then by rule order)
    wins and later edges into that tag are ignored.

    Args:
        marker: The source marker. It is not modified.
        graph: Ontology rules indexed by source tag.
        max_depth: Maximum number of passes. Depth 0 candidates come from the
            first pass.

    Returns:
        Candidates in discovery order.
    """
    if marker.primary_tag is None or not marker.primary_tag.id:
        return []

    candidates: List[DerivedMarkerCandidate] = []
    visited_edges: Set[str] = set()
    emitted_tags: Set[str] = set()
    frontier = [_FrontierNode(marker.primary_tag.id, _source_slots(marker), None)]

    depth = 0
    while depth < max_depth and frontier:
        next_frontier: List[_FrontierNode] = []
        for node in frontier:
            for rule in graph.rules_from(node.tag_id):
                rule_id = rule.rule_id
                if rule_id in visited_edges:
                    continue
                visited_edges.add(rule_id)

                if rule.derived_tag_id in emitted_tags:
                    logger.debug(
                        "Derived tag already reached by an earlier edge",
                        extra={"marker_id": marker.id, "rule_id": rule_id, "depth": depth},
                    )
                    continue
                emitted_tags.add(rule.derived_tag_id)

                slots = apply_slot_mapping(rule.slot_mapping, node.slots)
                candidates.append(DerivedMarkerCandidate(
                    source_marker_id=marker.id,
                    parent_rule_id=node.rule_id,
                    derived_tag_id=rule.derived_tag_id,
                    tags=[rule.derived_tag_id],
                    slots=slots,
                    depth=depth,
                    rule_id=rule_id,
                ))
                next_frontier.append(_FrontierNode(rule.derived_tag_id, slots, rule_id))

        frontier = next_frontier
        depth += 1

    if any(graph.rules_from(node.tag_id) for node in frontier):
        logger.info(
            "Derivation stopped at max depth",
            extra={"marker_id": marker.id, "max_depth": max_depth, "pending": len(frontier)},
        )

    return candidates
