# /derivation/planner.py

from typing import Iterable, List, Mapping, Set, Tuple

from derivation.closure import compute_derived_markers
from derivation.models import (
    AlreadyMaterializedMarker,
    DerivedMarkerCandidate,
    MarkerMaterialization,
    MaterializationAnalysis,
    SceneMarker,
    SkippedMarker,
)
from derivation.ontology import OntologyGraph

NO_RULES_REASON = "No derivation rules configured"


def format_marker_time(seconds: float) -> str:
    return f"{seconds:.1f}s"


def tag_display_name(tag_names: Mapping[str, str], tag_id: str) -> str:
    return tag_names.get(tag_id) or f"Tag {tag_id}"


def partition_candidates(
    candidates: Iterable[DerivedMarkerCandidate],
    existing_rule_ids: Set[str],
) -> Tuple[List[DerivedMarkerCandidate], List[DerivedMarkerCandidate]]:
    """Splits candidates into (new, already materialized) by rule id."""
    new, existing = [], []
    for candidate in candidates:
        if candidate.rule_id in existing_rule_ids:
            existing.append(candidate)
        else:
            new.append(candidate)
    return new, existing


def analyze_materializable_markers(
    markers: Iterable[SceneMarker],
    graph: OntologyGraph,
    max_depth: int,
    existing_derivations_by_marker: Mapping[str, Set[str]],
    tag_names: Mapping[str, str],
) -> MaterializationAnalysis:
    """
    Classifies each source marker as materializable, already materialized,
    or skipped. Read-only: nothing is written, so repeated calls with the
    same inputs return the same result.

    Args:
        markers: Source markers of a scene.
        graph: Ontology rules.
        max_depth: Maximum derivation depth.
        existing_derivations_by_marker: Marker id -> rule ids already
            materialized from that marker.
        tag_names: Tag id -> display name. Only used for display.
    """
    analysis = MaterializationAnalysis()

    for marker in markers:
        marker_tag = marker.primary_tag.name if marker.primary_tag else ""
        marker_time = format_marker_time(marker.seconds)

        candidates = compute_derived_markers(marker, graph, max_depth)
        if not candidates:
            analysis.skipped_markers.append(SkippedMarker(
                marker_id=marker.id,
                marker_tag=marker_tag,
                marker_time=marker_time,
                reason=NO_RULES_REASON,
            ))
            continue

        existing_rule_ids = existing_derivations_by_marker.get(marker.id, set())
        new_candidates, _ = partition_candidates(candidates, existing_rule_ids)

        if not new_candidates:
            analysis.already_materialized_markers.append(AlreadyMaterializedMarker(
                marker_id=marker.id,
                marker_tag=marker_tag,
                marker_time=marker_time,
                existing_derivations_count=len(candidates),
            ))
            continue

        derived_tags: List[str] = []
        for candidate in new_candidates:
            name = tag_display_name(tag_names, candidate.derived_tag_id)
            if name not in derived_tags:
                derived_tags.append(name)

        analysis.materializable_markers.append(MarkerMaterialization(
            marker_id=marker.id,
            marker_tag=marker_tag,
            marker_time=marker_time,
            derived_tags=derived_tags,
            new_derivations_count=len(new_candidates),
            total_derivations_count=len(candidates),
            new_rule_ids=[candidate.rule_id for candidate in new_candidates],
        ))

    return analysis
