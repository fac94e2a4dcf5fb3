# /derivation/service.py

import asyncio
from typing import Dict, List, Optional

from derivation.closure import compute_derived_markers
from derivation.database import MarkerStore
from derivation.exceptions import MarkerNotFoundError, MarkerStoreError
from derivation.logger import get_logger
from derivation.models import (
    BulkMaterializationResult,
    CandidatePreview,
    MarkerMaterializationOutcome,
    MarkerSlot,
    MaterializationAnalysis,
    OntologyConfig,
    SceneMarker,
    StoredMarker,
    TagRef,
)
from derivation.ontology import OntologyGraph
from derivation.planner import analyze_materializable_markers, partition_candidates
from derivation.slot_mapper import SlotDefinitionLookup
from derivation.writer import MaterializationWriter

logger = get_logger(__name__)


def to_scene_marker(marker: StoredMarker, tag_names: Dict[str, str]) -> SceneMarker:
    """Builds the engine's read-only view of a stored marker."""
    primary_tag = None
    if marker.primary_tag_id:
        primary_tag = TagRef(id=marker.primary_tag_id, name=tag_names.get(marker.primary_tag_id, "Unknown"))
    return SceneMarker(
        id=marker.id,
        seconds=marker.seconds,
        end_seconds=marker.end_seconds,
        primary_tag=primary_tag,
        tags=[TagRef(id=tag_id, name=tag_names.get(tag_id, "Unknown")) for tag_id in marker.tag_ids],
        slots=[
            MarkerSlot(
                slot_definition_id=slot.slot_definition_id,
                stashapp_performer_id=slot.performer_id,
                slot_label=slot.slot_label,
                order=slot.order,
            )
            for slot in marker.slots
        ],
    )


class DerivationService:
    """
    Request-scoped entry point tying the store, the ontology snapshot and the
    slot-definition lookup together.
    """
    def __init__(self, store: MarkerStore, lookup: SlotDefinitionLookup, ontology: OntologyConfig):
        self.store = store
        self.ontology = ontology
        self.graph = OntologyGraph.from_config(ontology)
        self.writer = MaterializationWriter(store, lookup, derived_marker_tag_id=ontology.derived_marker_tag_id)

    def _tag_names(self) -> Dict[str, str]:
        try:
            return self.store.get_tag_names()
        except MarkerStoreError as e:
            # Names are display-only; fall back to placeholders.
            logger.warning(f"Tag names unavailable: {e}")
            return {}

    def _get_marker(self, marker_id: str) -> StoredMarker:
        marker = self.store.get_marker(marker_id)
        if marker is None:
            raise MarkerNotFoundError(marker_id)
        return marker

    def _source_markers(self, scene_id: str) -> List[StoredMarker]:
        # Derived markers are results of earlier materializations, not sources.
        return [m for m in self.store.get_scene_markers(scene_id) if not m.derived_from]

    def analyze_scene(self, scene_id: str) -> MaterializationAnalysis:
        source_markers = self._source_markers(scene_id)
        if not source_markers:
            return MaterializationAnalysis()

        tag_names = self._tag_names()
        existing = {m.id: self.store.get_existing_rule_ids(m.id) for m in source_markers}
        analysis = analyze_materializable_markers(
            [to_scene_marker(m, tag_names) for m in source_markers],
            self.graph,
            self.ontology.max_derivation_depth,
            existing,
            tag_names,
        )
        logger.info(
            "Analyzed scene derivations",
            extra={
                "scene_id": scene_id,
                "materializable": len(analysis.materializable_markers),
                "already_materialized": len(analysis.already_materialized_markers),
                "skipped": len(analysis.skipped_markers),
            },
        )
        return analysis

    def preview_marker(self, marker_id: str) -> List[CandidatePreview]:
        marker = self._get_marker(marker_id)
        candidates = compute_derived_markers(
            to_scene_marker(marker, {}), self.graph, self.ontology.max_derivation_depth
        )
        existing = self.store.get_existing_rule_ids(marker_id)
        return [
            CandidatePreview(**candidate.model_dump(), already_materialized=candidate.rule_id in existing)
            for candidate in candidates
        ]

    async def materialize_marker(self, marker_id: str, rule_ids: Optional[List[str]] = None) -> List[StoredMarker]:
        """
        Persists the new derivations of one source marker. When `rule_ids` is
        given only those candidates are written; rule ids that are unknown or
        already materialized are ignored.
        """
        # The store is synchronous; keep its round-trips off the event loop.
        marker = await asyncio.to_thread(self._get_marker, marker_id)
        existing = await asyncio.to_thread(self.store.get_existing_rule_ids, marker_id)
        candidates = compute_derived_markers(
            to_scene_marker(marker, {}), self.graph, self.ontology.max_derivation_depth
        )
        new_candidates, _ = partition_candidates(candidates, existing)
        if rule_ids is not None:
            wanted = set(rule_ids)
            new_candidates = [c for c in new_candidates if c.rule_id in wanted]
        return await self.writer.materialize(marker, new_candidates)

    async def materialize_scene(self, scene_id: str) -> BulkMaterializationResult:
        """Materializes every source marker of a scene, one transaction per marker."""
        result = BulkMaterializationResult()
        for marker in await asyncio.to_thread(self._source_markers, scene_id):
            try:
                created = await self.materialize_marker(marker.id)
            except MarkerStoreError as e:
                logger.error(
                    "Materialization failed for marker",
                    extra={"marker_id": marker.id, "error": str(e)},
                    exc_info=True,
                )
                result.results.append(MarkerMaterializationOutcome(marker_id=marker.id, error=str(e)))
                continue
            if created:
                result.results.append(MarkerMaterializationOutcome(marker_id=marker.id, count=len(created)))
                result.total_count += len(created)
        return result

    async def retag_marker(self, marker_id: str, tag_id: str) -> StoredMarker:
        marker = await asyncio.to_thread(self._get_marker, marker_id)
        return await self.writer.retag(marker, tag_id)
