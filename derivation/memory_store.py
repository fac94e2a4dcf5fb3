from itertools import count
import threading
from typing import Dict, Iterable, List, Optional, Set

from derivation.database import MarkerStore
from derivation.exceptions import DuplicateDerivationError, MarkerNotFoundError
from derivation.logger import get_logger
from derivation.models import DerivationEdge, NewDerivedMarker, StoredMarker, StoredSlot

logger = get_logger(__name__)


class InMemoryMarkerStore(MarkerStore):
    """
    Concrete implementation of the MarkerStore kept in process memory.
    Used for local development and tests.

    Writes are staged in full before anything is committed, so a failing
    create_derived_markers call leaves the store untouched.
    """
    def __init__(self, markers: Iterable[StoredMarker] = (), tag_names: Dict[str, str] = None,
                 edges: Iterable[DerivationEdge] = ()):
        self._markers: Dict[str, StoredMarker] = {}
        self._edges: List[DerivationEdge] = list(edges)
        self._tag_names = dict(tag_names or {})
        self._ids = count(1)
        # Store calls run on worker threads; writes are serialized.
        self._lock = threading.Lock()
        for marker in markers:
            self.add_marker(marker)

    def add_marker(self, marker: StoredMarker) -> StoredMarker:
        self._markers[marker.id] = marker.model_copy(deep=True)
        return marker

    def _next_id(self) -> str:
        marker_id = str(next(self._ids))
        while marker_id in self._markers:
            marker_id = str(next(self._ids))
        return marker_id

    def _derived_from(self, marker_id: str) -> List[str]:
        sources = []
        for edge in self._edges:
            if edge.derived_marker_id == marker_id and edge.source_marker_id not in sources:
                sources.append(edge.source_marker_id)
        return sources

    def _view(self, marker: StoredMarker) -> StoredMarker:
        view = marker.model_copy(deep=True)
        view.derived_from = self._derived_from(marker.id)
        return view

    @property
    def edges(self) -> List[DerivationEdge]:
        return list(self._edges)

    def get_scene_markers(self, scene_id: str) -> List[StoredMarker]:
        markers = [m for m in self._markers.values() if m.scene_id == scene_id]
        return [self._view(m) for m in sorted(markers, key=lambda m: m.seconds)]

    def get_marker(self, marker_id: str) -> Optional[StoredMarker]:
        marker = self._markers.get(marker_id)
        return self._view(marker) if marker is not None else None

    def get_existing_rule_ids(self, marker_id: str) -> Set[str]:
        return {edge.rule_id for edge in self._edges if edge.source_marker_id == marker_id}

    def get_tag_names(self) -> Dict[str, str]:
        return dict(self._tag_names)

    def create_derived_markers(self, source_marker_id: str, records: List[NewDerivedMarker]) -> List[StoredMarker]:
        with self._lock:
            return self._create_derived_markers(source_marker_id, records)

    def _create_derived_markers(self, source_marker_id: str, records: List[NewDerivedMarker]) -> List[StoredMarker]:
        if source_marker_id not in self._markers:
            raise MarkerNotFoundError(source_marker_id)

        existing = self.get_existing_rule_ids(source_marker_id)
        duplicates = {record.rule_id for record in records if record.rule_id in existing}
        if duplicates:
            raise DuplicateDerivationError(source_marker_id, duplicates)

        staged_markers: List[StoredMarker] = []
        staged_edges: List[DerivationEdge] = []
        marker_id_by_rule: Dict[str, str] = {}
        for record in records:
            marker_id = self._next_id()

            staged_markers.append(StoredMarker(
                id=marker_id,
                scene_id=record.scene_id,
                seconds=record.seconds,
                end_seconds=record.end_seconds,
                primary_tag_id=record.primary_tag_id,
                tag_ids=list(record.tag_ids),
                slots=[slot.model_copy() for slot in record.slots],
            ))
            staged_edges.append(DerivationEdge(
                source_marker_id=source_marker_id,
                derived_marker_id=marker_id,
                rule_id=record.rule_id,
                depth=record.depth,
            ))
            parent_id = marker_id_by_rule.get(record.parent_rule_id)
            if parent_id is not None:
                staged_edges.append(DerivationEdge(
                    source_marker_id=parent_id,
                    derived_marker_id=marker_id,
                    rule_id=record.rule_id,
                    depth=record.depth,
                ))
            marker_id_by_rule[record.rule_id] = marker_id

        # Commit
        for marker in staged_markers:
            self._markers[marker.id] = marker
        self._edges.extend(staged_edges)

        logger.info(
            "Materialized derived markers",
            extra={"source_marker_id": source_marker_id, "count": len(staged_markers)},
        )
        return [self._view(marker) for marker in staged_markers]

    def replace_primary_tag(self, marker_id: str, tag_id: str, slots: List[StoredSlot]) -> StoredMarker:
        with self._lock:
            marker = self._markers.get(marker_id)
            if marker is None:
                raise MarkerNotFoundError(marker_id)
            self._markers[marker_id] = marker.model_copy(update={
                "primary_tag_id": tag_id,
                "tag_ids": [t for t in marker.tag_ids if t != tag_id],
                "slots": [slot.model_copy() for slot in slots],
            })
            return self._view(self._markers[marker_id])

    def close(self):
        pass
