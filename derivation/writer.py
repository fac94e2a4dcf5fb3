# /derivation/writer.py

import asyncio
from typing import Dict, List, Optional

from derivation.database import MarkerStore
from derivation.logger import get_logger
from derivation.models import (
    DerivedMarkerCandidate,
    DerivedSlot,
    MarkerSlot,
    NewDerivedMarker,
    SlotDefinition,
    StoredMarker,
    StoredSlot,
)
from derivation.slot_mapper import SlotCompatibilityMapper, SlotDefinitionLookup

logger = get_logger(__name__)


class MaterializationWriter:
    """
    Turns approved derivation candidates into persisted markers.

    All markers of one `materialize` call are handed to the store in a single
    atomic write; storage errors propagate to the caller.
    """
    def __init__(self, store: MarkerStore, lookup: SlotDefinitionLookup,
                 derived_marker_tag_id: Optional[str] = None,
                 mapper: SlotCompatibilityMapper = None):
        self.store = store
        self.lookup = lookup
        self.derived_marker_tag_id = derived_marker_tag_id
        self.mapper = mapper or SlotCompatibilityMapper(lookup)

    async def _slot_definitions(self, tag_id: str, cache: Dict[str, List[SlotDefinition]]) -> List[SlotDefinition]:
        if tag_id not in cache:
            try:
                cache[tag_id] = await self.lookup.get_slot_definitions(tag_id) or []
            except Exception as e:
                logger.warning(f"Dropping slots, definitions unavailable: {e}", extra={"tag_id": tag_id}, exc_info=True)
                cache[tag_id] = []
        return cache[tag_id]

    async def _resolve_slots(self, tag_id: str, slots: List[DerivedSlot],
                             cache: Dict[str, List[SlotDefinition]]) -> List[StoredSlot]:
        """Matches candidate slot labels to the derived tag's slot definitions."""
        if not slots:
            return []
        definitions = {d.slot_label: d for d in await self._slot_definitions(tag_id, cache) if d.slot_label}

        resolved = []
        for slot in slots:
            definition = definitions.get(slot.label)
            if definition is None:
                logger.warning(
                    "Slot definition not found for label",
                    extra={"slot_label": slot.label, "tag_id": tag_id},
                )
                continue
            resolved.append(StoredSlot(
                slot_definition_id=definition.id,
                slot_label=slot.label,
                performer_id=slot.performer_id,
                order=definition.order,
            ))
        return sorted(resolved, key=lambda s: s.order)

    def _additional_tags(self, source: StoredMarker, candidate: DerivedMarkerCandidate) -> List[str]:
        tag_ids: List[str] = []
        for tag_id in [*candidate.tags, *source.tag_ids, self.derived_marker_tag_id]:
            if tag_id and tag_id != candidate.derived_tag_id and tag_id not in tag_ids:
                tag_ids.append(tag_id)
        return tag_ids

    async def build_records(self, source: StoredMarker, candidates: List[DerivedMarkerCandidate]) -> List[NewDerivedMarker]:
        cache: Dict[str, List[SlotDefinition]] = {}
        records = []
        for candidate in candidates:
            records.append(NewDerivedMarker(
                rule_id=candidate.rule_id,
                depth=candidate.depth,
                parent_rule_id=candidate.parent_rule_id,
                scene_id=source.scene_id,
                seconds=source.seconds,
                end_seconds=source.end_seconds,
                primary_tag_id=candidate.derived_tag_id,
                tag_ids=self._additional_tags(source, candidate),
                slots=await self._resolve_slots(candidate.derived_tag_id, candidate.slots, cache),
            ))
        return records

    async def materialize(self, source: StoredMarker, candidates: List[DerivedMarkerCandidate]) -> List[StoredMarker]:
        if not candidates:
            return []
        records = await self.build_records(source, candidates)
        logger.info(
            "Materializing derived markers",
            extra={"source_marker_id": source.id, "rule_ids": [r.rule_id for r in records]},
        )
        return await asyncio.to_thread(self.store.create_derived_markers, source.id, records)

    async def retag(self, marker: StoredMarker, new_tag_id: str) -> StoredMarker:
        """
        Changes a marker's primary tag, keeping its performers when the new
        tag's slot structure matches and clearing them otherwise.
        """
        source_slots = [
            MarkerSlot(
                slot_definition_id=slot.slot_definition_id,
                stashapp_performer_id=slot.performer_id,
                slot_label=slot.slot_label,
                order=slot.order,
            )
            for slot in marker.slots
        ]
        mapped = await self.mapper.map_slots(source_slots, new_tag_id)

        new_slots: List[StoredSlot] = []
        if mapped is not None:
            # Compatible sets share labels position by position.
            sorted_source = sorted(source_slots, key=lambda s: s.order)
            new_slots = [
                StoredSlot(
                    slot_definition_id=m.slot_definition_id,
                    slot_label=sorted_source[position].slot_label,
                    performer_id=m.performer_id,
                    order=position,
                )
                for position, m in enumerate(mapped)
            ]

        logger.info(
            "Retagging marker",
            extra={"marker_id": marker.id, "tag_id": new_tag_id, "slots_kept": mapped is not None},
        )
        return await asyncio.to_thread(self.store.replace_primary_tag, marker.id, new_tag_id, new_slots)
