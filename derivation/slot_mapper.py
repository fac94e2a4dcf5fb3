# /derivation/slot_mapper.py

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional

import httpx
from pydantic import ValidationError

from derivation.config import settings
from derivation.exceptions import SlotDefinitionLookupError
from derivation.logger import get_logger
from derivation.models import MappedSlot, MarkerSlot, SlotDefinition

logger = get_logger(__name__)

SlotMappingObserver = Callable[[str, Dict[str, Any]], None]


class SlotDefinitionLookup(ABC):
    """
    Source of the slot-definition set configured for a tag.
    """
    @abstractmethod
    async def get_slot_definitions(self, tag_id: str) -> Optional[List[SlotDefinition]]:
        """Returns the tag's slot definitions, or None when the tag has no set."""
        pass


class HttpSlotDefinitionLookup(SlotDefinitionLookup):
    """Fetches slot-definition sets from `GET /api/slot-definition-sets?tagId=`."""

    def __init__(self, base_url: str = None, timeout: float = None, client: httpx.AsyncClient = None):
        self.base_url = (base_url or settings.SLOT_DEFINITION_SERVICE_URL).rstrip('/')
        self.timeout = timeout if timeout is not None else settings.SLOT_LOOKUP_TIMEOUT
        self._client = client

    async def get_slot_definitions(self, tag_id: str) -> Optional[List[SlotDefinition]]:
        url = f"{self.base_url}/api/slot-definition-sets"
        try:
            if self._client is not None:
                response = await self._client.get(url, params={"tagId": tag_id})
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.get(url, params={"tagId": tag_id})
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPError as e:
            raise SlotDefinitionLookupError(f"Failed to fetch slot definition set for tag {tag_id}: {e}") from e
        except ValueError as e:
            raise SlotDefinitionLookupError(f"Slot definition response for tag {tag_id} is not JSON") from e

        return self._parse(tag_id, data)

    @staticmethod
    def _parse(tag_id: str, data: Any) -> Optional[List[SlotDefinition]]:
        if not isinstance(data, dict):
            raise SlotDefinitionLookupError(f"Unexpected slot definition response for tag {tag_id}")

        if "slotDefinitionSets" in data:
            sets = data["slotDefinitionSets"]
            if not isinstance(sets, list):
                raise SlotDefinitionLookupError(f"'slotDefinitionSets' for tag {tag_id} is not a list")
            slot_set = sets[0] if sets else None
        elif "slotDefinitionSet" in data:
            slot_set = data["slotDefinitionSet"]
        else:
            raise SlotDefinitionLookupError(f"No slot definition set in response for tag {tag_id}")

        if slot_set is None:
            return None
        if not isinstance(slot_set, dict) or not isinstance(slot_set.get("slotDefinitions", []), list):
            raise SlotDefinitionLookupError(f"Malformed slot definition set for tag {tag_id}")

        try:
            return [SlotDefinition.model_validate(item) for item in slot_set.get("slotDefinitions", [])]
        except ValidationError as e:
            raise SlotDefinitionLookupError(f"Malformed slot definition for tag {tag_id}: {e}") from e


class StaticSlotDefinitionLookup(SlotDefinitionLookup):
    """In-process lookup over a fixed tag id -> definitions mapping."""

    def __init__(self, definitions_by_tag: Dict[str, List[SlotDefinition]] = None):
        self.definitions_by_tag = dict(definitions_by_tag or {})

    async def get_slot_definitions(self, tag_id: str) -> Optional[List[SlotDefinition]]:
        return self.definitions_by_tag.get(tag_id)


def log_slot_mapping_event(event: str, details: Dict[str, Any]) -> None:
    logger.debug(f"Slot mapping: {event}", extra={"event": event, **details})


class SlotCompatibilityMapper:
    """
    Carries performer assignments over to a different primary tag when the
    target tag's slot structure is identical to the source's.

    Two structures are compatible when they have the same number of slots
    and, ordered by `order`, every pair of labels is present and equal.
    There is no partial mapping: on any mismatch or lookup failure the result
    is None and the caller should clear the slots.
    """
    def __init__(self, lookup: SlotDefinitionLookup, observer: SlotMappingObserver = None):
        self.lookup = lookup
        self.observer = observer or log_slot_mapping_event

    async def map_slots(self, source_slots: List[MarkerSlot], target_tag_id: str) -> Optional[List[MappedSlot]]:
        if not source_slots:
            self.observer("no_source_slots", {"target_tag_id": target_tag_id})
            return None

        try:
            target_slots = await self.lookup.get_slot_definitions(target_tag_id)
        except Exception as e:
            # Any lookup failure clears the slots rather than failing the caller.
            logger.warning(f"Slot definition lookup failed: {e}", extra={"target_tag_id": target_tag_id}, exc_info=True)
            self.observer("lookup_failed", {"target_tag_id": target_tag_id, "error": str(e)})
            return None

        if not target_slots:
            self.observer("no_target_slots", {"target_tag_id": target_tag_id})
            return None

        if len(source_slots) != len(target_slots):
            self.observer("count_mismatch", {
                "target_tag_id": target_tag_id,
                "source_count": len(source_slots),
                "target_count": len(target_slots),
            })
            return None

        sorted_source = sorted(source_slots, key=lambda s: s.order)
        sorted_target = sorted(target_slots, key=lambda s: s.order)

        for position, (source, target) in enumerate(zip(sorted_source, sorted_target)):
            if not source.slot_label or not target.slot_label or source.slot_label != target.slot_label:
                self.observer("label_mismatch", {
                    "target_tag_id": target_tag_id,
                    "position": position,
                    "source_label": source.slot_label,
                    "target_label": target.slot_label,
                })
                return None

        mapped = [
            MappedSlot(
                slot_definition_id=target.id,
                performer_id=str(source.stashapp_performer_id) if source.stashapp_performer_id is not None else None,
            )
            for source, target in zip(sorted_source, sorted_target)
        ]
        self.observer("compatible", {"target_tag_id": target_tag_id, "slot_count": len(mapped)})
        return mapped
