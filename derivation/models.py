# /derivation/models.py

from enum import Enum
from typing import Annotated, Any, Dict, List, Optional
from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel

# This file holds all the shared Pydantic data structures.

def _coerce_id(value: Any) -> Any:
    # Tag, marker and slot ids arrive as ints from the database and as strings over HTTP.
    if isinstance(value, int) and not isinstance(value, bool):
        return str(value)
    return value

Id = Annotated[str, BeforeValidator(_coerce_id)]


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON but keeps snake_case attributes."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# --- Ontology configuration ---

class RelationshipType(str, Enum):
    IMPLIES = "implies"


class TagOntologyRule(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    source_tag_id: Id = Field(description="Tag the rule fires on.")
    derived_tag_id: Id = Field(description="Tag implied by the source tag.")
    relationship_type: RelationshipType = Field(description="Kind of relationship; only 'implies' exists today.")
    slot_mapping: Dict[str, str] = Field(description="Source slot label -> derived slot label. Unmapped source slots are dropped.")

    @field_validator("slot_mapping", mode="before")
    @classmethod
    def _normalize_slot_mapping(cls, value: Any) -> Any:
        """Accepts either a JSON object or a list of {sourceLabel, derivedLabel} entries."""
        if not isinstance(value, list):
            return value
        mapping: Dict[str, str] = {}
        for entry in value:
            if not isinstance(entry, dict) or "sourceLabel" not in entry or "derivedLabel" not in entry:
                raise ValueError("slotMapping list entries need 'sourceLabel' and 'derivedLabel'")
            source_label = entry["sourceLabel"]
            if source_label in mapping:
                raise ValueError(f"duplicate slotMapping key '{source_label}'")
            mapping[source_label] = entry["derivedLabel"]
        return mapping

    @property
    def rule_id(self) -> str:
        return f"{self.source_tag_id}->{self.derived_tag_id}"


class OntologyConfig(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    rules: List[TagOntologyRule] = Field(alias="derivedMarkers")
    max_derivation_depth: int = Field(3, gt=0)
    derived_marker_tag_id: Optional[Id] = Field(None, description="Tag added to every materialized marker, if set.")

    @model_validator(mode="after")
    def _check_unique_edges(self):
        seen = set()
        for rule in self.rules:
            if rule.rule_id in seen:
                raise ValueError(f"duplicate ontology rule {rule.rule_id}")
            seen.add(rule.rule_id)
        return self


class OntologyVersion(CamelModel):
    version: int
    created_at: str
    ontology: OntologyConfig


# --- Markers and slots (read-only inputs) ---

class TagRef(BaseModel):
    id: Id
    name: str = ""


class MarkerSlot(CamelModel):
    id: Optional[Id] = None
    slot_definition_id: Id
    stashapp_performer_id: Optional[Id] = None
    slot_label: Optional[str] = None
    gender_hints: List[str] = Field(default_factory=list)
    order: int = 0


class SceneMarker(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: Id
    seconds: float
    end_seconds: Optional[float] = None
    primary_tag: Optional[TagRef] = None
    tags: List[TagRef] = Field(default_factory=list, description="Additional tags; the primary tag is excluded.")
    slots: List[MarkerSlot] = Field(default_factory=list)


class SlotDefinition(CamelModel):
    id: Id
    slot_label: Optional[str] = None
    order: int = 0


class MappedSlot(CamelModel):
    slot_definition_id: Id
    performer_id: Optional[Id] = None


# --- Derivation output ---

class DerivedSlot(CamelModel):
    label: str
    performer_id: Optional[Id] = None


class DerivedMarkerCandidate(CamelModel):
    source_marker_id: Optional[str] = None
    parent_rule_id: Optional[str] = Field(None, description="Rule that produced the node this candidate was derived from.")
    derived_tag_id: str
    tags: List[str]
    slots: List[DerivedSlot] = Field(default_factory=list)
    depth: int
    rule_id: str


class CandidatePreview(DerivedMarkerCandidate):
    already_materialized: bool


class MarkerMaterialization(CamelModel):
    marker_id: str
    marker_tag: str
    marker_time: str
    derived_tags: List[str]
    new_derivations_count: int
    total_derivations_count: int
    new_rule_ids: List[str] = Field(default_factory=list)


class AlreadyMaterializedMarker(CamelModel):
    marker_id: str
    marker_tag: str
    marker_time: str
    existing_derivations_count: int


class SkippedMarker(CamelModel):
    marker_id: str
    marker_tag: str
    marker_time: str
    reason: str


class MaterializationAnalysis(CamelModel):
    materializable_markers: List[MarkerMaterialization] = Field(default_factory=list)
    already_materialized_markers: List[AlreadyMaterializedMarker] = Field(default_factory=list)
    skipped_markers: List[SkippedMarker] = Field(default_factory=list)


# --- Persisted records ---

class StoredSlot(CamelModel):
    slot_definition_id: Id
    slot_label: Optional[str] = None
    performer_id: Optional[Id] = None
    order: int = 0


class StoredMarker(CamelModel):
    id: Id
    scene_id: Id
    seconds: float
    end_seconds: Optional[float] = None
    primary_tag_id: Optional[Id] = None
    tag_ids: List[Id] = Field(default_factory=list, description="Additional tag ids, primary excluded.")
    slots: List[StoredSlot] = Field(default_factory=list)
    derived_from: List[str] = Field(default_factory=list, description="Ids of markers this one was derived from.")


class NewDerivedMarker(CamelModel):
    """A marker about to be written, plus the derivation edge that explains it."""
    rule_id: str
    depth: int
    parent_rule_id: Optional[str] = None
    scene_id: str
    seconds: float
    end_seconds: Optional[float] = None
    primary_tag_id: str
    tag_ids: List[Id] = Field(default_factory=list)
    slots: List[StoredSlot] = Field(default_factory=list)


class DerivationEdge(CamelModel):
    source_marker_id: str
    derived_marker_id: str
    rule_id: str
    depth: int


class MaterializationResult(CamelModel):
    success: bool = True
    markers: List[StoredMarker] = Field(default_factory=list)
    count: int = 0


class MarkerMaterializationOutcome(CamelModel):
    marker_id: str
    count: int = 0
    error: Optional[str] = None


class BulkMaterializationResult(CamelModel):
    results: List[MarkerMaterializationOutcome] = Field(default_factory=list)
    total_count: int = 0
