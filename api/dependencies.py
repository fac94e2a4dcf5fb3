from functools import lru_cache

from fastapi import Depends, HTTPException

from derivation.config import settings
from derivation.database import MarkerStore, Neo4jMarkerStore
from derivation.exceptions import OntologyConfigError
from derivation.logger import get_logger
from derivation.memory_store import InMemoryMarkerStore
from derivation.ontology import OntologyStore
from derivation.service import DerivationService
from derivation.slot_mapper import HttpSlotDefinitionLookup, SlotDefinitionLookup

logger = get_logger(__name__)


def get_ontology_store() -> OntologyStore:
    return OntologyStore(settings.ONTOLOGY_STORE_PATH)


@lru_cache(maxsize=1)
def get_marker_store() -> MarkerStore:
    """One store per process; the Neo4j driver keeps its own connection pool."""
    if settings.MARKER_STORE == "memory":
        logger.info("Using in-memory marker store.")
        return InMemoryMarkerStore()
    store = Neo4jMarkerStore()
    store.ensure_constraints()
    return store


def get_slot_lookup() -> SlotDefinitionLookup:
    return HttpSlotDefinitionLookup()


def get_derivation_service(
    store: MarkerStore = Depends(get_marker_store),
    lookup: SlotDefinitionLookup = Depends(get_slot_lookup),
    ontology_store: OntologyStore = Depends(get_ontology_store),
) -> DerivationService:
    # The ontology is re-read on every request and treated as a snapshot for its duration.
    try:
        ontology = ontology_store.load_config()
    except OntologyConfigError as e:
        raise HTTPException(status_code=500, detail=f"Ontology configuration error: {e}")
    return DerivationService(store, lookup, ontology)
