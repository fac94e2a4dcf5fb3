from fastapi import APIRouter, HTTPException, Depends
from typing import List

from api.dependencies import get_ontology_store
from derivation.exceptions import OntologyConfigError
from derivation.logger import get_logger
from derivation.models import OntologyConfig, OntologyVersion, TagOntologyRule
from derivation.ontology import OntologyGraph, OntologyStore

logger = get_logger(__name__)

# --- Router Initialization ---
router = APIRouter(
    prefix="/ontology",
    tags=["Ontology Management"]
)


# --- Helper Function ---
def _get_latest_ontology_version_from_store(store: OntologyStore) -> OntologyVersion:
    """Helper to load the store and return the latest ontology version."""
    try:
        return store.load_latest()
    except OntologyConfigError as e:
        logger.error(f"Error loading ontology store: {e}")
        raise HTTPException(status_code=500, detail=str(e))


# --- API Endpoints ---

@router.get("/", response_model=OntologyVersion)
def get_latest_ontology(store: OntologyStore = Depends(get_ontology_store)):
    """Retrieves the latest version of the ontology."""
    return _get_latest_ontology_version_from_store(store)


@router.post("/", response_model=OntologyVersion)
def update_ontology(new_ontology: OntologyConfig, store: OntologyStore = Depends(get_ontology_store)):
    """Creates a new version of the ontology. The body is validated before anything is written."""
    try:
        return store.save(new_ontology)
    except OntologyConfigError as e:
        logger.error(f"Error saving ontology store: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/rules/{tag_id}", response_model=List[TagOntologyRule])
def get_rules_from_tag(tag_id: str, store: OntologyStore = Depends(get_ontology_store)):
    """Returns the rules whose source is `tag_id`, in configuration order."""
    ontology = _get_latest_ontology_version_from_store(store).ontology
    return OntologyGraph.from_config(ontology).rules_from(tag_id)
