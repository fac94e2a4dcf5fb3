from fastapi import APIRouter, Depends, HTTPException
from pydantic import Field
from typing import List, Optional

from api.dependencies import get_derivation_service
from derivation.exceptions import DuplicateDerivationError, MarkerNotFoundError, MarkerStoreError
from derivation.logger import get_logger
from derivation.models import (
    BulkMaterializationResult,
    CamelModel,
    CandidatePreview,
    Id,
    MaterializationAnalysis,
    MaterializationResult,
    StoredMarker,
)
from derivation.service import DerivationService

logger = get_logger(__name__)

# --- Request Models ---
class SceneRequest(CamelModel):
    scene_id: Id

class MaterializeRequest(CamelModel):
    rule_ids: Optional[List[str]] = Field(None, description="Subset of rule ids to materialize. All new derivations when omitted.")

class RetagRequest(CamelModel):
    tag_id: Id

# --- Router Initialization ---
router = APIRouter(
    prefix="/markers",
    tags=["Derived Markers"]
)


@router.post("/analyze-derivations", response_model=MaterializationAnalysis)
def analyze_derivations(request: SceneRequest, service: DerivationService = Depends(get_derivation_service)):
    """Classifies every source marker of a scene without writing anything."""
    try:
        return service.analyze_scene(request.scene_id)
    except MarkerStoreError as e:
        logger.error(f"Error analyzing derivations: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to analyze derivations")


@router.post("/materialize-derived", response_model=BulkMaterializationResult)
async def materialize_scene(request: SceneRequest, service: DerivationService = Depends(get_derivation_service)):
    """Materializes all new derivations of every source marker in a scene."""
    try:
        return await service.materialize_scene(request.scene_id)
    except MarkerStoreError as e:
        logger.error(f"Error reading scene markers: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to materialize derived markers")


@router.get("/{marker_id}/derived-candidates", response_model=List[CandidatePreview])
def get_derived_candidates(marker_id: str, service: DerivationService = Depends(get_derivation_service)):
    """Lists every derivation of a marker and whether it is already materialized."""
    try:
        return service.preview_marker(marker_id)
    except MarkerNotFoundError:
        raise HTTPException(status_code=404, detail="Source marker not found")
    except MarkerStoreError as e:
        logger.error(f"Error computing derived candidates: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to compute derived markers")


@router.post("/{marker_id}/materialize-derived", response_model=MaterializationResult)
async def materialize_marker(
    marker_id: str,
    request: Optional[MaterializeRequest] = None,
    service: DerivationService = Depends(get_derivation_service),
):
    """Creates the derived markers of one source marker in a single transaction."""
    rule_ids = request.rule_ids if request else None
    if rule_ids is not None and not rule_ids:
        raise HTTPException(status_code=400, detail="ruleIds cannot be empty.")
    try:
        created = await service.materialize_marker(marker_id, rule_ids)
    except MarkerNotFoundError:
        raise HTTPException(status_code=404, detail="Source marker not found")
    except DuplicateDerivationError as e:
        raise HTTPException(status_code=409, detail=str(e))
    except MarkerStoreError as e:
        logger.error(f"Error materializing derived markers: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to materialize derived markers")

    return MaterializationResult(success=True, markers=created, count=len(created))


@router.put("/{marker_id}/primary-tag", response_model=StoredMarker)
async def retag_marker(
    marker_id: str,
    request: RetagRequest,
    service: DerivationService = Depends(get_derivation_service),
):
    """Changes a marker's primary tag, carrying its performers over when the slot layouts match."""
    try:
        return await service.retag_marker(marker_id, request.tag_id)
    except MarkerNotFoundError:
        raise HTTPException(status_code=404, detail="Marker not found")
    except MarkerStoreError as e:
        logger.error(f"Error changing primary tag: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to change primary tag")
