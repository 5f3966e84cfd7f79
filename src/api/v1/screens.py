"""
Screens Endpoint - Hosting Layer for Tutorial Screens

POST   /api/v1/screens             - Create a screen and start loading its image
GET    /api/v1/screens             - Ids of live screens
GET    /api/v1/screens/{id}        - Current screen state
GET    /api/v1/screens/{id}/image  - Filtered image as PNG
DELETE /api/v1/screens/{id}        - Destroy the screen, cancelling its work
"""

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Response
from pydantic import BaseModel, Field

from src.api.dependencies import ScreenRegistry, get_screen, get_screen_registry
from src.core.logging import get_logger
from src.modules.tutorial import Tutorial, TutorialScreen

logger = get_logger(__name__)
router = APIRouter()


# =============================================================================
# Request/Response Schemas
# =============================================================================

class CreateScreenRequest(Tutorial):
    """Tutorial to display, plus an optional locale for UI strings."""
    locale: Optional[str] = Field(default=None, max_length=16)


class CreateScreenResponse(BaseModel):
    screen_id: str
    run_id: str
    status: str


class ImageInfo(BaseModel):
    width: int
    height: int


class ErrorInfo(BaseModel):
    visible: bool
    message: Optional[str] = None


class ScreenStateResponse(BaseModel):
    """Full screen state."""
    id: str
    title: str
    description: str
    progress_visible: bool
    run_state: Optional[str] = None
    image: Optional[ImageInfo] = None
    error: ErrorInfo


def _state_response(screen: TutorialScreen) -> ScreenStateResponse:
    snapshot = screen.state.snapshot()
    run = screen.current_run
    return ScreenStateResponse(
        id=screen.id,
        run_state=run.state.value if run is not None else None,
        **snapshot
    )


# =============================================================================
# Endpoints
# =============================================================================

@router.post("", response_model=CreateScreenResponse, status_code=202)
async def create_screen(
    request: CreateScreenRequest,
    registry: ScreenRegistry = Depends(get_screen_registry)
):
    """Create a screen; the image loads in the background."""
    tutorial = Tutorial(name=request.name, description=request.description, url=request.url)
    screen = registry.create(tutorial, locale=request.locale)
    run = await screen.show()

    logger.info("screen_created", screen_id=screen.id, run_id=run.id)
    return CreateScreenResponse(screen_id=screen.id, run_id=run.id, status=run.state.value)


@router.get("")
async def list_screens(registry: ScreenRegistry = Depends(get_screen_registry)):
    return {"screens": registry.ids(), "total": len(registry)}


@router.get("/{screen_id}", response_model=ScreenStateResponse)
async def get_screen_state(screen: TutorialScreen = Depends(get_screen)):
    return _state_response(screen)


@router.get("/{screen_id}/image")
async def get_screen_image(screen: TutorialScreen = Depends(get_screen)):
    """Filtered image as PNG. 409 until the run has published."""
    image = screen.state.image
    if image is None:
        raise HTTPException(status_code=409, detail="Image is not ready")
    return Response(content=image.to_png_bytes(), media_type="image/png")


@router.delete("/{screen_id}", status_code=204)
async def destroy_screen(
    screen_id: str,
    registry: ScreenRegistry = Depends(get_screen_registry)
):
    if not registry.destroy(screen_id):
        raise HTTPException(status_code=404, detail=f"Screen not found: {screen_id}")
    return Response(status_code=204)
