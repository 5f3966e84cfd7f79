"""
FastAPI Dependencies

Provides dependency injection for:
- Dispatchers (process-wide I/O and CPU pools, created in the lifespan)
- ScreenRegistry (live screens by id)
"""

from typing import Dict, List, Optional

from fastapi import HTTPException, Request

from src.core.concurrency import Dispatchers
from src.core.logging import get_logger
from src.modules.tutorial import Tutorial, TutorialScreen
from src.pipeline.stages import FetchStage, FilterStage

logger = get_logger(__name__)


class ScreenRegistry:
    """Screens currently alive in this process."""

    def __init__(
        self,
        dispatchers: Dispatchers,
        fetch_stage: Optional[FetchStage] = None,
        filter_stage: Optional[FilterStage] = None
    ):
        self.dispatchers = dispatchers
        self.fetch_stage = fetch_stage or FetchStage()
        self.filter_stage = filter_stage or FilterStage()
        self._screens: Dict[str, TutorialScreen] = {}

    def __len__(self) -> int:
        return len(self._screens)

    def create(self, tutorial: Tutorial, locale: Optional[str] = None) -> TutorialScreen:
        screen = TutorialScreen(
            tutorial,
            self.dispatchers,
            fetch_stage=self.fetch_stage,
            filter_stage=self.filter_stage,
            locale=locale
        )
        self._screens[screen.id] = screen
        return screen

    def get(self, screen_id: str) -> Optional[TutorialScreen]:
        return self._screens.get(screen_id)

    def ids(self) -> List[str]:
        return list(self._screens)

    def destroy(self, screen_id: str) -> bool:
        screen = self._screens.pop(screen_id, None)
        if screen is None:
            return False
        screen.destroy()
        return True

    async def destroy_all(self):
        screens = list(self._screens.values())
        self._screens.clear()
        for screen in screens:
            screen.destroy()
        for screen in screens:
            await screen.wait_idle()
        logger.info("screens_destroyed", count=len(screens))


def get_screen_registry(request: Request) -> ScreenRegistry:
    return request.app.state.screens


def get_screen(screen_id: str, request: Request) -> TutorialScreen:
    screen = get_screen_registry(request).get(screen_id)
    if screen is None:
        raise HTTPException(status_code=404, detail=f"Screen not found: {screen_id}")
    return screen
