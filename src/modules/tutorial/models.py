"""
Tutorial Screen Models

- Tutorial: what a screen displays (title, description, image URL)
- ScreenState: the user-visible state of one screen
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator

from src.pipeline.models import ImageBuffer


class Tutorial(BaseModel):
    """A tutorial card: name, description and the image to decorate."""
    name: str = Field(..., max_length=200)
    description: str = Field(default="", max_length=2000)
    url: str = Field(..., description="http(s) or file URL of the source image")

    @field_validator("url")
    @classmethod
    def validate_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("url must not be empty")
        return v


@dataclass
class ErrorIndicator:
    """The screen's single error message view."""
    visible: bool = False
    message: Optional[str] = None

    def show(self, message: str):
        self.visible = True
        self.message = message

    def hide(self):
        self.visible = False
        self.message = None


@dataclass
class ScreenState:
    title: str
    description: str
    progress_visible: bool = False
    image: Optional[ImageBuffer] = None
    error: ErrorIndicator = field(default_factory=ErrorIndicator)

    def snapshot(self) -> Dict[str, Any]:
        """Plain-data view of the state, safe to serialize."""
        return {
            "title": self.title,
            "description": self.description,
            "progress_visible": self.progress_visible,
            "image": None if self.image is None else {
                "width": self.image.width,
                "height": self.image.height,
            },
            "error": {
                "visible": self.error.visible,
                "message": self.error.message,
            },
        }
