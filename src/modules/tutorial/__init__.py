"""
Tutorial Screen Module

Screen controller that decorates a tutorial's image with the snow effect.
"""

from src.modules.tutorial.models import ErrorIndicator, ScreenState, Tutorial
from src.modules.tutorial.reporter import ErrorReporter
from src.modules.tutorial.screen import TutorialScreen

__all__ = [
    "ErrorIndicator",
    "ScreenState",
    "Tutorial",
    "ErrorReporter",
    "TutorialScreen",
]
