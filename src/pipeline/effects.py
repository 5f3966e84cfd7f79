"""
Pixel Effects

Effects are plain functions ImageBuffer -> ImageBuffer with no shared state,
so many can run at once on the CPU pool.
"""

from typing import Callable, Optional

import numpy as np

from src.core.config import settings
from src.pipeline.models import ImageBuffer

Effect = Callable[[ImageBuffer], ImageBuffer]

COLOR_MAX = 255


def apply_snow_effect(image: ImageBuffer, rng: Optional[np.random.Generator] = None) -> ImageBuffer:
    """
    Sprinkle snow over an image.

    Every pixel draws a random threshold in [0, 255]; when all three colour
    channels exceed it the pixel turns opaque white. Bright pixels catch more
    snow than dark ones, and pure black never does. Dimensions are preserved.
    """
    if rng is None:
        rng = np.random.default_rng(settings.SNOW_SEED)

    pixels = np.array(image.pixels, copy=True)
    height, width = pixels.shape[:2]

    threshold = rng.integers(0, COLOR_MAX + 1, size=(height, width), dtype=np.int16)
    rgb = pixels[..., :3].astype(np.int16)
    snowed = np.all(rgb > threshold[..., None], axis=-1)

    pixels[snowed, :3] = COLOR_MAX
    if pixels.shape[-1] == 4:
        pixels[snowed, 3] = COLOR_MAX

    return ImageBuffer(pixels, mode=image.mode)
