import logging
from pathlib import Path

from PIL import Image, ImageFilter, ImageOps, UnidentifiedImageError

import config
from errors import OptimizationFailed

logger = logging.getLogger(__name__)


class ImageOptimizer:
    """
    Prepares a receipt photo for recognition:
    1. Applies EXIF orientation.
    2. Downscales to fit ``max_dimension`` (never enlarges).
    3. Converts to greyscale and stretches contrast.
    4. Applies a light unsharp mask.

    The result is written next to the source as ``<stem>-ocr-optimized.jpg``;
    the source file is left untouched.
    """

    def __init__(self, max_dimension: int = config.OCR_MAX_DIMENSION, quality: int = 90):
        self.max_dimension = max_dimension
        self.quality = quality

    def optimized_path(self, image_path: Path) -> Path:
        image_path = Path(image_path)
        return image_path.with_name(f"{image_path.stem}-ocr-optimized.jpg")

    def optimize(self, image_path: Path) -> Path:
        image_path = Path(image_path)
        output_path = self.optimized_path(image_path)

        try:
            with Image.open(image_path) as img:
                original_size = img.size
                img = ImageOps.exif_transpose(img)
                img.thumbnail((self.max_dimension, self.max_dimension), Image.Resampling.LANCZOS)
                img = ImageOps.grayscale(img)
                img = ImageOps.autocontrast(img)
                img = img.filter(ImageFilter.UnsharpMask(radius=1, percent=120, threshold=2))
                img.save(output_path, format="JPEG", quality=self.quality)
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise OptimizationFailed(f"Failed to optimize image for OCR: {e}") from e

        logger.info(
            f"[Optimizer] {image_path.name}: {original_size[0]}x{original_size[1]} -> "
            f"{img.size[0]}x{img.size[1]} greyscale ({output_path.name})"
        )
        return output_path
