from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from io import BytesIO

from PIL import Image

from .errors import UnprocessableImage

LOG = logging.getLogger("s3_imgproxy.transform")

MIN_DIMENSION = 10
MAX_DIMENSION = 6000
# Ratios are compared at two decimals; anything thinner collapses to this.
MIN_RATIO = 0.01

RESAMPLE_FILTERS = {
    "nearest": Image.Resampling.NEAREST,
    "bilinear": Image.Resampling.BILINEAR,
    "bicubic": Image.Resampling.BICUBIC,
    "lanczos": Image.Resampling.LANCZOS,
}

_INT_PREFIX = re.compile(r"\s*([+-]?\d+)", re.ASCII)


def clamp_dimension(value: int) -> int:
    return max(MIN_DIMENSION, min(value, MAX_DIMENSION))


def parse_dimension(value: str) -> int | None:
    """Parse a ``w``/``h`` query value, clamped to the allowed range.

    Leading integer digits are used and trailing garbage ignored, so ``"800px"``
    reads as 800. Values without leading digits yield ``None``.
    """
    match = _INT_PREFIX.match(value)
    if match is None:
        return None
    return clamp_dimension(int(match.group(1)))


def _round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def _round_ratio(value: float) -> float:
    return math.floor(value * 100 + 0.5) / 100


@dataclass(frozen=True)
class ResizePlan:
    size: tuple[int, int]
    crop: tuple[int, int, int, int] | None = None


def plan_resize(
    natural_width: int,
    natural_height: int,
    width: int | None,
    height: int | None,
) -> ResizePlan:
    """Compute the resize target and optional center crop box.

    With both ``width`` and ``height`` the image is scaled so that one side
    matches exactly and the overflowing side is center-cropped, giving exactly
    ``(width, height)``. With a single side the other one follows the natural
    ratio.
    """
    if width is None and height is None:
        msg = "at least one of width or height is required"
        raise ValueError(msg)

    ratio = max(_round_ratio(natural_width / natural_height), MIN_RATIO)

    if width is not None and height is not None:
        target_ratio = _round_ratio(width / height)
        if ratio > target_ratio:
            resize_width = max(_round_half_up(height * ratio), width)
            x1 = _round_half_up((resize_width - width) / 2)
            return ResizePlan((resize_width, height), (x1, 0, x1 + width, height))
        if ratio < target_ratio:
            resize_height = max(_round_half_up(width / ratio), height)
            y1 = _round_half_up((resize_height - height) / 2)
            return ResizePlan((width, resize_height), (0, y1, width, y1 + height))
        return ResizePlan((width, height))

    if width is not None:
        return ResizePlan((width, max(1, _round_half_up(width / ratio))))
    assert height is not None
    return ResizePlan((max(1, _round_half_up(height * ratio)), height))


def transform_image(
    data: bytes,
    width: int | None,
    height: int | None,
    resample: str = "nearest",
) -> bytes:
    """Resize and crop encoded image bytes, re-encoding in the source format.

    Raises:
        UnprocessableImage: the bytes cannot be decoded, resized or encoded.
    """
    if width is None and height is None:
        return data

    try:
        with Image.open(BytesIO(data)) as image:
            image_format = image.format
            if image_format not in Image.SAVE:
                msg = f"no encoder for {image_format} images"
                raise UnprocessableImage(msg)
            image.load()
            plan = plan_resize(image.width, image.height, width, height)
            if plan.size[0] * plan.size[1] > (Image.MAX_IMAGE_PIXELS or math.inf):
                msg = f"resize target {plan.size} exceeds pixel limit"
                raise UnprocessableImage(msg)
            result = image.resize(plan.size, RESAMPLE_FILTERS[resample])
            if plan.crop is not None:
                result = result.crop(plan.crop)
            output = BytesIO()
            result.save(output, format=image_format)
    except UnprocessableImage:
        raise
    except (OSError, ValueError, Image.DecompressionBombError) as error:
        msg = f"cannot transform image: {error}"
        raise UnprocessableImage(msg) from error

    LOG.debug(
        "transformed %s image requested=%sx%s result=%sx%s",
        image_format,
        width,
        height,
        result.width,
        result.height,
    )
    return output.getvalue()
