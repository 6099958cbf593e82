# dotformer/transformer.py
import io
import logging
from typing import Any, Mapping, Optional, Protocol

import httpx
from PIL import Image, ImageColor, ImageOps, UnidentifiedImageError

from dotformer.errors import TransformFailed

logger = logging.getLogger(__name__)

DEFAULT_QUALITY = 80

PIL_FORMATS = {
    "jpg": "JPEG",
    "jpeg": "JPEG",
    "png": "PNG",
    "webp": "WEBP",
    "gif": "GIF",
    "tiff": "TIFF",
    "avif": "AVIF",
}

CENTERING = {
    "center": (0.5, 0.5),
    "centre": (0.5, 0.5),
    "top": (0.5, 0.0),
    "bottom": (0.5, 1.0),
    "left": (0.0, 0.5),
    "right": (1.0, 0.5),
    "top left": (0.0, 0.0),
    "top right": (1.0, 0.0),
    "bottom left": (0.0, 1.0),
    "bottom right": (1.0, 1.0),
}


class TransformEngine(Protocol):
    def transform(self, data: bytes, options: Mapping[str, Any]) -> bytes:
        ...


def content_type_for(image_format: str) -> str:
    """MIME type for a format name; jpg is served as image/jpeg."""
    image_format = image_format.lower()
    if image_format == "jpg":
        image_format = "jpeg"
    return f"image/{image_format}"


def _target_size(image: Image.Image, width: Optional[int], height: Optional[int]) -> tuple[int, int]:
    """Fill in a missing dimension from the source aspect ratio."""
    src_w, src_h = image.size
    if width and height:
        return width, height
    if width:
        return width, max(1, round(src_h * width / src_w))
    return max(1, round(src_w * height / src_h)), height


def _background(options: Mapping[str, Any], mode: str) -> tuple:
    return ImageColor.getcolor(options.get("background") or "#ffffff", mode)


def _as_rgb(image: Image.Image) -> Image.Image:
    if image.mode in ("RGB", "RGBA"):
        return image
    return image.convert("RGBA" if image.mode in ("LA", "P", "PA") else "RGB")


def _resize(image: Image.Image, options: Mapping[str, Any]) -> Image.Image:
    size = _target_size(image, options.get("width"), options.get("height"))
    fit = options.get("fit") or "cover"

    if fit == "fill":
        return image.resize(size, Image.LANCZOS)
    if fit == "inside":
        return ImageOps.contain(image, size, Image.LANCZOS)
    if fit == "outside":
        scale = max(size[0] / image.width, size[1] / image.height)
        return image.resize(
            (max(1, round(image.width * scale)), max(1, round(image.height * scale))),
            Image.LANCZOS,
        )
    if fit == "contain":
        image = _as_rgb(image)
        return ImageOps.pad(image, size, Image.LANCZOS, color=_background(options, image.mode))

    centering = CENTERING.get((options.get("position") or "center").lower(), (0.5, 0.5))
    return ImageOps.fit(image, size, Image.LANCZOS, centering=centering)


class PillowTransformEngine:
    """In-process transform engine backed by Pillow."""

    def transform(self, data: bytes, options: Mapping[str, Any]) -> bytes:
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
        except (UnidentifiedImageError, OSError, Image.DecompressionBombError) as e:
            raise TransformFailed(f"Could not decode source image: {e}") from e

        source_format = image.format or "JPEG"
        image = ImageOps.exif_transpose(image)

        if options.get("width") or options.get("height"):
            image = _resize(image, options)

        if options.get("rotate"):
            # Positive angles rotate clockwise
            image = _as_rgb(image)
            image = image.rotate(-options["rotate"], expand=True, fillcolor=_background(options, image.mode))

        if options.get("flip"):
            image = ImageOps.flip(image)

        if options.get("flop"):
            image = ImageOps.mirror(image)

        if options.get("grayscale"):
            image = ImageOps.grayscale(image)

        requested = options.get("format")
        pil_format = PIL_FORMATS.get(str(requested).lower()) if requested else source_format
        if pil_format is None:
            raise TransformFailed(f"Unsupported output format: {requested}")
        save_kwargs = {}
        if pil_format in ("JPEG", "WEBP", "AVIF"):
            save_kwargs["quality"] = options.get("quality") or DEFAULT_QUALITY
        if pil_format == "JPEG":
            save_kwargs["progressive"] = True
            if image.mode not in ("RGB", "L"):
                image = image.convert("RGB")

        output = io.BytesIO()
        try:
            image.save(output, format=pil_format, **save_kwargs)
        except (KeyError, ValueError, OSError) as e:
            raise TransformFailed(f"Could not encode image as {pil_format}: {e}") from e
        return output.getvalue()


def _query_params(options: Mapping[str, Any]) -> dict[str, str]:
    params = {}
    for key, value in options.items():
        if value is None:
            continue
        params[key] = str(value).lower() if isinstance(value, bool) else str(value)
    return params


class HttpTransformEngine:
    """Client for a remote transformer service.

    Sends the source bytes with ``PUT {base_url}/transform-image`` and the
    options as query parameters; the response body is the transformed image.
    """

    def __init__(self, base_url: str, timeout: float = 30.0, client: Optional[httpx.Client] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.client = client or httpx.Client(timeout=timeout)

    def transform(self, data: bytes, options: Mapping[str, Any]) -> bytes:
        url = f"{self.base_url}/transform-image"
        try:
            response = self.client.put(
                url,
                params=_query_params(options),
                content=data,
                headers={"Content-Type": "application/octet-stream"},
                timeout=self.timeout,
            )
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise TransformFailed(f"Transformer timed out after {self.timeout}s") from e
        except httpx.HTTPStatusError as e:
            raise TransformFailed(
                f"Transformer returned {e.response.status_code}: {e.response.text[:200]}"
            ) from e
        except httpx.RequestError as e:
            raise TransformFailed(f"Transformer unreachable: {e}") from e

        return response.content

    def close(self) -> None:
        self.client.close()


def build_transform_engine(settings) -> TransformEngine:
    """Create the configured transform engine."""
    if settings.transform_engine == "http":
        return HttpTransformEngine(settings.transformer_url, timeout=settings.transformer_timeout)
    if settings.transform_engine != "local":
        raise ValueError(f"Unknown transform engine: {settings.transform_engine}")
    return PillowTransformEngine()
