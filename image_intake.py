import base64
import io
from dataclasses import dataclass
from typing import Optional

from PIL import Image, UnidentifiedImageError

_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}


class ImageIntakeError(ValueError):
    """Raised when an upload is empty or is not a decodable image."""


@dataclass(frozen=True)
class InlineImage:
    data: bytes
    mime_type: str = "image/png"

    @property
    def base64(self) -> str:
        return base64.b64encode(self.data).decode("utf-8")

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.base64}"

    @property
    def extension(self) -> str:
        return _EXTENSIONS.get(self.mime_type, "img")

    def __repr__(self) -> str:
        return f"{type(self).__name__}(mime_type={self.mime_type!r}, size={len(self.data)})"


@dataclass(frozen=True, repr=False)
class ClothingItemImage(InlineImage):
    """The uploaded garment photo every analysis and visual is scoped to."""

    filename: Optional[str] = None


def decoded_format(image_bytes: bytes) -> Optional[str]:
    """Return the Pillow format name, or None if the bytes are not an image."""
    try:
        with Image.open(io.BytesIO(image_bytes)) as img:
            fmt = img.format
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError):
        return None
    return fmt


def read_upload(file_storage) -> ClothingItemImage:
    """Turn a Werkzeug ``FileStorage`` into a ``ClothingItemImage``."""
    image_bytes = file_storage.read()
    if not image_bytes:
        raise ImageIntakeError("Uploaded file is empty")

    declared = file_storage.content_type or ""
    fmt = decoded_format(image_bytes)
    if fmt is None:
        raise ImageIntakeError(f"Uploaded file is not a readable image ({declared or 'unknown type'})")
    mime_type = Image.MIME.get(fmt) or declared or "image/jpeg"

    return ClothingItemImage(
        data=image_bytes,
        mime_type=mime_type,
        filename=file_storage.filename or None,
    )
