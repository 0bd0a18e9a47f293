"""Image variant result model."""

from pydantic import BaseModel


class ImageVariant(BaseModel):
    """A derived rendition of one source photo.

    `fallback` is True when the requested format or size could not be
    produced and a substitute was returned. It is a successful result, not an
    error.
    """
    data: bytes
    content_type: str
    variant: str
    format: str                    # format actually delivered
    requested_format: str
    original_size: int
    compressed_size: int
    compression_ratio: float = 1.0
    fallback: bool = False
    quality: int | None = None
    width: int | None = None
    height: int | None = None
    cache_key: str = ""
    cache_status: str = "MISS"
