"""Local cache services package."""

from zerosum.services.cache.image_cache import (
    FileImageCache,
    ImageCache,
    InMemoryImageCache,
    encode_image,
    image_cache_from_directory,
)

__all__ = [
    "FileImageCache",
    "ImageCache",
    "InMemoryImageCache",
    "encode_image",
    "image_cache_from_directory",
]
