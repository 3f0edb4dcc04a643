"""
image_io.py
===========

Thin Pillow wrapper used for all image file access: loading source images as
RGBA pixel arrays, loading/saving 8-bit indexed images, and saving extracted
full-color images.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

import numpy as np
from PIL import Image, UnidentifiedImageError

RGB = Tuple[int, int, int]

# Output format name -> (Pillow format, default extension)
IMAGE_FORMATS = {
    "png": ("PNG", ".png"),
    "jpg": ("JPEG", ".jpg"),
    "gif": ("GIF", ".gif"),
    "bmp": ("BMP", ".bmp"),
    "tga": ("TGA", ".tga"),
}
INDEXED_FORMATS = {"png", "gif", "bmp"}


class ImageFormatError(ValueError):
    pass


@dataclass
class IndexedImage:
    width: int
    height: int
    image_data: bytes
    palette: List[RGB]


def supported_extensions() -> set:
    return {ext.lower() for ext, fmt in Image.registered_extensions().items() if fmt in Image.OPEN}


def can_load(path: Path) -> bool:
    return Path(path).suffix.lower() in supported_extensions()


def format_for_path(path: Path) -> str:
    suffix = Path(path).suffix.lower()
    for name, (_, extension) in IMAGE_FORMATS.items():
        if suffix == extension or (name == "jpg" and suffix == ".jpeg"):
            return name
    raise ImageFormatError(f"Unsupported image file extension: '{suffix}'.")


def _has_incorrect_tga_image_descriptor(header: bytes) -> bool:
    if len(header) < 18:
        return False
    is_uncompressed_rgb = header[2] == 2
    has_no_color_map = header[5] == 0 and header[6] == 0
    is_32bpp = header[16] == 32
    has_zero_alpha_bits = (header[17] & 0x0F) == 0
    return is_uncompressed_rgb and has_no_color_map and is_32bpp and has_zero_alpha_bits


def _open_image(path: Path) -> Image.Image:
    if path.suffix.lower() == ".tga":
        # Some tools write 32-bit TGA files whose descriptor claims zero alpha bits,
        # which makes the alpha channel get dropped. Patch the descriptor byte.
        payload = path.read_bytes()
        if _has_incorrect_tga_image_descriptor(payload[:18]):
            patched = bytearray(payload)
            patched[17] |= 0x08
            return Image.open(io.BytesIO(bytes(patched)))
    return Image.open(path)


def load_rgba(path: Path) -> np.ndarray:
    """Load an image as an ``(height, width, 4)`` uint8 RGBA array."""
    try:
        with _open_image(Path(path)) as img:
            img.load()
            return np.array(img.convert("RGBA"), dtype=np.uint8)
    except UnidentifiedImageError as exc:
        raise ImageFormatError(f"Unable to read image '{path}': {exc}") from exc


def is_indexed_image(path: Path) -> bool:
    try:
        with _open_image(Path(path)) as img:
            return img.mode == "P"
    except (OSError, UnidentifiedImageError):
        return False


def load_indexed(path: Path) -> IndexedImage:
    """Load an 8-bit indexed image with its palette, without any color conversion."""
    with _open_image(Path(path)) as img:
        img.load()
        if img.mode != "P":
            raise ImageFormatError(f"'{path}' is not an indexed image (mode {img.mode}).")
        raw_palette = img.getpalette() or []
        palette = [
            (raw_palette[i], raw_palette[i + 1], raw_palette[i + 2])
            for i in range(0, min(len(raw_palette), 256 * 3) - 2, 3)
        ]
        width, height = img.size
        return IndexedImage(width, height, img.tobytes(), palette)


def save_indexed(
    path: Path,
    width: int,
    height: int,
    image_data: bytes,
    palette: Sequence[Sequence[int]],
    image_format: Optional[str] = None,
) -> None:
    image_format = image_format or format_for_path(path)
    if image_format not in INDEXED_FORMATS:
        raise ImageFormatError(f"Indexed images can not be saved as {image_format}.")

    flat_palette: List[int] = []
    for color in list(palette)[:256]:
        flat_palette.extend((int(color[0]), int(color[1]), int(color[2])))
    flat_palette.extend([0] * (768 - len(flat_palette)))

    img = Image.frombytes("P", (width, height), bytes(image_data))
    img.putpalette(flat_palette)
    img.save(path, format=IMAGE_FORMATS[image_format][0])


def save_rgba(path: Path, pixels: np.ndarray, image_format: Optional[str] = None) -> None:
    image_format = image_format or format_for_path(path)
    img = Image.fromarray(np.ascontiguousarray(pixels, dtype=np.uint8))
    if image_format in ("jpg", "bmp"):
        img = img.convert("RGB")
    img.save(path, format=IMAGE_FORMATS[image_format][0])
