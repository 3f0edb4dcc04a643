"""Naming rules shared by the build, extract and replace modes."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Optional, Tuple

MAX_PALETTE_SIZE = 256
DEFAULT_REMAP_COLOR_COUNT = 32

# Model portraits reuse these fixed dm_base ranges: (color1 start, color1 end, color2 end).
DM_BASE_REMAP_RANGES: Tuple[int, int, int] = (160, 191, 223)
DM_BASE_MAIN_COLOR_COUNT = 192

DM_BASE_INPUT_PATTERN = re.compile(r"^dm_base$", re.IGNORECASE)
REMAP_INPUT_PATTERN = re.compile(r"^remap[0-9a-z]$", re.IGNORECASE)
DM_BASE_TEXTURE_PATTERN = re.compile(r"^dm_base(?:\.bmp)?", re.IGNORECASE)
REMAP_TEXTURE_PATTERN = re.compile(
    r"^(?P<name>remap[0-9a-z])_(?P<start1>\d{3})_(?P<end1>\d{3})_(?P<end2>\d{3})(?:\.bmp)?$",
    re.IGNORECASE,
)


def texture_name_from_path(path: Path) -> str:
    """Texture name: the file name without extension, up to the first dot, lower-cased.

    ``skin.color1 32.png`` and ``skin.color2 32.png`` both belong to ``skin``.
    """
    name = Path(path).name
    dot = name.rfind(".")
    if dot > 0:
        name = name[:dot]
    return name.split(".", 1)[0].lower()


def is_dm_base_input(texture_name: str) -> bool:
    return DM_BASE_INPUT_PATTERN.match(texture_name) is not None


def is_remap_input(texture_name: str) -> bool:
    return REMAP_INPUT_PATTERN.match(texture_name) is not None


def supports_color_remapping(texture_name: str) -> bool:
    return is_dm_base_input(texture_name) or is_remap_input(texture_name)


def remap_output_name(texture_name: str, color1_start: int, color1_count: int, color2_count: int) -> str:
    color1_end = color1_start + color1_count - 1
    color2_end = color1_end + color2_count
    return f"{texture_name}_{color1_start:03d}_{color1_end:03d}_{color2_end:03d}"


def dm_base_remap_ranges(texture_name: str) -> Optional[Tuple[int, int, int]]:
    """Return (color1 start, color1 end, color2 end) for a dm_base model texture name."""
    if DM_BASE_TEXTURE_PATTERN.match(texture_name):
        return DM_BASE_REMAP_RANGES
    return None


def remap_ranges(texture_name: str) -> Optional[Tuple[int, int, int]]:
    """Return (color1 start, color1 end, color2 end) encoded in a ``remapX_###_###_###`` name."""
    match = REMAP_TEXTURE_PATTERN.match(texture_name)
    if match is None:
        return None
    return int(match.group("start1")), int(match.group("end1")), int(match.group("end2"))


def remap_base_name(texture_name: str) -> str:
    """``remap1_160_191_223.bmp`` -> ``remap1``. Other names are returned unchanged."""
    match = REMAP_TEXTURE_PATTERN.match(texture_name)
    return match.group("name") if match else texture_name
