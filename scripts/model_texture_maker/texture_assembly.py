"""
texture_assembly.py
===================

Turns one group of source files (all files that share a texture name) into a
single 256-color ``MdlTexture``.

Strategies, tried in order:

1. verification: conflicting inputs are rejected,
2. pass-through: an indexed main image with ``preserve-palette`` is copied as-is,
3. color remapping: ``dm_base``, ``remapX`` and model portraits get a palette
   made of a main band plus two reserved remap bands (color1, color2),
4. standard: a single image quantized to 256 colors (255 plus a color key when
   it has transparent pixels).

``assemble_texture`` never raises for per-texture problems; it returns an
``AssemblyResult`` saying whether a texture was built, skipped or failed.
"""

from __future__ import annotations

import enum
import errno
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import numpy as np

from external_conversion import run_converter
from image_io import can_load, is_indexed_image, load_indexed, load_rgba
from mdl_codec import BLACK, TRANSPARENT_COLOR_INDEX, MdlTexture, MdlTextureFlags
from quantization import TransparencyPredicate, quantize_image
from texture_names import (
    DEFAULT_REMAP_COLOR_COUNT,
    DM_BASE_MAIN_COLOR_COUNT,
    DM_BASE_REMAP_RANGES,
    MAX_PALETTE_SIZE,
    is_dm_base_input,
    is_remap_input,
    remap_output_name,
    supports_color_remapping,
)
from texture_settings import (
    ColorMask,
    DitheringAlgorithm,
    SourceFileInfo,
    TextureSettingsError,
    settings_from_filename,
)

TRANSPARENT_COLOR = (0, 0, 255)


class AssemblyStatus(enum.Enum):
    BUILT = "built"
    SKIPPED = "skipped"
    FAILED = "failed"


@dataclass
class AssemblyResult:
    status: AssemblyStatus
    texture: Optional[MdlTexture] = None
    reason: str = ""

    @classmethod
    def built(cls, texture: MdlTexture) -> "AssemblyResult":
        return cls(AssemblyStatus.BUILT, texture)

    @classmethod
    def skipped(cls, reason: str) -> "AssemblyResult":
        logging.warning("- %s", reason)
        return cls(AssemblyStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, reason: str) -> "AssemblyResult":
        logging.error("%s", reason)
        return cls(AssemblyStatus.FAILED, reason=reason)


def is_resource_exhaustion(exc: BaseException) -> bool:
    """Errors that must stop the whole run instead of only the current texture."""
    if isinstance(exc, MemoryError):
        return True
    return isinstance(exc, OSError) and exc.errno in (errno.ENOSPC, getattr(errno, "EDQUOT", errno.ENOSPC))


# ---------------------------------------------------------------------------
# Source file selection
# ---------------------------------------------------------------------------

def band_source_file(source_files: Sequence[SourceFileInfo], mask: ColorMask) -> Optional[SourceFileInfo]:
    for source_file in source_files:
        if source_file.settings.effective_color_mask == mask:
            return source_file
    return None


def remap_color_counts(
    main: Optional[SourceFileInfo],
    color1: Optional[SourceFileInfo],
    color2: Optional[SourceFileInfo],
) -> Tuple[int, int, int]:
    """(color1 start, color1 count, color2 count) for a ``remapX`` texture."""

    def count(source_file: Optional[SourceFileInfo]) -> int:
        if source_file is None:
            return 0
        if source_file.settings.color_count is None:
            return DEFAULT_REMAP_COLOR_COUNT
        return source_file.settings.color_count

    color1_count = count(color1)
    color2_count = count(color2)
    if main is not None and main.settings.color_count is not None:
        color1_start = main.settings.color_count
    else:
        color1_start = MAX_PALETTE_SIZE - color1_count - color2_count
    return color1_start, color1_count, color2_count


def output_file_name(texture_name: str, source_files: Sequence[SourceFileInfo]) -> str:
    """Output file stem; ``remapX`` textures carry their band boundaries in the name."""
    if not is_remap_input(texture_name):
        return texture_name
    color1_start, color1_count, color2_count = remap_color_counts(
        band_source_file(source_files, ColorMask.MAIN),
        band_source_file(source_files, ColorMask.COLOR1),
        band_source_file(source_files, ColorMask.COLOR2),
    )
    return remap_output_name(texture_name, color1_start, color1_count, color2_count)


def _describe(source_files: Sequence[SourceFileInfo]) -> str:
    return ", ".join(source_file.path for source_file in source_files)


def verify_source_files(texture_name: str, source_files: Sequence[SourceFileInfo]) -> Optional[str]:
    """Return why the group can not be built, or None if it looks good."""
    masks = [source_file.settings.effective_color_mask for source_file in source_files]
    if len(masks) != len(set(masks)):
        return f"Conflicting input files detected for '{texture_name}' ({_describe(source_files)}). Skipping files."

    is_portrait = any(source_file.settings.is_model_portrait for source_file in source_files)
    if not supports_color_remapping(texture_name) and not is_portrait:
        if any(mask != ColorMask.MAIN for mask in masks):
            return (
                f"Color1 and color2 overlays detected for '{texture_name}', which does not support color "
                f"remapping ({_describe(source_files)}). Skipping files."
            )
    return None


def convert_source_files(
    texture_name: str,
    source_files: Sequence[SourceFileInfo],
    conversion_directory: Path,
) -> List[SourceFileInfo]:
    """Replace files that have a converter with the loadable files the converter produces."""
    converted: List[SourceFileInfo] = []
    for source_file in source_files:
        settings = source_file.settings
        if settings.converter is None:
            converted.append(source_file)
            continue
        if settings.converter_arguments is None:
            raise TextureSettingsError(f"Unable to convert '{source_file.path}': missing converter arguments.")

        # Each source file converts into its own folder.
        source_path = Path(source_file.path)
        output_paths = run_converter(
            settings.converter,
            settings.converter_arguments,
            source_path,
            conversion_directory / texture_name / source_path.name,
        )
        loadable = [path for path in output_paths if can_load(path)]
        if not loadable:
            raise TextureSettingsError(
                f"The converter for '{source_file.path}' did not produce a supported file type."
            )
        for path in loadable:
            output_settings = settings.override_with(settings_from_filename(path))
            converted.append(SourceFileInfo.for_generated_file(path, output_settings))
    return converted


# ---------------------------------------------------------------------------
# Pass-through and standard textures
# ---------------------------------------------------------------------------

def _full_palette(colors: Sequence[Sequence[int]]) -> List[Tuple[int, int, int]]:
    palette = [(int(c[0]), int(c[1]), int(c[2])) for c in list(colors)[:MAX_PALETTE_SIZE]]
    palette.extend([BLACK] * (MAX_PALETTE_SIZE - len(palette)))
    return palette


def texture_from_indexed_file(texture_name: str, source_file: SourceFileInfo) -> MdlTexture:
    image = load_indexed(Path(source_file.path))
    return MdlTexture(
        texture_name,
        MdlTextureFlags.NONE,
        image.width,
        image.height,
        image.image_data,
        _full_palette(image.palette),
    )


def build_standard_texture(texture_name: str, source_file: SourceFileInfo) -> MdlTexture:
    settings = source_file.settings
    pixels = load_rgba(Path(source_file.path))
    height, width = pixels.shape[:2]

    threshold = settings.effective_transparency_threshold
    predicate = TransparencyPredicate(threshold, settings.transparency_color)
    has_transparency = bool(predicate.mask(pixels).any())

    quantized = quantize_image(
        pixels,
        MAX_PALETTE_SIZE - 1 if has_transparency else MAX_PALETTE_SIZE,
        settings.effective_dithering_algorithm,
        settings.effective_dither_scale,
        is_transparent=predicate if has_transparency else None,
        transparent_index=TRANSPARENT_COLOR_INDEX if has_transparency else None,
    )

    palette = _full_palette(quantized.palette)
    if has_transparency:
        palette[TRANSPARENT_COLOR_INDEX] = TRANSPARENT_COLOR

    return MdlTexture(
        texture_name,
        MdlTextureFlags.MASKED_TRANSPARENCY if has_transparency else MdlTextureFlags.NONE,
        width,
        height,
        quantized.indices.astype(np.uint8).tobytes(),
        palette,
    )


# ---------------------------------------------------------------------------
# Color remapping
# ---------------------------------------------------------------------------

@dataclass
class BandImage:
    mask: ColorMask
    color_count: int
    pixels: np.ndarray
    is_transparent: TransparencyPredicate
    dithering: DitheringAlgorithm
    dither_scale: float

    @classmethod
    def load(cls, source_file: SourceFileInfo, mask: ColorMask, color_count: int) -> "BandImage":
        settings = source_file.settings
        return cls(
            mask,
            color_count,
            load_rgba(Path(source_file.path)),
            TransparencyPredicate(settings.effective_transparency_threshold, settings.transparency_color),
            settings.effective_dithering_algorithm,
            settings.effective_dither_scale,
        )


def coverage_map(bands: Dict[ColorMask, BandImage], shape: Tuple[int, int]) -> np.ndarray:
    """Per-pixel band tag: color2 wins over color1, pixels covered by neither belong to main."""
    coverage = np.full(shape, int(ColorMask.MAIN), dtype=np.uint8)
    for mask in (ColorMask.COLOR1, ColorMask.COLOR2):
        band = bands.get(mask)
        if band is not None:
            coverage[~band.is_transparent.mask(band.pixels)] = int(mask)
    return coverage


def swap_remap_bands(
    image_data: np.ndarray,
    palette: List[Tuple[int, int, int]],
    color1_start: int,
    color1_count: int,
    color2_count: int,
) -> None:
    """Exchange the color1 and color2 bands in place, both in the palette and in the indices."""
    color2_start = color1_start + color1_count
    color2_end = color2_start + color2_count

    in_color1 = (image_data >= color1_start) & (image_data < color2_start)
    in_color2 = (image_data >= color2_start) & (image_data < color2_end)
    image_data[in_color1] += color2_count
    image_data[in_color2] -= color1_count

    color1_palette = palette[color1_start:color2_start]
    color2_palette = palette[color2_start:color2_end]
    palette[color1_start:color2_end] = color2_palette + color1_palette


def build_color_remap_texture(
    texture_name: str,
    source_files: Sequence[SourceFileInfo],
    use_remap_ranges: bool,
    is_model_portrait: bool,
) -> AssemblyResult:
    main_file = band_source_file(source_files, ColorMask.MAIN)
    color1_file = band_source_file(source_files, ColorMask.COLOR1)
    color2_file = band_source_file(source_files, ColorMask.COLOR2)

    if use_remap_ranges:
        color1_start, color1_count, color2_count = remap_color_counts(main_file, color1_file, color2_file)
        main_count = MAX_PALETTE_SIZE - color1_count - color2_count
    else:
        color1_start = DM_BASE_REMAP_RANGES[0]
        color1_count = DM_BASE_REMAP_RANGES[1] - DM_BASE_REMAP_RANGES[0] + 1
        color2_count = DM_BASE_REMAP_RANGES[2] - DM_BASE_REMAP_RANGES[1]
        main_count = DM_BASE_MAIN_COLOR_COUNT

    if main_count < 0 or color1_start < 0 or color1_start + color1_count + color2_count > MAX_PALETTE_SIZE:
        return AssemblyResult.skipped(
            f"Total color count for remap colors in '{texture_name}' is larger than {MAX_PALETTE_SIZE} "
            f"({color1_start} + {color1_count} + {color2_count}). Skipping files."
        )

    bands: Dict[ColorMask, BandImage] = {}
    for mask, source_file, count in (
        (ColorMask.MAIN, main_file, main_count),
        (ColorMask.COLOR1, color1_file, color1_count),
        (ColorMask.COLOR2, color2_file, color2_count),
    ):
        if source_file is None:
            continue
        if count <= 0:
            logging.warning("- Ignoring '%s': its color band for '%s' has no colors.", source_file.path, texture_name)
            continue
        bands[mask] = BandImage.load(source_file, mask, count)

    if not bands:
        return AssemblyResult.skipped(f"No usable input images for '{texture_name}'. Skipping files.")

    shapes = {band.pixels.shape[:2] for band in bands.values()}
    if len(shapes) > 1:
        return AssemblyResult.skipped(
            f"Input images for '{texture_name}' have different sizes ({_describe(source_files)}). Skipping files."
        )
    height, width = shapes.pop()

    coverage = coverage_map(bands, (height, width))
    image_data = np.zeros((height, width), dtype=np.int32)
    palette: List[Tuple[int, int, int]] = [BLACK] * MAX_PALETTE_SIZE
    band_offsets = {
        ColorMask.MAIN: 0,
        ColorMask.COLOR1: color1_start,
        ColorMask.COLOR2: color1_start + color1_count,
    }

    for mask, band in bands.items():
        covered = coverage == int(mask)
        quantized = quantize_image(
            band.pixels,
            band.color_count,
            band.dithering,
            band.dither_scale,
            is_transparent=band.is_transparent,
            excluded=~covered,
        )
        local = quantized.indices
        offset = band_offsets[mask]

        if mask == ColorMask.MAIN and band.color_count > color1_start:
            # Main colors continue after the remap bands.
            second_offset = color1_start + color1_count + color2_count
            band_indices = local[covered]
            image_data[covered] = np.where(
                band_indices >= color1_start,
                band_indices + (color1_count + color2_count),
                band_indices,
            )
            head = quantized.palette[:color1_start]
            tail = quantized.palette[color1_start:]
            palette[0:len(head)] = head
            palette[second_offset:second_offset + len(tail)] = tail
        else:
            image_data[covered] = local[covered] + offset
            palette[offset:offset + len(quantized.palette)] = quantized.palette

    if is_model_portrait and color1_count > 0 and color2_count > 0:
        swap_remap_bands(image_data, palette, color1_start, color1_count, color2_count)

    return AssemblyResult.built(MdlTexture(
        texture_name,
        MdlTextureFlags.NONE,
        width,
        height,
        image_data.astype(np.uint8).tobytes(),
        palette[:MAX_PALETTE_SIZE],
    ))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def _assemble(texture_name: str, source_files: Sequence[SourceFileInfo], conversion_directory: Path) -> AssemblyResult:
    missing_arguments = [f for f in source_files if f.settings.converter is not None and f.settings.converter_arguments is None]
    if missing_arguments:
        return AssemblyResult.skipped(
            f"Some input files for '{texture_name}' are missing converter arguments ({_describe(missing_arguments)}). "
            f"Skipping texture."
        )

    source_files = convert_source_files(texture_name, source_files, conversion_directory)

    problem = verify_source_files(texture_name, source_files)
    if problem is not None:
        return AssemblyResult.skipped(problem)

    main_file = band_source_file(source_files, ColorMask.MAIN)
    if main_file is not None and main_file.settings.preserve_palette:
        if is_indexed_image(Path(main_file.path)):
            return AssemblyResult.built(texture_from_indexed_file(texture_name, main_file))
        logging.debug("'%s' is not an indexed image, its palette can not be preserved.", main_file.path)

    is_model_portrait = any(f.settings.is_model_portrait for f in source_files)
    use_remap_ranges = is_remap_input(texture_name)
    if use_remap_ranges or is_dm_base_input(texture_name) or is_model_portrait:
        return build_color_remap_texture(texture_name, source_files, use_remap_ranges, is_model_portrait)

    if main_file is None:
        return AssemblyResult.skipped(
            f"Missing main input file for '{texture_name}', and texture does not support color remapping "
            f"({_describe(source_files)}). Skipping files."
        )
    return AssemblyResult.built(build_standard_texture(texture_name, main_file))


def assemble_texture(
    texture_name: str,
    source_files: Sequence[SourceFileInfo],
    conversion_directory: Path,
) -> AssemblyResult:
    """Build the texture for one group of source files.

    Problems with the group (conflicting inputs, bad converter settings,
    unreadable images, ...) are logged and reported through the result.
    Running out of memory or disk space is raised.
    """
    try:
        return _assemble(texture_name, source_files, conversion_directory)
    except TextureSettingsError as exc:
        return AssemblyResult.skipped(f"Invalid settings for '{texture_name}': {exc}")
    except Exception as exc:
        if is_resource_exhaustion(exc):
            raise
        return AssemblyResult.failed(f"Failed to build '{texture_name}': {type(exc).__name__}: '{exc}'.")
