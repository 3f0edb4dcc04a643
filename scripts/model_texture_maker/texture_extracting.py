"""
texture_extracting.py
=====================

Extracts the textures of an MDL model (or its ``<model>T.mdl`` texture file)
as image files that can be fed straight back into a texture build.

Full-color extraction writes, per texture, a main image and for color remap
textures one mask image per remap band. The file names carry the settings
needed to rebuild the same texture (``remap1.main 160.png``,
``remap1.color1.png``, ``face.portrait.png``, ...).
"""

from __future__ import annotations

import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

import numpy as np

from image_io import IMAGE_FORMATS, INDEXED_FORMATS, load_indexed, save_indexed, save_rgba
from mdl_codec import MAX_PALETTE_SIZE, TRANSPARENT_COLOR_INDEX, MdlTexture, MdlTextureFlags, read_textures_from_file
from texture_assembly import is_resource_exhaustion
from texture_names import (
    DEFAULT_REMAP_COLOR_COUNT,
    DM_BASE_REMAP_RANGES,
    dm_base_remap_ranges,
    remap_base_name,
    remap_ranges,
)
from texture_settings import ColorMask, InvalidUsageError, TextureSettings, insert_settings_into_filename


def load_model_portrait(model_path: Path) -> Optional[MdlTexture]:
    """The ``<model>.bmp`` portrait image next to a model, if there is one."""
    portrait_path = model_path.with_suffix(".bmp")
    if not portrait_path.is_file():
        return None
    try:
        image = load_indexed(portrait_path)
    except (OSError, ValueError) as exc:
        logging.warning("- Failed to open '%s': %s: '%s'. Skipping file.", portrait_path, type(exc).__name__, exc)
        return None
    return MdlTexture(portrait_path.name, MdlTextureFlags.NONE, image.width, image.height, image.image_data, image.palette)


def _rgba_palette(texture: MdlTexture) -> np.ndarray:
    palette = np.zeros((MAX_PALETTE_SIZE, 4), dtype=np.uint8)
    colors = np.array(texture.palette[:MAX_PALETTE_SIZE], dtype=np.uint8).reshape(-1, 3)
    palette[:len(colors), :3] = colors
    palette[:, 3] = 255
    return palette


def _indices(texture: MdlTexture) -> np.ndarray:
    return np.frombuffer(bytes(texture.image_data), dtype=np.uint8).reshape(texture.height, texture.width)


def texture_to_rgba(texture: MdlTexture) -> np.ndarray:
    """Full-color pixels; the color key index becomes fully transparent for masked textures."""
    indices = _indices(texture)
    pixels = _rgba_palette(texture)[indices]
    if texture.has_masked_transparency:
        pixels[indices == TRANSPARENT_COLOR_INDEX] = 0
    return pixels


def texture_to_remap_band_rgba(texture: MdlTexture, first_color: int, last_color: int) -> np.ndarray:
    """Only the pixels whose index lies in ``first_color..last_color``, everything else transparent."""
    indices = _indices(texture)
    pixels = _rgba_palette(texture)[indices]
    pixels[(indices < first_color) | (indices > last_color)] = 0
    return pixels


def _output_path(output_directory: Path, name: str, extension: str) -> Path:
    return output_directory / Path(name).with_suffix(extension).name


def _extract_indexed(texture: MdlTexture, output_directory: Path, image_format: str, overwrite: bool) -> int:
    path = _output_path(output_directory, texture.name, IMAGE_FORMATS[image_format][1])
    if path.exists() and not overwrite:
        logging.warning("  - '%s' already exists. Skipping texture.", path)
        return 0
    logging.info("  - Creating image file '%s'.", path)
    save_indexed(path, texture.width, texture.height, texture.image_data, texture.palette, image_format)
    return 1


def _extract_full_color(
    texture: MdlTexture,
    output_directory: Path,
    image_format: str,
    overwrite: bool,
    is_model_portrait: bool,
) -> int:
    extension = IMAGE_FORMATS[image_format][1]
    main_settings = TextureSettings()
    base_name = texture.name

    ranges = remap_ranges(texture.name)
    if ranges is not None:
        base_name = remap_base_name(texture.name)
        main_settings = replace(main_settings, color_mask=ColorMask.MAIN)
        if ranges[2] < MAX_PALETTE_SIZE - 1:
            main_settings = replace(main_settings, color_count=ranges[0])
    else:
        ranges = dm_base_remap_ranges(texture.name)

    if is_model_portrait:
        main_settings = replace(main_settings, is_model_portrait=True)
        ranges = DM_BASE_REMAP_RANGES

    base_path = _output_path(output_directory, base_name, extension)
    main_path = insert_settings_into_filename(base_path, main_settings)
    if main_path.exists() and not overwrite:
        logging.warning("  - '%s' already exists. Skipping texture.", main_path)
        return 0

    logging.info("  - Creating image file '%s'.", main_path)
    save_rgba(main_path, texture_to_rgba(texture), image_format)
    created = 1

    if ranges is None:
        return created

    color1_start, color1_end, color2_end = ranges
    for mask, first, last in (
        (ColorMask.COLOR1, color1_start, color1_end),
        (ColorMask.COLOR2, color1_end + 1, color2_end),
    ):
        if last < first:
            continue
        count = last - first + 1
        band_mask = mask
        if is_model_portrait:
            # Portrait bands are stored swapped.
            band_mask = ColorMask.COLOR2 if mask == ColorMask.COLOR1 else ColorMask.COLOR1
        band_settings = TextureSettings(
            color_mask=band_mask,
            color_count=None if count == DEFAULT_REMAP_COLOR_COUNT else count,
        )
        band_path = insert_settings_into_filename(base_path, band_settings)
        if band_path.exists() and not overwrite:
            logging.warning("  - '%s' already exists. Skipping %s image.", band_path, band_mask.to_str())
            continue
        logging.info("  - Creating image file '%s'.", band_path)
        save_rgba(band_path, texture_to_remap_band_rgba(texture, first, last), image_format)
        created += 1
    return created


def extract_textures(
    model_path: Path,
    output_directory: Path,
    overwrite: bool = False,
    image_format: str = "png",
    as_indexed: bool = False,
) -> int:
    """Extract all textures of *model_path* into *output_directory*; returns the number of images written."""
    model_path = Path(model_path)
    output_directory = Path(output_directory)
    if not model_path.is_file():
        raise InvalidUsageError(f"Unable to extract textures: '{model_path}' is not a file.")
    if image_format not in IMAGE_FORMATS:
        raise InvalidUsageError(f"Unknown image format '{image_format}'.")
    if as_indexed and image_format not in INDEXED_FORMATS:
        raise InvalidUsageError(f"Indexed images can not be saved as {image_format}.")

    start_time = time.time()
    logging.info("Extracting textures from '%s' and saving the result to '%s'.", model_path, output_directory)

    textures: List[MdlTexture] = read_textures_from_file(model_path, include_external=True)
    portrait = load_model_portrait(model_path)
    if portrait is not None:
        textures.append(portrait)

    output_directory.mkdir(parents=True, exist_ok=True)

    created = 0
    for texture in textures:
        logging.info("- Extracting '%s'...", texture.name)
        try:
            if as_indexed:
                created += _extract_indexed(texture, output_directory, image_format, overwrite)
            else:
                created += _extract_full_color(
                    texture, output_directory, image_format, overwrite, texture is portrait
                )
        except Exception as exc:
            if is_resource_exhaustion(exc):
                raise
            logging.error("  - Failed to extract '%s': %s: '%s'.", texture.name, type(exc).__name__, exc)

    logging.info(
        "Extracted %d images from %d textures from '%s' to '%s', in %.3f seconds.",
        created, len(textures), model_path, output_directory, time.time() - start_time,
    )
    return created
