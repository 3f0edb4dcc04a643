"""
texture_replacing.py
====================

Rebuilds the textures of an existing MDL model from a directory of source
images and writes the patched model.

Only groups whose texture name matches a model texture are built. Embedded
textures are overwritten in place. Models that keep their textures in a
``<model>T.mdl`` file get the rebuilt textures merged into the output model.
"""

from __future__ import annotations

import io
import logging
import time
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional

from external_conversion import conversion_output_directory, remove_conversion_output_directory
from mdl_codec import (
    MdlTexture,
    MdlTextureFlags,
    add_textures,
    external_textures_path,
    read_skin_data,
    read_textures,
    read_textures_from_file,
    replace_textures,
)
from texture_assembly import AssemblyStatus, assemble_texture, is_resource_exhaustion, output_file_name
from texture_making import gather_source_files
from texture_names import remap_base_name
from texture_settings import InvalidUsageError, TextureSettingsResolver


def model_texture_key(texture_name: str) -> str:
    """``Remap1_160_191_223.BMP`` -> ``remap1``, ``skin.bmp`` -> ``skin``."""
    return remap_base_name(Path(texture_name).stem.lower())


def apply_replacement(old: MdlTexture, new: MdlTexture, slot_name: str) -> MdlTexture:
    """Texture for a model slot: new pixels and palette, the slot's engine flags."""
    flags = int(old.flags)
    if new.has_masked_transparency:
        flags |= int(MdlTextureFlags.MASKED_TRANSPARENCY)
    else:
        flags &= ~int(MdlTextureFlags.MASKED_TRANSPARENCY)
    return replace(new, name=slot_name, flags=flags)


def replace_model_textures(
    input_directory: Path,
    model_path: Path,
    output_path: Optional[Path] = None,
    resolver: Optional[TextureSettingsResolver] = None,
) -> int:
    """Replace textures in *model_path* with textures built from *input_directory*.

    Returns the number of replaced textures. The result is written to
    *output_path*, which defaults to the model itself.
    """
    input_directory = Path(input_directory)
    model_path = Path(model_path)
    output_path = Path(output_path) if output_path is not None else model_path
    if not input_directory.is_dir():
        raise InvalidUsageError(f"Unable to replace textures: the input directory '{input_directory}' does not exist.")
    if not model_path.is_file():
        raise InvalidUsageError(f"Unable to replace textures: the model file '{model_path}' does not exist.")

    start_time = time.time()
    logging.info(
        "Replacing textures in '%s', using images from '%s', and saving the result to '%s'.",
        model_path, input_directory, output_path,
    )

    model_content = io.BytesIO(model_path.read_bytes())
    model_textures: List[MdlTexture] = read_textures(model_content)
    has_external_textures = not model_textures
    if has_external_textures:
        model_textures = read_textures_from_file(model_path, include_external=True)
    if not model_textures:
        logging.warning("'%s' has no textures (and no external texture file). Nothing to replace.", model_path)
        return 0

    slots: Dict[str, int] = {model_texture_key(texture.name): index for index, texture in enumerate(model_textures)}

    resolver = resolver or TextureSettingsResolver()
    groups = gather_source_files(input_directory, resolver.for_directory(input_directory))
    groups = {name: files for name, files in groups.items() if name in slots}

    conversion_directory = conversion_output_directory(input_directory)
    replaced = 0
    try:
        for texture_name, source_files in groups.items():
            try:
                result = assemble_texture(texture_name, source_files, conversion_directory)
                if result.status != AssemblyStatus.BUILT or result.texture is None:
                    continue

                index = slots[texture_name]
                old = model_textures[index]
                texture = result.texture
                if texture.width != old.width or texture.height != old.height:
                    logging.warning(
                        "- '%s' has a different size than the existing texture (%d x %d instead of %d x %d). "
                        "Skipping texture.",
                        texture_name, texture.width, texture.height, old.width, old.height,
                    )
                    continue

                logging.info("- Replacing '%s'.", old.name)
                slot_name = output_file_name(texture_name, source_files) + ".bmp"
                model_textures[index] = apply_replacement(old, texture, slot_name)
                replaced += 1
            except Exception as exc:
                if is_resource_exhaustion(exc):
                    raise
                logging.warning("- Failed to make texture '%s': %s: '%s'.", texture_name, type(exc).__name__, exc)
    finally:
        remove_conversion_output_directory(conversion_directory)

    if has_external_textures:
        logging.info("Replacing textures and merging them into the output model file.")
        with external_textures_path(model_path).open("rb") as external:
            skin_data = read_skin_data(external)
        add_textures(model_content, model_textures, skin_data)
    else:
        logging.info("Replacing textures in the output model file.")
        replace_textures(model_content, model_textures)

    output_path.write_bytes(model_content.getvalue())

    logging.info(
        "Replaced %d textures in '%s' from '%s', and saved output to '%s', in %.3f seconds.",
        replaced, model_path, input_directory, output_path, time.time() - start_time,
    )
    return replaced
