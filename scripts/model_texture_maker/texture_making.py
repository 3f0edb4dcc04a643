"""
texture_making.py
=================

Incremental texture builds: turns a directory of source images into one
indexed texture file per texture name.

For every input directory the previous build is read from its build history.
A texture whose output file and source files (names, sizes, hashes and
resolved settings) are unchanged is skipped. Outputs whose sources have gone
are removed, and with ``enable_subdir_removal`` so are output directories of
removed input sub-directories.

Usage (via the CLI)::

    python model_texture_maker.py path/to/textures path/to/output --subdirs
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, fields as dataclass_fields
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple

import build_history
from build_history import BuildHistory, TextureHistory, is_history_file
from external_conversion import (
    conversion_output_directory,
    is_conversion_output_directory,
    remove_conversion_output_directory,
)
from image_io import can_load, save_indexed
from mdl_codec import MdlTexture, write_standalone_texture
from texture_assembly import AssemblyStatus, assemble_texture, is_resource_exhaustion, output_file_name
from texture_names import texture_name_from_path
from texture_settings import (
    DirectorySettings,
    FileInfo,
    InvalidUsageError,
    SourceFileInfo,
    TextureSettingsResolver,
    is_config_file,
)

OUTPUT_FORMATS = {"bmp": ".bmp", "mdl": ".mdl"}


@dataclass
class BuildStats:
    added: int = 0
    updated: int = 0
    removed: int = 0
    unchanged: int = 0
    skipped: int = 0
    failed: int = 0


def merge_stats(target: BuildStats, source: BuildStats) -> None:
    for f in dataclass_fields(BuildStats):
        setattr(target, f.name, getattr(target, f.name) + getattr(source, f.name))


@dataclass(frozen=True)
class BuildOptions:
    full_rebuild: bool = False
    include_subdirs: bool = False
    enable_subdir_removal: bool = False
    output_format: str = "bmp"

    @property
    def output_extension(self) -> str:
        return OUTPUT_FORMATS[self.output_format]


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def input_file_paths(directory: Path) -> List[Path]:
    """All potential input files in *directory*; bookkeeping files are left out."""
    return sorted(
        path for path in directory.iterdir()
        if path.is_file() and not is_config_file(path) and not is_history_file(path)
    )


def gather_source_files(directory: Path, settings: DirectorySettings) -> Dict[str, List[SourceFileInfo]]:
    """Resolve settings for every input file and group usable files by texture name."""
    groups: Dict[str, List[SourceFileInfo]] = {}
    for path in input_file_paths(directory):
        try:
            source_file = settings.source_file_info(path)
        except OSError as exc:
            if is_resource_exhaustion(exc):
                raise
            logging.warning("- Unable to read '%s': %s: '%s'. Skipping file.", path, type(exc).__name__, exc)
            continue

        if source_file.settings.ignore:
            continue
        if not can_load(path) and not source_file.settings.converter:
            continue
        groups.setdefault(texture_name_from_path(path), []).append(source_file)
    return groups


def has_been_modified(
    output_name: str,
    output_path: Path,
    source_files: Sequence[SourceFileInfo],
    history: Optional[BuildHistory],
) -> bool:
    if history is None:
        return True
    texture_history = history.textures.get(output_name)
    if texture_history is None:
        return True

    if len(source_files) != len(texture_history.input_files):
        return True
    if not texture_history.output_file.matches_file(output_path):
        return True

    previous_files = {info.file_name: info for info in texture_history.input_files}
    for source_file in source_files:
        previous = previous_files.get(source_file.file_name)
        if previous is None:
            return True
        if (
            source_file.file_size != previous.file_size
            or source_file.file_hash != previous.file_hash
            or source_file.settings != previous.settings
        ):
            return True
    return False


def save_texture_file(path: Path, texture: MdlTexture) -> None:
    """Write *texture* as an indexed image, or as a texture-only MDL file for ``.mdl`` paths."""
    if path.suffix.lower() == ".mdl":
        with path.open("w+b") as stream:
            write_standalone_texture(stream, texture)
    else:
        save_indexed(path, texture.width, texture.height, texture.image_data, texture.palette)


def remove_output_textures(directory: Path, extension: str) -> int:
    """Remove all texture files below *directory*, then any directories left empty."""
    if not directory.is_dir():
        return 0

    removed = 0
    for path in sorted(directory.glob(f"*{extension}")):
        try:
            path.unlink()
            removed += 1
        except OSError as exc:
            logging.warning("Failed to remove '%s': %s: '%s'.", path, type(exc).__name__, exc)

    for sub_directory in sorted(p for p in directory.iterdir() if p.is_dir()):
        removed += remove_output_textures(sub_directory, extension)

    try:
        if not any(directory.iterdir()):
            directory.rmdir()
            logging.info("Removed sub-directory '%s'.", directory)
    except OSError as exc:
        logging.warning("Failed to remove sub-directory '%s': %s: '%s'.", directory, type(exc).__name__, exc)
    return removed


def _describe_sources(source_files: Sequence[SourceFileInfo]) -> str:
    first = source_files[0].path
    if len(source_files) > 1:
        return f"'{first}' + {len(source_files) - 1} more files"
    return f"'{first}'"


# ---------------------------------------------------------------------------
# Directory builds
# ---------------------------------------------------------------------------

def _make_texture(
    texture_name: str,
    source_files: List[SourceFileInfo],
    output_directory: Path,
    conversion_directory: Path,
    history: Optional[BuildHistory],
    incremental: bool,
    options: BuildOptions,
    stats: BuildStats,
    new_history: BuildHistory,
) -> None:
    output_name = output_file_name(texture_name, source_files)
    output_path = output_directory / (output_name + options.output_extension)
    is_existing = output_path.is_file()

    if incremental and is_existing and not has_been_modified(output_name, output_path, source_files, history):
        new_history.textures[output_name] = TextureHistory(FileInfo.from_file(output_path), list(source_files))
        stats.unchanged += 1
        logging.debug("- No changes detected for '%s', skipping update.", texture_name)
        return

    result = assemble_texture(texture_name, source_files, conversion_directory)
    if result.status == AssemblyStatus.SKIPPED:
        stats.skipped += 1
        return
    if result.status == AssemblyStatus.FAILED or result.texture is None:
        stats.failed += 1
        return

    save_texture_file(output_path, result.texture)
    new_history.textures[output_name] = TextureHistory(FileInfo.from_file(output_path), list(source_files))

    if is_existing:
        stats.updated += 1
        logging.info("- Updated texture '%s' (from %s).", output_path, _describe_sources(source_files))
    else:
        stats.added += 1
        logging.info("- Added texture '%s' (from %s).", output_path, _describe_sources(source_files))


def _remove_stale_textures(
    output_directory: Path,
    history: BuildHistory,
    current_names: set,
    extension: str,
) -> int:
    removed = 0
    for output_name in history.textures:
        if output_name in current_names:
            continue
        path = output_directory / (output_name + extension)
        try:
            if path.is_file():
                path.unlink()
                removed += 1
                logging.info("- Removed texture '%s'.", path)
        except OSError as exc:
            logging.warning("- Failed to remove '%s': %s: '%s'.", path, type(exc).__name__, exc)
    return removed


def _make_directory(
    input_directory: Path,
    output_directory: Path,
    conversion_directory: Path,
    resolver: TextureSettingsResolver,
    options: BuildOptions,
) -> Tuple[BuildStats, BuildHistory]:
    history = build_history.load(input_directory)
    incremental = not options.full_rebuild and output_directory.is_dir() and history is not None

    settings = resolver.for_directory(input_directory)
    groups = gather_source_files(input_directory, settings)

    stats = BuildStats()
    new_history = BuildHistory()
    output_directory.mkdir(parents=True, exist_ok=True)

    for texture_name, source_files in groups.items():
        try:
            _make_texture(
                texture_name, source_files, output_directory, conversion_directory,
                history, incremental, options, stats, new_history,
            )
        except Exception as exc:
            if is_resource_exhaustion(exc):
                raise
            stats.failed += 1
            logging.warning("Failed to make texture '%s': %s: '%s'.", texture_name, type(exc).__name__, exc)

    if history is not None:
        current_names = {output_file_name(name, files) for name, files in groups.items()}
        stats.removed += _remove_stale_textures(output_directory, history, current_names, options.output_extension)

    if options.include_subdirs:
        for sub_directory in sorted(p for p in input_directory.iterdir() if p.is_dir()):
            if is_conversion_output_directory(sub_directory):
                continue
            new_history.sub_directory_names.append(sub_directory.name)
            try:
                sub_stats, _ = _make_directory(
                    sub_directory,
                    output_directory / sub_directory.name,
                    conversion_directory / sub_directory.name,
                    resolver,
                    options,
                )
            except Exception as exc:
                if is_resource_exhaustion(exc):
                    raise
                logging.error("Failed to process sub-directory '%s': %s: '%s'.", sub_directory, type(exc).__name__, exc)
                continue
            merge_stats(stats, sub_stats)

        if options.enable_subdir_removal and history is not None:
            for name in history.sub_directory_names:
                if name not in new_history.sub_directory_names:
                    stats.removed += remove_output_textures(output_directory / name, options.output_extension)

    build_history.save(input_directory, new_history)
    return stats, new_history


def make_textures(
    input_directory: Path,
    output_directory: Path,
    full_rebuild: bool = False,
    include_subdirs: bool = False,
    enable_subdir_removal: bool = False,
    resolver: Optional[TextureSettingsResolver] = None,
    output_format: str = "bmp",
) -> BuildStats:
    """Create or update the textures in *output_directory* from the images in *input_directory*."""
    input_directory = Path(input_directory)
    output_directory = Path(output_directory)
    if input_directory.is_file():
        raise InvalidUsageError("Unable to create or update textures: the input must be a directory, not a file.")
    if not input_directory.is_dir():
        raise InvalidUsageError(
            f"Unable to create or update textures: the input directory '{input_directory}' does not exist."
        )
    if output_format not in OUTPUT_FORMATS:
        raise InvalidUsageError(f"Unknown output format '{output_format}'.")

    options = BuildOptions(full_rebuild, include_subdirs, enable_subdir_removal, output_format)
    resolver = resolver or TextureSettingsResolver()
    conversion_directory = conversion_output_directory(input_directory)

    start_time = time.time()
    logging.info("Creating model textures from '%s' and saving it to '%s'.", input_directory, output_directory)
    try:
        stats, _ = _make_directory(input_directory, output_directory, conversion_directory, resolver, options)
    finally:
        remove_conversion_output_directory(conversion_directory)

    logging.info(
        "Updated '%s' from '%s': added %d, updated %d and removed %d textures, in %.3f seconds.",
        output_directory, input_directory, stats.added, stats.updated, stats.removed, time.time() - start_time,
    )
    return stats
