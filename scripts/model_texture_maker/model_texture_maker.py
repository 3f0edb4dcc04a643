#!/usr/bin/env python3
"""
model_texture_maker.py
======================

Command line entry point. The mode follows from the paths that are given:

* build:   ``model_texture_maker.py [options] <input_dir> [output_dir]``
  Creates or updates indexed textures (default output: ``<input_dir>_textures``).
* extract: ``model_texture_maker.py [options] <model.mdl> [output_dir]``
  Extracts the textures of a model (default output: ``<model>_extracted``).
* replace: ``model_texture_maker.py [options] <input_dir> <model.mdl> [output.mdl]``
  Rebuilds the textures of a model from images (default: overwrite the model).

Example usage:

    python model_texture_maker.py textures/ --subdirs
    python model_texture_maker.py models/barney.mdl --format png
    python model_texture_maker.py skins/ models/barney.mdl models/barney_red.mdl
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from image_io import IMAGE_FORMATS
from texture_extracting import extract_textures
from texture_making import OUTPUT_FORMATS, make_textures
from texture_replacing import replace_model_textures
from texture_settings import CONFIG_FILENAME, InvalidUsageError, TextureSettingsResolver

LOG_FORMAT = "%(asctime)s %(levelname)-8s %(message)s"
LOG_DATE_FORMAT = "%H:%M:%S"
DEFAULT_GLOBAL_CONFIG = Path(__file__).resolve().with_name(CONFIG_FILENAME)


@dataclass(frozen=True)
class Invocation:
    mode: str                       # "build", "extract" or "replace"
    input_path: Path
    output_path: Path
    model_path: Optional[Path] = None


def parse_args(argv: Sequence[str]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Create, extract or replace the 8-bit indexed textures of MDL (v10) models."
    )
    parser.add_argument("paths", nargs="+", type=Path, help="Input directory or model file, followed by optional outputs.")
    parser.add_argument("--full", action="store_true", help="Rebuild all textures instead of only changed ones.")
    parser.add_argument("--subdirs", action="store_true", help="Also process input sub-directories.")
    parser.add_argument(
        "--subdir-removal",
        action="store_true",
        help="Delete output sub-directories whose input sub-directory has been removed (with --subdirs).",
    )
    parser.add_argument("--overwrite", action="store_true", help="Extract mode: overwrite existing image files.")
    parser.add_argument(
        "--format",
        choices=sorted(IMAGE_FORMATS),
        default="png",
        help="Extract mode: image format of extracted textures (default: %(default)s).",
    )
    parser.add_argument(
        "--indexed",
        action="store_true",
        help="Extract mode: save indexed images with the original palette (png, gif and bmp only).",
    )
    parser.add_argument(
        "--output-format",
        choices=sorted(OUTPUT_FORMATS),
        default="bmp",
        help="Build mode: write textures as indexed bmp images or texture-only mdl files (default: %(default)s).",
    )
    parser.add_argument(
        "--global-config",
        type=Path,
        default=DEFAULT_GLOBAL_CONFIG,
        help=f"Global {CONFIG_FILENAME} rule file (default: %(default)s).",
    )
    parser.add_argument("--no-log-file", action="store_true", help="Do not write a log file next to the input.")
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    return parser.parse_args(argv)


def resolve_invocation(paths: Sequence[Path]) -> Invocation:
    first = paths[0]
    if first.is_file():
        if first.suffix.lower() != ".mdl":
            raise InvalidUsageError(f"'{first}' is not an .mdl file. Pass a directory to build textures.")
        if len(paths) > 2:
            raise InvalidUsageError("Extract mode takes a model file and an optional output directory.")
        output = paths[1] if len(paths) > 1 else first.with_name(first.stem + "_extracted")
        return Invocation("extract", first, output)

    if len(paths) > 1 and paths[1].is_file():
        if paths[1].suffix.lower() != ".mdl":
            raise InvalidUsageError(f"'{paths[1]}' is not an .mdl file.")
        if len(paths) > 3:
            raise InvalidUsageError("Replace mode takes an input directory, a model file and an optional output file.")
        output = paths[2] if len(paths) > 2 else paths[1]
        return Invocation("replace", first, output, model_path=paths[1])

    if len(paths) > 2:
        raise InvalidUsageError("Build mode takes an input directory and an optional output directory.")
    if not first.is_dir():
        raise InvalidUsageError(f"The input directory '{first}' does not exist.")
    output = paths[1] if len(paths) > 1 else Path(str(first).rstrip("/\\") + "_textures")
    return Invocation("build", first, output)


def configure_logging(verbose: bool, log_file: Optional[Path]) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
    )
    if log_file is not None:
        handler = logging.FileHandler(log_file, mode="w", encoding="utf-8")
        handler.setFormatter(logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT))
        logging.getLogger().addHandler(handler)


def log_file_path(input_path: Path) -> Path:
    resolved = input_path.resolve()
    return resolved.parent / f"modeltexturemaker - {resolved.stem}.log"


def run(args: argparse.Namespace, invocation: Invocation) -> None:
    global_config = args.global_config if args.global_config.is_file() else None
    resolver = TextureSettingsResolver(global_config)

    if invocation.mode == "extract":
        extract_textures(
            invocation.input_path,
            invocation.output_path,
            overwrite=args.overwrite,
            image_format=args.format,
            as_indexed=args.indexed,
        )
    elif invocation.mode == "replace":
        replace_model_textures(invocation.input_path, invocation.model_path, invocation.output_path, resolver)
    else:
        make_textures(
            invocation.input_path,
            invocation.output_path,
            full_rebuild=args.full,
            include_subdirs=args.subdirs,
            enable_subdir_removal=args.subdir_removal,
            resolver=resolver,
            output_format=args.output_format,
        )


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(sys.argv[1:] if argv is None else argv)

    try:
        invocation = resolve_invocation(args.paths)
    except InvalidUsageError as exc:
        configure_logging(args.verbose, None)
        logging.error("ERROR: %s", exc)
        return 2

    configure_logging(args.verbose, None if args.no_log_file else log_file_path(invocation.input_path))
    logging.info("model_texture_maker %s", " ".join(str(a) for a in (sys.argv[1:] if argv is None else argv)))

    try:
        run(args, invocation)
    except InvalidUsageError as exc:
        logging.error("ERROR: %s", exc)
        return 2
    except Exception as exc:
        logging.error("ERROR: %s: '%s'.", type(exc).__name__, exc)
        logging.debug("Traceback:", exc_info=True)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
