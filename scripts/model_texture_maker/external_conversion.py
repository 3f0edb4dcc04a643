"""
external_conversion.py
======================

Runs user-configured converter executables (``converter: 'magick' arguments:
'{input} {output}.png'``) on source files that can not be loaded directly,
such as layered editor documents.

Converter output goes into a temporary ``modeltexturemaker_conversion_output``
directory under the top-level input directory. The caller owns that directory
and removes it when the build is done.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
from pathlib import Path
from typing import List

from texture_settings import CONVERTER_INPUT_MARKER, CONVERTER_OUTPUT_MARKER, validate_converter_arguments

CONVERSION_OUTPUT_DIRNAME = "modeltexturemaker_conversion_output"
CONVERTER_TIMEOUT_SECONDS = 300


class ConversionError(RuntimeError):
    pass


def conversion_output_directory(input_directory: Path) -> Path:
    return Path(input_directory) / CONVERSION_OUTPUT_DIRNAME


def is_conversion_output_directory(path: Path) -> bool:
    return Path(path).name == CONVERSION_OUTPUT_DIRNAME


def remove_conversion_output_directory(directory: Path) -> None:
    if not directory.exists():
        return
    try:
        shutil.rmtree(directory)
    except OSError as exc:
        logging.warning("Failed to delete temporary conversion output directory '%s': %s: '%s'.",
                        directory, type(exc).__name__, exc)


def converter_command(converter: str, arguments: str, input_path: Path, output_path: Path) -> List[str]:
    """Split the configured command line and substitute the ``{input}``/``{output}`` markers."""
    validate_converter_arguments(arguments)
    command = shlex.split(converter) or [converter]
    for token in shlex.split(arguments):
        command.append(
            token.replace(CONVERTER_INPUT_MARKER, str(input_path)).replace(CONVERTER_OUTPUT_MARKER, str(output_path))
        )
    return command


def run_converter(converter: str, arguments: str, input_path: Path, output_directory: Path) -> List[Path]:
    """Convert *input_path* into *output_directory* and return the files it produced.

    ``{output}`` is the output directory joined with the input file's stem, so a
    converter may pick any extension (and may embed settings in the name, like
    ``skin.color1 32.png``). Files whose name starts with that stem are returned.
    """
    input_path = Path(input_path)
    output_directory.mkdir(parents=True, exist_ok=True)
    output_path = output_directory / input_path.stem

    command = converter_command(converter, arguments, input_path, output_path)
    logging.debug("Running converter: %s", " ".join(shlex.quote(part) for part in command))

    try:
        result = subprocess.run(command, capture_output=True, text=True, timeout=CONVERTER_TIMEOUT_SECONDS)
    except FileNotFoundError as exc:
        raise ConversionError(f"Converter '{converter}' could not be started: {exc}") from exc
    except subprocess.TimeoutExpired as exc:
        raise ConversionError(f"Converter '{converter}' timed out after {exc.timeout} seconds.") from exc

    if result.returncode != 0:
        raise ConversionError(
            f"Converter '{converter}' failed for '{input_path}' (rc={result.returncode}): {result.stderr.strip()}"
        )

    prefix = input_path.stem + "."
    outputs = sorted(
        path for path in output_directory.iterdir()
        if path.is_file() and (path.name.startswith(prefix) or path.name == input_path.stem)
    )
    if not outputs:
        raise ConversionError(
            "Unable to find converter output file. An output file must have the same name as the input file "
            "(different extensions are ok)."
        )
    return outputs
