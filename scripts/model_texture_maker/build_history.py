"""
build_history.py
================

Per-directory record of the previous build, stored as ``modeltexturemaker.dat``
(JSON) in the input directory:

    {
      "textures": [
        {
          "output-file": {"path": ..., "file-size": ..., "file-hash": ..., "last-modified": ...},
          "input-files": [{"path": ..., "file-size": ..., "file-hash": ..., "last-modified": ...,
                           "settings": {"color-mask": "color1", ...}}]
        }
      ],
      "sub-directory-names": ["weapons", ...]
    }

Textures are keyed by their output file name without extension. Unknown keys
are ignored when reading. A missing or unreadable history only disables
incremental updates, so loading never raises.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from texture_settings import FileInfo, SourceFileInfo, TextureSettings

HISTORY_FILENAME = "modeltexturemaker.dat"


@dataclass
class TextureHistory:
    output_file: FileInfo
    input_files: List[SourceFileInfo]

    @property
    def output_name(self) -> str:
        return Path(self.output_file.path).stem


@dataclass
class BuildHistory:
    textures: Dict[str, TextureHistory] = field(default_factory=dict)
    sub_directory_names: List[str] = field(default_factory=list)


def is_history_file(path: Path) -> bool:
    return Path(path).name == HISTORY_FILENAME


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _file_info_to_json(info: FileInfo) -> Dict[str, Any]:
    return {
        "path": info.path,
        "file-size": info.file_size,
        "file-hash": info.file_hash,
        "last-modified": info.last_modified,
    }


def _source_file_to_json(info: SourceFileInfo) -> Dict[str, Any]:
    payload = _file_info_to_json(info)
    payload["settings"] = info.settings.to_dict()
    return payload


def _file_info_from_json(payload: Dict[str, Any]) -> FileInfo:
    return FileInfo(
        str(payload["path"]),
        int(payload.get("file-size", 0)),
        str(payload.get("file-hash", "")),
        int(payload.get("last-modified", 0)),
    )


def _source_file_from_json(payload: Dict[str, Any]) -> SourceFileInfo:
    info = _file_info_from_json(payload)
    settings = TextureSettings.from_dict(payload.get("settings") or {})
    return SourceFileInfo(info.path, info.file_size, info.file_hash, info.last_modified, settings)


def history_to_json(history: BuildHistory) -> Dict[str, Any]:
    return {
        "textures": [
            {
                "output-file": _file_info_to_json(texture.output_file),
                "input-files": [_source_file_to_json(info) for info in texture.input_files],
            }
            for texture in history.textures.values()
        ],
        "sub-directory-names": list(history.sub_directory_names),
    }


def history_from_json(payload: Dict[str, Any]) -> BuildHistory:
    history = BuildHistory()
    for entry in payload.get("textures") or []:
        texture = TextureHistory(
            _file_info_from_json(entry["output-file"]),
            [_source_file_from_json(item) for item in entry.get("input-files") or []],
        )
        history.textures[texture.output_name] = texture
    history.sub_directory_names = [str(name) for name in payload.get("sub-directory-names") or [] if name is not None]
    return history


# ---------------------------------------------------------------------------
# Load / save
# ---------------------------------------------------------------------------

def load(directory: Path) -> Optional[BuildHistory]:
    """Load the history for *directory*, or None if there is none or it can not be read."""
    path = Path(directory) / HISTORY_FILENAME
    if not path.is_file():
        return None
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
        if not isinstance(payload, dict):
            raise ValueError("history root is not an object")
        return history_from_json(payload)
    except Exception as exc:
        logging.warning("Ignoring unreadable build history '%s': %s: '%s'.", path, type(exc).__name__, exc)
        return None


def save(directory: Path, history: BuildHistory) -> bool:
    """Write the history for *directory*. Failures are logged and reported as False."""
    path = Path(directory) / HISTORY_FILENAME
    try:
        path.write_text(json.dumps(history_to_json(history), indent=2), encoding="utf-8")
    except (OSError, TypeError, ValueError) as exc:
        logging.warning("Failed to save build history '%s': %s: '%s'.", path, type(exc).__name__, exc)
        return False
    return True
