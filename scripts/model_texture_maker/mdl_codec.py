#!/usr/bin/env python3
"""
mdl_codec.py
============

Reader/writer for the texture and skin blocks of Half-Life style MDL (v10)
model containers.

Only the fields needed for texture work are touched. Everything is read from
and written to fixed header offsets on a seekable binary stream:

    offset  72  file size
    offset 180  texture count, texture info offset, texture data offset
    offset 192  skin texture count, skin family count, skin data offset

A texture info record is 80 bytes (64-byte name, flags, width, height, data
offset). Texture data is ``width * height`` index bytes followed by a 256-entry
RGB palette.
"""

from __future__ import annotations

import enum
import io
import logging
import struct
from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO, List, Optional, Sequence, Tuple


class MdlFormatError(ValueError):
    pass


class MdlVersionError(MdlFormatError):
    pass


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MDL_SIGNATURE = b"IDST"
MDL_VERSION = 10
MDL_HEADER_SIZE = 244

FILE_SIZE_FIELD_OFFSET = 72
TEXTURE_COUNT_FIELD_OFFSET = 180
TEXTURE_INFO_OFFSET_FIELD_OFFSET = 184
SKIN_TEXTURE_COUNT_FIELD_OFFSET = 192

TEXTURE_NAME_LENGTH = 64
TEXTURE_INFO_STRUCT_SIZE = 80
MODEL_NAME_LENGTH = 64

MAX_PALETTE_SIZE = 256
PALETTE_ENTRY_SIZE = 3
TRANSPARENT_COLOR_INDEX = 255
SKIN_ENTRY_SIZE = 2     # short texture index per skin reference

RGB = Tuple[int, int, int]
BLACK: RGB = (0, 0, 0)


class MdlTextureFlags(enum.IntFlag):
    NONE = 0
    FLATSHADED = 0x01
    CHROME = 0x02
    FULLBRIGHT = 0x04
    MIPMAPS = 0x08
    ALPHA = 0x10
    ADDITIVE = 0x20
    MASKED_TRANSPARENCY = 0x40   # 1-bit color-key transparency (index 255)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass
class MdlTexture:
    name: str
    flags: int
    width: int
    height: int
    image_data: bytes
    palette: List[RGB] = field(default_factory=list)

    @property
    def has_masked_transparency(self) -> bool:
        return bool(self.flags & MdlTextureFlags.MASKED_TRANSPARENCY)


@dataclass(frozen=True)
class MdlTextureInfo:
    name: str
    flags: int
    width: int
    height: int
    data_offset: int


@dataclass(frozen=True)
class MdlSkinData:
    texture_count: int
    skin_count: int
    texture_ids: bytes


# ---------------------------------------------------------------------------
# Low level helpers
# ---------------------------------------------------------------------------

def _read_exact(stream: BinaryIO, size: int) -> bytes:
    data = stream.read(size)
    if len(data) != size:
        raise MdlFormatError(
            f"Unexpected end of file at offset {stream.tell()} (need {size} bytes, got {len(data)})"
        )
    return data


def _read_int(stream: BinaryIO) -> int:
    return struct.unpack("<i", _read_exact(stream, 4))[0]


def _write_int(stream: BinaryIO, value: int) -> None:
    stream.write(struct.pack("<i", value))


def _read_c_string(stream: BinaryIO, length: int) -> str:
    raw = _read_exact(stream, length)
    null_pos = raw.find(b"\x00")
    if null_pos >= 0:
        raw = raw[:null_pos]
    return raw.decode("ascii", errors="replace")


def _write_c_string(stream: BinaryIO, value: str, length: int) -> None:
    # Always keep a terminating null byte.
    raw = value.encode("ascii", errors="replace")[:length - 1]
    stream.write(raw + b"\x00" * (length - len(raw)))


def _write_palette(stream: BinaryIO, palette: Sequence[Sequence[int]]) -> None:
    out = bytearray(MAX_PALETTE_SIZE * PALETTE_ENTRY_SIZE)
    for index, color in enumerate(palette[:MAX_PALETTE_SIZE]):
        off = index * PALETTE_ENTRY_SIZE
        out[off:off + 3] = bytes((color[0] & 0xFF, color[1] & 0xFF, color[2] & 0xFF))
    stream.write(bytes(out))


def _read_palette(stream: BinaryIO) -> List[RGB]:
    raw = _read_exact(stream, MAX_PALETTE_SIZE * PALETTE_ENTRY_SIZE)
    return [
        (raw[i], raw[i + 1], raw[i + 2])
        for i in range(0, len(raw), PALETTE_ENTRY_SIZE)
    ]


def verify_file_header(stream: BinaryIO) -> None:
    stream.seek(0)
    signature = stream.read(4)
    if signature != MDL_SIGNATURE:
        raise MdlFormatError(f"Expected file to start with 'IDST' but found {signature!r}")
    version = _read_int(stream)
    if version != MDL_VERSION:
        raise MdlVersionError(f"Only MDL v{MDL_VERSION} is supported (found version {version})")


def external_textures_path(model_path: Path) -> Path:
    """Return the ``<model>T.mdl`` sibling that holds textures stored outside the model."""
    return model_path.with_name(f"{model_path.stem}T.mdl")


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------

def _read_texture_infos_unchecked(stream: BinaryIO) -> List[MdlTextureInfo]:
    stream.seek(TEXTURE_COUNT_FIELD_OFFSET)
    texture_count = _read_int(stream)
    texture_offset = _read_int(stream)
    if texture_count < 0:
        raise MdlFormatError(f"Invalid texture count: {texture_count}")

    stream.seek(texture_offset)
    infos: List[MdlTextureInfo] = []
    for _ in range(texture_count):
        infos.append(MdlTextureInfo(
            name=_read_c_string(stream, TEXTURE_NAME_LENGTH),
            flags=_read_int(stream),
            width=_read_int(stream),
            height=_read_int(stream),
            data_offset=_read_int(stream),
        ))
    return infos


def read_texture_infos(stream: BinaryIO) -> List[MdlTextureInfo]:
    """Read texture names, flags, sizes and data offsets (no pixel data)."""
    verify_file_header(stream)
    return _read_texture_infos_unchecked(stream)


def _read_texture_payloads(stream: BinaryIO) -> List[MdlTexture]:
    textures: List[MdlTexture] = []
    for info in _read_texture_infos_unchecked(stream):
        if info.width < 0 or info.height < 0:
            raise MdlFormatError(f"Invalid size for texture '{info.name}': {info.width} x {info.height}")
        stream.seek(info.data_offset)
        image_data = _read_exact(stream, info.width * info.height)
        palette = _read_palette(stream)
        textures.append(MdlTexture(info.name, info.flags, info.width, info.height, image_data, palette))
    return textures


def read_textures(
    stream: BinaryIO,
    include_external: bool = False,
    model_path: Optional[Path] = None,
) -> List[MdlTexture]:
    """Read all textures, including pixel data and palettes.

    When the container declares no textures and *include_external* is set, the
    ``<model>T.mdl`` sibling of *model_path* is read instead (if it exists).
    """
    verify_file_header(stream)
    textures = _read_texture_payloads(stream)

    if not textures and include_external and model_path is not None:
        external_path = external_textures_path(model_path)
        if external_path.is_file():
            logging.debug("No embedded textures, reading external textures from %s", external_path)
            with external_path.open("rb") as external:
                verify_file_header(external)
                textures = _read_texture_payloads(external)
    return textures


def read_textures_from_file(path: Path, include_external: bool = True) -> List[MdlTexture]:
    with path.open("rb") as stream:
        return read_textures(stream, include_external=include_external, model_path=path)


def read_skin_data(stream: BinaryIO) -> MdlSkinData:
    verify_file_header(stream)
    stream.seek(SKIN_TEXTURE_COUNT_FIELD_OFFSET)
    texture_count = _read_int(stream)
    skin_count = _read_int(stream)
    skin_data_offset = _read_int(stream)

    stream.seek(skin_data_offset)
    texture_ids = _read_exact(stream, texture_count * skin_count * SKIN_ENTRY_SIZE)
    return MdlSkinData(texture_count, skin_count, texture_ids)


# ---------------------------------------------------------------------------
# Writing
# ---------------------------------------------------------------------------

def add_textures(stream: BinaryIO, textures: Sequence[MdlTexture], skin_data: MdlSkinData) -> bool:
    """Append skin data and textures to a model that has no textures yet.

    Returns False (and leaves the stream untouched) if the model already
    contains textures.
    """
    verify_file_header(stream)
    if _read_texture_infos_unchecked(stream):
        logging.warning("Model already contains textures; not adding %d textures.", len(textures))
        return False

    # New data is appended at the current end of the file, as recorded in the header:
    stream.seek(FILE_SIZE_FIELD_OFFSET)
    old_file_size = _read_int(stream)

    stream.seek(SKIN_TEXTURE_COUNT_FIELD_OFFSET)
    _write_int(stream, skin_data.texture_count)
    _write_int(stream, skin_data.skin_count)
    _write_int(stream, old_file_size)

    stream.seek(old_file_size)
    stream.write(skin_data.texture_ids)

    texture_info_offset = stream.tell()
    texture_data_offset = texture_info_offset + len(textures) * TEXTURE_INFO_STRUCT_SIZE

    stream.seek(TEXTURE_COUNT_FIELD_OFFSET)
    _write_int(stream, len(textures))
    _write_int(stream, texture_info_offset)
    _write_int(stream, texture_data_offset)

    stream.seek(texture_info_offset)
    data_offset = texture_data_offset
    for texture in textures:
        _write_c_string(stream, texture.name, TEXTURE_NAME_LENGTH)
        _write_int(stream, int(texture.flags))
        _write_int(stream, texture.width)
        _write_int(stream, texture.height)
        _write_int(stream, data_offset)
        data_offset += texture.width * texture.height + MAX_PALETTE_SIZE * PALETTE_ENTRY_SIZE

    for texture in textures:
        stream.write(bytes(texture.image_data))
        _write_palette(stream, texture.palette)

    new_file_size = stream.tell()
    stream.seek(FILE_SIZE_FIELD_OFFSET)
    _write_int(stream, new_file_size)
    stream.seek(0)
    return True


def replace_textures(stream: BinaryIO, textures: Sequence[MdlTexture]) -> int:
    """Overwrite existing textures in place and return how many were replaced.

    The replacement list must match the existing texture count. Textures whose
    size differs from the slot they replace are skipped. Data offsets, sizes and
    the overall file layout never change.
    """
    verify_file_header(stream)
    infos = _read_texture_infos_unchecked(stream)
    if not infos:
        return 0

    if len(textures) != len(infos):
        logging.warning(
            "Texture count mismatch (%d replacements for %d textures). Textures will not be replaced.",
            len(textures), len(infos),
        )
        return 0

    stream.seek(TEXTURE_INFO_OFFSET_FIELD_OFFSET)
    texture_info_offset = _read_int(stream)

    replaced = 0
    for index, (info, texture) in enumerate(zip(infos, textures)):
        if texture.width != info.width or texture.height != info.height:
            logging.warning(
                "'%s' has different dimensions (%d x %d instead of %d x %d). Skipping texture.",
                texture.name, texture.width, texture.height, info.width, info.height,
            )
            continue

        # Width, height and data offset stay as they are.
        stream.seek(texture_info_offset + index * TEXTURE_INFO_STRUCT_SIZE)
        _write_c_string(stream, texture.name, TEXTURE_NAME_LENGTH)
        _write_int(stream, int(texture.flags))

        stream.seek(info.data_offset)
        stream.write(bytes(texture.image_data))
        _write_palette(stream, texture.palette)
        replaced += 1

    stream.seek(0)
    return replaced


def _empty_model_header(name: str) -> bytes:
    header = io.BytesIO(bytes(MDL_HEADER_SIZE))
    header.write(MDL_SIGNATURE)
    _write_int(header, MDL_VERSION)
    _write_c_string(header, name, MODEL_NAME_LENGTH)
    _write_int(header, MDL_HEADER_SIZE)
    return header.getvalue()


def write_standalone_texture(stream: BinaryIO, texture: MdlTexture) -> None:
    """Write *texture* as a texture-only MDL container (one texture, one skin family)."""
    stream.seek(0)
    stream.truncate()
    stream.write(_empty_model_header(texture.name))
    skin_data = MdlSkinData(texture_count=1, skin_count=1, texture_ids=struct.pack("<h", 0))
    add_textures(stream, [texture], skin_data)
