#!/usr/bin/env python3
import io
import struct
import sys
import tempfile
import unittest
from pathlib import Path


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import mdl_codec as codec


def _texture(name: str, width: int = 4, height: int = 2, seed: int = 0, flags: int = 0) -> codec.MdlTexture:
    image_data = bytes((seed + i) % 256 for i in range(width * height))
    palette = [((i + seed) % 256, (i * 3) % 256, (255 - i) % 256) for i in range(256)]
    return codec.MdlTexture(name, flags, width, height, image_data, palette)


def _model_with_textures(textures) -> io.BytesIO:
    stream = io.BytesIO()
    stream.write(codec._empty_model_header("model.mdl"))
    skin_ids = b"".join(struct.pack("<h", i) for i in range(len(textures)))
    codec.add_textures(stream, textures, codec.MdlSkinData(len(textures), 1, skin_ids))
    return stream


class MdlCodecTests(unittest.TestCase):
    def test_standalone_texture_round_trip(self) -> None:
        texture = _texture("skin.bmp", 5, 3, seed=7, flags=codec.MdlTextureFlags.MASKED_TRANSPARENCY | 0x8000)
        stream = io.BytesIO()
        codec.write_standalone_texture(stream, texture)

        textures = codec.read_textures(stream)
        self.assertEqual(textures, [texture])
        self.assertTrue(textures[0].has_masked_transparency)
        self.assertEqual(textures[0].flags & 0x8000, 0x8000)

    def test_standalone_texture_header_fields(self) -> None:
        texture = _texture("a.bmp", 2, 2)
        stream = io.BytesIO()
        codec.write_standalone_texture(stream, texture)
        data = stream.getvalue()

        self.assertEqual(data[:4], b"IDST")
        self.assertEqual(struct.unpack_from("<i", data, 4)[0], 10)
        self.assertEqual(struct.unpack_from("<i", data, codec.FILE_SIZE_FIELD_OFFSET)[0], len(data))
        self.assertEqual(struct.unpack_from("<i", data, codec.TEXTURE_COUNT_FIELD_OFFSET)[0], 1)
        self.assertEqual(len(data), codec.MDL_HEADER_SIZE + 2 + codec.TEXTURE_INFO_STRUCT_SIZE + 4 + 768)

    def test_short_palette_is_padded_with_black(self) -> None:
        texture = codec.MdlTexture("p.bmp", 0, 1, 1, b"\x01", [(1, 2, 3), (4, 5, 6)])
        stream = io.BytesIO()
        codec.write_standalone_texture(stream, texture)

        palette = codec.read_textures(stream)[0].palette
        self.assertEqual(len(palette), 256)
        self.assertEqual(palette[:2], [(1, 2, 3), (4, 5, 6)])
        self.assertEqual(set(palette[2:]), {(0, 0, 0)})

    def test_replace_with_mismatched_count_changes_nothing(self) -> None:
        stream = _model_with_textures([_texture(f"t{i}.bmp", seed=i) for i in range(5)])
        before = stream.getvalue()

        with self.assertLogs(level="WARNING") as logs:
            replaced = codec.replace_textures(stream, [_texture(f"n{i}.bmp", seed=50 + i) for i in range(3)])

        self.assertEqual(replaced, 0)
        self.assertEqual(stream.getvalue(), before)
        self.assertEqual(len(logs.records), 1)

    def test_replace_keeps_offsets_and_skips_size_mismatch(self) -> None:
        stream = _model_with_textures([_texture("a.bmp", seed=1), _texture("b.bmp", seed=2)])
        infos_before = codec.read_texture_infos(stream)
        size_before = len(stream.getvalue())

        replacement = [_texture("c.bmp", seed=9), _texture("d.bmp", width=8, height=8, seed=3)]
        with self.assertLogs(level="WARNING"):
            replaced = codec.replace_textures(stream, replacement)

        self.assertEqual(replaced, 1)
        self.assertEqual(len(stream.getvalue()), size_before)
        infos_after = codec.read_texture_infos(stream)
        self.assertEqual([i.data_offset for i in infos_after], [i.data_offset for i in infos_before])

        textures = codec.read_textures(stream)
        self.assertEqual(textures[0], replacement[0])
        self.assertEqual(textures[1], _texture("b.bmp", seed=2))

    def test_add_textures_refuses_when_textures_exist(self) -> None:
        stream = _model_with_textures([_texture("a.bmp")])
        before = stream.getvalue()

        with self.assertLogs(level="WARNING"):
            added = codec.add_textures(stream, [_texture("b.bmp")], codec.MdlSkinData(1, 1, b"\x00\x00"))

        self.assertFalse(added)
        self.assertEqual(stream.getvalue(), before)

    def test_read_skin_data(self) -> None:
        textures = [_texture("a.bmp"), _texture("b.bmp", seed=4)]
        stream = io.BytesIO()
        stream.write(codec._empty_model_header("m"))
        skin_ids = struct.pack("<4h", 0, 1, 1, 0)
        codec.add_textures(stream, textures, codec.MdlSkinData(2, 2, skin_ids))

        skin_data = codec.read_skin_data(stream)
        self.assertEqual((skin_data.texture_count, skin_data.skin_count), (2, 2))
        self.assertEqual(skin_data.texture_ids, skin_ids)

    def test_reads_external_textures_when_model_has_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            model_path = Path(tmp) / "barney.mdl"
            model_path.write_bytes(codec._empty_model_header("barney.mdl"))
            external = _model_with_textures([_texture("skin.bmp", seed=5)])
            (Path(tmp) / "barneyT.mdl").write_bytes(external.getvalue())

            self.assertEqual(codec.read_textures_from_file(model_path, include_external=False), [])
            self.assertEqual(codec.read_textures_from_file(model_path), [_texture("skin.bmp", seed=5)])

    def test_external_textures_path(self) -> None:
        self.assertEqual(codec.external_textures_path(Path("models/scientist.mdl")), Path("models/scientistT.mdl"))

    def test_rejects_bad_signature_and_version(self) -> None:
        with self.assertRaises(codec.MdlFormatError):
            codec.read_texture_infos(io.BytesIO(b"IDPO" + bytes(240)))

        header = bytearray(codec._empty_model_header("m"))
        header[4:8] = struct.pack("<i", 6)
        with self.assertRaises(codec.MdlVersionError):
            codec.read_texture_infos(io.BytesIO(bytes(header)))

    def test_truncated_texture_data_raises_format_error(self) -> None:
        stream = io.BytesIO()
        codec.write_standalone_texture(stream, _texture("a.bmp", 4, 4))
        truncated = io.BytesIO(stream.getvalue()[:-100])
        with self.assertRaises(codec.MdlFormatError):
            codec.read_textures(truncated)

    def test_long_names_are_truncated_and_terminated(self) -> None:
        texture = _texture("x" * 100 + ".bmp", 1, 1)
        stream = io.BytesIO()
        codec.write_standalone_texture(stream, texture)
        self.assertEqual(codec.read_texture_infos(stream)[0].name, "x" * 63)


if __name__ == "__main__":
    unittest.main()
