#!/usr/bin/env python3
import io
import struct
import sys
import tempfile
import unittest
from pathlib import Path

import numpy as np
from PIL import Image


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import mdl_codec as codec
import texture_replacing as replacing
from texture_settings import InvalidUsageError, TextureSettingsResolver

CHROME_AND_UNKNOWN = codec.MdlTextureFlags.CHROME | 0x8000


def _texture(name: str, width: int = 4, height: int = 2, flags: int = 0) -> codec.MdlTexture:
    return codec.MdlTexture(name, flags, width, height, bytes(width * height), [(9, 9, 9)] * 256)


def _write_model(path: Path, textures) -> Path:
    stream = io.BytesIO()
    stream.write(codec._empty_model_header(path.name))
    if textures:
        skin_ids = b"".join(struct.pack("<h", i) for i in range(len(textures)))
        codec.add_textures(stream, textures, codec.MdlSkinData(len(textures), 1, skin_ids))
    path.write_bytes(stream.getvalue())
    return path


def _write_image(path: Path, size=(4, 2), transparent_pixel: bool = False) -> None:
    pixels = np.full((size[1], size[0], 4), 255, dtype=np.uint8)
    pixels[..., 0] = np.arange(size[0], dtype=np.uint8) * 40
    if transparent_pixel:
        pixels[0, 0, 3] = 0
    Image.fromarray(pixels).save(path)


class TextureReplacingTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.input = self.root / "input"
        self.input.mkdir()
        self.output = self.root / "patched.mdl"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def _replace(self, model: Path) -> int:
        return replacing.replace_model_textures(self.input, model, self.output, TextureSettingsResolver())

    def test_model_texture_key(self) -> None:
        self.assertEqual(replacing.model_texture_key("Remap1_160_191_223.BMP"), "remap1")
        self.assertEqual(replacing.model_texture_key("Skin.bmp"), "skin")

    def test_embedded_textures_are_replaced_in_place(self) -> None:
        model = _write_model(self.root / "model.mdl", [
            _texture("skin.bmp", flags=CHROME_AND_UNKNOWN),
            _texture("remap1_160_191_223.bmp"),
            _texture("other.bmp", flags=codec.MdlTextureFlags.FULLBRIGHT),
        ])
        original = model.read_bytes()
        _write_image(self.input / "Skin.png", transparent_pixel=True)
        _write_image(self.input / "remap1.png")
        _write_image(self.input / "remap1.color1 16.png")
        _write_image(self.input / "unused.png")

        self.assertEqual(self._replace(model), 2)
        self.assertEqual(model.read_bytes(), original)

        skin, remap, other = codec.read_textures_from_file(self.output)
        self.assertEqual(skin.name, "skin.bmp")
        self.assertEqual(skin.flags, CHROME_AND_UNKNOWN | codec.MdlTextureFlags.MASKED_TRANSPARENCY)
        self.assertEqual(skin.image_data[0], codec.TRANSPARENT_COLOR_INDEX)
        self.assertEqual(remap.name, "remap1_240_255_255.bmp")
        self.assertEqual(remap.flags, 0)
        self.assertEqual(other, _texture("other.bmp", flags=codec.MdlTextureFlags.FULLBRIGHT))
        self.assertEqual(len(self.output.read_bytes()), len(original))

    def test_opaque_replacement_clears_masked_flag(self) -> None:
        masked = codec.MdlTextureFlags.MASKED_TRANSPARENCY | CHROME_AND_UNKNOWN
        model = _write_model(self.root / "model.mdl", [_texture("skin.bmp", flags=masked)])
        _write_image(self.input / "skin.png")

        self._replace(model)
        (skin,) = codec.read_textures_from_file(self.output)
        self.assertEqual(skin.flags, CHROME_AND_UNKNOWN)

    def test_size_mismatch_is_skipped(self) -> None:
        model = _write_model(self.root / "model.mdl", [_texture("skin.bmp")])
        _write_image(self.input / "skin.png", size=(8, 8))

        with self.assertLogs(level="WARNING"):
            self.assertEqual(self._replace(model), 0)
        self.assertEqual(codec.read_textures_from_file(self.output), [_texture("skin.bmp")])

    def test_external_textures_are_merged_into_model(self) -> None:
        model = _write_model(self.root / "model.mdl", [])
        _write_model(self.root / "modelT.mdl", [_texture("skin.bmp"), _texture("arm.bmp")])
        _write_image(self.input / "arm.png")

        self.assertEqual(self._replace(model), 1)

        with self.output.open("rb") as stream:
            textures = codec.read_textures(stream)
            skin_data = codec.read_skin_data(stream)
        self.assertEqual([t.name for t in textures], ["skin.bmp", "arm.bmp"])
        self.assertEqual(textures[0], _texture("skin.bmp"))
        self.assertNotEqual(textures[1].palette, _texture("arm.bmp").palette)
        self.assertEqual((skin_data.texture_count, skin_data.skin_count), (2, 1))
        self.assertEqual(skin_data.texture_ids, struct.pack("<hh", 0, 1))

    def test_model_without_textures(self) -> None:
        model = _write_model(self.root / "model.mdl", [])
        _write_image(self.input / "skin.png")

        with self.assertLogs(level="WARNING"):
            self.assertEqual(self._replace(model), 0)
        self.assertFalse(self.output.exists())

    def test_invalid_usage(self) -> None:
        model = _write_model(self.root / "model.mdl", [_texture("skin.bmp")])
        with self.assertRaises(InvalidUsageError):
            replacing.replace_model_textures(self.root / "missing", model)
        with self.assertRaises(InvalidUsageError):
            replacing.replace_model_textures(self.input, self.root / "missing.mdl")


if __name__ == "__main__":
    unittest.main()
