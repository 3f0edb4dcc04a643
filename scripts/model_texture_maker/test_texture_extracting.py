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
import texture_extracting as extracting
from image_io import load_indexed, save_indexed
from texture_settings import InvalidUsageError


def _palette():
    return [(i, (i * 7) % 256, 255 - i) for i in range(256)]


def _texture(name: str, indices, flags: int = 0) -> codec.MdlTexture:
    data = np.array(indices, dtype=np.uint8)
    return codec.MdlTexture(name, flags, data.shape[1], data.shape[0], data.tobytes(), _palette())


def _write_model(path: Path, textures) -> Path:
    stream = io.BytesIO()
    stream.write(codec._empty_model_header(path.name))
    skin_ids = b"".join(struct.pack("<h", i) for i in range(len(textures)))
    codec.add_textures(stream, textures, codec.MdlSkinData(len(textures), 1, skin_ids))
    path.write_bytes(stream.getvalue())
    return path


def _rgba(path: Path) -> np.ndarray:
    with Image.open(path) as image:
        return np.array(image.convert("RGBA"))


class TextureExtractingTests(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp = tempfile.TemporaryDirectory()
        self.root = Path(self._tmp.name)
        self.output = self.root / "out"

    def tearDown(self) -> None:
        self._tmp.cleanup()

    def test_full_color_with_masked_transparency(self) -> None:
        texture = _texture("skin.bmp", [[1, 2], [255, 4]], codec.MdlTextureFlags.MASKED_TRANSPARENCY)
        model = _write_model(self.root / "model.mdl", [texture])

        self.assertEqual(extracting.extract_textures(model, self.output), 1)

        pixels = _rgba(self.output / "skin.png")
        self.assertEqual(tuple(pixels[0, 0]), (1, 7, 254, 255))
        self.assertEqual(pixels[1, 0, 3], 0)
        self.assertEqual(pixels[1, 1, 3], 255)

    def test_remap_texture_bands(self) -> None:
        texture = _texture("remap1_160_191_223.bmp", [[0, 170], [200, 230]])
        model = _write_model(self.root / "model.mdl", [texture])

        self.assertEqual(extracting.extract_textures(model, self.output), 3)
        self.assertEqual(
            sorted(p.name for p in self.output.iterdir()),
            ["remap1.color1.png", "remap1.color2.png", "remap1.main 160.png"],
        )

        color1 = _rgba(self.output / "remap1.color1.png")
        self.assertEqual(color1[0, 1, 3], 255)
        self.assertEqual(int(color1[..., 3].astype(bool).sum()), 1)
        color2 = _rgba(self.output / "remap1.color2.png")
        self.assertEqual(color2[1, 0, 3], 255)
        self.assertEqual(int(color2[..., 3].astype(bool).sum()), 1)

    def test_remap_band_counts_in_file_names(self) -> None:
        texture = _texture("remap2_224_239_255.bmp", [[0, 1]])
        model = _write_model(self.root / "model.mdl", [texture])

        extracting.extract_textures(model, self.output)
        self.assertEqual(
            sorted(p.name for p in self.output.iterdir()),
            ["remap2.color1 16.png", "remap2.color2 16.png", "remap2.main.png"],
        )

    def test_dm_base_bands(self) -> None:
        model = _write_model(self.root / "model.mdl", [_texture("DM_Base.bmp", [[0, 180]])])

        extracting.extract_textures(model, self.output)
        self.assertEqual(
            sorted(p.name for p in self.output.iterdir()),
            ["DM_Base.color1.png", "DM_Base.color2.png", "DM_Base.png"],
        )

    def test_model_portrait_bands_are_swapped(self) -> None:
        model = _write_model(self.root / "model.mdl", [_texture("skin.bmp", [[0]])])
        indices = np.array([[10, 170], [200, 250]], dtype=np.uint8)
        save_indexed(self.root / "model.bmp", 2, 2, indices.tobytes(), _palette())

        self.assertEqual(extracting.extract_textures(model, self.output), 4)
        self.assertTrue((self.output / "model.portrait.png").is_file())

        # Indices 160..191 hold the color2 band of a portrait.
        color2 = _rgba(self.output / "model.color2.png")
        self.assertEqual(color2[0, 1, 3], 255)
        self.assertEqual(int(color2[..., 3].astype(bool).sum()), 1)
        color1 = _rgba(self.output / "model.color1.png")
        self.assertEqual(color1[1, 0, 3], 255)

    def test_indexed_extraction_keeps_indices_and_palette(self) -> None:
        texture = _texture("skin.bmp", [[1, 2, 3], [4, 5, 6]])
        model = _write_model(self.root / "model.mdl", [texture])

        extracting.extract_textures(model, self.output, image_format="bmp", as_indexed=True)

        image = load_indexed(self.output / "skin.bmp")
        self.assertEqual(image.image_data, texture.image_data)
        self.assertEqual(image.palette[:256], texture.palette)

    def test_external_texture_file(self) -> None:
        _write_model(self.root / "model.mdl", [])
        _write_model(self.root / "modelT.mdl", [_texture("skin.bmp", [[1]])])

        self.assertEqual(extracting.extract_textures(self.root / "model.mdl", self.output), 1)
        self.assertTrue((self.output / "skin.png").is_file())

    def test_existing_files_are_kept_without_overwrite(self) -> None:
        model = _write_model(self.root / "model.mdl", [_texture("skin.bmp", [[1]])])
        self.output.mkdir()
        (self.output / "skin.png").write_bytes(b"keep")

        with self.assertLogs(level="WARNING"):
            self.assertEqual(extracting.extract_textures(model, self.output), 0)
        self.assertEqual((self.output / "skin.png").read_bytes(), b"keep")

        self.assertEqual(extracting.extract_textures(model, self.output, overwrite=True), 1)
        self.assertNotEqual((self.output / "skin.png").read_bytes(), b"keep")

    def test_invalid_usage(self) -> None:
        model = _write_model(self.root / "model.mdl", [_texture("skin.bmp", [[1]])])
        with self.assertRaises(InvalidUsageError):
            extracting.extract_textures(self.root / "missing.mdl", self.output)
        with self.assertRaises(InvalidUsageError):
            extracting.extract_textures(model, self.output, image_format="webp")
        with self.assertRaises(InvalidUsageError):
            extracting.extract_textures(model, self.output, image_format="jpg", as_indexed=True)


if __name__ == "__main__":
    unittest.main()
