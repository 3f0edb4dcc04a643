#!/usr/bin/env python3
import json
import sys
import tempfile
import unittest
from pathlib import Path


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import build_history
from texture_settings import ColorMask, FileInfo, SourceFileInfo, TextureSettings


def _history() -> build_history.BuildHistory:
    output = FileInfo("out/remap1_192_223_255.bmp", 2048, "ab" * 32, 1_700_000_000_000)
    inputs = [
        SourceFileInfo("in/remap1.png", 100, "cd" * 32, 1_700_000_000_001, TextureSettings()),
        SourceFileInfo(
            "in/remap1.color1.png", 80, "ef" * 32, 1_700_000_000_002,
            TextureSettings(color_mask=ColorMask.COLOR1, transparency_color=(0, 0, 255)),
        ),
    ]
    texture = build_history.TextureHistory(output, inputs)
    return build_history.BuildHistory({texture.output_name: texture}, ["weapons", "players"])


class BuildHistoryTests(unittest.TestCase):
    def test_save_and_load(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            history = _history()
            self.assertTrue(build_history.save(Path(tmp), history))
            loaded = build_history.load(Path(tmp))

        self.assertEqual(loaded, history)
        self.assertIn("remap1_192_223_255", loaded.textures)

    def test_json_layout(self) -> None:
        payload = build_history.history_to_json(_history())
        self.assertEqual(payload["sub-directory-names"], ["weapons", "players"])
        entry = payload["textures"][0]
        self.assertEqual(
            sorted(entry["output-file"]), ["file-hash", "file-size", "last-modified", "path"]
        )
        self.assertEqual(entry["input-files"][1]["settings"], {"color-mask": "color1", "transparency-color": "0000FF"})

    def test_unknown_fields_are_ignored(self) -> None:
        payload = build_history.history_to_json(_history())
        payload["version"] = 3
        payload["textures"][0]["extra"] = {"x": 1}
        payload["textures"][0]["input-files"][0]["settings"]["new-setting"] = True

        loaded = build_history.history_from_json(payload)
        self.assertEqual(loaded, _history())

    def test_missing_history_is_none(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            self.assertIsNone(build_history.load(Path(tmp)))

    def test_corrupt_history_is_none(self) -> None:
        for content in ("{not json", "[1, 2]", json.dumps({"textures": [{"input-files": []}]})):
            with self.subTest(content=content), tempfile.TemporaryDirectory() as tmp:
                (Path(tmp) / build_history.HISTORY_FILENAME).write_text(content, encoding="utf-8")
                with self.assertLogs(level="WARNING"):
                    self.assertIsNone(build_history.load(Path(tmp)))

    def test_save_failure_is_reported(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            missing = Path(tmp) / "does-not-exist"
            with self.assertLogs(level="WARNING"):
                self.assertFalse(build_history.save(missing, _history()))

    def test_is_history_file(self) -> None:
        self.assertTrue(build_history.is_history_file(Path("x/modeltexturemaker.dat")))
        self.assertFalse(build_history.is_history_file(Path("x/modeltexturemaker.config")))


if __name__ == "__main__":
    unittest.main()
