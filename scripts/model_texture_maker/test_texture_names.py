#!/usr/bin/env python3
import sys
import unittest
from pathlib import Path


SCRIPT_DIR = Path(__file__).resolve().parent
if str(SCRIPT_DIR) not in sys.path:
    sys.path.insert(0, str(SCRIPT_DIR))

import texture_names as names


class TextureNameTests(unittest.TestCase):
    def test_texture_name_from_path(self) -> None:
        self.assertEqual(names.texture_name_from_path(Path("Skin.color1 32.PNG")), "skin")
        self.assertEqual(names.texture_name_from_path(Path("dir/DM_Base.bmp")), "dm_base")
        self.assertEqual(names.texture_name_from_path(Path("noext")), "noext")

    def test_remap_inputs(self) -> None:
        self.assertTrue(names.is_remap_input("remap1"))
        self.assertTrue(names.is_remap_input("remapz"))
        self.assertFalse(names.is_remap_input("remap10"))
        self.assertTrue(names.is_dm_base_input("dm_base"))
        self.assertFalse(names.supports_color_remapping("skin"))

    def test_remap_output_name_and_ranges(self) -> None:
        name = names.remap_output_name("remap1", 160, 32, 32)
        self.assertEqual(name, "remap1_160_191_223")
        self.assertEqual(names.remap_ranges(name + ".bmp"), (160, 191, 223))
        self.assertEqual(names.remap_base_name(name + ".bmp"), "remap1")
        self.assertIsNone(names.remap_ranges("skin.bmp"))
        self.assertEqual(names.remap_output_name("remap2", 256, 0, 0), "remap2_256_255_255")

    def test_dm_base_ranges(self) -> None:
        self.assertEqual(names.dm_base_remap_ranges("DM_Base.bmp"), (160, 191, 223))
        self.assertIsNone(names.dm_base_remap_ranges("skin.bmp"))


if __name__ == "__main__":
    unittest.main()
