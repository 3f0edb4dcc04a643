"""
texture_settings.py
===================

Per-file texture settings and how they are resolved.

Settings come from (in increasing priority):

* the global ``modeltexturemaker.config`` rule file,
* the input directory's own ``modeltexturemaker.config`` rule file,
* segments embedded in the file name (``skin.color1 32.png``, ``face.portrait.png``).

Rule files hold one rule per line::

    // comment
    *.tga           transparency-threshold: 64
    remap1.psd      converter: 'magick' arguments: '{input} {output}.png'
    dm_base.png     dithering: none color-count: 192

Wildcard patterns (``*``) are applied before exact file or texture names, and
later lines win over earlier ones within each group.
"""

from __future__ import annotations

import enum
import hashlib
import logging
import re
import time
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Callable, Dict, List, Optional, Tuple

from texture_names import texture_name_from_path

CONFIG_FILENAME = "modeltexturemaker.config"
DEFAULT_TRANSPARENCY_THRESHOLD = 128
DEFAULT_DITHER_SCALE = 0.75

CONVERTER_INPUT_MARKER = "{input}"
CONVERTER_OUTPUT_MARKER = "{output}"

RGB = Tuple[int, int, int]


class TextureSettingsError(ValueError):
    pass


class InvalidUsageError(Exception):
    """Bad command line input or input paths; reported without a traceback."""


class ColorMask(enum.IntEnum):
    MAIN = 0
    COLOR1 = 1
    COLOR2 = 2

    def to_str(self) -> str:
        return self.name.lower()

    @classmethod
    def parse(cls, value: str) -> "ColorMask":
        try:
            return cls[value.strip().upper()]
        except KeyError:
            raise TextureSettingsError(f"Invalid color mask: '{value}'.") from None


class DitheringAlgorithm(enum.Enum):
    NONE = "none"
    FLOYD_STEINBERG = "floyd-steinberg"

    @classmethod
    def parse(cls, value: str) -> "DitheringAlgorithm":
        try:
            return cls(value.strip().lower())
        except ValueError:
            raise TextureSettingsError(f"Invalid dithering algorithm: '{value}'.") from None


def color_to_hex(color: RGB) -> str:
    return "{:02X}{:02X}{:02X}".format(*color)


def color_from_hex(value: str) -> RGB:
    text = value.strip().lstrip("#")
    if len(text) not in (6, 8) or not re.fullmatch(r"[0-9a-fA-F]+", text):
        raise TextureSettingsError(f"Invalid color: '{value}'.")
    return int(text[0:2], 16), int(text[2:4], 16), int(text[4:6], 16)


@dataclass(frozen=True)
class TextureSettings:
    ignore: Optional[bool] = None
    color_mask: Optional[ColorMask] = None
    color_count: Optional[int] = None
    is_model_portrait: Optional[bool] = None
    preserve_palette: Optional[bool] = None
    dithering_algorithm: Optional[DitheringAlgorithm] = None
    dither_scale: Optional[float] = None
    transparency_threshold: Optional[int] = None
    transparency_color: Optional[RGB] = None
    converter: Optional[str] = None
    converter_arguments: Optional[str] = None

    def override_with(self, other: "TextureSettings") -> "TextureSettings":
        """Return a copy where every field that is set in *other* replaces ours."""
        return TextureSettings(
            ignore=other.ignore if other.ignore is not None else self.ignore,
            color_mask=other.color_mask if other.color_mask is not None else self.color_mask,
            color_count=other.color_count if other.color_count is not None else self.color_count,
            is_model_portrait=(
                other.is_model_portrait if other.is_model_portrait is not None else self.is_model_portrait
            ),
            preserve_palette=(
                other.preserve_palette if other.preserve_palette is not None else self.preserve_palette
            ),
            dithering_algorithm=(
                other.dithering_algorithm if other.dithering_algorithm is not None else self.dithering_algorithm
            ),
            dither_scale=other.dither_scale if other.dither_scale is not None else self.dither_scale,
            transparency_threshold=(
                other.transparency_threshold
                if other.transparency_threshold is not None
                else self.transparency_threshold
            ),
            transparency_color=(
                other.transparency_color if other.transparency_color is not None else self.transparency_color
            ),
            converter=other.converter if other.converter is not None else self.converter,
            converter_arguments=(
                other.converter_arguments if other.converter_arguments is not None else self.converter_arguments
            ),
        )

    @property
    def effective_color_mask(self) -> ColorMask:
        return self.color_mask if self.color_mask is not None else ColorMask.MAIN

    @property
    def effective_transparency_threshold(self) -> int:
        threshold = self.transparency_threshold
        if threshold is None:
            threshold = DEFAULT_TRANSPARENCY_THRESHOLD
        return max(0, min(255, threshold))

    @property
    def effective_dithering_algorithm(self) -> DitheringAlgorithm:
        return self.dithering_algorithm or DitheringAlgorithm.FLOYD_STEINBERG

    @property
    def effective_dither_scale(self) -> float:
        return DEFAULT_DITHER_SCALE if self.dither_scale is None else self.dither_scale

    def to_dict(self) -> Dict[str, object]:
        out: Dict[str, object] = {}
        if self.ignore is not None:
            out["ignore"] = self.ignore
        if self.color_mask is not None:
            out["color-mask"] = self.color_mask.to_str()
        if self.color_count is not None:
            out["color-count"] = self.color_count
        if self.is_model_portrait is not None:
            out["is-model-portrait"] = self.is_model_portrait
        if self.preserve_palette is not None:
            out["preserve-palette"] = self.preserve_palette
        if self.dithering_algorithm is not None:
            out["dithering-algorithm"] = self.dithering_algorithm.value
        if self.dither_scale is not None:
            out["dither-scale"] = self.dither_scale
        if self.transparency_threshold is not None:
            out["transparency-threshold"] = self.transparency_threshold
        if self.transparency_color is not None:
            out["transparency-color"] = color_to_hex(self.transparency_color)
        if self.converter is not None:
            out["converter"] = self.converter
        if self.converter_arguments is not None:
            out["converter-arguments"] = self.converter_arguments
        return out

    @classmethod
    def from_dict(cls, data: Dict[str, object]) -> "TextureSettings":
        """Inverse of :meth:`to_dict`. Unknown keys are ignored."""

        def get(key: str, convert: Callable[[object], object]) -> Optional[object]:
            value = data.get(key)
            return None if value is None else convert(value)

        return cls(
            ignore=get("ignore", bool),
            color_mask=get("color-mask", lambda v: ColorMask.parse(str(v))),
            color_count=get("color-count", int),
            is_model_portrait=get("is-model-portrait", bool),
            preserve_palette=get("preserve-palette", bool),
            dithering_algorithm=get("dithering-algorithm", lambda v: DitheringAlgorithm.parse(str(v))),
            dither_scale=get("dither-scale", float),
            transparency_threshold=get("transparency-threshold", int),
            transparency_color=get("transparency-color", lambda v: color_from_hex(str(v))),
            converter=get("converter", str),
            converter_arguments=get("converter-arguments", str),
        )


# ---------------------------------------------------------------------------
# File fingerprints
# ---------------------------------------------------------------------------

def file_sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as handle:
        for chunk in iter(lambda: handle.read(65536), b""):
            digest.update(chunk)
    return digest.hexdigest()


@dataclass(frozen=True)
class FileInfo:
    path: str
    file_size: int
    file_hash: str
    last_modified: int  # unix milliseconds

    @classmethod
    def from_file(cls, path: Path) -> "FileInfo":
        stat = path.stat()
        return cls(str(path), stat.st_size, file_sha256(path), int(stat.st_mtime * 1000))

    def matches_file(self, path: Path) -> bool:
        """True if *path* still has the recorded size and content hash."""
        try:
            if path.stat().st_size != self.file_size:
                return False
            return file_sha256(path) == self.file_hash
        except OSError:
            return False


@dataclass(frozen=True)
class SourceFileInfo(FileInfo):
    settings: TextureSettings = TextureSettings()

    @property
    def file_name(self) -> str:
        return Path(self.path).name

    @classmethod
    def for_generated_file(cls, path: Path, settings: TextureSettings) -> "SourceFileInfo":
        """Info for a temporary converter output, which is never compared against history."""
        return cls(str(path), 0, "", int(time.time() * 1000), settings)


# ---------------------------------------------------------------------------
# Filename settings
# ---------------------------------------------------------------------------

COLOR_MASK_SEGMENT_PATTERN = re.compile(r"^color(?P<mask>[1-2])(?:\s+(?P<count>\d{1,3}))?$")
MAIN_SEGMENT_PATTERN = re.compile(r"^main(?:\s+(?P<count>\d{1,3}))?$")


def settings_from_filename(path: Path) -> TextureSettings:
    """Read ``.color1 32``, ``.color2``, ``.main 64`` and ``.portrait`` segments from a file name."""
    name = Path(path).name
    dot = name.rfind(".")
    if dot > 0:
        name = name[:dot]

    settings = TextureSettings()
    # Later segments override earlier ones ("test.color1 32.color2 32.png" is a color2 file).
    for segment in name.split(".")[1:]:
        segment = segment.strip().lower()
        color_match = COLOR_MASK_SEGMENT_PATTERN.match(segment)
        main_match = MAIN_SEGMENT_PATTERN.match(segment)
        if color_match:
            count = color_match.group("count")
            settings = replace(
                settings,
                color_mask=ColorMask(int(color_match.group("mask"))),
                color_count=int(count) if count is not None else None,
            )
        elif main_match:
            count = main_match.group("count")
            settings = replace(
                settings,
                color_mask=ColorMask.MAIN,
                color_count=int(count) if count is not None else None,
            )
        elif segment == "portrait":
            settings = replace(settings, is_model_portrait=True)
    return settings


def insert_settings_into_filename(path: Path, settings: TextureSettings) -> Path:
    """Inverse of :func:`settings_from_filename` for color masks and the portrait flag."""
    segments = ""
    if settings.color_mask is not None:
        if texture_name_from_path(path) == "dm_base":
            if settings.color_mask != ColorMask.MAIN:
                segments += f".color{int(settings.color_mask)}"
        elif settings.color_mask == ColorMask.MAIN:
            segments += ".main" if settings.color_count is None else f".main {settings.color_count}"
        else:
            segments += f".color{int(settings.color_mask)}"
            if settings.color_count is not None:
                segments += f" {settings.color_count}"

    if settings.is_model_portrait and settings.effective_color_mask == ColorMask.MAIN:
        segments += ".portrait"

    return path.with_name(f"{path.stem}{segments}{path.suffix}")


# ---------------------------------------------------------------------------
# Rule files
# ---------------------------------------------------------------------------

def validate_converter_arguments(arguments: str) -> None:
    if CONVERTER_INPUT_MARKER not in arguments or CONVERTER_OUTPUT_MARKER not in arguments:
        raise TextureSettingsError(
            f"Converter arguments must contain {CONVERTER_INPUT_MARKER} and {CONVERTER_OUTPUT_MARKER} markers: '{arguments}'."
        )


def _is_comment(token: str) -> bool:
    return token.startswith("//")


def tokenize_rule_line(line: str) -> List[str]:
    tokens: List[str] = []
    start = 0
    in_string = False
    for i, c in enumerate(line):
        if in_string:
            if c == "'" and line[i - 1] != "\\":
                tokens.append(line[start:i].replace("\\'", "'"))
                start = i + 1
                in_string = False
        elif c.isspace():
            if i > start:
                tokens.append(line[start:i])
            start = i + 1
        elif c == ":":
            if i > start:
                tokens.append(line[start:i])
            tokens.append(":")
            start = i + 1
        elif c == "/" and i > start and line[i - 1] == "/":
            if i - 1 > start:
                tokens.append(line[start:i - 1])
            tokens.append(line[i - 1:])
            return tokens
        elif c == "'":
            if i > start:
                tokens.append(line[start:i])
            start = i + 1
            in_string = True

    if in_string:
        raise TextureSettingsError("Expected a ' but found end of line.")
    if start < len(line):
        tokens.append(line[start:])
    return tokens


def _parse_bool(token: str) -> bool:
    value = token.strip().lower()
    if value in ("true", "false"):
        return value == "true"
    raise ValueError(token)


def _parse_byte(token: str) -> int:
    value = int(token)
    if not 0 <= value <= 255:
        raise ValueError(token)
    return value


@dataclass(frozen=True)
class SettingsRule:
    order: int
    name_pattern: str
    settings: TextureSettings

    @property
    def is_wildcard(self) -> bool:
        return "*" in self.name_pattern.replace("\\*", "")


def parse_rule_line(line: str, order: int) -> Optional[SettingsRule]:
    tokens = tokenize_rule_line(line)
    if not tokens or _is_comment(tokens[0]):
        return None

    name_pattern = Path(tokens[0]).name.lower()
    settings = TextureSettings()
    position = 1

    def take(label: str, parse: Callable[[str], object]) -> object:
        nonlocal position
        if position >= len(tokens):
            raise TextureSettingsError(f"Expected a {label}, but found end of line.")
        token = tokens[position]
        position += 1
        try:
            return parse(token)
        except (ValueError, TextureSettingsError):
            raise TextureSettingsError(f"Expected a {label}, but found '{token}'.") from None

    def require_colon() -> None:
        nonlocal position
        if position >= len(tokens):
            raise TextureSettingsError("Expected a ':', but found end of line.")
        if tokens[position] != ":":
            raise TextureSettingsError(f"Expected a ':', but found '{tokens[position]}'.")
        position += 1

    while position < len(tokens):
        key = tokens[position]
        position += 1
        if _is_comment(key):
            break

        key = key.lower()
        require_colon()
        if key == "ignore":
            settings = replace(settings, ignore=take("boolean", _parse_bool))
        elif key == "color-mask":
            settings = replace(settings, color_mask=take("remap color mask", ColorMask.parse))
        elif key == "color-count":
            settings = replace(settings, color_count=take("remap color count", int))
        elif key == "is-model-portrait":
            settings = replace(settings, is_model_portrait=take("boolean", _parse_bool))
        elif key == "preserve-palette":
            settings = replace(settings, preserve_palette=take("boolean", _parse_bool))
        elif key == "dithering":
            settings = replace(settings, dithering_algorithm=take("dithering algorithm", DitheringAlgorithm.parse))
        elif key == "dither-scale":
            settings = replace(settings, dither_scale=take("dither scale", float))
        elif key == "transparency-threshold":
            settings = replace(settings, transparency_threshold=take("transparency threshold", _parse_byte))
        elif key == "transparency-color":
            color = (
                take("color component", _parse_byte),
                take("color component", _parse_byte),
                take("color component", _parse_byte),
            )
            settings = replace(settings, transparency_color=color)
        elif key == "converter":
            settings = replace(settings, converter=take("converter command string", str))
        elif key == "arguments":
            arguments = take("converter arguments string", str)
            validate_converter_arguments(arguments)
            settings = replace(settings, converter_arguments=arguments)
        else:
            raise TextureSettingsError(f"Unknown setting: '{key}'.")

    return SettingsRule(order, name_pattern, settings)


def wildcard_pattern_regex(name_pattern: str) -> re.Pattern:
    parts = []
    for token in re.findall(r"\\\*|\*|[^*\\]+|\\", name_pattern):
        if token == "*":
            parts.append(".*")
        elif token == "\\*":
            parts.append(re.escape("*"))
        else:
            parts.append(re.escape(token))
    return re.compile("".join(parts))


def load_rule_file(path: Path, first_order: int = 0) -> List[SettingsRule]:
    """Parse a rule file. Malformed lines are logged and ignored."""
    rules: List[SettingsRule] = []
    if not path.is_file():
        return rules

    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        logging.warning("Unable to read rule file '%s': %s: '%s'. Ignoring its rules.", path, type(exc).__name__, exc)
        return rules

    for line_number, line in enumerate(text.splitlines(), start=1):
        try:
            rule = parse_rule_line(line, first_order + len(rules))
        except TextureSettingsError as exc:
            logging.warning("Ignoring invalid rule at %s:%d: %s", path, line_number, exc)
            continue
        if rule is not None:
            rules.append(rule)
    return rules


class DirectorySettings:
    """Resolved rules for one input directory (global rules followed by local ones)."""

    def __init__(self, rules: List[SettingsRule]) -> None:
        self._wildcard_rules: List[Tuple[re.Pattern, SettingsRule]] = []
        self._exact_rules: Dict[str, List[SettingsRule]] = {}
        for rule in rules:
            if rule.is_wildcard:
                self._wildcard_rules.append((wildcard_pattern_regex(rule.name_pattern), rule))
            else:
                self._exact_rules.setdefault(rule.name_pattern, []).append(rule)

    def matching_rules(self, filename: str) -> List[SettingsRule]:
        filename = filename.lower()
        wildcard = [rule for regex, rule in self._wildcard_rules if regex.fullmatch(filename)]
        exact = self._exact_rules.get(filename)
        if exact is None:
            exact = self._exact_rules.get(texture_name_from_path(Path(filename)), [])
        return sorted(wildcard, key=lambda r: r.order) + sorted(exact, key=lambda r: r.order)

    def resolve(self, path: Path) -> TextureSettings:
        settings = TextureSettings()
        for rule in self.matching_rules(Path(path).name):
            settings = settings.override_with(rule.settings)
        # Filename settings take priority over rule file settings.
        return settings.override_with(settings_from_filename(path))

    def source_file_info(self, path: Path) -> SourceFileInfo:
        info = FileInfo.from_file(path)
        return SourceFileInfo(info.path, info.file_size, info.file_hash, info.last_modified, self.resolve(path))


class TextureSettingsResolver:
    """Settings context for one invocation: global rules are read once, local rules per directory."""

    def __init__(self, global_config_path: Optional[Path] = None) -> None:
        self.global_config_path = global_config_path
        self._global_rules: List[SettingsRule] = []
        if global_config_path is not None:
            self._global_rules = load_rule_file(global_config_path)
            if self._global_rules:
                logging.debug("Loaded %d global texture rules from %s", len(self._global_rules), global_config_path)

    def for_directory(self, directory: Path) -> DirectorySettings:
        local_rules = load_rule_file(directory / CONFIG_FILENAME, first_order=len(self._global_rules))
        return DirectorySettings(self._global_rules + local_rules)


def is_config_file(path: Path) -> bool:
    return Path(path).name == CONFIG_FILENAME
