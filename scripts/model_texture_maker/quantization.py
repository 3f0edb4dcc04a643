"""Color quantization: reduce an RGBA image to a small palette plus per-pixel indices.

Palette selection only looks at *candidate* pixels: pixels that are neither
transparent nor excluded. Excluded pixels still receive the nearest palette
index afterwards, so the caller can restrict color selection to one region of
an image while every pixel stays addressable.

Uses numpy for the palette search (weighted median cut over unique colors)
and nearest-color mapping.
"""

from __future__ import annotations

import heapq
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import numpy as np

from texture_settings import DitheringAlgorithm

RGB = Tuple[int, int, int]


@dataclass(frozen=True)
class TransparencyPredicate:
    """Pixels with alpha below *threshold*, or exactly matching *color*, are transparent."""

    threshold: int
    color: Optional[RGB] = None

    def mask(self, pixels: np.ndarray) -> np.ndarray:
        transparent = pixels[..., 3] < self.threshold
        if self.color is not None:
            transparent |= np.all(pixels[..., :3] == np.array(self.color, dtype=np.uint8), axis=-1)
        return transparent


@dataclass
class QuantizedImage:
    indices: np.ndarray     # (height, width), int
    palette: List[RGB]


# ---------------------------------------------------------------------------
# Palette selection
# ---------------------------------------------------------------------------

def _box_stats(colors: np.ndarray, counts: np.ndarray) -> Tuple[int, int]:
    """(score, axis) for a box: widest channel range weighted by pixel count."""
    if len(colors) < 2:
        return 0, 0
    ranges = colors.max(axis=0).astype(np.int32) - colors.min(axis=0).astype(np.int32)
    axis = int(ranges.argmax())
    return int(ranges[axis]) * int(counts.sum()), axis


def _median_cut(colors: np.ndarray, counts: np.ndarray, target: int) -> np.ndarray:
    next_id = 0
    heap = []
    done = []

    score, axis = _box_stats(colors, counts)
    heapq.heappush(heap, (-score, next_id, colors, counts, axis))
    next_id += 1

    while len(done) + len(heap) < target and heap:
        neg_score, _, box_colors, box_counts, axis = heapq.heappop(heap)
        if -neg_score <= 0 or len(box_colors) < 2:
            done.append((box_colors, box_counts))
            continue

        order = box_colors[:, axis].argsort(kind="stable")
        box_colors = box_colors[order]
        box_counts = box_counts[order]

        cumsum = box_counts.cumsum()
        mid = int(np.searchsorted(cumsum, cumsum[-1] // 2))
        mid = max(1, min(mid, len(box_colors) - 1))

        for part_colors, part_counts in ((box_colors[:mid], box_counts[:mid]), (box_colors[mid:], box_counts[mid:])):
            part_score, part_axis = _box_stats(part_colors, part_counts)
            if part_score <= 0 or len(part_colors) < 2:
                done.append((part_colors, part_counts))
            else:
                heapq.heappush(heap, (-part_score, next_id, part_colors, part_counts, part_axis))
                next_id += 1

    boxes = done + [(c, n) for _, _, c, n, _ in heap]
    palette = np.zeros((min(target, len(boxes)), 3), dtype=np.uint8)
    for i, (box_colors, box_counts) in enumerate(boxes[:target]):
        weights = box_counts.astype(np.float64)
        average = (box_colors.astype(np.float64) * weights[:, np.newaxis]).sum(axis=0) / weights.sum()
        palette[i] = np.clip(np.rint(average), 0, 255).astype(np.uint8)
    return palette


def build_palette(colors: np.ndarray, max_colors: int) -> np.ndarray:
    """Pick at most *max_colors* colors for an ``(n, 3)`` array of pixel colors."""
    if len(colors) == 0 or max_colors <= 0:
        return np.zeros((0, 3), dtype=np.uint8)

    unique, counts = np.unique(colors.reshape(-1, 3), axis=0, return_counts=True)
    if len(unique) <= max_colors:
        # Direct palette, no quantization loss.
        return unique.astype(np.uint8)
    return _median_cut(unique, counts, max_colors)


# ---------------------------------------------------------------------------
# Index mapping
# ---------------------------------------------------------------------------

def nearest_indices(colors: np.ndarray, palette: np.ndarray) -> np.ndarray:
    """Nearest palette index for each row of an ``(n, 3)`` color array."""
    if len(colors) == 0:
        return np.zeros(0, dtype=np.int64)
    unique, inverse = np.unique(colors.reshape(-1, 3), axis=0, return_inverse=True)

    # ||u-p||^2 = ||u||^2 + ||p||^2 - 2*u.p
    u = unique.astype(np.int64)
    p = palette.astype(np.int64)
    dist = (u * u).sum(axis=1)[:, np.newaxis] + (p * p).sum(axis=1)[np.newaxis, :] - 2 * (u @ p.T)
    nearest = dist.argmin(axis=1)
    return nearest[inverse.reshape(-1)]


def _dither_floyd_steinberg(
    rgb: np.ndarray,
    candidates: np.ndarray,
    palette: np.ndarray,
    indices: np.ndarray,
    scale: float,
) -> None:
    height, width = candidates.shape
    work = rgb.astype(np.float32)
    palette_f = palette.astype(np.float32)
    cache: Dict[Tuple[int, int, int], int] = {}

    for y in range(height):
        for x in range(width):
            if not candidates[y, x]:
                continue
            color = np.clip(work[y, x], 0.0, 255.0)
            key = (int(round(color[0])), int(round(color[1])), int(round(color[2])))
            index = cache.get(key)
            if index is None:
                index = int(((palette_f - np.array(key, dtype=np.float32)) ** 2).sum(axis=1).argmin())
                cache[key] = index
            indices[y, x] = index

            error = (color - palette_f[index]) * scale
            if not error.any():
                continue
            if x + 1 < width and candidates[y, x + 1]:
                work[y, x + 1] += error * (7.0 / 16.0)
            if y + 1 < height:
                if x > 0 and candidates[y + 1, x - 1]:
                    work[y + 1, x - 1] += error * (3.0 / 16.0)
                if candidates[y + 1, x]:
                    work[y + 1, x] += error * (5.0 / 16.0)
                if x + 1 < width and candidates[y + 1, x + 1]:
                    work[y + 1, x + 1] += error * (1.0 / 16.0)


def quantize_image(
    pixels: np.ndarray,
    max_colors: int,
    dithering: DitheringAlgorithm = DitheringAlgorithm.FLOYD_STEINBERG,
    dither_scale: float = 0.75,
    is_transparent: Optional[TransparencyPredicate] = None,
    excluded: Optional[np.ndarray] = None,
    transparent_index: Optional[int] = None,
) -> QuantizedImage:
    """Quantize an ``(height, width, 4)`` RGBA array to at most *max_colors* colors.

    *excluded* is an optional ``(height, width)`` boolean mask of pixels that do
    not take part in palette selection. When *transparent_index* is given,
    transparent pixels get that index; otherwise they are mapped to their
    nearest palette color like excluded pixels.
    """
    height, width = pixels.shape[:2]
    rgb = pixels[..., :3]

    transparent = is_transparent.mask(pixels) if is_transparent is not None else np.zeros((height, width), dtype=bool)
    if excluded is None:
        excluded = np.zeros((height, width), dtype=bool)
    candidates = ~transparent & ~excluded

    palette = build_palette(rgb[candidates], max_colors)
    if len(palette) == 0:
        palette = np.zeros((1, 3), dtype=np.uint8)

    indices = nearest_indices(rgb, palette).reshape(height, width)
    if dithering == DitheringAlgorithm.FLOYD_STEINBERG and dither_scale > 0.0 and candidates.any():
        _dither_floyd_steinberg(rgb, candidates, palette, indices, max(0.0, min(1.0, dither_scale)))

    if transparent_index is not None:
        indices[transparent] = transparent_index

    return QuantizedImage(indices=indices, palette=[tuple(int(c) for c in color) for color in palette])
