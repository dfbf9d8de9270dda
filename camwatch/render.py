from __future__ import annotations

"""Render text tables and histograms to JPEG for chat replies."""

from typing import Dict, List, Sequence

import cv2
import numpy as np

FONT = cv2.FONT_HERSHEY_PLAIN
TEXT_COLOR = (0, 0, 0)
BAR_COLOR = (180, 120, 30)


def _encode_jpeg(image: np.ndarray, quality: int = 95) -> bytes:
    ok, buf = cv2.imencode(".jpg", image, [int(cv2.IMWRITE_JPEG_QUALITY), quality])
    if not ok:
        raise RuntimeError("JPEG encoding failed")
    return buf.tobytes()


def format_table(header: Sequence[str], rows: Sequence[Sequence[str]]) -> List[str]:
    """Lay out a borderless fixed-width text table, one string per line."""
    widths = [len(h) for h in header]
    for row in rows:
        for i, cell in enumerate(row):
            widths[i] = max(widths[i], len(cell))

    def line(cells: Sequence[str]) -> str:
        return "  ".join(cell.center(widths[i]) for i, cell in enumerate(cells)).rstrip()

    separator = "  ".join("-" * w for w in widths)
    return [line(header), separator] + [line(row) for row in rows]


def table_jpeg(header: Sequence[str], rows: Sequence[Sequence[str]]) -> bytes:
    """Draw a text table onto a white canvas and return JPEG bytes."""
    lines = format_table(header, rows)
    line_height = 16
    char_width = 10
    width = max(len(text) for text in lines) * char_width + 20
    height = len(lines) * line_height + 20
    canvas = np.full((height, width, 3), 255, dtype=np.uint8)
    for i, text in enumerate(lines):
        cv2.putText(canvas, text, (10, 20 + i * line_height), FONT, 1.0, TEXT_COLOR, 1, cv2.LINE_AA)
    return _encode_jpeg(canvas)


def histogram_jpeg(title: str, values: Dict[int, int], bins: int = 40, size: int = 640) -> bytes:
    """Plot a frequency table as a bar histogram with `bins` buckets."""
    if not values:
        raise ValueError("no data")
    observations = np.array(list(values.keys()), dtype=np.float64)
    weights = np.array(list(values.values()), dtype=np.float64)
    counts, edges = np.histogram(observations, bins=bins, weights=weights)

    canvas = np.full((size, size, 3), 255, dtype=np.uint8)
    margin = 50
    plot_w = size - 2 * margin
    plot_h = size - 2 * margin
    peak = counts.max() if counts.max() > 0 else 1.0
    bar_w = plot_w / len(counts)
    for i, count in enumerate(counts):
        bar_h = int(plot_h * count / peak)
        x1 = int(margin + i * bar_w)
        x2 = int(margin + (i + 1) * bar_w) - 1
        cv2.rectangle(canvas, (x1, size - margin - bar_h), (x2, size - margin), BAR_COLOR, -1)

    cv2.line(canvas, (margin, size - margin), (size - margin, size - margin), TEXT_COLOR, 1)
    cv2.putText(canvas, title, (margin, margin - 20), FONT, 1.4, TEXT_COLOR, 1, cv2.LINE_AA)
    cv2.putText(canvas, f"{edges[0]:.0f}", (margin, size - margin + 20), FONT, 1.0, TEXT_COLOR, 1, cv2.LINE_AA)
    cv2.putText(
        canvas, f"{edges[-1]:.0f}", (size - margin - 30, size - margin + 20), FONT, 1.0, TEXT_COLOR, 1, cv2.LINE_AA
    )
    cv2.putText(canvas, f"max {int(peak)}", (margin, margin), FONT, 1.0, TEXT_COLOR, 1, cv2.LINE_AA)
    return _encode_jpeg(canvas)
