"""
Digitizer - Seed and Polygon Acquisition
========================================
The boundary between the segmentation pipeline and the person (or script)
that places seed points and digitizes the flexor compartment.

The analyzer blocks on three kinds of request:
- one seed per (side, tissue class), six in total
- a flexor polygon per side
- an approve/reject decision on each extensor/flexor split

Two implementations are provided:
- ScriptedDigitizer: answers from a dict or JSON file (batch runs, tests)
- MatplotlibDigitizer: interactive point picking with ginput

Author: Thigh Muscle CSA Project
License: BSD 3-Clause
"""

import json
import logging
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np

from thigh_segmenter import CompartmentSplit, Side, TissueClass

logger = logging.getLogger(__name__)

# Vertex displacement (pixels) below which a vertex counts as unmoved
VERTEX_MOVE_EPS = 0.01


def accept_vertex_update(previous: Sequence[Sequence[float]],
                         current: Sequence[Sequence[float]],
                         eps: float = VERTEX_MOVE_EPS) -> bool:
    """Accept a polygon edit only if at most one vertex moved along each axis.

    Moves are counted per axis: one vertex shifting in x and another in y is
    still accepted. Dragging the whole polygon moves every vertex at once and
    is rejected. Edits that add or remove vertices are accepted.
    """
    prev = np.asarray(previous, dtype=float)
    curr = np.asarray(current, dtype=float)
    if prev.shape != curr.shape:
        return True
    moved_per_axis = np.sum(np.abs(curr - prev) > eps, axis=0)
    return int(moved_per_axis.max()) <= 1


def constrain_vertex_update(previous: Sequence[Sequence[float]],
                            current: Sequence[Sequence[float]],
                            eps: float = VERTEX_MOVE_EPS) -> np.ndarray:
    """Return the vertex positions to keep after an edit event."""
    if accept_vertex_update(previous, current, eps):
        return np.asarray(current, dtype=float)
    logger.debug("Rejected polygon edit moving more than one vertex")
    return np.asarray(previous, dtype=float)


class Digitizer(ABC):
    """External actor supplying seeds, polygons and split approvals."""

    @abstractmethod
    def request_seed(self,
                     side: Side,
                     tissue: TissueClass,
                     grid: np.ndarray) -> Tuple[int, int]:
        """Return a (row, col) seed on the thresholded, cropped grid."""

    @abstractmethod
    def request_polygon(self, side: Side, muscle_image: np.ndarray) -> Sequence[Sequence[float]]:
        """Return (x, y) vertices around the flexors, in side-box coordinates."""

    @abstractmethod
    def review_split(self, side: Side, split: CompartmentSplit) -> bool:
        """Return True to approve the split, False to digitize again."""


class ScriptedDigitizer(Digitizer):
    """Digitizer answering from pre-recorded inputs.

    Expected layout (sides and tissues keyed by lower-case enum name)::

        {
          "seeds": {"left": {"fat": [r, c], "femur": [r, c], "muscle": [r, c]},
                    "right": {...}},
          "polygons": {"left": [[[x, y], ...], ...], "right": [...]},
          "approvals": {"left": [false, true], "right": []}
        }

    Polygons are consumed in order, one per request; the last one is reused
    once the list runs out. A missing or exhausted approval list approves.

    Attributes:
        requests: Log of (kind, side, tissue) tuples in the order served
    """

    def __init__(self,
                 seeds: Dict[str, Dict[str, Sequence[int]]],
                 polygons: Dict[str, List[Sequence[Sequence[float]]]],
                 approvals: Optional[Dict[str, List[bool]]] = None):
        self.seeds = seeds
        self.polygons = polygons
        self.approvals = approvals or {}
        self.requests: List[Tuple[str, str, Optional[str]]] = []
        self._polygon_index: Dict[str, int] = {}
        self._approval_index: Dict[str, int] = {}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ScriptedDigitizer':
        missing = [key for key in ('seeds', 'polygons') if key not in data]
        if missing:
            raise ValueError(f"Missing required digitizer keys: {missing}")
        return cls(data['seeds'], data['polygons'], data.get('approvals'))

    @classmethod
    def from_json(cls, path: Union[str, Path]) -> 'ScriptedDigitizer':
        with open(path) as f:
            return cls.from_dict(json.load(f))

    def request_seed(self, side, tissue, grid):
        key = side.name.lower()
        self.requests.append(('seed', key, tissue.name.lower()))
        try:
            row, col = self.seeds[key][tissue.name.lower()]
        except KeyError:
            raise ValueError(f"No scripted seed for {side.value} {tissue.value}") from None
        return int(row), int(col)

    def request_polygon(self, side, muscle_image):
        key = side.name.lower()
        self.requests.append(('polygon', key, None))
        candidates = self.polygons.get(key)
        if not candidates:
            raise ValueError(f"No scripted polygon for {side.value} side")
        index = self._polygon_index.get(key, 0)
        self._polygon_index[key] = index + 1
        return candidates[min(index, len(candidates) - 1)]

    def review_split(self, side, split):
        key = side.name.lower()
        self.requests.append(('review', key, None))
        decisions = self.approvals.get(key, [])
        index = self._approval_index.get(key, 0)
        self._approval_index[key] = index + 1
        return bool(decisions[index]) if index < len(decisions) else True


class MatplotlibDigitizer(Digitizer):
    """Interactive digitizer built on matplotlib's ``ginput``.

    Seeds are single clicks; polygons are digitized click by click and
    finished with <Enter>. Each split is shown as whole muscle, extensors
    and flexors with the polygon outline, then approved on the console.
    """

    def __init__(self, title: str = ""):
        self.title = title

    def _figure(self, heading: str):
        import matplotlib.pyplot as plt

        fig, ax = plt.subplots(figsize=(10, 8))
        ax.axis('off')
        ax.set_title(f"{self.title}\n{heading}" if self.title else heading)
        return plt, fig, ax

    def request_seed(self, side, tissue, grid):
        plt, fig, ax = self._figure(f"Pick a point within the {side.value} thigh {tissue.value}.")
        ax.imshow(grid, cmap='gray')
        points = plt.ginput(1, timeout=0)
        plt.close(fig)
        if not points:
            raise ValueError(f"No point picked for {side.value} {tissue.value}")
        x, y = points[0]
        return int(round(y)), int(round(x))

    def request_polygon(self, side, muscle_image):
        plt, fig, ax = self._figure(
            f"Digitize the {side.value} flexor muscles. Press <Enter> when finished."
        )
        ax.imshow(muscle_image, cmap='gray')
        points = plt.ginput(n=-1, timeout=0)
        plt.close(fig)
        return [(float(x), float(y)) for x, y in points]

    def review_split(self, side, split):
        import matplotlib.pyplot as plt

        fig, axes = plt.subplots(1, 3, figsize=(15, 6))
        outline = np.vstack([split.vertices, split.vertices[:1]])
        panels = (('Whole Muscle', split.muscle),
                  ('Extensors', split.extensor),
                  ('Flexors', split.flexor))
        for ax, (label, mask) in zip(axes, panels):
            ax.imshow(mask, cmap='gray')
            ax.plot(outline[:, 0], outline[:, 1], 'r-', linewidth=1)
            ax.set_title(f"{side.value.capitalize()} Thigh - {label}")
            ax.axis('off')
        plt.show(block=False)
        answer = input("Extensor/Flexor Muscles OK? [y/n]: ")
        plt.close(fig)
        return answer.strip().lower().startswith('y')
