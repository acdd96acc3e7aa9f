from dataclasses import dataclass
from typing import Tuple

import numpy as np

from .errors import PreconditionError

PAINTED = "painted"
GENERATED = "generated"
REFINED = "refined"
FIELD_KINDS = (PAINTED, GENERATED, REFINED)

# Every buffer holds 32-bit floats
BYTES_PER_SAMPLE = 4


@dataclass(frozen=True, eq=False)
class Field:
    """
    A normalized, row-major scalar grid.

    The same shape carries the three logical variants of the pipeline:
    'painted' (user input), 'generated' (synthesis output) and 'refined'
    (refinement output). The backing array is float32 and flagged read-only,
    so a later stage always produces a new Field instead of editing this one.

    Attributes:
        data (np.ndarray): Flat float32 array of length width * height.
        width (int): Columns.
        height (int): Rows.
        kind (str): One of FIELD_KINDS.
    """
    data: np.ndarray
    width: int
    height: int
    kind: str = PAINTED

    def __post_init__(self):
        if self.kind not in FIELD_KINDS:
            raise PreconditionError(f"Unknown field kind '{self.kind}'. Must be one of {FIELD_KINDS}")
        if int(self.width) <= 0 or int(self.height) <= 0:
            raise PreconditionError(f"Field dimensions must be positive, got {self.width}x{self.height}")

        data = np.asarray(self.data)
        if data.ndim != 1:
            raise PreconditionError(f"Field data must be flat, got array of shape {data.shape}")
        expected = int(self.width) * int(self.height)
        if data.size != expected:
            raise PreconditionError(
                f"Field length {data.size} does not match {self.width}x{self.height} = {expected}"
            )

        # Own a private read-only float32 copy (frozen dataclass -> object.__setattr__)
        data = np.array(data, dtype=np.float32, copy=True)
        bad = int(np.count_nonzero(~np.isfinite(data)))
        if bad:
            raise PreconditionError(f"Field contains {bad} NaN or infinite samples")
        data.flags.writeable = False
        object.__setattr__(self, "data", data)
        object.__setattr__(self, "width", int(self.width))
        object.__setattr__(self, "height", int(self.height))

    @classmethod
    def from_array(cls, array: np.ndarray, kind: str = PAINTED) -> "Field":
        """Builds a Field from a (height, width) array."""
        array = np.asarray(array)
        if array.ndim != 2:
            raise PreconditionError(f"Expected a 2D (height, width) array, got shape {array.shape}")
        height, width = array.shape
        return cls(array.reshape(-1), width, height, kind)

    @classmethod
    def zeros(cls, width: int, height: int, kind: str = PAINTED) -> "Field":
        return cls(np.zeros(int(width) * int(height), dtype=np.float32), width, height, kind)

    @property
    def shape(self) -> Tuple[int, int]:
        return (self.height, self.width)

    @property
    def nbytes(self) -> int:
        return self.width * self.height * BYTES_PER_SAMPLE

    def as_array(self) -> np.ndarray:
        """Read-only (height, width) view of the samples."""
        return self.data.reshape(self.height, self.width)

    def __repr__(self) -> str:
        return f"Field(kind={self.kind!r}, width={self.width}, height={self.height})"
