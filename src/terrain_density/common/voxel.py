"""
Dense scalar voxel field for density generation.

Storage is one contiguous float32 buffer with
index = x + size_x * (y + size_y * z), which is exactly a C-ordered
array of shape (size_z, size_y, size_x). `volume` exposes that ZYX view
so vectorised passes can work on whole slabs at once.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, List, Tuple

import numpy as np

from .errors import InvalidArgument, InvalidConfiguration, OutOfRange

logger = logging.getLogger(__name__)


class ScalarField3D:
    """
    3D density grid: positive = solid, non-positive = air.

    Shape is fixed at construction; only values change afterwards.
    World position of cell (x, y, z) is (x, y, z) * voxel_size.
    """

    def __init__(self, size_x: int, size_y: int, size_z: int, voxel_size: float):
        for name, n in (("size_x", size_x), ("size_y", size_y), ("size_z", size_z)):
            if int(n) != n or n <= 0:
                raise InvalidConfiguration(f"{name} must be a positive integer", {name: n})
        if not voxel_size > 0:
            raise InvalidConfiguration("voxel_size must be positive", {"voxel_size": voxel_size})

        self._size_x = int(size_x)
        self._size_y = int(size_y)
        self._size_z = int(size_z)
        self._voxel_size = float(voxel_size)
        self._data = np.zeros(self._size_x * self._size_y * self._size_z, dtype=np.float32)

        logger.debug(f"Creating density field: {self.shape}, voxel_size={self._voxel_size}")

    @property
    def size_x(self) -> int:
        return self._size_x

    @property
    def size_y(self) -> int:
        return self._size_y

    @property
    def size_z(self) -> int:
        return self._size_z

    @property
    def voxel_size(self) -> float:
        return self._voxel_size

    @property
    def shape(self) -> Tuple[int, int, int]:
        """(size_x, size_y, size_z)."""
        return self._size_x, self._size_y, self._size_z

    @property
    def count(self) -> int:
        return self._data.size

    @property
    def data(self) -> np.ndarray:
        """Flat float32 buffer (values are mutable, length is not)."""
        return self._data

    @property
    def volume(self) -> np.ndarray:
        """ZYX view of the buffer: volume[z, y, x] is cell (x, y, z)."""
        return self._data.reshape(self._size_z, self._size_y, self._size_x)

    @property
    def world_max(self) -> Tuple[float, float, float]:
        """World coordinates of the last cell along each axis."""
        vs = self._voxel_size
        return (self._size_x - 1) * vs, (self._size_y - 1) * vs, (self._size_z - 1) * vs

    def in_bounds(self, x: int, y: int, z: int) -> bool:
        return 0 <= x < self._size_x and 0 <= y < self._size_y and 0 <= z < self._size_z

    def index(self, x: int, y: int, z: int) -> int:
        """Linear index of (x, y, z); raises OutOfRange outside the grid."""
        if not self.in_bounds(x, y, z):
            raise OutOfRange(
                f"Voxel ({x}, {y}, {z}) outside grid {self.shape}",
                {"x": x, "y": y, "z": z},
            )
        return x + self._size_x * (y + self._size_y * z)

    def get(self, x: int, y: int, z: int) -> float:
        return float(self._data[self.index(x, y, z)])

    def set(self, x: int, y: int, z: int, value: float) -> None:
        self._data[self.index(x, y, z)] = value

    def fill(self, fn: Callable[[int, int, int], float]) -> None:
        """
        Set every cell to fn(x, y, z).

        Visits cells once each, z outer, y middle, x inner.
        """
        if fn is None:
            raise InvalidArgument("fn must not be None")

        data = self._data
        sx, sy = self._size_x, self._size_y
        i = 0
        for z in range(self._size_z):
            for y in range(sy):
                for x in range(sx):
                    data[i] = fn(x, y, z)
                    i += 1

    def fill_vectorized(self, fn: Callable[[np.ndarray, np.ndarray, np.ndarray], np.ndarray]) -> None:
        """
        Set every cell from fn(x, y, z) called once on broadcastable index grids.

        The index grids are ZYX-shaped int arrays; fn must return an array
        broadcastable to (size_z, size_y, size_x).
        """
        z, y, x = np.meshgrid(
            np.arange(self._size_z),
            np.arange(self._size_y),
            np.arange(self._size_x),
            indexing='ij',
            sparse=True,
        )
        values = np.broadcast_to(np.asarray(fn(x, y, z), dtype=np.float32), self.volume.shape)
        self.volume[...] = values

    def world_coords(self, z_start: int = 0, z_stop: int = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Sparse world-coordinate grids (px, py, pz) for z in [z_start, z_stop).

        Each array broadcasts to (z_stop - z_start, size_y, size_x).
        """
        if z_stop is None:
            z_stop = self._size_z
        vs = self._voxel_size
        pz = (np.arange(z_start, z_stop, dtype=np.float64) * vs)[:, None, None]
        py = (np.arange(self._size_y, dtype=np.float64) * vs)[None, :, None]
        px = (np.arange(self._size_x, dtype=np.float64) * vs)[None, None, :]
        return px, py, pz

    def _check_out_buffer(self, out: np.ndarray, expected: int, label: str) -> None:
        if out is None:
            raise InvalidArgument(f"out buffer must not be None ({label})")
        if out.ndim != 1 or out.size != expected:
            raise InvalidArgument(
                f"out buffer must hold {label} = {expected} values",
                {"got": out.size},
            )

    def slice_xz(self, y: int, out: np.ndarray) -> np.ndarray:
        """Copy plane y into out (size_x * size_z), out[x + size_x * z]."""
        self._check_out_buffer(out, self._size_x * self._size_z, "size_x*size_z")
        if not 0 <= y < self._size_y:
            raise InvalidArgument(f"y={y} out of range [0..{self._size_y - 1}]")
        out[:] = self.volume[:, y, :].ravel()
        return out

    def slice_xy(self, z: int, out: np.ndarray) -> np.ndarray:
        """Copy plane z into out (size_x * size_y), out[x + size_x * y]."""
        self._check_out_buffer(out, self._size_x * self._size_y, "size_x*size_y")
        if not 0 <= z < self._size_z:
            raise InvalidArgument(f"z={z} out of range [0..{self._size_z - 1}]")
        out[:] = self.volume[z, :, :].ravel()
        return out

    def slice_yz(self, x: int, out: np.ndarray) -> np.ndarray:
        """Copy plane x into out (size_y * size_z), out[y + size_y * z]."""
        self._check_out_buffer(out, self._size_y * self._size_z, "size_y*size_z")
        if not 0 <= x < self._size_x:
            raise InvalidArgument(f"x={x} out of range [0..{self._size_x - 1}]")
        out[:] = self.volume[:, :, x].ravel()
        return out

    def __repr__(self) -> str:
        return f"ScalarField3D(shape={self.shape}, voxel_size={self._voxel_size})"


def run_slab_pass(
    field: ScalarField3D,
    fn: Callable[[int, int], Any],
    workers: int = 1,
) -> List[Any]:
    """
    Run fn(z_start, z_stop) over disjoint Z slabs covering the field.

    With workers > 1 the slabs are processed on a thread pool. fn must
    only write cells inside its own slab; numpy releases the GIL for the
    heavy array work so the slabs genuinely overlap.

    Returns:
        fn's results in slab order
    """
    size_z = field.size_z
    workers = max(1, min(int(workers), size_z))
    if workers == 1:
        return [fn(0, size_z)]

    bounds = np.linspace(0, size_z, workers + 1).round().astype(int)
    slabs = [(int(a), int(b)) for a, b in zip(bounds[:-1], bounds[1:]) if b > a]
    logger.debug(f"Slab pass: {len(slabs)} slabs on {workers} threads")

    with ThreadPoolExecutor(max_workers=workers) as executor:
        futures = [executor.submit(fn, a, b) for a, b in slabs]
        return [f.result() for f in futures]
