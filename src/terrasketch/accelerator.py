"""
Compute accelerator backends.

An Accelerator owns device memory and can compile a kernel from source text,
dispatch it over a 2D grid of workgroups, and copy results back to the host.

Backends:
    CudaAccelerator - CuPy RawKernel on an NVIDIA GPU.
    HostAccelerator - numpy on the CPU. 'Compiling' resolves the entry point
                      to its host program; dispatch runs the grid band by band.

Loss handling: when a backend decides the device is unusable it calls
mark_lost(), which notifies every registered listener exactly once. The
pipeline cache listens and drops everything compiled on that device.
"""
import ctypes
import glob
import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple

import numpy as np
from tqdm import tqdm

from .errors import AcceleratorLostError, InitializationError, PreconditionError, ResourceError
from .kernels import host_programs

logger = logging.getLogger(__name__)

# Uniform block { width: u32, height: u32 } padded to 16 bytes
UNIFORM_BLOCK_BYTES = 16
WORKGROUP_TILE = 16

LossListener = Callable[["Accelerator", str], None]


def dispatch_grid(width: int, height: int, tile: int = WORKGROUP_TILE) -> Tuple[int, int]:
    """Number of (tile x tile) workgroups needed to cover width x height."""
    return ((int(width) + tile - 1) // tile, (int(height) + tile - 1) // tile)


def band_rows(block: Tuple[int, int], rows_per_band: int) -> int:
    """Rows per band, rounded down to whole workgroup rows (at least one)."""
    return max(block[1], (int(rows_per_band) // block[1]) * block[1])


def covered_pixels(width: int, height: int, grid: Tuple[int, int], block: Tuple[int, int],
                   rows_per_band: int = 1024) -> Iterator[Tuple[np.ndarray, np.ndarray]]:
    """
    Enumerates the threads of a 2D launch, band by band.

    Each band covers a run of workgroup rows. Threads whose (x, y) falls
    outside width x height are discarded, so across all bands every pixel
    appears exactly once.

    Yields:
        tuple: (px, py) int64 arrays of in-bounds thread coordinates.
    """
    threads_x = grid[0] * block[0]
    threads_y = grid[1] * block[1]
    band = band_rows(block, rows_per_band)

    xs = np.arange(threads_x, dtype=np.int64)
    xs = xs[xs < width]
    for y_start in range(0, threads_y, band):
        y_end = min(y_start + band, threads_y, height)
        if y_start >= y_end:
            break
        ys = np.arange(y_start, y_end, dtype=np.int64)
        py, px = np.meshgrid(ys, xs, indexing="ij")
        yield px.ravel(), py.ravel()


@dataclass
class DeviceBuffer:
    """Accelerator-resident memory. 'handle' is backend specific."""
    label: str
    nbytes: int
    dtype: Any
    handle: Any = field(default=None, repr=False)
    released: bool = False

    @property
    def count(self) -> int:
        return self.nbytes // np.dtype(self.dtype).itemsize


@dataclass
class CompiledProgram:
    """Result of Accelerator.compile()."""
    entry_point: str
    handle: Any = field(repr=False)


class Accelerator:
    """Base class. Subclasses implement the underscore hooks."""

    name = "abstract"

    def __init__(self):
        self.lost = False
        self._loss_listeners: List[LossListener] = []
        self._live: Dict[int, DeviceBuffer] = {}
        self.allocated_bytes = 0

    # --- Loss notification ---

    def add_loss_listener(self, listener: LossListener) -> None:
        self._loss_listeners.append(listener)

    def mark_lost(self, reason: str) -> None:
        if self.lost:
            return
        self.lost = True
        logger.error(f"Accelerator '{self.name}' lost: {reason}")
        for listener in list(self._loss_listeners):
            listener(self, reason)

    def _check_alive(self) -> None:
        if self.lost:
            raise AcceleratorLostError(f"Accelerator '{self.name}' is no longer usable.")

    # --- Memory ---

    @property
    def live_buffers(self) -> int:
        return len(self._live)

    def allocate(self, nbytes: int, label: str, dtype=np.float32) -> DeviceBuffer:
        self._check_alive()
        itemsize = np.dtype(dtype).itemsize
        if nbytes <= 0 or nbytes % itemsize != 0:
            raise PreconditionError(f"Buffer '{label}' size {nbytes} is not a positive multiple of {itemsize} bytes")

        buffer = DeviceBuffer(label=label, nbytes=int(nbytes), dtype=np.dtype(dtype))
        buffer.handle = self._allocate(buffer)
        self._live[id(buffer)] = buffer
        self.allocated_bytes += buffer.nbytes
        return buffer

    def release(self, buffer: Optional[DeviceBuffer]) -> None:
        """Frees a buffer. Safe to call twice or with None."""
        if buffer is None or buffer.released:
            return
        self._free(buffer)
        buffer.handle = None
        buffer.released = True
        if self._live.pop(id(buffer), None) is not None:
            self.allocated_bytes -= buffer.nbytes

    def upload(self, buffer: DeviceBuffer, array: np.ndarray) -> None:
        self._check_alive()
        host = np.ascontiguousarray(array, dtype=buffer.dtype).reshape(-1)
        if host.nbytes != buffer.nbytes:
            raise PreconditionError(
                f"Upload of {host.nbytes} bytes does not match buffer '{buffer.label}' ({buffer.nbytes} bytes)"
            )
        self._upload(buffer, host)

    def readback(self, buffer: DeviceBuffer) -> np.ndarray:
        """Copies a buffer into a host staging array and returns it."""
        self._check_alive()
        if buffer.released:
            raise PreconditionError(f"Buffer '{buffer.label}' was already released")
        return self._readback(buffer)

    # --- Hooks ---

    def compile(self, source: str, entry_point: str) -> CompiledProgram:
        raise NotImplementedError

    def dispatch(self, program: CompiledProgram, grid: Tuple[int, int], block: Tuple[int, int],
                 args: Sequence[DeviceBuffer]) -> None:
        raise NotImplementedError

    def synchronize(self) -> None:
        raise NotImplementedError

    def _allocate(self, buffer: DeviceBuffer):
        raise NotImplementedError

    def _free(self, buffer: DeviceBuffer) -> None:
        raise NotImplementedError

    def _upload(self, buffer: DeviceBuffer, host: np.ndarray) -> None:
        raise NotImplementedError

    def _readback(self, buffer: DeviceBuffer) -> np.ndarray:
        raise NotImplementedError


class HostAccelerator(Accelerator):
    """
    numpy backend.

    Runs the host rendition of each kernel over exactly the threads a GPU
    launch would run. The grid is processed in bands of workgroup rows so
    a 4096x4096 field never materializes every temporary at once.

    Attributes:
        memory_limit_bytes (int | None): Simulated device memory. Allocations
            beyond it raise ResourceError.
        rows_per_band (int): Pixel rows evaluated per band.
    """

    name = "host"

    def __init__(self, memory_limit_bytes: Optional[int] = None, rows_per_band: int = 1024,
                 show_progress: bool = True):
        super().__init__()
        self.memory_limit_bytes = memory_limit_bytes
        self.rows_per_band = int(rows_per_band)
        self.show_progress = show_progress
        logger.info(f"Host accelerator ready (memory limit: {memory_limit_bytes or 'none'}).")

    def compile(self, source: str, entry_point: str) -> CompiledProgram:
        self._check_alive()
        programs = host_programs()
        if entry_point not in programs or f"void {entry_point}(" not in source:
            raise InitializationError(f"Entry point '{entry_point}' not found in kernel source.")
        return CompiledProgram(entry_point=entry_point, handle=programs[entry_point])

    def _allocate(self, buffer: DeviceBuffer):
        if self.memory_limit_bytes is not None and self.allocated_bytes + buffer.nbytes > self.memory_limit_bytes:
            raise ResourceError(
                f"Cannot allocate '{buffer.label}' ({buffer.nbytes / 1024 / 1024:.1f} MB): "
                f"{self.allocated_bytes / 1024 / 1024:.1f} MB of "
                f"{self.memory_limit_bytes / 1024 / 1024:.1f} MB already in use."
            )
        return np.zeros(buffer.count, dtype=buffer.dtype)

    def _free(self, buffer: DeviceBuffer) -> None:
        pass

    def _upload(self, buffer: DeviceBuffer, host: np.ndarray) -> None:
        np.copyto(buffer.handle, host)

    def _readback(self, buffer: DeviceBuffer) -> np.ndarray:
        staging = np.empty(buffer.count, dtype=buffer.dtype)
        np.copyto(staging, buffer.handle)
        return staging

    def dispatch(self, program: CompiledProgram, grid: Tuple[int, int], block: Tuple[int, int],
                 args: Sequence[DeviceBuffer]) -> None:
        self._check_alive()
        params_buf, src_buf, dst_buf = args
        params = params_buf.handle
        width, height = int(params[0]), int(params[1])
        source = src_buf.handle.reshape(height, width)
        out = dst_buf.handle

        total_rows = min(grid[1] * block[1], height)
        band = band_rows(block, self.rows_per_band)
        n_bands = (total_rows + band - 1) // band
        bands = covered_pixels(width, height, grid, block, self.rows_per_band)
        for px, py in tqdm(bands, total=n_bands, desc=program.entry_point, leave=False,
                           disable=not self.show_progress or n_bands < 2):
            out[py * width + px] = program.handle(params, source, px, py)

    def synchronize(self) -> None:
        # Dispatch is blocking on the host
        self._check_alive()


class CudaAccelerator(Accelerator):
    """
    CuPy backend. Kernels are compiled with NVRTC through cupy.RawKernel.

    CUDA runtime or driver faults during dispatch/synchronization mark the
    device lost; out-of-memory during allocation is a ResourceError and
    leaves the device usable.
    """

    name = "cuda"

    def __init__(self, device_id: int = 0):
        super().__init__()
        # 1. Make NVRTC visible BEFORE importing anything CUDA-related
        self._ensure_nvrtc_loaded()

        try:
            import cupy as cp
        except ImportError as exc:
            raise InitializationError(
                "CuPy is not installed, so no CUDA accelerator is available. "
                "Install the 'cuda' extra (pip install terrasketch[cuda]) or use the host backend."
            ) from exc
        self.cp = cp

        # 2. Find a device
        try:
            device_count = cp.cuda.runtime.getDeviceCount()
        except cp.cuda.runtime.CUDARuntimeError as exc:
            raise InitializationError(
                f"No compute-capable GPU found ({exc}). Make sure the NVIDIA driver is installed and up to date."
            ) from exc
        if device_count <= device_id:
            raise InitializationError(
                f"CUDA device {device_id} requested but only {device_count} device(s) are visible."
            )

        self.device = cp.cuda.Device(device_id)
        self.device.use()
        self.stream = cp.cuda.Stream(non_blocking=True)
        props = cp.cuda.runtime.getDeviceProperties(device_id)
        device_name = props["name"]
        if isinstance(device_name, bytes):
            device_name = device_name.decode()
        logger.info(f"CUDA accelerator acquired: {device_name} (device {device_id}).")

    def _ensure_nvrtc_loaded(self):
        """
        Force-loads libnvrtc from the active Python environment when the
        system loader cannot find it (pip/conda CUDA wheels), so CuPy can
        compile kernels.
        """
        try:
            ctypes.CDLL("libnvrtc.so.12")
            return
        except OSError:
            pass

        search_pattern = os.path.join(
            sys.prefix, "lib", "python*", "site-packages", "nvidia",
            "cuda_nvrtc", "lib", "libnvrtc.so.12"
        )
        matches = glob.glob(search_pattern)
        if not matches:
            matches = glob.glob(os.path.join(sys.prefix, "lib", "libnvrtc.so.12"))

        if matches:
            try:
                ctypes.CDLL(matches[0], mode=ctypes.RTLD_GLOBAL)
            except OSError as exc:
                logger.warning(f"Found {matches[0]} but could not load it: {exc}")
        else:
            logger.debug("libnvrtc.so.12 not found in the environment; relying on the system loader.")

    def _lost_errors(self):
        cp = self.cp
        return (cp.cuda.runtime.CUDARuntimeError, cp.cuda.driver.CUDADriverError)

    def compile(self, source: str, entry_point: str) -> CompiledProgram:
        self._check_alive()
        cp = self.cp
        kernel = cp.RawKernel(source, entry_point)
        try:
            # RawKernel compiles lazily; force it so errors surface here
            kernel.compile()
        except cp.cuda.compiler.CompileException as exc:
            raise InitializationError(f"Kernel '{entry_point}' failed to compile: {exc}") from exc
        except self._lost_errors() as exc:
            self.mark_lost(str(exc))
            raise AcceleratorLostError(f"Accelerator lost while compiling '{entry_point}': {exc}") from exc
        return CompiledProgram(entry_point=entry_point, handle=kernel)

    def _allocate(self, buffer: DeviceBuffer):
        cp = self.cp
        try:
            with self.device:
                return cp.empty(buffer.count, dtype=buffer.dtype)
        except cp.cuda.memory.OutOfMemoryError as exc:
            raise ResourceError(
                f"Out of GPU memory allocating '{buffer.label}' ({buffer.nbytes / 1024 / 1024:.1f} MB)."
            ) from exc
        except self._lost_errors() as exc:
            self.mark_lost(str(exc))
            raise AcceleratorLostError(f"Accelerator lost while allocating '{buffer.label}': {exc}") from exc

    def _free(self, buffer: DeviceBuffer) -> None:
        # CuPy returns the block to its pool when the last reference drops
        pass

    def _upload(self, buffer: DeviceBuffer, host: np.ndarray) -> None:
        cp = self.cp
        try:
            buffer.handle.set(host, stream=self.stream)
        except cp.cuda.memory.OutOfMemoryError as exc:
            raise ResourceError(f"Upload to '{buffer.label}' failed: {exc}") from exc
        except self._lost_errors() as exc:
            self.mark_lost(str(exc))
            raise AcceleratorLostError(f"Accelerator lost during upload to '{buffer.label}': {exc}") from exc

    def dispatch(self, program: CompiledProgram, grid: Tuple[int, int], block: Tuple[int, int],
                 args: Sequence[DeviceBuffer]) -> None:
        self._check_alive()
        try:
            with self.stream:
                program.handle(grid, block, tuple(buf.handle for buf in args))
        except self._lost_errors() as exc:
            self.mark_lost(str(exc))
            raise AcceleratorLostError(f"Accelerator lost during '{program.entry_point}' dispatch: {exc}") from exc

    def synchronize(self) -> None:
        self._check_alive()
        try:
            self.stream.synchronize()
        except self._lost_errors() as exc:
            self.mark_lost(str(exc))
            raise AcceleratorLostError(f"Accelerator lost while waiting for completion: {exc}") from exc

    def _readback(self, buffer: DeviceBuffer) -> np.ndarray:
        import cupyx

        staging = cupyx.empty_pinned((buffer.count,), dtype=buffer.dtype)
        try:
            buffer.handle.get(stream=self.stream, out=staging)
            self.stream.synchronize()
        except self._lost_errors() as exc:
            self.mark_lost(str(exc))
            raise AcceleratorLostError(f"Accelerator lost during readback of '{buffer.label}': {exc}") from exc
        return np.array(staging, copy=True)


def create_accelerator(backend: str = "cuda", **options) -> Accelerator:
    """
    Builds an accelerator for the configured backend.

    Args:
        backend: 'cuda' or 'host'.
        options: Backend keyword arguments (device_id for cuda;
                 memory_limit_bytes, rows_per_band, show_progress for host).
    """
    if backend == "cuda":
        return CudaAccelerator(device_id=options.get("device_id", 0))
    if backend == "host":
        return HostAccelerator(
            memory_limit_bytes=options.get("memory_limit_bytes"),
            rows_per_band=options.get("rows_per_band", 1024),
            show_progress=options.get("show_progress", True),
        )
    raise InitializationError(f"Unknown accelerator backend '{backend}'. Must be 'cuda' or 'host'.")
