import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field as dc_field
from typing import Callable, Dict, Optional, Tuple

import numpy as np

from .accelerator import (
    UNIFORM_BLOCK_BYTES,
    WORKGROUP_TILE,
    Accelerator,
    CompiledProgram,
    DeviceBuffer,
    dispatch_grid,
)
from .errors import AcceleratorLostError, PreconditionError
from .field import GENERATED, REFINED, Field
from .kernels import KERNELS, REFINE, SYNTHESIS, get_kernel

logger = logging.getLogger(__name__)

# Binding order shared by every kernel: params, heightmap_in, heightmap_out
BIND_LAYOUT: Tuple[str, ...] = ("uniform", "read-only-storage", "storage")

# Linear indices are 32-bit on the device
MAX_PIXELS = 2 ** 32 - 1


@dataclass
class KernelResource:
    """A compiled kernel plus its binding layout, tied to one accelerator."""
    identity: str
    program: CompiledProgram
    layout: Tuple[str, ...]
    accelerator: Accelerator = dc_field(repr=False)


class PipelineCache:
    """
    Owns the accelerator and the compiled kernels for a process (or a test).

    Both are created lazily: the accelerator on first use, each kernel the
    first time its identity is requested. A kernel stays cached until
    invalidate() is called for it or the accelerator reports loss, in which
    case the accelerator and everything compiled on it are dropped and the
    next request starts from scratch.

    Args:
        accelerator_factory: Zero-argument callable returning a fresh
            Accelerator. Raises InitializationError if none is available.
    """

    def __init__(self, accelerator_factory: Callable[[], Accelerator]):
        self._factory = accelerator_factory
        self._accelerator: Optional[Accelerator] = None
        self._resources: Dict[str, KernelResource] = {}
        self._lock = threading.RLock()
        self.compile_count: Dict[str, int] = defaultdict(int)
        self.acquire_count = 0

    def accelerator(self) -> Accelerator:
        with self._lock:
            if self._accelerator is None:
                accelerator = self._factory()
                accelerator.add_loss_listener(self._on_accelerator_lost)
                self._accelerator = accelerator
                self.acquire_count += 1
            return self._accelerator

    def resource(self, identity: str) -> KernelResource:
        """Returns the cached kernel for identity, compiling it on first use."""
        with self._lock:
            cached = self._resources.get(identity)
            if cached is not None:
                return cached

            spec = get_kernel(identity)
            accelerator = self.accelerator()
            logger.info(f"Compiling kernel '{identity}' ({spec.entry_point}) on {accelerator.name}...")
            program = accelerator.compile(spec.source, spec.entry_point)

            resource = KernelResource(
                identity=identity,
                program=program,
                layout=BIND_LAYOUT,
                accelerator=accelerator,
            )
            self._resources[identity] = resource
            self.compile_count[identity] += 1
            return resource

    def is_cached(self, identity: str) -> bool:
        return identity in self._resources

    def invalidate(self, identity: str) -> None:
        """Drops the cached kernel for identity. The next request recompiles."""
        with self._lock:
            resource = self._resources.pop(identity, None)
            if resource is None:
                return
            logger.warning(f"Kernel '{identity}' invalidated.")
            # A lost device cannot serve any kernel, so stop handing it out too
            if resource.accelerator.lost and resource.accelerator is self._accelerator:
                self._accelerator = None

    def report_lost(self, reason: str) -> None:
        """
        Declares the current accelerator unusable, e.g. after a caller-side
        timeout. Same effect as a loss reported by the backend.
        """
        with self._lock:
            accelerator = self._accelerator
        if accelerator is not None:
            accelerator.mark_lost(reason)

    def clear(self) -> None:
        with self._lock:
            self._resources.clear()
            self._accelerator = None

    def _on_accelerator_lost(self, accelerator: Accelerator, reason: str) -> None:
        with self._lock:
            for identity, resource in list(self._resources.items()):
                if resource.accelerator is accelerator:
                    self.invalidate(identity)
            if self._accelerator is accelerator:
                self._accelerator = None
        logger.warning(f"Pipeline cache reset after accelerator loss ({reason}).")


class ResultBuffer:
    """
    Accelerator-resident output of one dispatch.

    Ownership belongs to whoever received it; they must call release()
    (or use it as a context manager) once they are done reading or reusing it.
    """

    def __init__(self, accelerator: Accelerator, buffer: DeviceBuffer, width: int, height: int):
        self.accelerator = accelerator
        self.buffer = buffer
        self.width = width
        self.height = height

    @property
    def released(self) -> bool:
        return self.buffer.released

    def read(self, kind: str = GENERATED) -> Field:
        """Copies the buffer to a host staging array and wraps it as a Field."""
        if self.released:
            raise PreconditionError(f"Result buffer '{self.buffer.label}' was already released")
        data = self.accelerator.readback(self.buffer)
        return Field(data, self.width, self.height, kind)

    def release(self) -> None:
        self.accelerator.release(self.buffer)

    def __enter__(self) -> "ResultBuffer":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()

    def __repr__(self) -> str:
        state = "released" if self.released else "live"
        return f"ResultBuffer({self.width}x{self.height}, {state})"


class PipelineDriver:
    """
    Runs kernels over fields.

    Per call: uniform block + input buffer are allocated, the field uploaded,
    an output buffer allocated, the grid dispatched and awaited. Transient
    buffers are always released before returning. Calls on the same kernel
    identity are serialized.

    Failure policy: ResourceError / InitializationError propagate and leave the
    cache alone. AcceleratorLostError invalidates the kernel and propagates.
    Nothing is retried.
    """

    def __init__(self, cache: PipelineCache, tile: int = WORKGROUP_TILE):
        self.cache = cache
        self.tile = int(tile)
        # Reentrant so _run can hold the lock across dispatch() and the readback
        self._locks: Dict[str, threading.RLock] = {identity: threading.RLock() for identity in KERNELS}

    def generate(self, painted: Field) -> ResultBuffer:
        """Terrain synthesis. The caller owns (and must release) the result."""
        return self._run(SYNTHESIS, painted)

    def generate_field(self, painted: Field) -> Field:
        """Terrain synthesis, read back to the host."""
        with self.generate(painted) as result:
            try:
                return result.read(GENERATED)
            except AcceleratorLostError:
                self.cache.invalidate(SYNTHESIS)
                raise

    def refine(self, field: Field) -> Field:
        """Refinement pass. Returns the refined field; no buffers outlive the call."""
        return self._run(REFINE, field, read_kind=REFINED)

    def _run(self, identity: str, field: Field, read_kind: Optional[str] = None):
        spec = get_kernel(identity)
        with self._locks[identity]:
            result = self.dispatch(identity, field)
            if spec.keeps_output:
                return result

            try:
                return result.read(read_kind or GENERATED)
            except AcceleratorLostError:
                self.cache.invalidate(identity)
                raise
            finally:
                result.release()

    def _validate(self, field: Field) -> None:
        if not isinstance(field, Field):
            raise PreconditionError(f"Expected a Field, got {type(field).__name__}")
        pixel_count = field.width * field.height
        if field.data.size != pixel_count:
            raise PreconditionError(
                f"Field length {field.data.size} does not match {field.width}x{field.height}"
            )
        if pixel_count > MAX_PIXELS:
            raise PreconditionError(f"Field of {pixel_count} pixels exceeds the 32-bit index range")

    def dispatch(self, identity: str, field: Field) -> ResultBuffer:
        """
        Runs one kernel over a field and returns its output buffer.

        The caller owns the returned ResultBuffer. generate() and refine() are
        the usual entry points; this is the shared step underneath them.
        """
        get_kernel(identity)
        with self._locks[identity]:
            return self._dispatch(identity, field)

    def _dispatch(self, identity: str, field: Field) -> ResultBuffer:
        # 1. Everything the caller got wrong fails before touching the device
        self._validate(field)
        width, height = field.width, field.height
        byte_size = field.nbytes

        # 2. Device + compiled kernel (lazily created, cached)
        resource = self.cache.resource(identity)
        accelerator = resource.accelerator

        uniform = input_buffer = output_buffer = None
        handed_off = False
        try:
            # 3. Buffers: { width, height } uniform block, input, output
            uniform = accelerator.allocate(UNIFORM_BLOCK_BYTES, f"{identity}-params", dtype=np.uint32)
            accelerator.upload(uniform, np.array([width, height, 0, 0], dtype=np.uint32))

            input_buffer = accelerator.allocate(byte_size, f"{identity}-input")
            accelerator.upload(input_buffer, field.data)

            output_buffer = accelerator.allocate(byte_size, f"{identity}-output")

            # 4. Dispatch and wait for completion
            grid = dispatch_grid(width, height, self.tile)
            accelerator.dispatch(resource.program, grid, (self.tile, self.tile),
                                 (uniform, input_buffer, output_buffer))
            accelerator.synchronize()

            logger.info(
                f"[{identity}] Dispatched {grid[0]}x{grid[1]} workgroups "
                f"({width * height} pixels, {byte_size / 1024 / 1024:.1f} MB)."
            )
            result = ResultBuffer(accelerator, output_buffer, width, height)
            handed_off = True
            return result

        except AcceleratorLostError:
            self.cache.invalidate(identity)
            raise

        finally:
            # 5. Transient buffers never outlive the call
            accelerator.release(input_buffer)
            accelerator.release(uniform)
            if not handed_off:
                accelerator.release(output_buffer)
