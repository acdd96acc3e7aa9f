from dataclasses import dataclass
from typing import Callable, Dict

import numpy as np

from . import refine, synthesis

SYNTHESIS = "synthesis"
REFINE = "refine"

# (params, source2d, px, py) -> values for the given threads
HostProgram = Callable[[np.ndarray, np.ndarray, np.ndarray, np.ndarray], np.ndarray]


@dataclass(frozen=True)
class KernelSpec:
    """
    Static description of one kernel identity.

    Attributes:
        identity: Cache key ('synthesis' | 'refine').
        source: CUDA C source text compiled on first use.
        entry_point: Name of the __global__ function inside source.
        host_program: numpy rendition of the same per-thread body.
        keeps_output: If True the output buffer is handed to the caller
                      (generator kernels); otherwise it is read back and
                      released inside the call.
    """
    identity: str
    source: str
    entry_point: str
    host_program: HostProgram
    keeps_output: bool


KERNELS: Dict[str, KernelSpec] = {
    SYNTHESIS: KernelSpec(
        identity=SYNTHESIS,
        source=synthesis.SYNTHESIS_CUDA_SOURCE,
        entry_point=synthesis.ENTRY_POINT,
        host_program=synthesis.synthesize_pixels,
        keeps_output=True,
    ),
    REFINE: KernelSpec(
        identity=REFINE,
        source=refine.REFINE_CUDA_SOURCE,
        entry_point=refine.ENTRY_POINT,
        host_program=refine.refine_pixels,
        keeps_output=False,
    ),
}


def get_kernel(identity: str) -> KernelSpec:
    if identity not in KERNELS:
        raise KeyError(f"Unknown kernel identity '{identity}'. Must be one of {list(KERNELS)}")
    return KERNELS[identity]


def host_programs() -> Dict[str, HostProgram]:
    """Entry point name -> host program, used by the host accelerator to 'compile'."""
    return {spec.entry_point: spec.host_program for spec in KERNELS.values()}
