from .errors import (
    AcceleratorLostError,
    InitializationError,
    PreconditionError,
    ResourceError,
    TerrainPipelineError,
)
from .field import Field
from .accelerator import CudaAccelerator, HostAccelerator, create_accelerator, dispatch_grid
from .pipeline import PipelineCache, PipelineDriver, ResultBuffer
from .codec import decode, export, extract
from .config import build_driver, load_config

__version__ = "0.1.0"
