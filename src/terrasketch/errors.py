"""
Error taxonomy for the heightmap compute pipeline.

Only AcceleratorLostError causes the pipeline to mutate its own state
(the cached kernel program for the affected identity is dropped).
Every other error is reported to the caller untouched.
"""


class TerrainPipelineError(Exception):
    """Base class for every error raised by the pipeline."""


class InitializationError(TerrainPipelineError):
    """No compatible compute accelerator could be acquired."""


class ResourceError(TerrainPipelineError):
    """Buffer allocation or upload failed on the accelerator."""


class AcceleratorLostError(TerrainPipelineError):
    """The accelerator became unusable during or between dispatches."""


class PreconditionError(TerrainPipelineError, ValueError):
    """Malformed field dimensions or buffer sizing, caught before dispatch."""
