import logging

import matplotlib

matplotlib.use("Agg")

import numpy as np
import pytest

from terrasketch.accelerator import HostAccelerator
from terrasketch.errors import AcceleratorLostError
from terrasketch.field import Field
from terrasketch.pipeline import PipelineCache, PipelineDriver


class FlakyAccelerator(HostAccelerator):
    """Host accelerator that can be told to lose the device on a given dispatch."""

    def __init__(self, lose_on_dispatch=None, **kwargs):
        kwargs.setdefault("show_progress", False)
        super().__init__(**kwargs)
        self.lose_on_dispatch = lose_on_dispatch
        self.dispatch_calls = 0

    def dispatch(self, program, grid, block, args):
        self.dispatch_calls += 1
        if self.lose_on_dispatch is not None and self.dispatch_calls == self.lose_on_dispatch:
            self.mark_lost("simulated device reset")
            raise AcceleratorLostError("simulated device reset during dispatch")
        super().dispatch(program, grid, block, args)


class CountingFactory:
    """Accelerator factory that records every accelerator it hands out."""

    def __init__(self, **kwargs):
        self.kwargs = kwargs
        self.created = []

    def __call__(self):
        accelerator = FlakyAccelerator(**self.kwargs)
        self.created.append(accelerator)
        return accelerator


@pytest.fixture
def factory():
    return CountingFactory()


@pytest.fixture
def cache(factory):
    return PipelineCache(factory)


@pytest.fixture
def driver(cache):
    return PipelineDriver(cache)


@pytest.fixture
def rng():
    return np.random.default_rng(1234)


@pytest.fixture
def painted(rng):
    """Odd-sized painted field so edge workgroups are partially out of bounds."""
    return Field.from_array(rng.random((37, 23), dtype=np.float32))


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)
