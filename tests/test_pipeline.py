"""Pipeline cache and driver: lazy compile, buffer ownership, failure policy."""

from concurrent.futures import ThreadPoolExecutor

import numpy as np
import pytest

from terrasketch.errors import AcceleratorLostError, InitializationError, PreconditionError, ResourceError
from terrasketch.field import Field
from terrasketch.kernels import REFINE, SYNTHESIS
from terrasketch.pipeline import BIND_LAYOUT, PipelineCache, PipelineDriver

from .conftest import CountingFactory


def test_nothing_is_acquired_until_first_use(cache, factory):
    assert factory.created == []
    assert not cache.is_cached(REFINE)
    assert cache.acquire_count == 0


def test_kernels_compile_once_and_are_reused(driver, cache, painted):
    driver.refine(painted)
    driver.refine(painted)
    driver.generate_field(painted)
    driver.generate_field(painted)

    assert cache.acquire_count == 1
    assert cache.compile_count[REFINE] == 1
    assert cache.compile_count[SYNTHESIS] == 1
    assert cache.resource(REFINE).layout == BIND_LAYOUT


def test_generate_hands_output_to_caller(driver, cache, painted):
    result = driver.generate(painted)
    accelerator = cache.accelerator()
    # Only the output survives the call
    assert accelerator.live_buffers == 1
    assert not result.released

    generated = result.read()
    assert generated.shape == painted.shape

    result.release()
    assert result.released
    assert accelerator.live_buffers == 0


def test_reading_a_released_result_fails(driver, painted):
    result = driver.generate(painted)
    result.release()
    with pytest.raises(PreconditionError):
        result.read()


def test_refine_leaves_no_buffers_behind(driver, cache, painted):
    driver.refine(painted)
    assert cache.accelerator().live_buffers == 0
    assert cache.accelerator().allocated_bytes == 0


def test_initialization_failure_propagates(painted):
    def no_device():
        raise InitializationError("no adapter")

    cache = PipelineCache(no_device)
    driver = PipelineDriver(cache)
    with pytest.raises(InitializationError):
        driver.refine(painted)
    assert cache.acquire_count == 0
    assert not cache.is_cached(REFINE)


def test_resource_error_keeps_cache_intact(painted):
    # Room for one 37x23 buffer but not two
    factory = CountingFactory(memory_limit_bytes=4096)
    cache = PipelineCache(factory)
    driver = PipelineDriver(cache)

    with pytest.raises(ResourceError):
        driver.refine(painted)

    assert cache.is_cached(REFINE)
    assert cache.accelerator().live_buffers == 0

    small = Field.from_array(np.full((8, 8), 0.5, dtype=np.float32))
    driver.refine(small)
    assert cache.compile_count[REFINE] == 1
    assert len(factory.created) == 1


def test_loss_during_dispatch_invalidates_without_retry(painted):
    factory = CountingFactory(lose_on_dispatch=2)
    cache = PipelineCache(factory)
    driver = PipelineDriver(cache)

    driver.refine(painted)
    with pytest.raises(AcceleratorLostError):
        driver.refine(painted)

    lost = factory.created[0]
    assert lost.dispatch_calls == 2
    assert len(factory.created) == 1
    assert not cache.is_cached(REFINE)
    assert lost.live_buffers == 0

    # The next call starts over on a fresh accelerator
    refined = driver.refine(painted)
    assert refined.shape == painted.shape
    assert len(factory.created) == 2
    assert cache.acquire_count == 2
    assert cache.compile_count[REFINE] == 2


def test_loss_between_calls_resets_every_kernel(driver, cache, factory, painted):
    driver.refine(painted)
    driver.generate_field(painted)
    assert cache.is_cached(REFINE) and cache.is_cached(SYNTHESIS)

    factory.created[0].mark_lost("device reset")

    assert not cache.is_cached(REFINE)
    assert not cache.is_cached(SYNTHESIS)
    driver.generate_field(painted)
    assert len(factory.created) == 2
    assert cache.compile_count[SYNTHESIS] == 2


def test_report_lost_acts_like_backend_loss(driver, cache, factory, painted):
    driver.refine(painted)
    cache.report_lost("caller timeout")

    assert factory.created[0].lost
    assert not cache.is_cached(REFINE)


def test_invalidate_forces_recompile_on_same_accelerator(driver, cache, painted):
    driver.refine(painted)
    cache.invalidate(REFINE)
    driver.refine(painted)
    assert cache.compile_count[REFINE] == 2
    assert cache.acquire_count == 1


@pytest.mark.parametrize("bad", [np.zeros((4, 4), dtype=np.float32), None, "heightmap"])
def test_non_field_input_is_rejected_before_touching_device(driver, cache, bad):
    with pytest.raises(PreconditionError):
        driver.refine(bad)
    assert cache.acquire_count == 0


def test_concurrent_calls_on_one_kernel_are_serialized(driver, cache, painted):
    with ThreadPoolExecutor(max_workers=4) as pool:
        results = list(pool.map(lambda _: driver.refine(painted), range(8)))

    for refined in results[1:]:
        np.testing.assert_array_equal(refined.as_array(), results[0].as_array())
    assert cache.compile_count[REFINE] == 1
    assert cache.accelerator().live_buffers == 0


def test_locks_exist_for_every_kernel_before_first_call(cache, painted):
    driver = PipelineDriver(cache)
    locks = dict(driver._locks)
    assert set(locks) == {SYNTHESIS, REFINE}

    with ThreadPoolExecutor(max_workers=4) as pool:
        list(pool.map(lambda _: driver.refine(painted), range(4)))
    assert driver._locks[REFINE] is locks[REFINE]


def test_dispatch_hands_output_to_caller(driver, cache, painted):
    with driver.dispatch(REFINE, painted) as result:
        assert cache.accelerator().live_buffers == 1
        refined = result.read()
    assert refined.shape == painted.shape
    assert cache.accelerator().live_buffers == 0


def test_dispatch_unknown_identity(driver, painted):
    with pytest.raises(KeyError):
        driver.dispatch("erosion", painted)
