import numpy as np
import pytest

from fake_wgpu import FakeDevice
from gpuprim.gpu_device import program_build, session_create
from gpuprim.gpu_kernels import kernel_source_load
from gpuprim.gpu_types import GPUConfig


@pytest.fixture
def device():
    return FakeDevice()


@pytest.fixture
def ctx(device):
    return session_create(
        device,
        GPUConfig(default_workgroup_size=64),
        platform_name="Fake",
        device_name="Fake GPU",
        timestamps_supported=True,
    )


@pytest.fixture
def ctx_untimed(device):
    return session_create(device, GPUConfig(default_workgroup_size=64))


@pytest.fixture
def source():
    return kernel_source_load()


@pytest.fixture
def program(ctx, source):
    return program_build(ctx, source, np.int32)


@pytest.fixture
def program_f32(ctx, source):
    return program_build(ctx, source, np.float32)
