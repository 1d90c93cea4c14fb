"""Core data types - plain dataclasses only"""

from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any,
    Dict,
    List,
    Optional,
    Tuple,
    Union,
)

import numpy as np
import wgpu


# ============================================================================
# DEVICE TYPES
# ============================================================================
@dataclass
class GPUConfig:
    """
    Centralized GPU configuration for dispatch geometry and profiling.

    This dataclass is immutable - do not modify fields after creation.
    Defaults are conservative and valid on every WebGPU adapter.
    """

    # ========================================================================
    # WORKGROUP SIZES
    # ========================================================================

    default_workgroup_size: int = 64
    """
    Workgroup size used when a caller does not pick one.

    Also the upper bound when the harness chooses a local extent
    for a dispatch that did not specify one.
    """

    max_workgroup_size_x: int = 256
    """Largest local extent along X (WebGPU default limit)"""

    max_workgroup_size_y: int = 256
    """Largest local extent along Y (WebGPU default limit)"""

    max_workgroup_size_z: int = 64
    """Largest local extent along Z (WebGPU default limit)"""

    max_workgroup_invocations: int = 256
    """
    Largest product of the local extent components.

    WebGPU guarantees 256 on every adapter.
    """

    max_workgroup_storage_bytes: int = 16384
    """
    Workgroup (local) memory available to one workgroup.

    Sum of every LocalParam bound to a kernel must fit.
    """

    # ========================================================================
    # COMPUTE LIMITS
    # ========================================================================

    max_workgroups_per_dim: int = 65535
    """
    Maximum workgroups per dimension (WGSL limit).

    This is a WebGPU spec limit and should not be changed.
    """

    # ========================================================================
    # PROFILING
    # ========================================================================

    enable_profiling: bool = True
    """Capture device timestamps around each dispatch when supported"""

    timestamp_period_ns: float = 1.0
    """
    Nanoseconds per timestamp tick.

    wgpu-native already reports timestamps in nanoseconds, so 1.0 is
    correct for every backend it exposes.
    """


@dataclass
class PipelineCache:
    """
    Cache for compiled GPU pipelines
    """

    pipelines: Dict[str, wgpu.GPUComputePipeline] = field(default_factory=dict)
    programs: Dict[str, "Program"] = field(default_factory=dict)


@dataclass
class PerfMonitor:
    """
    Performance monitoring state
    """

    kernel_times: Dict[str, List[float]] = field(default_factory=dict)
    submission_count: int = 0
    unavailable_count: int = 0


@dataclass
class GPUContext:
    """
    Explicit session handle threaded through every operation.

    Owns the device, its queue (``device.queue``), the pipeline cache and
    the performance monitor. Created by ``session_open``.
    """

    device: wgpu.GPUDevice
    config: GPUConfig
    pipeline_cache: PipelineCache
    perf_monitor: PerfMonitor
    platform_name: str = ""
    device_name: str = ""
    timestamps_supported: bool = False


@dataclass
class BindGroupEntry:
    """
    Type-safe bind group entry specification

    This dataclass is immutable - do not modify fields after creation.
    """

    binding: int
    buffer: wgpu.GPUBuffer
    offset: int
    size: int


# ============================================================================
# PLATFORM TYPES
# ============================================================================


@dataclass
class DeviceInfo:
    """One adapter as exposed by a platform (backend)."""

    index: int
    name: str
    adapter_type: str
    vendor: str
    adapter: Any


@dataclass
class PlatformInfo:
    """A wgpu backend (Vulkan, Metal, D3D12, GL) and its adapters."""

    index: int
    name: str
    devices: List[DeviceInfo] = field(default_factory=list)


# ============================================================================
# BUFFER TYPES
# ============================================================================


class AccessMode(Enum):
    """Kernel-side access permitted on a device buffer"""

    READ_ONLY = "read_only"
    WRITE_ONLY = "write_only"
    READ_WRITE = "read_write"


@dataclass
class DeviceBuffer:
    """
    Fixed-capacity device buffer.

    Capacity is set at creation and never changes; ``dtype`` is the host
    element type used to interpret downloads.

    This dataclass is immutable - do not modify fields after creation.
    """

    buffer: wgpu.GPUBuffer
    size_bytes: int
    access: AccessMode
    dtype: np.dtype

    @property
    def length(self) -> int:
        return self.size_bytes // self.dtype.itemsize


@dataclass
class LocalMemory:
    """Per-workgroup scratch request, not backed by a device buffer"""

    size_bytes: int


# ============================================================================
# PARTITION TYPES
# ============================================================================


class NeutralKind(Enum):
    SUM = "sum"
    MIN = "min"
    MAX = "max"
    HISTOGRAM = "histogram"
    SCAN = "scan"


@dataclass
class NeutralPolicy:
    """
    Algorithm class deciding which neutral element pads the input.

    Attributes:
        kind: Algorithm class
        dtype: Element type of the input
        min_value: Inclusive lower histogram bound (HISTOGRAM only)
        max_value: Inclusive upper histogram bound (HISTOGRAM only)
    """

    kind: NeutralKind
    dtype: np.dtype
    min_value: Optional[Union[int, float]] = None
    max_value: Optional[Union[int, float]] = None


@dataclass
class PartitionPlan:
    """
    Work-group geometry for one logical input.

    This dataclass is immutable - do not modify fields after creation.
    """

    logical_length: int
    physical_length: int
    group_count: int
    work_group_size: int
    pad_value: Union[int, float]


@dataclass
class InputVector:
    """Padded host data; ``data`` has the physical length"""

    data: np.ndarray
    logical_length: int


# ============================================================================
# KERNEL TYPES
# ============================================================================


class ParamAccess(Enum):
    READ = "read"
    WRITE = "write"
    READ_WRITE = "read_write"


@dataclass(frozen=True)
class BufferParam:
    """Storage buffer parameter, bound at binding 1 + its buffer position"""

    name: str
    access: ParamAccess


@dataclass(frozen=True)
class ScalarParam:
    """
    Scalar packed into the uniform parameter block at binding 0.

    ``dtype`` is a WGSL scalar name (``i32``, ``u32``, ``f32``) or ``T`` for
    the element type the program was built with.
    """

    name: str
    dtype: str


@dataclass(frozen=True)
class LocalParam:
    """
    Workgroup scratch array whose element count is substituted into
    ``{placeholder}`` when the pipeline is specialized.

    ``per_work_item`` arrays need one element per work-item of the group.
    ``sized_by`` names a scalar parameter whose bound value is the minimum
    element count (e.g. the bin count of a local histogram).
    """

    name: str
    dtype: str
    placeholder: str
    per_work_item: bool = True
    sized_by: Optional[str] = None


KernelParam = Union[BufferParam, ScalarParam, LocalParam]


@dataclass(frozen=True)
class KernelSignature:
    """Ordered, typed parameter list of one named entry point"""

    name: str
    params: Tuple[KernelParam, ...]


@dataclass
class Program:
    """
    Kernel source built for one element type.

    ``source`` still carries the placeholders that are resolved per
    dispatch; ``options`` holds their defaults.
    """

    source: str
    element_type: str
    options: Dict[str, str]
    signatures: Dict[str, KernelSignature]
    build_status: str = "success"


@dataclass
class Kernel:
    """A named entry point plus its positional argument slots"""

    program: Program
    signature: KernelSignature
    args: List[Any] = field(default_factory=list)


# ============================================================================
# PROFILING TYPES
# ============================================================================


class TimeResolution(Enum):
    NS = "ns"
    US = "us"
    MS = "ms"
    S = "s"


TIME_RESOLUTION_DIVISORS = {
    TimeResolution.NS: 1.0,
    TimeResolution.US: 1e3,
    TimeResolution.MS: 1e6,
    TimeResolution.S: 1e9,
}


@dataclass
class ProfilingSample:
    """
    Device timestamps of one dispatch, in nanoseconds.

    WebGPU only reports the start and end of a compute pass; ``queued``
    and ``submitted`` stay None when the device does not report them.
    """

    started: int
    ended: int
    queued: Optional[int] = None
    submitted: Optional[int] = None

    @property
    def elapsed_ns(self) -> int:
        return self.ended - self.started

    def elapsed(self, resolution: TimeResolution = TimeResolution.NS) -> float:
        return self.elapsed_ns / TIME_RESOLUTION_DIVISORS[resolution]


@dataclass
class KernelTimeStats:
    """
    Statistics for kernel execution times

    This dataclass is immutable - do not modify fields after creation.
    """

    count: int
    total_ms: float
    avg_ms: float
    min_ms: float
    max_ms: float


@dataclass
class PerfStats:
    """
    Complete performance statistics snapshot

    This dataclass is immutable - do not modify fields after creation.
    """

    total_submissions: int
    kernel_times: Dict[str, KernelTimeStats]
    unavailable_samples: int = 0


# ============================================================================
# PRIMITIVE RESULT TYPES
# ============================================================================


@dataclass
class PrimitiveRun:
    """
    Outcome of one primitive run.

    Attributes:
        output: Downloaded result, trimmed to its logical length
        value: Combined scalar for reductions, None otherwise
        partials: Per-group partial results before host combination
        samples: Profiling sample per dispatched kernel (None if unavailable)
        plan: Geometry the input was partitioned with
    """

    output: np.ndarray
    value: Optional[Union[int, float]] = None
    partials: Optional[np.ndarray] = None
    samples: Dict[str, Optional[ProfilingSample]] = field(default_factory=dict)
    plan: Optional[PartitionPlan] = None
