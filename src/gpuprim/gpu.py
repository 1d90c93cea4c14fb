"""
GPU (WGPU) parallel primitives: padding, buffers, typed kernels, profiling
"""

from .gpu_buffer import (
    CompletionEvent,
    PendingDownload,
    buffer_allocate,
    buffer_create_with_data,
    buffer_download,
    buffer_fill,
    buffer_release,
    buffer_upload,
)
from .gpu_device import (
    device_config_auto_detect,
    device_config_validate,
    device_limits_query,
    pipeline_cache_create,
    pipeline_get_or_create,
    platforms_describe,
    platforms_list,
    program_build,
    program_dtype_get,
    session_create,
    session_open,
)
from .gpu_errors import (
    BuildDiagnostic,
    ConfigurationError,
    DeviceError,
    DispatchError,
    TransferError,
)
from .gpu_kernels import KERNEL_SIGNATURES, kernel_source_load
from .gpu_partition import (
    input_pad,
    neutral_element,
    partition_plan,
    policy_histogram,
    policy_max,
    policy_min,
    policy_scan,
    policy_sum,
)
from .gpu_pipeline import (
    dispatch_geometry,
    kernel_bind,
    kernel_bind_all,
    kernel_create,
    kernel_dispatch,
)
from .gpu_primitives import (
    histogram,
    histogram_auto_range,
    histogram_reference,
    matrix_add,
    reduce,
    reduce_reference,
    scan_inclusive,
    scan_reference,
    vector_add,
    vector_mul,
    vector_reference,
)
from .gpu_profiling import (
    perf_monitor_create,
    perf_monitor_kernel_time_record,
    perf_monitor_reset,
    perf_monitor_stats_get,
    profile_around,
    profiling_info_format,
)
from .gpu_types import (
    AccessMode,
    BufferParam,
    DeviceBuffer,
    GPUConfig,
    GPUContext,
    Kernel,
    KernelSignature,
    LocalMemory,
    LocalParam,
    ParamAccess,
    PartitionPlan,
    PrimitiveRun,
    ProfilingSample,
    Program,
    ScalarParam,
    TimeResolution,
)

__all__ = [
    # Types
    "AccessMode",
    "BufferParam",
    "DeviceBuffer",
    "GPUConfig",
    "GPUContext",
    "Kernel",
    "KernelSignature",
    "LocalMemory",
    "LocalParam",
    "ParamAccess",
    "PartitionPlan",
    "PrimitiveRun",
    "ProfilingSample",
    "Program",
    "ScalarParam",
    "TimeResolution",
    # Errors
    "BuildDiagnostic",
    "ConfigurationError",
    "DeviceError",
    "DispatchError",
    "TransferError",
    # Device
    "device_config_auto_detect",
    "device_config_validate",
    "device_limits_query",
    "pipeline_cache_create",
    "pipeline_get_or_create",
    "platforms_describe",
    "platforms_list",
    "program_build",
    "program_dtype_get",
    "session_create",
    "session_open",
    "KERNEL_SIGNATURES",
    "kernel_source_load",
    # Partition
    "input_pad",
    "neutral_element",
    "partition_plan",
    "policy_histogram",
    "policy_max",
    "policy_min",
    "policy_scan",
    "policy_sum",
    # Buffers
    "CompletionEvent",
    "PendingDownload",
    "buffer_allocate",
    "buffer_create_with_data",
    "buffer_download",
    "buffer_fill",
    "buffer_release",
    "buffer_upload",
    # Kernels
    "dispatch_geometry",
    "kernel_bind",
    "kernel_bind_all",
    "kernel_create",
    "kernel_dispatch",
    # Profiling
    "perf_monitor_create",
    "perf_monitor_kernel_time_record",
    "perf_monitor_reset",
    "perf_monitor_stats_get",
    "profile_around",
    "profiling_info_format",
    # Primitives
    "histogram",
    "histogram_auto_range",
    "histogram_reference",
    "reduce",
    "reduce_reference",
    "scan_inclusive",
    "scan_reference",
    "matrix_add",
    "vector_add",
    "vector_mul",
    "vector_reference",
]
