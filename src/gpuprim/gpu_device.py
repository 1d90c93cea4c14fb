"""Device management, program building and pipeline caching"""

import hashlib
import logging
import re
from typing import Any, Dict, List, Mapping, Optional, Union

import numpy as np
import wgpu

from .gpu_errors import BuildDiagnostic, ConfigurationError, DeviceError
from .gpu_kernels import KERNEL_SIGNATURES, kernel_options_default
from .gpu_partition import dtype_check
from .gpu_profiling import perf_monitor_create
from .gpu_types import (
    DeviceInfo,
    GPUConfig,
    GPUContext,
    KernelSignature,
    PipelineCache,
    PlatformInfo,
    Program,
)

logger = logging.getLogger(__name__)

TIMESTAMP_FEATURE = "timestamp-query"

WGSL_ELEMENT_TYPES = {
    np.dtype(np.int32): "i32",
    np.dtype(np.uint32): "u32",
    np.dtype(np.float32): "f32",
}

PLACEHOLDER_PATTERN = re.compile(r"\{([A-Z][A-Z0-9_]*)\}")

# ============================================================================
# PLATFORMS AND DEVICES
# ============================================================================


def platforms_list() -> List[PlatformInfo]:
    """Enumerate adapters, grouped by backend.

    A platform is a wgpu backend (Vulkan, Metal, D3D12, GL); its devices are
    the adapters that backend exposes, in enumeration order.

    Returns:
        Platforms in order of first appearance, possibly empty
    """
    platforms: Dict[str, PlatformInfo] = {}
    for adapter in wgpu.gpu.enumerate_adapters_sync():
        info = adapter.info
        backend = info.get("backend_type", "") or "Unknown"
        if backend not in platforms:
            platforms[backend] = PlatformInfo(index=len(platforms), name=backend)
        platform = platforms[backend]
        platform.devices.append(
            DeviceInfo(
                index=len(platform.devices),
                name=info.get("device", "") or info.get("description", ""),
                adapter_type=info.get("adapter_type", ""),
                vendor=info.get("vendor", ""),
                adapter=adapter,
            )
        )
    return list(platforms.values())


def platforms_describe(platforms: Optional[List[PlatformInfo]] = None) -> str:
    """Render the platform and device listing shown by ``-l``."""
    if platforms is None:
        platforms = platforms_list()

    lines = [f"Found {len(platforms)} platform(s)"]
    for platform in platforms:
        lines.append("")
        lines.append(f"Platform {platform.index}, {platform.name}")
        for device in platform.devices:
            lines.append(
                f"  Device {device.index}, {device.name}, "
                f"{device.adapter_type or 'unknown type'}, {device.vendor or 'unknown vendor'}"
            )
    return "\n".join(lines)


def session_create(
    device: Any,
    config: Optional[GPUConfig] = None,
    platform_name: str = "",
    device_name: str = "",
    timestamps_supported: bool = False,
) -> GPUContext:
    """Wrap an already requested device into a session handle.

    Raises:
        ConfigurationError: If config is invalid
    """
    if config is None:
        config = device_config_auto_detect(device)
    device_config_validate(config)

    return GPUContext(
        device=device,
        config=config,
        pipeline_cache=pipeline_cache_create(),
        perf_monitor=perf_monitor_create(),
        platform_name=platform_name,
        device_name=device_name,
        timestamps_supported=timestamps_supported and config.enable_profiling,
    )


def session_open(
    platform_index: int = 0,
    device_index: int = 0,
    config: Optional[GPUConfig] = None,
) -> Union[GPUContext, DeviceError]:
    """
    Select an adapter and open a session on it.

    Requests the timestamp-query feature when the adapter offers it so
    dispatches can be profiled.

    Args:
        platform_index: Index into ``platforms_list()``
        device_index: Index into that platform's devices
        config: Optional GPU configuration. If None, auto-detects from device.

    Returns:
        Session handle, or DeviceError if no such device can be opened

    Raises:
        ConfigurationError: If config is invalid
    """
    try:
        platforms = platforms_list()
    except (RuntimeError, wgpu.GPUError) as e:
        return DeviceError(
            f"Adapter enumeration failed: {e}", platform_index, device_index
        )

    if not platforms:
        return DeviceError("No WebGPU adapters found", platform_index, device_index)
    if not 0 <= platform_index < len(platforms):
        return DeviceError(
            f"Platform {platform_index} does not exist, "
            f"{len(platforms)} platform(s) available",
            platform_index,
            device_index,
        )

    platform = platforms[platform_index]
    if not 0 <= device_index < len(platform.devices):
        return DeviceError(
            f"Device {device_index} does not exist on platform '{platform.name}', "
            f"{len(platform.devices)} device(s) available",
            platform_index,
            device_index,
        )

    selected = platform.devices[device_index]
    adapter = selected.adapter
    timestamps = TIMESTAMP_FEATURE in adapter.features
    required_features = [TIMESTAMP_FEATURE] if timestamps else []

    try:
        device = adapter.request_device_sync(required_features=required_features)
    except (RuntimeError, wgpu.GPUError) as e:
        return DeviceError(
            f"Device request on '{selected.name}' failed: {e}",
            platform_index,
            device_index,
        )

    if not timestamps:
        logger.info("%s has no timestamp queries, timing unavailable", selected.name)
    logger.info("WGPU device initialized: %s, %s", platform.name, selected.name)

    return session_create(
        device,
        config,
        platform_name=platform.name,
        device_name=selected.name,
        timestamps_supported=timestamps,
    )


# ============================================================================
# CONFIGURATION
# ============================================================================


def _limit(limits: Mapping[str, int], name: str, default: int) -> int:
    """Look up a device limit under either naming style wgpu has used."""
    for key in (name, name.replace("_", "-")):
        if key in limits:
            return int(limits[key])
    return default


def device_limits_query(device: Any) -> Dict[str, int]:
    """Query device limits relevant to dispatch geometry.

    Missing entries fall back to the WebGPU guaranteed minimums.
    """
    limits = getattr(device, "limits", None) or {}
    defaults = {
        "max_compute_workgroup_size_x": 256,
        "max_compute_workgroup_size_y": 256,
        "max_compute_workgroup_size_z": 64,
        "max_compute_invocations_per_workgroup": 256,
        "max_compute_workgroup_storage_size": 16384,
        "max_compute_workgroups_per_dimension": 65535,
    }
    return {name: _limit(limits, name, value) for name, value in defaults.items()}


def device_config_auto_detect(device: Any) -> GPUConfig:
    """
    Auto-detect GPU capabilities and return a matching configuration.

    Args:
        device: WGPU device (from adapter.request_device_sync())

    Returns:
        GPUConfig within the device's limits
    """
    limits = device_limits_query(device)

    max_invocations = limits["max_compute_invocations_per_workgroup"]
    max_x = limits["max_compute_workgroup_size_x"]

    if min(max_invocations, max_x) >= 256:
        default_wg = 256
    elif min(max_invocations, max_x) >= 128:
        default_wg = 128
    else:
        default_wg = 64  # Low-end GPU

    return GPUConfig(
        default_workgroup_size=default_wg,
        max_workgroup_size_x=max_x,
        max_workgroup_size_y=limits["max_compute_workgroup_size_y"],
        max_workgroup_size_z=limits["max_compute_workgroup_size_z"],
        max_workgroup_invocations=max_invocations,
        max_workgroup_storage_bytes=limits["max_compute_workgroup_storage_size"],
        max_workgroups_per_dim=limits["max_compute_workgroups_per_dimension"],
    )


def device_config_validate(config: GPUConfig) -> None:
    """
    Validate GPU configuration for correctness.

    Args:
        config: Configuration to validate

    Raises:
        ConfigurationError: If any parameter is invalid
    """
    if config.default_workgroup_size <= 0:
        raise ConfigurationError(
            f"default_workgroup_size must be positive, got {config.default_workgroup_size}"
        )

    if config.default_workgroup_size > config.max_workgroup_invocations:
        raise ConfigurationError(
            f"default_workgroup_size too large: {config.default_workgroup_size}. "
            f"Device limit is {config.max_workgroup_invocations}."
        )

    for name in (
        "max_workgroup_size_x",
        "max_workgroup_size_y",
        "max_workgroup_size_z",
        "max_workgroup_invocations",
        "max_workgroup_storage_bytes",
        "max_workgroups_per_dim",
    ):
        value = getattr(config, name)
        if value <= 0:
            raise ConfigurationError(f"{name} must be positive, got {value}")

    if config.timestamp_period_ns <= 0:
        raise ConfigurationError(
            f"timestamp_period_ns must be positive, got {config.timestamp_period_ns}"
        )


# ============================================================================
# PROGRAMS
# ============================================================================


def element_type_get(dtype) -> str:
    """WGSL scalar type name for a host dtype."""
    return WGSL_ELEMENT_TYPES[dtype_check(dtype)]


def program_dtype_get(program: Program) -> np.dtype:
    """Host dtype a program was built for."""
    for dtype, element_type in WGSL_ELEMENT_TYPES.items():
        if element_type == program.element_type:
            return dtype
    raise ConfigurationError(f"Unknown element type {program.element_type}")


def source_specialize(source: str, options: Mapping[str, str]) -> str:
    """Substitute ``{KEY}`` placeholders with their option values."""
    specialized = source
    for key, value in options.items():
        specialized = specialized.replace(f"{{{key}}}", str(value))
    return specialized


def placeholders_find(source: str) -> List[str]:
    """Names of placeholders left unresolved in source."""
    return sorted(set(PLACEHOLDER_PATTERN.findall(source)))


def program_build(
    ctx: GPUContext,
    source: str,
    dtype=np.int32,
    options: Optional[Mapping[str, str]] = None,
    signatures: Optional[Mapping[str, KernelSignature]] = None,
) -> Union[Program, BuildDiagnostic]:
    """
    Build kernel source for one element type.

    The source is compiled once with default placeholder values to surface
    syntax and type errors early; dispatches compile their own
    specializations on demand.

    Args:
        source: Kernel source with {NAME} placeholders
        dtype: Element type substituted for {T}
        options: Extra or overriding placeholder values
        signatures: Entry point signatures; the packaged primitives if None

    Returns:
        Program, or BuildDiagnostic carrying status, options and the log

    Raises:
        ConfigurationError: If dtype is not supported
    """
    merged = kernel_options_default(ctx.config)
    merged["T"] = element_type_get(dtype)
    if options:
        merged.update({key: str(value) for key, value in options.items()})

    code = source_specialize(source, merged)
    unresolved = placeholders_find(code)
    if unresolved:
        return BuildDiagnostic(
            status="unresolved-placeholder",
            options=merged,
            log=f"No value for placeholder(s): {', '.join(unresolved)}",
        )

    try:
        ctx.device.create_shader_module(code=code)
    except wgpu.GPUError as e:
        logger.debug("shader build failed with options %s", merged)
        return BuildDiagnostic(status="error", options=merged, log=str(e))

    if signatures is None:
        signatures = KERNEL_SIGNATURES

    available = {}
    for name, signature in signatures.items():
        if re.search(rf"\bfn\s+{re.escape(name)}\s*\(", code):
            available[name] = signature
        else:
            logger.debug("entry point '%s' not found in source, skipped", name)

    return Program(
        source=source,
        element_type=merged["T"],
        options=merged,
        signatures=available,
    )


def program_get_or_build(ctx: GPUContext, source: str, dtype) -> Program:
    """Build once per (source, element type) and reuse.

    Used for kernels the harness runs on its own behalf (device fill).

    Raises:
        ConfigurationError: If the source does not build
    """
    key = hashlib.sha256(
        (element_type_get(dtype) + "\0" + source).encode("utf-8")
    ).hexdigest()
    if key not in ctx.pipeline_cache.programs:
        program = program_build(ctx, source, dtype)
        if isinstance(program, BuildDiagnostic):
            raise ConfigurationError(f"Kernel source failed to build\n{program}")
        ctx.pipeline_cache.programs[key] = program
    return ctx.pipeline_cache.programs[key]


# ============================================================================
# PIPELINES
# ============================================================================


def pipeline_cache_create() -> PipelineCache:
    """Create a new pipeline cache.

    Returns:
        New empty pipeline cache for caching compiled shaders
    """
    return PipelineCache()


def pipeline_get_or_create(
    ctx: GPUContext, shader_code: str, entry_point: str = "main"
) -> wgpu.GPUComputePipeline:
    """Cache compute pipelines to avoid recompilation.

    Keyed by SHA256 of the shader code and the entry point name.

    Args:
        shader_code: Fully specialized WGSL source
        entry_point: Name of the compute entry point

    Returns:
        Cached or newly compiled compute pipeline

    Raises:
        wgpu.GPUError: If the shader or pipeline fails validation
    """
    shader_hash = hashlib.sha256(
        (entry_point + "\0" + shader_code).encode("utf-8")
    ).hexdigest()

    if shader_hash not in ctx.pipeline_cache.pipelines:
        shader_module = ctx.device.create_shader_module(code=shader_code)
        pipeline = ctx.device.create_compute_pipeline(
            layout="auto",
            compute={
                "module": shader_module,
                "entry_point": entry_point,
            },
        )
        ctx.pipeline_cache.pipelines[shader_hash] = pipeline
        logger.debug("compiled pipeline %s (%s)", entry_point, shader_hash[:12])

    return ctx.pipeline_cache.pipelines[shader_hash]
