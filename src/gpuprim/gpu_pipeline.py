"""Kernel binding and dispatch"""

import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import numpy as np
import wgpu

from .gpu_device import pipeline_get_or_create, source_specialize
from .gpu_errors import ConfigurationError, DispatchError
from .gpu_profiling import perf_monitor_sample_record, profile_around
from .gpu_types import (
    AccessMode,
    BindGroupEntry,
    BufferParam,
    DeviceBuffer,
    GPUConfig,
    GPUContext,
    Kernel,
    LocalMemory,
    LocalParam,
    ParamAccess,
    ProfilingSample,
    Program,
    ScalarParam,
)

logger = logging.getLogger(__name__)

SCALAR_DTYPES = {
    "i32": np.dtype(np.int32),
    "u32": np.dtype(np.uint32),
    "f32": np.dtype(np.float32),
}

UNIFORM_ALIGNMENT = 16

Extent = Union[int, Sequence[int]]

# Buffer access modes each parameter access accepts
COMPATIBLE_ACCESS = {
    ParamAccess.READ: (AccessMode.READ_ONLY, AccessMode.READ_WRITE),
    ParamAccess.WRITE: (AccessMode.WRITE_ONLY, AccessMode.READ_WRITE),
    ParamAccess.READ_WRITE: (AccessMode.READ_WRITE,),
}

# ============================================================================
# INFRASTRUCTURE
# ============================================================================


def create_bind_group_entries(entries: List[BindGroupEntry]) -> List[Dict]:
    """Convert typed BindGroupEntry list to wgpu bind group entry format.

    Args:
        entries: List of BindGroupEntry specifications

    Returns:
        New list of dictionaries in wgpu bind group format
    """
    return [
        {
            "binding": entry.binding,
            "resource": {
                "buffer": entry.buffer,
                "offset": entry.offset,
                "size": entry.size,
            },
        }
        for entry in entries
    ]


def scalar_dtype_get(param: Union[ScalarParam, LocalParam], program: Program) -> np.dtype:
    """Resolve a parameter dtype, mapping "T" to the program element type."""
    name = program.element_type if param.dtype == "T" else param.dtype
    return SCALAR_DTYPES[name]


# ============================================================================
# KERNEL CREATION AND BINDING
# ============================================================================


def kernel_create(ctx: GPUContext, program: Program, name: str) -> Kernel:
    """Look up a named entry point of a built program.

    Raises:
        ConfigurationError: If the program has no entry point with that name
    """
    if name not in program.signatures:
        raise ConfigurationError(
            f"Kernel '{name}' not found, available: {sorted(program.signatures)}"
        )
    signature = program.signatures[name]
    return Kernel(
        program=program,
        signature=signature,
        args=[None] * len(signature.params),
    )


def _buffer_check(kernel: Kernel, param: BufferParam, value: Any) -> DeviceBuffer:
    if not isinstance(value, DeviceBuffer):
        raise ConfigurationError(
            f"{kernel.signature.name}.{param.name} expects a DeviceBuffer, "
            f"got {type(value).__name__}"
        )
    if value.access not in COMPATIBLE_ACCESS[param.access]:
        raise ConfigurationError(
            f"{kernel.signature.name}.{param.name} needs {param.access.value} access, "
            f"buffer is {value.access.value}"
        )
    return value


def _scalar_check(kernel: Kernel, param: ScalarParam, value: Any) -> np.generic:
    dtype = scalar_dtype_get(param, kernel.program)
    label = f"{kernel.signature.name}.{param.name}"

    if isinstance(value, (bool, np.bool_)) or not isinstance(
        value, (int, float, np.integer, np.floating)
    ):
        raise ConfigurationError(
            f"{label} expects a {dtype} scalar, got {type(value).__name__}"
        )

    if np.issubdtype(dtype, np.integer):
        if isinstance(value, (float, np.floating)) and not float(value).is_integer():
            raise ConfigurationError(f"{label} expects an integer, got {value}")
        limits = np.iinfo(dtype)
        if not limits.min <= int(value) <= limits.max:
            raise ConfigurationError(
                f"{label}={value} does not fit in {dtype} [{limits.min}, {limits.max}]"
            )
        return dtype.type(int(value))

    # inf and nan pass through; finite values must not overflow to inf
    limit = float(np.finfo(dtype).max)
    if np.isfinite(float(value)) and abs(float(value)) > limit:
        raise ConfigurationError(
            f"{label}={value} does not fit in {dtype} [{-limit}, {limit}]"
        )
    return dtype.type(value)


def _local_check(kernel: Kernel, param: LocalParam, value: Any) -> LocalMemory:
    label = f"{kernel.signature.name}.{param.name}"
    if not isinstance(value, LocalMemory):
        raise ConfigurationError(
            f"{label} expects LocalMemory, got {type(value).__name__}"
        )
    itemsize = scalar_dtype_get(param, kernel.program).itemsize
    if value.size_bytes <= 0 or value.size_bytes % itemsize != 0:
        raise ConfigurationError(
            f"{label} needs a positive multiple of {itemsize} bytes, "
            f"got {value.size_bytes}"
        )
    return value


def kernel_bind(kernel: Kernel, index: int, value: Any) -> None:
    """
    Bind one positional argument, validated against the kernel signature.

    Args:
        kernel: Kernel from kernel_create
        index: Parameter position
        value: DeviceBuffer, scalar or LocalMemory matching the parameter kind

    Raises:
        ConfigurationError: If index or value does not match the signature
    """
    params = kernel.signature.params
    if not 0 <= index < len(params):
        raise ConfigurationError(
            f"{kernel.signature.name} has {len(params)} parameters, "
            f"no argument index {index}"
        )

    param = params[index]
    if isinstance(param, BufferParam):
        kernel.args[index] = _buffer_check(kernel, param, value)
    elif isinstance(param, ScalarParam):
        kernel.args[index] = _scalar_check(kernel, param, value)
    else:
        kernel.args[index] = _local_check(kernel, param, value)


def kernel_bind_all(kernel: Kernel, *values: Any) -> Kernel:
    """Bind every parameter in declaration order.

    Raises:
        ConfigurationError: If the count or any value does not match
    """
    expected = len(kernel.signature.params)
    if len(values) != expected:
        raise ConfigurationError(
            f"{kernel.signature.name} takes {expected} arguments, got {len(values)}"
        )
    for index, value in enumerate(values):
        kernel_bind(kernel, index, value)
    return kernel


# ============================================================================
# DISPATCH GEOMETRY
# ============================================================================


def extent_normalize(extent: Extent, name: str) -> Tuple[int, ...]:
    """Turn an int or 1-3 element sequence into a tuple of ints.

    Raises:
        ConfigurationError: If rank is outside 1..3 or a component is negative
    """
    components = (extent,) if isinstance(extent, (int, np.integer)) else tuple(extent)
    if not 1 <= len(components) <= 3:
        raise ConfigurationError(f"{name} must have 1 to 3 dimensions, got {extent}")
    if any(int(c) < 0 for c in components):
        raise ConfigurationError(f"{name} components must be non-negative, got {extent}")
    return tuple(int(c) for c in components)


def _dimension_limits(config: GPUConfig) -> Tuple[int, int, int]:
    return (
        config.max_workgroup_size_x,
        config.max_workgroup_size_y,
        config.max_workgroup_size_z,
    )


def local_extent_choose(
    config: GPUConfig, global_extent: Tuple[int, ...]
) -> Tuple[int, ...]:
    """Pick a local extent when the caller left it to the runtime.

    X takes the largest divisor of the global size up to the default
    workgroup size; the other dimensions run one work-item per group.
    """
    limit = min(
        config.default_workgroup_size,
        config.max_workgroup_size_x,
        config.max_workgroup_invocations,
    )
    size_x = global_extent[0]
    chosen = 1
    for candidate in range(min(limit, size_x), 0, -1):
        if size_x % candidate == 0:
            chosen = candidate
            break
    return (chosen,) + (1,) * (len(global_extent) - 1)


def dispatch_geometry(
    config: GPUConfig, global_extent: Extent, local_extent: Optional[Extent] = None
) -> Tuple[Tuple[int, ...], Tuple[int, ...], Tuple[int, ...]]:
    """
    Validate extents and compute workgroup counts.

    Returns:
        (global extent, local extent, workgroup counts), each of the same rank

    Raises:
        ConfigurationError: On zero-size dispatch, rank mismatch, a local extent
            that does not divide the global extent, or exceeded device limits
    """
    global_ext = extent_normalize(global_extent, "global_extent")
    if any(g == 0 for g in global_ext):
        raise ConfigurationError(
            f"global_extent {global_ext} is empty, skip the dispatch instead"
        )

    if local_extent is None:
        local_ext = local_extent_choose(config, global_ext)
    else:
        local_ext = extent_normalize(local_extent, "local_extent")
        if len(local_ext) != len(global_ext):
            raise ConfigurationError(
                f"local_extent {local_ext} and global_extent {global_ext} differ in rank"
            )
        if any(l == 0 for l in local_ext):
            raise ConfigurationError(f"local_extent must be positive, got {local_ext}")
        for g, l in zip(global_ext, local_ext):
            if g % l != 0:
                raise ConfigurationError(
                    f"local_extent {local_ext} does not divide global_extent {global_ext}"
                )

    for axis, (l, limit) in enumerate(zip(local_ext, _dimension_limits(config))):
        if l > limit:
            raise ConfigurationError(
                f"local_extent[{axis}]={l} exceeds device limit {limit}"
            )
    invocations = int(np.prod(local_ext))
    if invocations > config.max_workgroup_invocations:
        raise ConfigurationError(
            f"local_extent {local_ext} has {invocations} work-items, "
            f"device limit is {config.max_workgroup_invocations}"
        )

    groups = tuple(g // l for g, l in zip(global_ext, local_ext))
    for axis, count in enumerate(groups):
        if count > config.max_workgroups_per_dim:
            raise ConfigurationError(
                f"{count} workgroups along axis {axis} exceed the limit of "
                f"{config.max_workgroups_per_dim}"
            )
    return global_ext, local_ext, groups


# ============================================================================
# DISPATCH
# ============================================================================


def uniform_pack(kernel: Kernel) -> Optional[bytes]:
    """Pack scalar arguments in declaration order, padded to 16 bytes.

    Returns:
        Uniform block bytes, None if the kernel has no scalar parameters
    """
    chunks = [
        np.asarray(value).tobytes()
        for param, value in zip(kernel.signature.params, kernel.args)
        if isinstance(param, ScalarParam)
    ]
    if not chunks:
        return None
    data = b"".join(chunks)
    remainder = len(data) % UNIFORM_ALIGNMENT
    if remainder:
        data += b"\0" * (UNIFORM_ALIGNMENT - remainder)
    return data


def specialization_options(
    ctx: GPUContext, kernel: Kernel, local_ext: Tuple[int, ...]
) -> Dict[str, str]:
    """Placeholder values for one dispatch of kernel.

    Raises:
        ConfigurationError: If scratch memory is too small for the local
            extent or for the scalar that sizes it, or exceeds the device's
            workgroup storage
    """
    options = dict(kernel.program.options)
    padded = tuple(local_ext) + (1,) * (3 - len(local_ext))
    options["WORKGROUP_SIZE_X"] = str(padded[0])
    options["WORKGROUP_SIZE_Y"] = str(padded[1])
    options["WORKGROUP_SIZE_Z"] = str(padded[2])

    work_items = int(np.prod(local_ext))
    scalars = {
        param.name: value
        for param, value in zip(kernel.signature.params, kernel.args)
        if isinstance(param, ScalarParam)
    }
    scratch_bytes = 0
    for param, value in zip(kernel.signature.params, kernel.args):
        if not isinstance(param, LocalParam):
            continue
        elements = value.size_bytes // scalar_dtype_get(param, kernel.program).itemsize
        if param.per_work_item and elements < work_items:
            raise ConfigurationError(
                f"{kernel.signature.name}.{param.name} holds {elements} elements, "
                f"local extent {local_ext} needs {work_items}"
            )
        if param.sized_by is not None and elements < int(scalars[param.sized_by]):
            raise ConfigurationError(
                f"{kernel.signature.name}.{param.name} holds {elements} elements, "
                f"{param.sized_by}={int(scalars[param.sized_by])} needs as many"
            )
        options[param.placeholder] = str(elements)
        scratch_bytes += value.size_bytes

    if scratch_bytes > ctx.config.max_workgroup_storage_bytes:
        raise ConfigurationError(
            f"{kernel.signature.name} requests {scratch_bytes} bytes of local memory, "
            f"device limit is {ctx.config.max_workgroup_storage_bytes}"
        )
    return options


def kernel_dispatch(
    ctx: GPUContext,
    kernel: Kernel,
    global_extent: Extent,
    local_extent: Optional[Extent] = None,
) -> Optional[ProfilingSample]:
    """
    Dispatch a fully bound kernel on the session's queue.

    Scalars go to a uniform block at binding 0, buffers to bindings 1, 2, ...
    in declaration order. The dispatch is timed when the device supports
    timestamps. Multi-dimensional extents are for kernels that index Y and
    Z; of the packaged kernels only add2d and fill do.

    Args:
        kernel: Kernel with every parameter bound
        global_extent: Work-items per dimension (1-3 dimensions)
        local_extent: Work-items per group; chosen by the harness if None

    Returns:
        Profiling sample, None when timing is unavailable

    Raises:
        ConfigurationError: If an argument is unbound or the geometry is invalid
        DispatchError: If the device rejects the pipeline or the dispatch
    """
    name = kernel.signature.name
    unbound = [
        param.name
        for param, value in zip(kernel.signature.params, kernel.args)
        if value is None
    ]
    if unbound:
        raise ConfigurationError(f"{name}: unbound argument(s) {unbound}")

    _, local_ext, groups = dispatch_geometry(ctx.config, global_extent, local_extent)
    options = specialization_options(ctx, kernel, local_ext)
    shader_code = source_specialize(kernel.program.source, options)

    try:
        pipeline = pipeline_get_or_create(ctx, shader_code, name)
    except wgpu.GPUError as e:
        raise DispatchError(name, "pipeline creation", e) from e

    entries: List[BindGroupEntry] = []
    params_data = uniform_pack(kernel)
    try:
        if params_data is not None:
            params_buffer = ctx.device.create_buffer_with_data(
                data=params_data, usage=wgpu.BufferUsage.UNIFORM
            )
            entries.append(BindGroupEntry(0, params_buffer, 0, len(params_data)))

        buffers = [
            value
            for param, value in zip(kernel.signature.params, kernel.args)
            if isinstance(param, BufferParam)
        ]
        for position, buffer in enumerate(buffers):
            entries.append(
                BindGroupEntry(position + 1, buffer.buffer, 0, buffer.size_bytes)
            )

        bind_group = ctx.device.create_bind_group(
            layout=pipeline.get_bind_group_layout(0),
            entries=create_bind_group_entries(entries),
        )
    except wgpu.GPUError as e:
        raise DispatchError(name, "binding", e) from e

    groups_xyz = tuple(groups) + (1,) * (3 - len(groups))

    def encode_and_submit(timestamp_writes: Optional[Dict[str, Any]]) -> None:
        encoder = ctx.device.create_command_encoder()
        if timestamp_writes is None:
            compute_pass = encoder.begin_compute_pass()
        else:
            compute_pass = encoder.begin_compute_pass(timestamp_writes=timestamp_writes)
        compute_pass.set_pipeline(pipeline)
        compute_pass.set_bind_group(0, bind_group)
        compute_pass.dispatch_workgroups(*groups_xyz)
        compute_pass.end()
        ctx.device.queue.submit([encoder.finish()])

    try:
        _, sample = profile_around(ctx, encode_and_submit)
    except wgpu.GPUError as e:
        raise DispatchError(name, "dispatch", e) from e

    perf_monitor_sample_record(ctx.perf_monitor, name, sample)
    logger.debug(
        "dispatched %s: groups=%s local=%s elapsed=%s",
        name,
        groups_xyz,
        local_ext,
        "n/a" if sample is None else f"{sample.elapsed_ns}ns",
    )
    return sample
