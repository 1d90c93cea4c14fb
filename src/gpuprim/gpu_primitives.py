"""Parallel primitives: plan, upload, dispatch, download"""

import logging
from typing import Optional, Sequence, Tuple, Union

import numpy as np

from .gpu_buffer import (
    buffer_allocate,
    buffer_create_with_data,
    buffer_download,
    buffer_fill,
    buffer_release,
    buffer_upload,
)
from .gpu_device import program_dtype_get
from .gpu_errors import ConfigurationError
from .gpu_partition import (
    input_pad,
    partition_plan,
    policy_histogram,
    policy_max,
    policy_min,
    policy_scan,
    policy_sum,
)
from .gpu_pipeline import kernel_bind_all, kernel_create, kernel_dispatch
from .gpu_types import (
    AccessMode,
    DeviceBuffer,
    GPUContext,
    LocalMemory,
    PartitionPlan,
    PrimitiveRun,
    ProfilingSample,
    Program,
)

logger = logging.getLogger(__name__)

REDUCE_OPS = {
    "sum": ("reduce_add", policy_sum),
    "min": ("reduce_min", policy_min),
    "max": ("reduce_max", policy_max),
}

HISTOGRAM_VARIANTS = {
    "simple": "hist_simple",
    "complex": "hist_complex",
}

BIN_DTYPE = np.dtype(np.uint32)

# ============================================================================
# HELPERS
# ============================================================================


def _host_values(program: Program, values: Sequence) -> Tuple[np.ndarray, np.dtype]:
    dtype = program_dtype_get(program)
    return np.asarray(values, dtype=dtype).ravel(), dtype


def _work_group_size(ctx: GPUContext, work_group_size: Optional[int]) -> int:
    if work_group_size is None:
        return ctx.config.default_workgroup_size
    return work_group_size


# ============================================================================
# ELEMENT-WISE
# ============================================================================


def _elementwise(
    ctx: GPUContext,
    program: Program,
    kernel_name: str,
    a: Sequence,
    b: Sequence,
    work_group_size: Optional[int],
) -> PrimitiveRun:
    a_host, dtype = _host_values(program, a)
    b_host, _ = _host_values(program, b)
    if a_host.size != b_host.size:
        raise ConfigurationError(
            f"{kernel_name}: inputs differ in length ({a_host.size} vs {b_host.size})"
        )

    wg = _work_group_size(ctx, work_group_size)
    plan = partition_plan(a_host.size, wg, policy_sum(dtype))
    if plan.group_count == 0:
        return PrimitiveRun(output=np.empty(0, dtype=dtype), plan=plan)

    buffer_a = buffer_create_with_data(
        ctx, AccessMode.READ_ONLY, input_pad(a_host, plan).data
    )
    buffer_b = buffer_create_with_data(
        ctx, AccessMode.READ_ONLY, input_pad(b_host, plan).data
    )
    buffer_c = buffer_allocate(
        ctx, AccessMode.WRITE_ONLY, plan.physical_length * dtype.itemsize, dtype
    )

    kernel = kernel_create(ctx, program, kernel_name)
    kernel_bind_all(kernel, buffer_a, buffer_b, buffer_c)
    sample = kernel_dispatch(ctx, kernel, plan.physical_length, wg)

    output = buffer_download(ctx, buffer_c)[: plan.logical_length]
    for buffer in (buffer_a, buffer_b, buffer_c):
        buffer_release(buffer)

    return PrimitiveRun(output=output, samples={kernel_name: sample}, plan=plan)


def vector_add(
    ctx: GPUContext,
    program: Program,
    a: Sequence,
    b: Sequence,
    work_group_size: Optional[int] = None,
) -> PrimitiveRun:
    """Element-wise C = A + B"""
    return _elementwise(ctx, program, "add", a, b, work_group_size)


def vector_mul(
    ctx: GPUContext,
    program: Program,
    a: Sequence,
    b: Sequence,
    work_group_size: Optional[int] = None,
) -> PrimitiveRun:
    """Element-wise C = A * B"""
    return _elementwise(ctx, program, "mul", a, b, work_group_size)


def matrix_add(
    ctx: GPUContext,
    program: Program,
    a: Sequence,
    b: Sequence,
    local_extent: Tuple[int, int] = (8, 8),
) -> PrimitiveRun:
    """
    Element-wise C = A + B over 2-D arrays, on a 2-D dispatch.

    The global extent is rounded up to whole groups; the kernel skips
    work-items outside the matrix, so inputs are uploaded unpadded.

    Args:
        a: Matrix of shape (rows, columns)
        b: Matrix of the same shape
        local_extent: Work-items per group as (columns, rows)

    Returns:
        Run whose ``output`` has the input shape

    Raises:
        ConfigurationError: If the inputs are not 2-D or differ in shape
    """
    dtype = program_dtype_get(program)
    a_host = np.asarray(a, dtype=dtype)
    b_host = np.asarray(b, dtype=dtype)
    if a_host.ndim != 2 or a_host.shape != b_host.shape:
        raise ConfigurationError(
            f"add2d needs two matrices of one shape, got {a_host.shape} and {b_host.shape}"
        )
    if a_host.size == 0:
        return PrimitiveRun(output=np.empty(a_host.shape, dtype=dtype))

    height, width = a_host.shape
    local_x, local_y = local_extent
    global_extent = (
        (width + local_x - 1) // local_x * local_x,
        (height + local_y - 1) // local_y * local_y,
    )

    buffer_a = buffer_create_with_data(ctx, AccessMode.READ_ONLY, a_host)
    buffer_b = buffer_create_with_data(ctx, AccessMode.READ_ONLY, b_host)
    buffer_c = buffer_allocate(ctx, AccessMode.WRITE_ONLY, a_host.nbytes, dtype)

    kernel = kernel_create(ctx, program, "add2d")
    kernel_bind_all(kernel, buffer_a, buffer_b, buffer_c, width, height)
    sample = kernel_dispatch(ctx, kernel, global_extent, local_extent)

    output = buffer_download(ctx, buffer_c).reshape(height, width)
    for buffer in (buffer_a, buffer_b, buffer_c):
        buffer_release(buffer)

    return PrimitiveRun(output=output, samples={"add2d": sample})


# ============================================================================
# REDUCTIONS
# ============================================================================


def _reduce_on(
    ctx: GPUContext,
    program: Program,
    input_buffer: DeviceBuffer,
    plan: PartitionPlan,
    op: str,
) -> Tuple[np.ndarray, Optional[ProfilingSample]]:
    """One partial per group of an already uploaded, padded input."""
    kernel_name, _ = REDUCE_OPS[op]
    dtype = input_buffer.dtype
    partials = buffer_allocate(
        ctx, AccessMode.WRITE_ONLY, plan.group_count * dtype.itemsize, dtype
    )

    kernel = kernel_create(ctx, program, kernel_name)
    kernel_bind_all(
        kernel,
        input_buffer,
        partials,
        LocalMemory(plan.work_group_size * dtype.itemsize),
    )
    sample = kernel_dispatch(ctx, kernel, plan.physical_length, plan.work_group_size)

    partials_host = buffer_download(ctx, partials)
    buffer_release(partials)
    return partials_host, sample


def _combine(partials: np.ndarray, op: str) -> Union[int, float]:
    if op == "sum":
        return partials.sum(dtype=partials.dtype).item()
    if op == "min":
        return partials.min().item()
    return partials.max().item()


def reduce(
    ctx: GPUContext,
    program: Program,
    values: Sequence,
    op: str = "sum",
    work_group_size: Optional[int] = None,
) -> PrimitiveRun:
    """
    Reduce values with sum, min or max.

    Each group reduces its slice in local memory and writes one partial;
    the partials are combined on the host.

    Args:
        values: Input elements, any length
        op: "sum", "min" or "max"
        work_group_size: Elements per group; config default if None

    Returns:
        Run with ``value`` set to the combined result (0 for an empty sum,
        None for an empty min/max) and ``partials`` to the group results

    Raises:
        ConfigurationError: If op is unknown or the geometry is invalid
    """
    if op not in REDUCE_OPS:
        raise ConfigurationError(f"Unknown reduction '{op}', expected {sorted(REDUCE_OPS)}")
    kernel_name, policy_create = REDUCE_OPS[op]

    host, dtype = _host_values(program, values)
    plan = partition_plan(host.size, _work_group_size(ctx, work_group_size), policy_create(dtype))
    if plan.group_count == 0:
        empty = np.empty(0, dtype=dtype)
        value = dtype.type(0).item() if op == "sum" else None
        return PrimitiveRun(output=empty, value=value, partials=empty, plan=plan)

    input_buffer = buffer_create_with_data(
        ctx, AccessMode.READ_ONLY, input_pad(host, plan).data
    )
    partials, sample = _reduce_on(ctx, program, input_buffer, plan, op)
    buffer_release(input_buffer)

    return PrimitiveRun(
        output=partials,
        value=_combine(partials, op),
        partials=partials,
        samples={kernel_name: sample},
        plan=plan,
    )


# ============================================================================
# HISTOGRAMS
# ============================================================================


def _histogram_on(
    ctx: GPUContext,
    program: Program,
    input_buffer: Optional[DeviceBuffer],
    plan: PartitionPlan,
    nr_bins: int,
    min_value: Union[int, float],
    max_value: Union[int, float],
    variant: str,
) -> Tuple[np.ndarray, Optional[ProfilingSample]]:
    """Count an already uploaded, padded input into nr_bins bins."""
    kernel_name = HISTOGRAM_VARIANTS[variant]

    bins = buffer_allocate(
        ctx, AccessMode.READ_WRITE, nr_bins * BIN_DTYPE.itemsize, BIN_DTYPE
    )
    buffer_fill(ctx, bins, 0)

    sample = None
    if input_buffer is not None:
        kernel = kernel_create(ctx, program, kernel_name)
        args = [input_buffer, bins, nr_bins, min_value, max_value]
        if variant == "complex":
            args.append(LocalMemory(nr_bins * BIN_DTYPE.itemsize))
        kernel_bind_all(kernel, *args)
        sample = kernel_dispatch(
            ctx, kernel, plan.physical_length, plan.work_group_size
        )

    counts = buffer_download(ctx, bins)
    buffer_release(bins)
    return counts, sample


def _histogram_check(nr_bins: int, variant: str) -> None:
    if variant not in HISTOGRAM_VARIANTS:
        raise ConfigurationError(
            f"Unknown histogram variant '{variant}', expected {sorted(HISTOGRAM_VARIANTS)}"
        )
    if nr_bins <= 0:
        raise ConfigurationError(f"nr_bins must be positive, got {nr_bins}")


def histogram(
    ctx: GPUContext,
    program: Program,
    values: Sequence,
    nr_bins: int,
    min_value: Union[int, float],
    max_value: Union[int, float],
    work_group_size: Optional[int] = None,
    variant: str = "simple",
) -> PrimitiveRun:
    """
    Count values into nr_bins equal-width bins over [min_value, max_value].

    Values outside the range, including the padding, are not counted.
    "simple" increments global bins directly; "complex" counts into local
    bins and merges them once per group.

    Raises:
        ConfigurationError: On an empty range, nr_bins <= 0 or unknown variant
    """
    _histogram_check(nr_bins, variant)
    host, dtype = _host_values(program, values)
    policy = policy_histogram(dtype, min_value, max_value)
    plan = partition_plan(host.size, _work_group_size(ctx, work_group_size), policy)

    input_buffer = None
    if plan.group_count:
        input_buffer = buffer_create_with_data(
            ctx, AccessMode.READ_ONLY, input_pad(host, plan).data
        )

    counts, sample = _histogram_on(
        ctx, program, input_buffer, plan, nr_bins, min_value, max_value, variant
    )
    if input_buffer is not None:
        buffer_release(input_buffer)

    samples = {} if input_buffer is None else {HISTOGRAM_VARIANTS[variant]: sample}
    return PrimitiveRun(output=counts, samples=samples, plan=plan)


def histogram_auto_range(
    ctx: GPUContext,
    program: Program,
    values: Sequence,
    nr_bins: int,
    work_group_size: Optional[int] = None,
    variant: str = "complex",
) -> PrimitiveRun:
    """
    Histogram over the data's own [min, max].

    Runs reduce_min, reduce_max and the histogram in sequence over one
    input buffer, re-uploading it with each stage's neutral padding.
    ``value`` holds the discovered (min, max).
    """
    _histogram_check(nr_bins, variant)
    host, dtype = _host_values(program, values)
    wg = _work_group_size(ctx, work_group_size)

    min_plan = partition_plan(host.size, wg, policy_min(dtype))
    if min_plan.group_count == 0:
        return PrimitiveRun(output=np.zeros(nr_bins, dtype=BIN_DTYPE), plan=min_plan)

    input_buffer = buffer_allocate(
        ctx, AccessMode.READ_ONLY, min_plan.physical_length * dtype.itemsize, dtype
    )

    buffer_upload(ctx, input_buffer, input_pad(host, min_plan).data)
    min_partials, min_sample = _reduce_on(ctx, program, input_buffer, min_plan, "min")
    min_value = _combine(min_partials, "min")

    max_plan = partition_plan(host.size, wg, policy_max(dtype))
    buffer_upload(ctx, input_buffer, input_pad(host, max_plan).data)
    max_partials, max_sample = _reduce_on(ctx, program, input_buffer, max_plan, "max")
    max_value = _combine(max_partials, "max")

    logger.info("histogram range discovered: [%s, %s]", min_value, max_value)

    hist_plan = partition_plan(
        host.size, wg, policy_histogram(dtype, min_value, max_value)
    )
    buffer_upload(ctx, input_buffer, input_pad(host, hist_plan).data)
    counts, hist_sample = _histogram_on(
        ctx, program, input_buffer, hist_plan, nr_bins, min_value, max_value, variant
    )
    buffer_release(input_buffer)

    return PrimitiveRun(
        output=counts,
        value=(min_value, max_value),
        samples={
            "reduce_min": min_sample,
            "reduce_max": max_sample,
            HISTOGRAM_VARIANTS[variant]: hist_sample,
        },
        plan=hist_plan,
    )


# ============================================================================
# SCAN
# ============================================================================


def scan_inclusive(
    ctx: GPUContext,
    program: Program,
    values: Sequence,
    work_group_size: Optional[int] = None,
    propagate_carries: bool = False,
) -> PrimitiveRun:
    """
    Inclusive prefix sum.

    Without carry propagation each group is scanned independently, which
    is the whole answer only when the input fits in one group. With
    ``propagate_carries`` the group totals are turned into exclusive
    carries on the host and added back by a second kernel.

    Returns:
        Run whose ``partials`` holds the per-group totals
    """
    host, dtype = _host_values(program, values)
    wg = _work_group_size(ctx, work_group_size)
    plan = partition_plan(host.size, wg, policy_scan(dtype))
    if plan.group_count == 0:
        empty = np.empty(0, dtype=dtype)
        return PrimitiveRun(output=empty, partials=empty, plan=plan)

    if plan.group_count > 1 and not propagate_carries:
        logger.warning(
            "scan over %d groups without carry propagation: "
            "result is scanned per group only",
            plan.group_count,
        )

    input_buffer = buffer_create_with_data(
        ctx, AccessMode.READ_ONLY, input_pad(host, plan).data
    )
    output_buffer = buffer_allocate(
        ctx, AccessMode.READ_WRITE, plan.physical_length * dtype.itemsize, dtype
    )
    totals_buffer = buffer_allocate(
        ctx, AccessMode.WRITE_ONLY, plan.group_count * dtype.itemsize, dtype
    )

    kernel = kernel_create(ctx, program, "scan_add")
    kernel_bind_all(
        kernel,
        input_buffer,
        output_buffer,
        totals_buffer,
        LocalMemory(wg * dtype.itemsize),
        LocalMemory(wg * dtype.itemsize),
    )
    samples = {"scan_add": kernel_dispatch(ctx, kernel, plan.physical_length, wg)}

    totals = buffer_download(ctx, totals_buffer)

    if propagate_carries and plan.group_count > 1:
        carries_host = np.zeros(plan.group_count, dtype=dtype)
        carries_host[1:] = np.cumsum(totals[:-1]).astype(dtype)
        carries_buffer = buffer_create_with_data(ctx, AccessMode.READ_ONLY, carries_host)

        carry_kernel = kernel_create(ctx, program, "scan_add_carries")
        kernel_bind_all(carry_kernel, output_buffer, carries_buffer)
        samples["scan_add_carries"] = kernel_dispatch(
            ctx, carry_kernel, plan.physical_length, wg
        )
        buffer_release(carries_buffer)

    output = buffer_download(ctx, output_buffer)[: plan.logical_length]
    for buffer in (input_buffer, output_buffer, totals_buffer):
        buffer_release(buffer)

    return PrimitiveRun(output=output, partials=totals, samples=samples, plan=plan)


# ============================================================================
# HOST REFERENCES
# ============================================================================


def vector_reference(a: Sequence, b: Sequence, op: str, dtype=np.int32) -> np.ndarray:
    a_host = np.asarray(a, dtype=dtype)
    b_host = np.asarray(b, dtype=dtype)
    return a_host + b_host if op == "add" else a_host * b_host


def reduce_reference(values: Sequence, op: str, dtype=np.int32):
    """Host result of reduce(); None for an empty min/max"""
    host = np.asarray(values, dtype=dtype)
    if host.size == 0:
        return np.dtype(dtype).type(0).item() if op == "sum" else None
    return _combine(host, op)


def histogram_reference(
    values: Sequence,
    nr_bins: int,
    min_value: Union[int, float],
    max_value: Union[int, float],
    dtype=np.int32,
) -> np.ndarray:
    """Bin counts computed with the same f32 arithmetic as the kernels."""
    host = np.asarray(values, dtype=dtype)
    dtype = host.dtype
    selected = host[(host >= dtype.type(min_value)) & (host <= dtype.type(max_value))]

    low = np.float32(min_value)
    span = np.float32(max_value) - low
    if span <= 0:
        indices = np.zeros(selected.size, dtype=np.int64)
    else:
        scaled = (selected.astype(np.float32) - low) * np.float32(nr_bins) / span
        indices = np.minimum(scaled.astype(np.int64), nr_bins - 1)
    return np.bincount(indices, minlength=nr_bins).astype(BIN_DTYPE)


def scan_reference(
    values: Sequence, work_group_size: Optional[int] = None, dtype=np.int32
) -> np.ndarray:
    """Inclusive scan; restarted every work_group_size elements if given."""
    host = np.asarray(values, dtype=dtype)
    if work_group_size is None:
        return np.cumsum(host).astype(host.dtype)

    result = np.empty_like(host)
    for start in range(0, host.size, work_group_size):
        chunk = host[start : start + work_group_size]
        result[start : start + work_group_size] = np.cumsum(chunk).astype(host.dtype)
    return result
