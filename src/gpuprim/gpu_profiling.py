"""Dispatch timing and performance monitoring"""

import logging
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

import numpy as np
import wgpu

from .gpu_types import (
    TIME_RESOLUTION_DIVISORS,
    GPUContext,
    KernelTimeStats,
    PerfMonitor,
    PerfStats,
    ProfilingSample,
    TimeResolution,
)

logger = logging.getLogger(__name__)

R = TypeVar("R")

TIMESTAMP_COUNT = 2
TIMESTAMP_BYTES = TIMESTAMP_COUNT * 8

# ============================================================================
# TIMESTAMP CAPTURE
# ============================================================================


def timestamp_writes_create(query_set: Any) -> Dict[str, Any]:
    """Compute pass descriptor writing begin/end timestamps into query_set."""
    return {
        "query_set": query_set,
        "beginning_of_pass_write_index": 0,
        "end_of_pass_write_index": 1,
    }


def timestamps_read(ctx: GPUContext, query_set: Any) -> Optional[ProfilingSample]:
    """Resolve the two timestamps of a finished pass into a sample.

    Resolving runs on its own command buffer, after the dispatch in queue
    order.

    Returns:
        Sample in nanoseconds, None if the device wrote no usable values

    Raises:
        wgpu.GPUError: If resolving or reading the query fails
    """
    resolve_buffer = ctx.device.create_buffer(
        size=TIMESTAMP_BYTES,
        usage=wgpu.BufferUsage.QUERY_RESOLVE | wgpu.BufferUsage.COPY_SRC,
    )
    try:
        encoder = ctx.device.create_command_encoder()
        encoder.resolve_query_set(query_set, 0, TIMESTAMP_COUNT, resolve_buffer, 0)
        ctx.device.queue.submit([encoder.finish()])

        raw = ctx.device.queue.read_buffer(resolve_buffer)
    finally:
        resolve_buffer.destroy()

    ticks = np.frombuffer(raw, dtype=np.uint64, count=TIMESTAMP_COUNT)
    period = ctx.config.timestamp_period_ns
    started = int(ticks[0] * period)
    ended = int(ticks[1] * period)

    if ended < started or (started == 0 and ended == 0):
        logger.warning("device returned unusable timestamps %d..%d", started, ended)
        return None
    return ProfilingSample(started=started, ended=ended)


def profile_around(
    ctx: GPUContext, dispatch_fn: Callable[[Optional[Dict[str, Any]]], R]
) -> Tuple[R, Optional[ProfilingSample]]:
    """
    Run one dispatch with device timestamps around its compute pass.

    ``dispatch_fn`` receives the timestamp writes for its compute pass, or
    None when timing is unavailable, and must submit the pass itself.
    Failure to time never aborts the dispatch.

    Args:
        dispatch_fn: Callable encoding and submitting exactly one compute pass

    Returns:
        (dispatch_fn result, sample or None when timing is unavailable)
    """
    if not ctx.timestamps_supported:
        return dispatch_fn(None), None

    try:
        query_set = ctx.device.create_query_set(
            type=wgpu.QueryType.timestamp, count=TIMESTAMP_COUNT
        )
    except wgpu.GPUError as e:
        logger.warning("timestamp query set unavailable, timing disabled: %s", e)
        return dispatch_fn(None), None

    try:
        result = dispatch_fn(timestamp_writes_create(query_set))
        try:
            sample = timestamps_read(ctx, query_set)
        except wgpu.GPUError as e:
            logger.warning("reading timestamps failed: %s", e)
            sample = None
    finally:
        query_set.destroy()

    return result, sample


# ============================================================================
# REPORTING
# ============================================================================


def _interval_format(
    start: Optional[int], end: Optional[int], resolution: TimeResolution
) -> str:
    if start is None or end is None:
        return "n/a"
    value = (end - start) / TIME_RESOLUTION_DIVISORS[resolution]
    return f"{value:g}"


def profiling_info_format(
    sample: Optional[ProfilingSample],
    resolution: TimeResolution = TimeResolution.US,
) -> str:
    """Full profiling breakdown of one dispatch.

    Marks the device did not report show as "n/a".
    """
    if sample is None:
        return "Profiling: timing unavailable"

    unit = resolution.value
    return (
        f"Queued 2 Submitted [{unit}]: "
        f"{_interval_format(sample.queued, sample.submitted, resolution)}, "
        f"Submitted 2 Started [{unit}]: "
        f"{_interval_format(sample.submitted, sample.started, resolution)}, "
        f"Started 2 Ended [{unit}]: "
        f"{_interval_format(sample.started, sample.ended, resolution)}, "
        f"Total Duration [{unit}]: "
        f"{_interval_format(sample.queued, sample.ended, resolution)}"
    )


# ============================================================================
# PERFORMANCE MONITOR
# ============================================================================


def perf_monitor_create() -> PerfMonitor:
    """Create performance monitor state"""
    return PerfMonitor()


def perf_monitor_kernel_time_record(
    monitor: PerfMonitor, kernel_name: str, duration_ms: float
) -> None:
    """Record kernel execution time"""
    if kernel_name not in monitor.kernel_times:
        monitor.kernel_times[kernel_name] = []
    monitor.kernel_times[kernel_name].append(duration_ms)


def perf_monitor_sample_record(
    monitor: PerfMonitor, kernel_name: str, sample: Optional[ProfilingSample]
) -> None:
    """Count a submission and record its sample, if there is one"""
    monitor.submission_count += 1
    if sample is None:
        monitor.unavailable_count += 1
        return
    perf_monitor_kernel_time_record(
        monitor, kernel_name, sample.elapsed(TimeResolution.MS)
    )


def perf_monitor_stats_get(monitor: PerfMonitor) -> PerfStats:
    """Get performance statistics"""
    kernel_stats = {}
    for kernel_name, times in monitor.kernel_times.items():
        kernel_stats[kernel_name] = KernelTimeStats(
            count=len(times),
            total_ms=sum(times),
            avg_ms=sum(times) / len(times) if times else 0,
            min_ms=min(times) if times else 0,
            max_ms=max(times) if times else 0,
        )
    return PerfStats(
        total_submissions=monitor.submission_count,
        kernel_times=kernel_stats,
        unavailable_samples=monitor.unavailable_count,
    )


def perf_monitor_reset(monitor: PerfMonitor) -> None:
    """Reset all counters"""
    monitor.kernel_times.clear()
    monitor.submission_count = 0
    monitor.unavailable_count = 0
