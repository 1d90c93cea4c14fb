"""Device buffer allocation and host/device transfers"""

import dataclasses
import logging
from dataclasses import dataclass
from typing import Any, Optional, Tuple, Union

import numpy as np
import wgpu

from .gpu_device import program_get_or_build
from .gpu_errors import ConfigurationError, TransferError
from .gpu_kernels import kernel_source_load
from .gpu_partition import dtype_check
from .gpu_pipeline import kernel_bind_all, kernel_create, kernel_dispatch
from .gpu_types import AccessMode, DeviceBuffer, GPUConfig, GPUContext

logger = logging.getLogger(__name__)

STORAGE_USAGE = (
    wgpu.BufferUsage.STORAGE | wgpu.BufferUsage.COPY_SRC | wgpu.BufferUsage.COPY_DST
)

# Smallest copy the queue accepts
SYNC_READ_BYTES = 4

# ============================================================================
# COMPLETION HANDLES
# ============================================================================


@dataclass
class CompletionEvent:
    """
    Completion of work submitted to the session's in-order queue.

    ``wait`` reads back the first element of the buffer the work wrote to.
    The read is queued behind that work, so it returns only once the work
    has finished.
    """

    queue: Any
    buffer: Any
    done: bool = False

    def wait(self) -> None:
        if not self.done:
            self.queue.read_buffer(self.buffer, 0, SYNC_READ_BYTES)
            self.done = True


@dataclass
class PendingDownload:
    """
    Enqueued device-to-host copy.

    ``wait`` maps the staging buffer, which blocks until the copy has
    completed, so results are never observed early.
    """

    staging: Any
    dtype: np.dtype
    count: int
    result: Optional[np.ndarray] = None

    def wait(self) -> np.ndarray:
        if self.result is None:
            try:
                self.staging.map_sync(wgpu.MapMode.READ)
                mapped_data = self.staging.read_mapped()
                self.result = np.frombuffer(
                    mapped_data, dtype=self.dtype, count=self.count
                ).copy()
                self.staging.unmap()
            except wgpu.GPUError as e:
                raise TransferError("download", e) from e
            finally:
                self.staging.destroy()
        return self.result


# ============================================================================
# ALLOCATION
# ============================================================================


def buffer_allocate(
    ctx: GPUContext, access: AccessMode, size_bytes: int, dtype=np.int32
) -> DeviceBuffer:
    """Allocate a fixed-capacity device buffer.

    Args:
        access: Kernel-side access the buffer permits
        size_bytes: Capacity in bytes, never changes afterwards
        dtype: Host element type used to interpret downloads

    Returns:
        New device buffer, contents undefined

    Raises:
        ConfigurationError: If size_bytes is not a positive multiple of the
            element size
        TransferError: If the device refuses the allocation
    """
    dtype = dtype_check(dtype)
    if size_bytes <= 0:
        raise ConfigurationError(f"Buffer size must be positive, got {size_bytes}")
    if size_bytes % dtype.itemsize != 0:
        raise ConfigurationError(
            f"Buffer size {size_bytes} is not a multiple of {dtype} ({dtype.itemsize} bytes)"
        )

    try:
        buffer = ctx.device.create_buffer(size=size_bytes, usage=STORAGE_USAGE)
    except wgpu.GPUError as e:
        raise TransferError("allocate", e) from e

    return DeviceBuffer(buffer=buffer, size_bytes=size_bytes, access=access, dtype=dtype)


def buffer_create_with_data(
    ctx: GPUContext, access: AccessMode, data: np.ndarray, blocking: bool = True
) -> DeviceBuffer:
    """Allocate a buffer sized for data and upload it."""
    data = np.ascontiguousarray(data).ravel()
    buffer = buffer_allocate(ctx, access, data.nbytes, data.dtype)
    buffer_upload(ctx, buffer, data, blocking=blocking)
    return buffer


# ============================================================================
# TRANSFERS
# ============================================================================


def buffer_upload(
    ctx: GPUContext, buffer: DeviceBuffer, host_data: np.ndarray, blocking: bool = True
) -> CompletionEvent:
    """
    Copy host data into a device buffer.

    The data is copied into the queue at call time, so the caller may reuse
    its array immediately.

    Args:
        buffer: Destination buffer
        host_data: Exactly ``buffer.size_bytes`` worth of elements
        blocking: Wait for the write to complete before returning

    Returns:
        Completion handle (already complete when blocking)

    Raises:
        ConfigurationError: If the data dtype or size differs from the buffer
        TransferError: If the device rejects the write
    """
    data = np.ascontiguousarray(host_data).ravel()
    if data.dtype != buffer.dtype:
        raise ConfigurationError(
            f"Upload of {data.dtype} data into a {buffer.dtype} buffer, convert it first"
        )
    if data.nbytes > buffer.size_bytes:
        raise ConfigurationError(
            f"Capacity exceeded: {data.nbytes} bytes into a {buffer.size_bytes}-byte buffer"
        )
    if data.nbytes != buffer.size_bytes:
        raise ConfigurationError(
            f"Upload of {data.nbytes} bytes does not fill the "
            f"{buffer.size_bytes}-byte buffer"
        )

    try:
        ctx.device.queue.write_buffer(buffer.buffer, 0, data.tobytes())
        event = CompletionEvent(queue=ctx.device.queue, buffer=buffer.buffer)
        if blocking:
            event.wait()
    except wgpu.GPUError as e:
        raise TransferError("upload", e) from e
    return event


def buffer_fill(
    ctx: GPUContext,
    buffer: DeviceBuffer,
    value: Union[int, float],
    blocking: bool = True,
) -> CompletionEvent:
    """
    Set every element of a buffer on the device, without a host round trip.

    Zero is a plain clear; any other value runs the fill kernel.

    Args:
        buffer: Buffer to fill
        value: Element value, representable in the buffer's dtype
        blocking: Wait for completion before returning

    Returns:
        Completion handle (already complete when blocking)

    Raises:
        ConfigurationError: If value does not fit the buffer's dtype
        TransferError: If the device rejects the clear
        DispatchError: If the fill kernel fails
    """
    if value == 0:
        try:
            encoder = ctx.device.create_command_encoder()
            encoder.clear_buffer(buffer.buffer, 0, buffer.size_bytes)
            ctx.device.queue.submit([encoder.finish()])
        except wgpu.GPUError as e:
            raise TransferError("fill", e) from e
    else:
        program = program_get_or_build(ctx, kernel_source_load(), buffer.dtype)
        kernel = kernel_create(ctx, program, "fill")
        # Host-requested fill writes regardless of the kernel-side access mode
        target = dataclasses.replace(buffer, access=AccessMode.READ_WRITE)
        count = buffer.length
        kernel_bind_all(kernel, target, value, count)

        global_extent, local_extent = fill_geometry(ctx.config, count)
        kernel_dispatch(ctx, kernel, global_extent, local_extent)

    event = CompletionEvent(queue=ctx.device.queue, buffer=buffer.buffer)
    if blocking:
        try:
            event.wait()
        except wgpu.GPUError as e:
            raise TransferError("fill", e) from e
    return event


def fill_geometry(
    config: GPUConfig, count: int
) -> Tuple[Tuple[int, ...], Tuple[int, ...]]:
    """Global and local extent covering count elements.

    Groups run along X up to the per-dimension limit and spill into rows
    along Y beyond it; the fill kernel flattens (x, y) back to an index and
    skips work-items past count.
    """
    workgroup_size = config.default_workgroup_size
    group_count = (count + workgroup_size - 1) // workgroup_size
    limit = config.max_workgroups_per_dim
    if group_count <= limit:
        return (group_count * workgroup_size,), (workgroup_size,)

    rows = (group_count + limit - 1) // limit
    return (limit * workgroup_size, rows), (workgroup_size, 1)


def buffer_download(
    ctx: GPUContext, buffer: DeviceBuffer, blocking: bool = True
) -> Union[np.ndarray, PendingDownload]:
    """
    Copy a device buffer back to the host.

    Creates a staging buffer, copies the device buffer into it and maps it
    for reading. The staging buffer is destroyed after reading.

    Args:
        buffer: Source buffer
        blocking: Return the data directly instead of a pending handle

    Returns:
        Array of ``buffer.length`` elements, or PendingDownload whose
        ``wait()`` returns that array

    Raises:
        TransferError: If the copy or the mapping fails
    """
    try:
        staging = ctx.device.create_buffer(
            size=buffer.size_bytes,
            usage=wgpu.BufferUsage.COPY_DST | wgpu.BufferUsage.MAP_READ,
        )
        encoder = ctx.device.create_command_encoder()
        encoder.copy_buffer_to_buffer(buffer.buffer, 0, staging, 0, buffer.size_bytes)
        ctx.device.queue.submit([encoder.finish()])
    except wgpu.GPUError as e:
        raise TransferError("download", e) from e

    pending = PendingDownload(staging=staging, dtype=buffer.dtype, count=buffer.length)
    if blocking:
        return pending.wait()
    return pending


def buffer_release(buffer: DeviceBuffer) -> None:
    """Free the device memory; the handle must not be used afterwards."""
    buffer.buffer.destroy()
