"""Kernel sources and typed per-kernel signatures"""

from pathlib import Path
from typing import Dict, Optional, Union

from .gpu_types import (
    BufferParam,
    GPUConfig,
    KernelSignature,
    LocalParam,
    ParamAccess,
    ScalarParam,
)

DEFAULT_KERNEL_SOURCE = Path(__file__).parent / "kernels" / "primitives.wgsl"

DEFAULT_HISTOGRAM_BINS_CAPACITY = 256

# ============================================================================
# ELEMENT-WISE KERNELS
# ============================================================================

ADD_SIGNATURE = KernelSignature(
    name="add",
    params=(
        BufferParam("A", ParamAccess.READ),
        BufferParam("B", ParamAccess.READ),
        BufferParam("C", ParamAccess.WRITE),
    ),
)

MUL_SIGNATURE = KernelSignature(
    name="mul",
    params=(
        BufferParam("A", ParamAccess.READ),
        BufferParam("B", ParamAccess.READ),
        BufferParam("C", ParamAccess.WRITE),
    ),
)

ADD2D_SIGNATURE = KernelSignature(
    name="add2d",
    params=(
        BufferParam("A", ParamAccess.READ),
        BufferParam("B", ParamAccess.READ),
        BufferParam("C", ParamAccess.WRITE),
        ScalarParam("width", "u32"),
        ScalarParam("height", "u32"),
    ),
)

FILL_SIGNATURE = KernelSignature(
    name="fill",
    params=(
        BufferParam("target", ParamAccess.WRITE),
        ScalarParam("value", "T"),
        ScalarParam("count", "u32"),
    ),
)

# ============================================================================
# REDUCTION KERNELS
# ============================================================================


def _reduce_signature(name: str) -> KernelSignature:
    return KernelSignature(
        name=name,
        params=(
            BufferParam("A", ParamAccess.READ),
            BufferParam("partials", ParamAccess.WRITE),
            LocalParam("scratch", "T", "SCRATCH_SIZE"),
        ),
    )


REDUCE_ADD_SIGNATURE = _reduce_signature("reduce_add")
REDUCE_MIN_SIGNATURE = _reduce_signature("reduce_min")
REDUCE_MAX_SIGNATURE = _reduce_signature("reduce_max")

# ============================================================================
# HISTOGRAM KERNELS
# ============================================================================

HIST_SIMPLE_SIGNATURE = KernelSignature(
    name="hist_simple",
    params=(
        BufferParam("A", ParamAccess.READ),
        BufferParam("bins", ParamAccess.READ_WRITE),
        ScalarParam("nr_bins", "u32"),
        ScalarParam("min_value", "T"),
        ScalarParam("max_value", "T"),
    ),
)

# Local bins are sized by bin count, not by work-items.
HIST_COMPLEX_SIGNATURE = KernelSignature(
    name="hist_complex",
    params=(
        BufferParam("A", ParamAccess.READ),
        BufferParam("bins", ParamAccess.READ_WRITE),
        ScalarParam("nr_bins", "u32"),
        ScalarParam("min_value", "T"),
        ScalarParam("max_value", "T"),
        LocalParam(
            "local_bins", "u32", "BINS_SIZE", per_work_item=False, sized_by="nr_bins"
        ),
    ),
)

# ============================================================================
# SCAN KERNELS
# ============================================================================

SCAN_ADD_SIGNATURE = KernelSignature(
    name="scan_add",
    params=(
        BufferParam("A", ParamAccess.READ),
        BufferParam("B", ParamAccess.WRITE),
        BufferParam("group_totals", ParamAccess.WRITE),
        LocalParam("scratch_a", "T", "SCAN_A_SIZE"),
        LocalParam("scratch_b", "T", "SCAN_B_SIZE"),
    ),
)

SCAN_ADD_CARRIES_SIGNATURE = KernelSignature(
    name="scan_add_carries",
    params=(
        BufferParam("B", ParamAccess.READ_WRITE),
        BufferParam("carries", ParamAccess.READ),
    ),
)

KERNEL_SIGNATURES: Dict[str, KernelSignature] = {
    signature.name: signature
    for signature in (
        ADD_SIGNATURE,
        MUL_SIGNATURE,
        ADD2D_SIGNATURE,
        FILL_SIGNATURE,
        REDUCE_ADD_SIGNATURE,
        REDUCE_MIN_SIGNATURE,
        REDUCE_MAX_SIGNATURE,
        HIST_SIMPLE_SIGNATURE,
        HIST_COMPLEX_SIGNATURE,
        SCAN_ADD_SIGNATURE,
        SCAN_ADD_CARRIES_SIGNATURE,
    )
}

# ============================================================================
# SOURCES
# ============================================================================


def kernel_source_load(path: Optional[Union[str, Path]] = None) -> str:
    """Read a kernel source file wholesale.

    Args:
        path: WGSL file; the packaged primitives source if None

    Returns:
        Source text with its {NAME} placeholders intact

    Raises:
        OSError: If the file cannot be read
    """
    source_path = Path(path) if path is not None else DEFAULT_KERNEL_SOURCE
    return source_path.read_text(encoding="utf-8")


def kernel_options_default(config: GPUConfig) -> Dict[str, str]:
    """Placeholder values a program is validated with.

    Dispatches override the workgroup and scratch sizes; these only have to
    produce a source that compiles.
    """
    workgroup_size = config.default_workgroup_size
    return {
        "WORKGROUP_SIZE_X": str(workgroup_size),
        "WORKGROUP_SIZE_Y": "1",
        "WORKGROUP_SIZE_Z": "1",
        "SCRATCH_SIZE": str(workgroup_size),
        "SCAN_A_SIZE": str(workgroup_size),
        "SCAN_B_SIZE": str(workgroup_size),
        "BINS_SIZE": str(DEFAULT_HISTOGRAM_BINS_CAPACITY),
    }
