"""Padding and partition planning"""

import logging
from typing import Sequence, Union

import numpy as np

from .gpu_errors import ConfigurationError
from .gpu_types import (
    InputVector,
    NeutralKind,
    NeutralPolicy,
    PartitionPlan,
)

logger = logging.getLogger(__name__)

SUPPORTED_DTYPES = (np.dtype(np.int32), np.dtype(np.uint32), np.dtype(np.float32))

# ============================================================================
# NEUTRAL POLICIES
# ============================================================================


def dtype_check(dtype) -> np.dtype:
    """Normalize and validate an element dtype.

    Raises:
        ConfigurationError: If the dtype has no WGSL counterpart
    """
    dtype = np.dtype(dtype)
    if dtype not in SUPPORTED_DTYPES:
        raise ConfigurationError(
            f"Unsupported element type {dtype}, expected one of "
            f"{[str(d) for d in SUPPORTED_DTYPES]}"
        )
    return dtype


def policy_sum(dtype=np.int32) -> NeutralPolicy:
    return NeutralPolicy(kind=NeutralKind.SUM, dtype=dtype_check(dtype))


def policy_scan(dtype=np.int32) -> NeutralPolicy:
    return NeutralPolicy(kind=NeutralKind.SCAN, dtype=dtype_check(dtype))


def policy_min(dtype=np.int32) -> NeutralPolicy:
    return NeutralPolicy(kind=NeutralKind.MIN, dtype=dtype_check(dtype))


def policy_max(dtype=np.int32) -> NeutralPolicy:
    return NeutralPolicy(kind=NeutralKind.MAX, dtype=dtype_check(dtype))


def policy_histogram(
    dtype, min_value: Union[int, float], max_value: Union[int, float]
) -> NeutralPolicy:
    """Histogram policy over the inclusive range [min_value, max_value].

    Raises:
        ConfigurationError: If min_value > max_value
    """
    if min_value > max_value:
        raise ConfigurationError(
            f"Histogram range is empty: min_value={min_value} > max_value={max_value}"
        )
    return NeutralPolicy(
        kind=NeutralKind.HISTOGRAM,
        dtype=dtype_check(dtype),
        min_value=min_value,
        max_value=max_value,
    )


def neutral_element(policy: NeutralPolicy) -> Union[int, float]:
    """Value that leaves the algorithm's result unchanged.

    SUM/SCAN pad with 0, MIN with the largest representable value, MAX with
    the smallest, HISTOGRAM with a value outside [min_value, max_value].

    Raises:
        ConfigurationError: If no integer lies outside the histogram range
    """
    dtype = policy.dtype
    is_float = np.issubdtype(dtype, np.floating)
    limits = np.finfo(dtype) if is_float else np.iinfo(dtype)

    if policy.kind in (NeutralKind.SUM, NeutralKind.SCAN):
        return 0.0 if is_float else 0
    if policy.kind == NeutralKind.MIN:
        return float(limits.max) if is_float else int(limits.max)
    if policy.kind == NeutralKind.MAX:
        return float(-limits.max) if is_float else int(limits.min)

    # Histogram
    if policy.min_value is None or policy.max_value is None:
        raise ConfigurationError("Histogram policy needs min_value and max_value")
    if is_float:
        return float("-inf")
    if policy.min_value > limits.min:
        return int(policy.min_value) - 1
    if policy.max_value < limits.max:
        return int(policy.max_value) + 1
    raise ConfigurationError(
        f"Histogram range [{policy.min_value}, {policy.max_value}] covers every "
        f"{dtype} value, no neutral element exists"
    )


# ============================================================================
# PLANNING
# ============================================================================


def partition_plan(
    logical_length: int, work_group_size: int, policy: NeutralPolicy
) -> PartitionPlan:
    """Compute padded length, group count and pad value.

    Args:
        logical_length: Number of meaningful elements (>= 0)
        work_group_size: Work-items per group (> 0)
        policy: Algorithm class deciding the neutral element

    Returns:
        Plan with physical_length a multiple of work_group_size and
        physical_length - logical_length < work_group_size

    Raises:
        ConfigurationError: If work_group_size <= 0 or logical_length < 0
    """
    if work_group_size <= 0:
        raise ConfigurationError(
            f"work_group_size must be positive, got {work_group_size}"
        )
    if logical_length < 0:
        raise ConfigurationError(
            f"logical_length must be non-negative, got {logical_length}"
        )

    remainder = logical_length % work_group_size
    physical_length = logical_length
    if remainder:
        physical_length += work_group_size - remainder

    plan = PartitionPlan(
        logical_length=logical_length,
        physical_length=physical_length,
        group_count=physical_length // work_group_size,
        work_group_size=work_group_size,
        pad_value=neutral_element(policy),
    )
    logger.debug(
        "plan %s: logical=%d physical=%d groups=%d pad=%s",
        policy.kind.value,
        plan.logical_length,
        plan.physical_length,
        plan.group_count,
        plan.pad_value,
    )
    return plan


def input_pad(values: Sequence, plan: PartitionPlan, dtype=None) -> InputVector:
    """Append neutral elements up to the plan's physical length.

    The caller's array is never modified.

    Raises:
        ConfigurationError: If values do not have the plan's logical length
    """
    data = np.asarray(values, dtype=dtype).ravel()
    if data.size != plan.logical_length:
        raise ConfigurationError(
            f"Input has {data.size} elements, plan expects {plan.logical_length}"
        )

    padded = np.empty(plan.physical_length, dtype=data.dtype)
    padded[: plan.logical_length] = data
    padded[plan.logical_length :] = plan.pad_value
    return InputVector(data=padded, logical_length=plan.logical_length)
