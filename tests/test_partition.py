"""Padding and partition planning"""

import numpy as np
import pytest

from gpuprim.gpu_errors import ConfigurationError
from gpuprim.gpu_partition import (
    input_pad,
    neutral_element,
    partition_plan,
    policy_histogram,
    policy_max,
    policy_min,
    policy_scan,
    policy_sum,
)


@pytest.mark.parametrize("work_group_size", [1, 3, 10, 16, 64])
def test_physical_length_is_smallest_multiple(work_group_size):
    for logical_length in range(0, 70):
        plan = partition_plan(logical_length, work_group_size, policy_sum())
        assert plan.physical_length >= logical_length
        assert plan.physical_length % work_group_size == 0
        assert plan.physical_length - logical_length < work_group_size
        assert plan.group_count == plan.physical_length // work_group_size


def test_exact_multiple_is_not_padded():
    plan = partition_plan(10, 10, policy_sum())
    assert (plan.physical_length, plan.group_count) == (10, 1)


def test_empty_input_has_no_groups():
    plan = partition_plan(0, 16, policy_min())
    assert plan.physical_length == 0
    assert plan.group_count == 0
    assert plan.pad_value == np.iinfo(np.int32).max


@pytest.mark.parametrize("work_group_size", [0, -4])
def test_work_group_size_must_be_positive(work_group_size):
    with pytest.raises(ConfigurationError):
        partition_plan(10, work_group_size, policy_sum())


def test_negative_length_rejected():
    with pytest.raises(ConfigurationError):
        partition_plan(-1, 8, policy_sum())


def test_neutral_elements_per_algorithm():
    assert neutral_element(policy_sum()) == 0
    assert neutral_element(policy_scan(np.float32)) == 0.0
    assert neutral_element(policy_min()) == np.iinfo(np.int32).max
    assert neutral_element(policy_max()) == np.iinfo(np.int32).min
    assert neutral_element(policy_min(np.uint32)) == np.iinfo(np.uint32).max
    assert neutral_element(policy_max(np.uint32)) == 0
    assert neutral_element(policy_min(np.float32)) == float(np.finfo(np.float32).max)
    assert neutral_element(policy_max(np.float32)) == -float(np.finfo(np.float32).max)


def test_histogram_neutral_lies_outside_range():
    assert neutral_element(policy_histogram(np.int32, -1, 10)) == -2
    # No value below zero for unsigned data, so pad above the range
    assert neutral_element(policy_histogram(np.uint32, 0, 9)) == 10
    assert neutral_element(policy_histogram(np.float32, 0.0, 1.0)) == float("-inf")


def test_histogram_covering_whole_dtype_has_no_neutral():
    limits = np.iinfo(np.int32)
    with pytest.raises(ConfigurationError):
        neutral_element(policy_histogram(np.int32, int(limits.min), int(limits.max)))


def test_histogram_empty_range_rejected():
    with pytest.raises(ConfigurationError):
        policy_histogram(np.int32, 5, 1)


def test_unsupported_dtype_rejected():
    with pytest.raises(ConfigurationError):
        policy_sum(np.float64)


def test_padding_with_zeros_keeps_the_sum():
    ones = np.ones(10, dtype=np.int32)
    plan = partition_plan(ones.size, 16, policy_sum())
    padded = input_pad(ones, plan)

    assert padded.data.size == 16
    assert padded.logical_length == 10
    assert list(padded.data[10:]) == [0] * 6
    assert padded.data.sum() == 10


def test_padding_does_not_touch_caller_data():
    values = np.arange(5, dtype=np.int32)
    plan = partition_plan(values.size, 4, policy_min())
    padded = input_pad(values, plan)

    assert values.size == 5
    assert padded.data[:5].tolist() == [0, 1, 2, 3, 4]
    assert padded.data[5:].tolist() == [np.iinfo(np.int32).max] * 3


def test_padding_length_mismatch_rejected():
    plan = partition_plan(4, 4, policy_sum())
    with pytest.raises(ConfigurationError):
        input_pad(np.ones(3, dtype=np.int32), plan)
