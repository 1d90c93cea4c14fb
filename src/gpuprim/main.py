"""Command-line runner for the parallel primitives"""

import argparse
import logging
import sys
from typing import Dict, List, Optional, Tuple

import numpy as np

from .gpu_device import platforms_describe, program_build, session_open
from .gpu_errors import (
    BuildDiagnostic,
    ConfigurationError,
    DeviceError,
    DispatchError,
    TransferError,
)
from .gpu_kernels import kernel_source_load
from .gpu_primitives import (
    histogram,
    histogram_auto_range,
    histogram_reference,
    reduce,
    reduce_reference,
    scan_inclusive,
    scan_reference,
    vector_add,
    vector_mul,
    vector_reference,
)
from .gpu_profiling import perf_monitor_stats_get, profiling_info_format
from .gpu_types import GPUContext, PrimitiveRun, Program, TimeResolution

logger = logging.getLogger(__name__)

ALGORITHMS = [
    "add",
    "mul",
    "reduce-sum",
    "reduce-min",
    "reduce-max",
    "hist-simple",
    "hist-complex",
    "hist-auto",
    "scan",
    "scan-full",
]

DTYPES = {"int32": np.int32, "uint32": np.uint32, "float32": np.float32}


def parser_create() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gpuprim", description="Run a GPU parallel primitive and time it"
    )
    # nargs="?" with const=None: a flag given without its value changes nothing
    parser.add_argument(
        "-p", dest="platform", type=int, nargs="?", const=None, help="select platform"
    )
    parser.add_argument(
        "-d", dest="device", type=int, nargs="?", const=None, help="select device"
    )
    parser.add_argument(
        "-l", dest="list", action="store_true", help="list all platforms and devices"
    )
    parser.add_argument(
        "-a", "--algorithm", choices=ALGORITHMS, default="reduce-sum",
        help="primitive to run",
    )
    parser.add_argument(
        "-n", dest="count", type=int, default=10, help="number of input elements"
    )
    parser.add_argument(
        "-g", "--work-group-size", type=int, default=10, help="work-items per group"
    )
    parser.add_argument(
        "-k", "--kernel-file", help="kernel source file (default: packaged WGSL)"
    )
    parser.add_argument("--dtype", choices=sorted(DTYPES), default="int32")
    parser.add_argument(
        "--values", help="comma-separated input values, overrides -n"
    )
    parser.add_argument("--bins", type=int, default=10, help="histogram bin count")
    parser.add_argument("--min-value", type=float, default=-1, help="histogram minimum")
    parser.add_argument("--max-value", type=float, default=10, help="histogram maximum")
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    return parser


def _bound(value: float, dtype) -> float:
    return int(value) if np.issubdtype(np.dtype(dtype), np.integer) else value


def inputs_create(args: argparse.Namespace, dtype) -> np.ndarray:
    """Input vector A for the selected algorithm."""
    if args.values:
        return np.array([float(v) for v in args.values.split(",")]).astype(dtype)
    if args.algorithm in ("add", "mul"):
        return np.arange(args.count).astype(dtype)
    if args.algorithm.startswith("hist"):
        # Spread over [-1, 10] so every default bin is hit
        return (np.arange(args.count) % 12 - 1).astype(dtype)
    return np.ones(args.count, dtype=dtype)


def algorithm_run(
    ctx: GPUContext, program: Program, args: argparse.Namespace, dtype
) -> Tuple[PrimitiveRun, Dict[str, np.ndarray], object]:
    """Run the selected primitive.

    Returns:
        (run, host inputs by name, host reference result)
    """
    a = inputs_create(args, dtype)
    wg = args.work_group_size
    algorithm = args.algorithm

    if algorithm in ("add", "mul"):
        b = (np.arange(a.size) + 11).astype(dtype)
        primitive = vector_add if algorithm == "add" else vector_mul
        run = primitive(ctx, program, a, b, wg)
        return run, {"A": a, "B": b}, vector_reference(a, b, algorithm, dtype)

    if algorithm.startswith("reduce"):
        op = algorithm.split("-")[1]
        run = reduce(ctx, program, a, op, wg)
        return run, {"A": a}, reduce_reference(a, op, dtype)

    if algorithm == "hist-auto":
        run = histogram_auto_range(ctx, program, a, args.bins, wg)
        low, high = run.value if run.value is not None else (0, 0)
        expected = histogram_reference(a, args.bins, low, high, dtype)
        return run, {"A": a}, expected

    if algorithm.startswith("hist"):
        low = _bound(args.min_value, dtype)
        high = _bound(args.max_value, dtype)
        variant = algorithm.split("-")[1]
        run = histogram(ctx, program, a, args.bins, low, high, wg, variant)
        return run, {"A": a}, histogram_reference(a, args.bins, low, high, dtype)

    full = algorithm == "scan-full"
    run = scan_inclusive(ctx, program, a, wg, propagate_carries=full)
    expected = scan_reference(a, None if full else wg, dtype)
    return run, {"A": a}, expected


def result_validate(run: PrimitiveRun, expected, reduction: bool) -> bool:
    if reduction:
        if expected is None or run.value is None:
            return expected is None and run.value is None
        return bool(np.isclose(run.value, expected, rtol=1e-5))
    return bool(np.allclose(run.output, expected, rtol=1e-5))


def main(argv: Optional[List[str]] = None) -> int:
    parser = parser_create()
    args, unknown = parser.parse_known_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(levelname)s %(name)s: %(message)s",
    )
    if unknown:
        logger.debug("ignoring unknown arguments: %s", unknown)

    if args.list:
        print(platforms_describe())

    platform_index = 0 if args.platform is None else args.platform
    device_index = 0 if args.device is None else args.device

    ctx = session_open(platform_index, device_index)
    if isinstance(ctx, DeviceError):
        print(f"ERROR: {ctx}", file=sys.stderr)
        return 1
    print(f"Running on {ctx.platform_name}, {ctx.device_name}")

    dtype = DTYPES[args.dtype]
    try:
        source = kernel_source_load(args.kernel_file)
    except OSError as e:
        print(f"ERROR: cannot read kernel source: {e}", file=sys.stderr)
        return 1

    program = program_build(ctx, source, dtype)
    if isinstance(program, BuildDiagnostic):
        print(program)
        return 1

    try:
        run, inputs, expected = algorithm_run(ctx, program, args, dtype)
    except (ConfigurationError, DispatchError, TransferError) as e:
        print(f"ERROR: {e}", file=sys.stderr)
        return 1

    for name, values in inputs.items():
        print(f"{name} = {values.tolist()}")
    output_name = "C" if "B" in inputs else "B"
    print(f"{output_name} = {run.output.tolist()}")
    if run.value is not None:
        print(f"Result = {run.value}")

    for kernel_name, sample in run.samples.items():
        if sample is None:
            print(f"Kernel Execution Time [ns] ({kernel_name}): timing unavailable")
            continue
        print(f"Kernel Execution Time [ns] ({kernel_name}): {sample.elapsed_ns}")
        print(profiling_info_format(sample, TimeResolution.US))

    stats = perf_monitor_stats_get(ctx.perf_monitor)
    logger.debug("submissions: %d, untimed: %d", stats.total_submissions, stats.unavailable_samples)

    reduction = args.algorithm.startswith("reduce")
    if not result_validate(run, expected, reduction):
        print(f"Validation FAILED, expected {np.asarray(expected).tolist()}", file=sys.stderr)
        return 1
    print("Validation passed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
