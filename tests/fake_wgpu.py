"""In-process stand-in for a wgpu device.

Records every call the harness makes and executes the primitive entry
points with numpy, one work-group at a time, using the workgroup size and
scratch sizes compiled into the specialized shader source. Timestamps come
from a counter that advances by ``pass_duration_ns`` per compute pass.
"""

import re
from typing import Any, Dict, List, Optional

import numpy as np
import wgpu

WGSL_DTYPES = {"i32": np.int32, "u32": np.uint32, "f32": np.float32}

PLACEHOLDER = re.compile(r"\{[A-Z][A-Z0-9_]*\}")


class FakeBuffer:
    def __init__(self, size: int, usage: int):
        self.size = size
        self.usage = usage
        self.data = bytearray(size)
        self.destroyed = False
        self.mapped = False

    def view(self, dtype) -> np.ndarray:
        return np.frombuffer(self.data, dtype=dtype)

    def map_sync(self, mode) -> None:
        assert not self.destroyed, "mapping a destroyed buffer"
        assert self.usage & wgpu.BufferUsage.MAP_READ, "buffer is not mappable"
        self.mapped = True

    def read_mapped(self) -> memoryview:
        assert self.mapped, "read_mapped before map_sync"
        return memoryview(bytes(self.data))

    def unmap(self) -> None:
        self.mapped = False

    def destroy(self) -> None:
        self.destroyed = True


class FakeQuerySet:
    def __init__(self, count: int):
        self.values = np.zeros(count, dtype=np.uint64)
        self.destroyed = False

    def destroy(self) -> None:
        self.destroyed = True


class FakeShaderModule:
    def __init__(self, code: str):
        self.code = code


class FakePipeline:
    def __init__(self, module: FakeShaderModule, entry_point: str):
        self.code = module.code
        self.entry_point = entry_point
        sizes = re.search(r"@workgroup_size\((\d+), (\d+), (\d+)\)", self.code)
        self.workgroup_size = tuple(int(s) for s in sizes.groups())
        element = re.search(r"var<storage, read> input_a: array<(\w+)>;", self.code)
        self.element_type = element.group(1) if element else "i32"

    def get_bind_group_layout(self, index: int) -> str:
        return f"layout-{self.entry_point}-{index}"

    def array_size(self, name: str) -> int:
        match = re.search(rf"var<workgroup> {name}: array<[\w<>]+, (\d+)>;", self.code)
        return int(match.group(1))


class FakeBindGroup:
    def __init__(self, layout: str, entries: List[Dict]):
        self.layout = layout
        self.entries = {
            entry["binding"]: entry["resource"]["buffer"] for entry in entries
        }


class FakeComputePass:
    def __init__(self, commands: List, timestamp_writes: Optional[Dict]):
        self.commands = commands
        self.timestamp_writes = timestamp_writes
        self.pipeline = None
        self.bind_group = None

    def set_pipeline(self, pipeline: FakePipeline) -> None:
        self.pipeline = pipeline

    def set_bind_group(self, index: int, bind_group: FakeBindGroup) -> None:
        self.bind_group = bind_group

    def dispatch_workgroups(self, x: int, y: int = 1, z: int = 1) -> None:
        self.commands.append(
            ("dispatch", self.pipeline, self.bind_group, (x, y, z), self.timestamp_writes)
        )

    def end(self) -> None:
        pass


class FakeCommandEncoder:
    def __init__(self):
        self.commands: List = []

    def begin_compute_pass(self, timestamp_writes: Optional[Dict] = None):
        return FakeComputePass(self.commands, timestamp_writes)

    def copy_buffer_to_buffer(self, source, source_offset, destination, destination_offset, size):
        self.commands.append(
            ("copy", source, source_offset, destination, destination_offset, size)
        )

    def clear_buffer(self, buffer, offset=0, size=None):
        self.commands.append(("clear", buffer, offset, size))

    def resolve_query_set(self, query_set, first_query, query_count, destination, destination_offset):
        self.commands.append(
            ("resolve", query_set, first_query, query_count, destination, destination_offset)
        )

    def finish(self) -> List:
        return list(self.commands)


class FakeQueue:
    def __init__(self, device: "FakeDevice"):
        self.device = device
        self.writes = 0
        self.reads = 0

    def write_buffer(self, buffer: FakeBuffer, buffer_offset: int, data, data_offset=0, size=None):
        payload = bytes(data)
        buffer.data[buffer_offset : buffer_offset + len(payload)] = payload
        self.writes += 1

    def submit(self, command_buffers: List[List]) -> None:
        if self.device.fail_on_submit:
            raise wgpu.GPUValidationError("injected submit failure")
        for commands in command_buffers:
            for command in commands:
                self.device.execute(command)

    def read_buffer(self, buffer: FakeBuffer, buffer_offset: int = 0, size=None) -> memoryview:
        self.reads += 1
        end = len(buffer.data) if size is None else buffer_offset + size
        return memoryview(bytes(buffer.data[buffer_offset:end]))


class FakeAdapter:
    def __init__(self, device_name: str, backend: str, features=(), fail: bool = False):
        self.info = {
            "device": device_name,
            "backend_type": backend,
            "adapter_type": "DiscreteGPU",
            "vendor": "FakeVendor",
        }
        self.features = set(features)
        self.fail = fail
        self.requested_features: Optional[List[str]] = None

    def request_device_sync(self, required_features=()):
        if self.fail:
            raise RuntimeError("adapter refused device")
        self.requested_features = list(required_features)
        return FakeDevice()


class FakeDevice:
    def __init__(self, limits: Optional[Dict[str, int]] = None, pass_duration_ns: int = 1000):
        self.queue = FakeQueue(self)
        self.limits = limits if limits is not None else {
            "max_compute_workgroup_size_x": 256,
            "max_compute_workgroup_size_y": 256,
            "max_compute_workgroup_size_z": 64,
            "max_compute_invocations_per_workgroup": 256,
            "max_compute_workgroup_storage_size": 16384,
            "max_compute_workgroups_per_dimension": 65535,
        }
        self.pass_duration_ns = pass_duration_ns
        self.clock_ns = 1_000_000
        self.fail_on_submit = False
        self.fail_query_set = False
        self.buffers: List[FakeBuffer] = []
        self.shader_modules: List[FakeShaderModule] = []
        self.pipelines: List[FakePipeline] = []
        self.bind_groups: List[FakeBindGroup] = []
        self.dispatches: List = []
        self.clears = 0

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    def create_buffer(self, size: int, usage: int) -> FakeBuffer:
        buffer = FakeBuffer(size, usage)
        self.buffers.append(buffer)
        return buffer

    def create_buffer_with_data(self, data, usage: int) -> FakeBuffer:
        payload = bytes(data)
        buffer = self.create_buffer(len(payload), usage)
        buffer.data[:] = payload
        return buffer

    def create_shader_module(self, code: str) -> FakeShaderModule:
        unresolved = PLACEHOLDER.search(code)
        if unresolved:
            raise wgpu.GPUValidationError(f"unexpected token {unresolved.group(0)}")
        if "@@" in code:
            raise wgpu.GPUValidationError("Shader '' parsing error: expected global item")
        module = FakeShaderModule(code)
        self.shader_modules.append(module)
        return module

    def create_compute_pipeline(self, layout, compute: Dict[str, Any]) -> FakePipeline:
        entry_point = compute["entry_point"]
        if not re.search(rf"\bfn\s+{entry_point}\s*\(", compute["module"].code):
            raise wgpu.GPUValidationError(f"entry point {entry_point} not found")
        pipeline = FakePipeline(compute["module"], entry_point)
        self.pipelines.append(pipeline)
        return pipeline

    def create_bind_group(self, layout, entries: List[Dict]) -> FakeBindGroup:
        bind_group = FakeBindGroup(layout, entries)
        self.bind_groups.append(bind_group)
        return bind_group

    def create_command_encoder(self) -> FakeCommandEncoder:
        return FakeCommandEncoder()

    def create_query_set(self, type, count: int) -> FakeQuerySet:
        if self.fail_query_set:
            raise wgpu.GPUValidationError("timestamp queries not enabled")
        return FakeQuerySet(count)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def execute(self, command) -> None:
        kind = command[0]
        if kind == "copy":
            _, source, source_offset, destination, destination_offset, size = command
            destination.data[destination_offset : destination_offset + size] = source.data[
                source_offset : source_offset + size
            ]
        elif kind == "clear":
            _, buffer, offset, size = command
            end = len(buffer.data) if size is None else offset + size
            buffer.data[offset:end] = bytes(end - offset)
            self.clears += 1
        elif kind == "resolve":
            _, query_set, first, count, destination, destination_offset = command
            payload = query_set.values[first : first + count].tobytes()
            destination.data[destination_offset : destination_offset + len(payload)] = payload
        else:
            _, pipeline, bind_group, groups, timestamp_writes = command
            if timestamp_writes is not None:
                query_set = timestamp_writes["query_set"]
                query_set.values[timestamp_writes["beginning_of_pass_write_index"]] = self.clock_ns
            self.clock_ns += self.pass_duration_ns
            self.run_kernel(pipeline, bind_group, groups)
            if timestamp_writes is not None:
                query_set.values[timestamp_writes["end_of_pass_write_index"]] = self.clock_ns
            self.dispatches.append((pipeline.entry_point, groups, pipeline.workgroup_size))

    def run_kernel(self, pipeline: FakePipeline, bind_group: FakeBindGroup, groups) -> None:
        name = pipeline.entry_point
        dtype = np.dtype(WGSL_DTYPES[pipeline.element_type])
        wg = pipeline.workgroup_size[0]
        group_count = groups[0]
        n = group_count * wg
        bound = bind_group.entries

        if name in ("add", "mul"):
            a, b, c = (bound[i].view(dtype) for i in (1, 2, 3))
            op = np.add if name == "add" else np.multiply
            c[:n] = op(a[:n], b[:n])
        elif name == "fill":
            params = bound[0].data
            value = np.frombuffer(params[0:4], dtype=dtype)[0]
            count = int(np.frombuffer(params[4:8], dtype=np.uint32)[0])
            covered = int(np.prod(groups)) * int(np.prod(pipeline.workgroup_size))
            bound[1].view(dtype)[: min(count, covered)] = value
        elif name == "add2d":
            params = bound[0].data
            width = int(np.frombuffer(params[0:4], dtype=np.uint32)[0])
            height = int(np.frombuffer(params[4:8], dtype=np.uint32)[0])
            assert groups[0] * pipeline.workgroup_size[0] >= width, "columns not covered"
            assert groups[1] * pipeline.workgroup_size[1] >= height, "rows not covered"
            cells = width * height
            a, b, c = (bound[i].view(dtype) for i in (1, 2, 3))
            c[:cells] = a[:cells] + b[:cells]
        elif name.startswith("reduce_"):
            assert pipeline.array_size("scratch") >= wg, "scratch smaller than group"
            op = {"reduce_add": np.add, "reduce_min": np.minimum, "reduce_max": np.maximum}[name]
            a = bound[1].view(dtype)[:n].reshape(group_count, wg)
            bound[2].view(dtype)[:group_count] = op.reduce(a, axis=1, dtype=dtype)
        elif name.startswith("hist_"):
            params = bound[0].data
            nr_bins = int(np.frombuffer(params[0:4], dtype=np.uint32)[0])
            low_t = np.frombuffer(params[4:8], dtype=dtype)[0]
            high_t = np.frombuffer(params[8:12], dtype=dtype)[0]
            if name == "hist_complex":
                assert pipeline.array_size("local_bins") >= nr_bins, "local bins too small"
            values = bound[1].view(dtype)[:n]
            selected = values[(values >= low_t) & (values <= high_t)]
            low = np.float32(low_t)
            span = np.float32(high_t) - low
            if span <= 0:
                indices = np.zeros(selected.size, dtype=np.int64)
            else:
                scaled = (selected.astype(np.float32) - low) * np.float32(nr_bins) / span
                indices = np.minimum(scaled.astype(np.int64), nr_bins - 1)
            np.add.at(bound[2].view(np.uint32), indices, 1)
        elif name == "scan_add":
            assert pipeline.array_size("scan_a") >= wg, "scan scratch smaller than group"
            assert pipeline.array_size("scan_b") >= wg, "scan scratch smaller than group"
            a = bound[1].view(dtype)[:n].reshape(group_count, wg)
            scanned = np.cumsum(a, axis=1, dtype=dtype)
            bound[2].view(dtype)[:n] = scanned.ravel()
            bound[3].view(dtype)[:group_count] = scanned[:, -1]
        elif name == "scan_add_carries":
            b = bound[1].view(dtype)[:n].reshape(group_count, wg)
            carries = bound[2].view(dtype)[:group_count]
            b += carries[:, None]
        else:
            raise AssertionError(f"fake device cannot run {name}")
