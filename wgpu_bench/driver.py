"""Test-suite driver: sweeps a suite's parameter tuples and collects result rows.

For every tuple the driver builds the primitive, binds its buffers (reusing
the previous tuple's input buffers when datatype and length still match),
runs one correctness pass, skips tuples whose dedup key was already seen, and
then times `trials` dispatches. Each timed tuple yields one GPU-tagged and
one CPU-tagged ResultRow.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import numpy as np
import pandas as pd
from dataclass_wizard import JSONWizard, asdict, fromdict, json_field
from tqdm import tqdm
from tqdm.contrib.logging import logging_redirect_tqdm

from .buffer import Buffer
from .device import DEFAULT_MAX_BUFFER_SIZE, gpu_info, request_device
from .errors import DeviceLost, ResourceLimit, ValidationFailure
from .primitive import BasePrimitive

logger = logging.getLogger(__name__)


# ============================================================================
# Configuration and results
# ============================================================================

@dataclass
class DriverConfig:
    """Run-wide settings; fields left at None fall back to each suite's own."""
    trials: Optional[int] = None
    validate: bool = True
    unique_runs: Optional[List[str]] = None
    initialize_host: Optional[str] = None
    save_json: bool = False
    save_csv: bool = False
    save_svg: bool = False
    output_dir: str = "results"
    max_buffer_size: int = DEFAULT_MAX_BUFFER_SIZE
    enable_pipeline_cache: bool = True
    seed: Optional[int] = None
    progress: bool = True

    @classmethod
    def from_file(cls, path):
        """Load from a JSON file; snake_case and camelCase keys are both accepted."""
        with open(path) as f:
            return fromdict(cls, json.load(f))

    def to_dict(self):
        return asdict(self)


@dataclass
class ResultRow(JSONWizard):
    """One timed run under one timing tag ("GPU" or "CPU")."""
    test_suite: str
    category: str
    timing: str
    label: str
    date: str
    gpuinfo: Dict[str, Any]
    input_length: Optional[int]
    input_bytes: Optional[int]
    bytes_transferred: int
    gputime: Optional[float]
    cputime: float
    cpugpu_delta: Optional[float]
    bandwidth: Optional[float]
    bandwidth_gpu: Optional[float] = json_field("bandwidthGPU", all=True, default=None)
    bandwidth_cpu: Optional[float] = json_field("bandwidthCPU", all=True, default=None)
    input_items_per_second_e9: Optional[float] = json_field(
        "inputItemsPerSecondE9", all=True, default=None
    )
    gflops: Optional[float] = None
    gpu_timestamps: bool = True
    gpu_kernel_times: List[int] = field(default_factory=list)
    parameters: Dict[str, Any] = field(default_factory=dict)

    def as_row(self):
        """Flat camelCase mapping; primitive fields sit beside the row's own."""
        data = asdict(self)
        flat = dict(data.pop("parameters"))
        flat.update(data)
        return flat


@dataclass
class ValidationCounts:
    done: int = 0
    errors: int = 0

    def __str__(self):
        return f"{self.done} validations complete, {self.errors} errors."


@dataclass
class SuiteResult:
    name: str
    category: str
    rows: List[ResultRow] = field(default_factory=list)
    validations: ValidationCounts = field(default_factory=ValidationCounts)
    skipped: List[Dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False
    aborted: Optional[str] = None

    def row_dicts(self):
        return [row.as_row() for row in self.rows]

    def raise_for_errors(self):
        if self.validations.errors:
            raise ValidationFailure(f"Suite '{self.name}': {self.validations}")


def _slug(name):
    return re.sub(r"[^A-Za-z0-9]+", "-", name).strip("-").lower() or "suite"


def _describe_tuple(tuple_params):
    parts = []
    for k, v in tuple_params.items():
        parts.append(f"{k}={getattr(v, '__name__', v)}")
    return ", ".join(parts)


# ============================================================================
# Driver
# ============================================================================

class Driver:
    """Runs suites on one device.

    Args:
        config: DriverConfig; defaults are used when omitted
        device: wgpu device; requested with config.max_buffer_size when omitted
        sink: callable(suite, rows, config, name) that renders plots
    """

    def __init__(self, config=None, device=None, sink=None):
        self.config = config or DriverConfig()
        self.device = device or request_device(max_buffer_size=self.config.max_buffer_size)
        self.sink = sink
        self.rng = np.random.default_rng(self.config.seed)
        self._cancelled = False
        self._gpuinfo = None

        if self.config.enable_pipeline_cache:
            BasePrimitive.pipeline_cache.enable()
        else:
            BasePrimitive.pipeline_cache.disable()

    # ---- Cancellation ----

    def cancel(self):
        """Stop after the tuple currently running."""
        if not self._cancelled:
            logger.warning("Cancellation requested; finishing the current run")
        self._cancelled = True

    @property
    def cancelled(self):
        return self._cancelled

    @property
    def gpuinfo(self):
        if self._gpuinfo is None:
            self._gpuinfo = gpu_info(self.device)
        return self._gpuinfo

    # ---- Suites ----

    def run(self, suites):
        """Run suites in order.

        Args:
            suites: mapping of name -> TestSuite, or a list of TestSuites
        """
        items = suites.items() if isinstance(suites, dict) else [(None, s) for s in suites]
        results = []
        for name, suite in items:
            if self._cancelled:
                break
            results.append(self.run_suite(suite, name=name))
        return results

    def run_suite(self, suite, name=None):
        """Sweep every tuple of `suite`; persist and render its rows."""
        config = self.config
        trials = suite.trials if config.trials is None else config.trials
        validate = suite.validate and config.validate
        unique_runs = suite.unique_runs if config.unique_runs is None else config.unique_runs
        init = config.initialize_host or suite.initialize_host

        result = SuiteResult(name=suite.name, category=suite.category)
        seen = set()
        reusable: Dict[str, Buffer] = {}
        cache = BasePrimitive.pipeline_cache
        cache_enabled = cache.enabled

        logger.info(f"Running suite '{name or suite.name}' ({len(suite)} tuples, {trials} trials)")
        try:
            with logging_redirect_tqdm():
                for tuple_params in tqdm(
                    list(suite.tuples()), desc=name or suite.name, unit="run",
                    disable=not config.progress,
                ):
                    if self._cancelled:
                        result.cancelled = True
                        break
                    try:
                        rows = self._run_tuple(
                            suite, tuple_params, reusable, seen, result.validations,
                            trials=trials, validate=validate,
                            unique_runs=unique_runs, init=init,
                        )
                    except ResourceLimit as e:
                        logger.warning(
                            f"Skipping {suite.name} ({_describe_tuple(tuple_params)}): {e}"
                        )
                        result.skipped.append(tuple_params)
                        continue
                    result.rows.extend(rows)
        except DeviceLost as e:
            logger.error(f"Aborting suite '{suite.name}': {e}")
            result.aborted = str(e)
        finally:
            for buf in reusable.values():
                buf.destroy()
            if cache_enabled:
                cache.enable()
            else:
                cache.disable()

        if result.validations.done > 0:
            logger.info(f"{suite.name}: {result.validations}")
        logger.info(f"{suite.name}: pipeline cache {cache.stats()}")

        self._persist(suite, result, name)
        return result

    # ---- One tuple ----

    def _bind_buffers(self, primitive, init, reusable):
        """Create or reuse the primitive's buffers; return (owned, readback, inout)."""
        owned, readback, inout = [], [], []
        try:
            for spec in primitive.buffer_specs():
                policy = spec.initialize or init
                if spec.role in ("input", "inout"):
                    buf = reusable.get(spec.label)
                    if buf is None or not buf.matches(spec.datatype, spec.length):
                        if buf is not None:
                            logger.debug(f"Re-creating {buf!r}")
                            buf.destroy()
                            del reusable[spec.label]
                        buf = Buffer(
                            device=self.device,
                            datatype=spec.datatype,
                            length=spec.length,
                            label=spec.label,
                            initialize_host=policy,
                            create_device=True,
                            initialize_device=True,
                            create_mappable=spec.role == "inout",
                            store_host_backup=spec.role == "inout",
                            rng=self.rng,
                        )
                        reusable[spec.label] = buf
                    if spec.role == "inout":
                        inout.append(buf)
                        readback.append(buf)
                elif spec.role == "output":
                    buf = Buffer(
                        device=self.device,
                        datatype=spec.datatype,
                        length=spec.length,
                        label=spec.label,
                        create_device=True,
                        create_mappable=True,
                    )
                    owned.append(buf)
                    readback.append(buf)
                elif spec.role == "temp":
                    buf = Buffer(
                        device=self.device,
                        datatype=spec.datatype,
                        length=spec.length,
                        label=spec.label,
                        create_device=True,
                    )
                    owned.append(buf)
                else:
                    raise ValueError(f"Unknown buffer role '{spec.role}' for '{spec.label}'")
                primitive.register_buffer(buf)
        except Exception:
            # a later spec failed; earlier per-tuple buffers are not returned to the caller
            for buf in owned:
                buf.destroy()
            raise
        return owned, readback, inout

    @staticmethod
    def _restore(inout):
        for buf in inout:
            buf.restore_host_from_backup()
            buf.copy_host_to_device()

    def _run_tuple(self, suite, tuple_params, reusable, seen, validations,
                   trials, validate, unique_runs, init):
        primitive = suite.build_primitive(self.device, tuple_params)
        owned = []
        try:
            owned, readback, inout = self._bind_buffers(primitive, init, reusable)
            self._restore(inout)

            if validate:
                primitive.execute(trials=0)
                for buf in readback:
                    buf.copy_device_to_host()
                errors = primitive.validate()
                validations.done += 1
                if errors:
                    validations.errors += 1
                    logger.error(
                        f"Validation failed for {primitive.label} "
                        f"({_describe_tuple(tuple_params)}):\n{errors}"
                    )
                else:
                    logger.debug(f"Validation passed for {primitive.label}")

            if unique_runs:
                key = primitive.unique_key(unique_runs)
                if key in seen:
                    logger.debug(f"Skipping duplicate run {key}")
                    return []
                seen.add(key)

            if trials <= 0:
                return []

            primitive.reset_timing()
            if primitive.in_place:
                for i in range(trials):
                    self._restore(inout)
                    primitive.execute(trials=1, warmup=(i == 0 and not validate))
            else:
                primitive.execute(trials=trials, warmup=not validate)
            return self._rows(suite, primitive, tuple_params, trials)
        finally:
            primitive.destroy_scratch_buffers()
            for buf in owned:
                buf.destroy()

    def _rows(self, suite, primitive, tuple_params, trials):
        timing = primitive.get_timing_result()
        cputime = timing.cpu_total_ns / trials
        gputime = timing.gpu_total_ns / trials if primitive.gpu_timestamps else None
        nbytes = primitive.bytes_transferred

        described = primitive.describe()
        described.update(suite.extra_row_fields(tuple_params))
        input_length = described.get("inputLength")

        def per_ns(amount, ns):
            return amount / ns if amount is not None and ns else None

        common = dict(
            test_suite=suite.name,
            category=suite.category,
            label=primitive.label,
            date=datetime.now().isoformat(),
            gpuinfo=self.gpuinfo,
            input_length=input_length,
            input_bytes=described.get("inputBytes"),
            bytes_transferred=nbytes,
            gputime=gputime,
            cputime=cputime,
            cpugpu_delta=cputime - gputime if gputime is not None else None,
            bandwidth_gpu=per_ns(nbytes, gputime),
            bandwidth_cpu=per_ns(nbytes, cputime),
            gflops=primitive.gflops(gputime),
            gpu_timestamps=primitive.gpu_timestamps,
            gpu_kernel_times=list(timing.gpu_kernel_ns),
            parameters=described,
        )
        rows = []
        # without timestamps the GPU row is kept, with null times
        for tag, ns in (("GPU", gputime), ("CPU", cputime)):
            rows.append(ResultRow(
                timing=tag,
                bandwidth=per_ns(nbytes, ns),
                input_items_per_second_e9=per_ns(input_length, ns),
                **common,
            ))
        return rows

    # ---- Output ----

    def _persist(self, suite, result, name):
        config = self.config
        if not result.rows:
            return
        slug = _slug(name or suite.name)
        out_dir = Path(config.output_dir)
        if config.save_json or config.save_csv:
            out_dir.mkdir(parents=True, exist_ok=True)
        if config.save_json:
            write_json(result.row_dicts(), out_dir / f"{slug}.json")
        if config.save_csv:
            write_csv(result.row_dicts(), out_dir / f"{slug}.csv")
        if self.sink is not None and suite.plots:
            self.sink(suite, result.row_dicts(), config, slug)


def write_json(rows, path):
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w") as f:
        json.dump(rows, f, indent=2, default=str)
    logger.info(f"Wrote {len(rows)} rows to {path}")


def write_csv(rows, path):
    """Nested fields (gpuinfo) become dotted columns."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    pd.json_normalize(rows).to_csv(path, index=False)
    logger.info(f"Wrote {len(rows)} rows to {path}")
