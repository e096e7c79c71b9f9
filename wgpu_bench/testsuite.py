"""Test suites: a primitive class, parameter axes and the plots of its results.

A suite is declarative. The driver walks `tuples()`, asks the suite to build
one primitive per tuple and hands the collected rows plus `plots` to the
rendering sink.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence

from .binop import make_binop
from .primitive import BasePrimitive
from .util import combinations

logger = logging.getLogger(__name__)

# Axes interpreted by the suite rather than passed to the primitive
BINOP_AXIS = "binopbase"
CACHE_AXIS = "webgpucache"


@dataclass
class PlotSpec:
    """One rendered figure over a suite's result rows.

    Field names refer to camelCase result-row columns. `stroke` picks the
    line color, `fx`/`fy` facet into columns/rows. `filter` receives a row
    (a mapping) and returns whether to keep it.
    """
    x: str
    y: str
    x_label: Optional[str] = None
    y_label: Optional[str] = None
    stroke: Optional[str] = None
    stroke_label: Optional[str] = None
    fx: Optional[str] = None
    fy: Optional[str] = None
    filter: Optional[Callable[[Any], bool]] = None
    caption: str = ""
    mark: str = "line"
    log_x: bool = True
    log_y: bool = False
    name: str = ""

    def __post_init__(self):
        if self.mark not in ("line", "dot"):
            raise ValueError(f"PlotSpec mark must be 'line' or 'dot', got '{self.mark}'")

    @property
    def columns(self):
        return [c for c in (self.x, self.y, self.stroke, self.fx, self.fy) if c]


@dataclass
class TestSuite:
    """Parameter sweep over one primitive class.

    Args:
        name: suite name, reported as `testSuite` in every row
        category: reported as `category`; defaults to the primitive's
        primitive: BasePrimitive subclass to construct per tuple
        params: axis name -> values; the first axis varies slowest
        primitive_args: fixed constructor arguments shared by every tuple
        trials: timed trials per tuple (0 validates only)
        validate: run the correctness pass and count failures
        unique_runs: primitive fields forming the dedup key
        initialize_host: host initialization policy for input buffers
        plots: figures rendered over the rows
    """

    __test__ = False

    name: str
    primitive: type
    params: Dict[str, Sequence[Any]] = field(default_factory=dict)
    category: str = ""
    primitive_args: Dict[str, Any] = field(default_factory=dict)
    trials: int = 1
    validate: bool = True
    unique_runs: Optional[List[str]] = None
    initialize_host: Any = "randomizeAbsUnder1024"
    plots: List[PlotSpec] = field(default_factory=list)
    description: str = ""

    def __post_init__(self):
        if not (isinstance(self.primitive, type) and issubclass(self.primitive, BasePrimitive)):
            raise TypeError(f"Suite '{self.name}': primitive must be a BasePrimitive subclass")
        if self.trials < 0:
            raise ValueError(f"Suite '{self.name}': trials must be >= 0")
        if not self.category:
            self.category = self.primitive.category

    def tuples(self):
        """Parameter dicts in sweep order."""
        if not self.params:
            yield {}
            return
        yield from combinations(self.params)

    def __len__(self):
        count = 1
        for values in self.params.values():
            count *= len(values)
        return count

    def build_primitive(self, device, tuple_params, gpu_timestamps=True):
        """Construct the primitive for one parameter tuple.

        `binopbase` (a BinOp class or its name) is combined with the tuple's
        datatype into a binop instance. `webgpucache` ("enable"/"disable")
        switches the process-wide pipeline cache before construction.
        """
        args = dict(self.primitive_args)
        args.update(tuple_params)

        cache = args.pop(CACHE_AXIS, None)
        if cache is not None:
            if cache == "enable":
                self.primitive.pipeline_cache.enable()
            elif cache == "disable":
                self.primitive.pipeline_cache.disable()
            else:
                raise ValueError(f"{CACHE_AXIS} must be 'enable' or 'disable', got '{cache}'")

        base = args.pop(BINOP_AXIS, None)
        if base is not None:
            datatype = args.get("datatype", self.primitive.parameters.get("datatype"))
            if datatype is None:
                raise ValueError(f"Suite '{self.name}': {BINOP_AXIS} needs a datatype")
            args["binop"] = make_binop(base, datatype)

        return self.primitive(device, gpu_timestamps=gpu_timestamps, **args)

    def extra_row_fields(self, tuple_params):
        """Suite-level axes echoed into result rows (they are not primitive fields)."""
        fields = {}
        if CACHE_AXIS in tuple_params:
            fields[CACHE_AXIS] = tuple_params[CACHE_AXIS]
        if BINOP_AXIS in tuple_params:
            base = tuple_params[BINOP_AXIS]
            fields[BINOP_AXIS] = base if isinstance(base, str) else base.__name__
        return fields

    def __repr__(self):
        return f"TestSuite({self.name!r}, {self.primitive.__name__}, {len(self)} tuples)"
