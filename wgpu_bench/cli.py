import argparse
import logging
import signal
import sys

from .buffer import INIT_POLICIES
from .driver import Driver, DriverConfig
from .errors import UnsupportedDevice
from .plotting import render_suite
from .suites import SUITES

logger = logging.getLogger(__name__)

EXIT_VALIDATION_FAILED = 1
EXIT_UNSUPPORTED_DEVICE = 2


def build_parser():
    parser = argparse.ArgumentParser(
        prog="wgpu-bench",
        description="WebGPU compute primitive benchmarks and regression suites.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        type=str.upper,
        help="Set the logging level",
    )
    parser.add_argument(
        "--suite",
        action="append",
        default=[],
        help="Suite to run (repeatable); 'all' runs the whole catalog",
    )
    parser.add_argument("--list", action="store_true", help="List the suite catalog and exit")
    parser.add_argument("--config", help="JSON file with DriverConfig fields", default=None)
    parser.add_argument(
        "--trials", type=int, default=None,
        help="Timed trials per run, overriding each suite (0 = validate only)",
    )
    parser.add_argument(
        "--no-validate", action="store_true", help="Skip the correctness pass"
    )
    parser.add_argument(
        "--init",
        choices=sorted(INIT_POLICIES),
        default=None,
        help="Host initialization policy for input buffers",
    )
    parser.add_argument("--output-dir", default=None, help="Directory for results and plots")
    parser.add_argument("--save-json", action="store_true", help="Write result rows as JSON")
    parser.add_argument("--save-csv", action="store_true", help="Write result rows as CSV")
    parser.add_argument("--save-svg", action="store_true", help="Render suite plots as SVG")
    parser.add_argument(
        "--disable-pipeline-cache", action="store_true",
        help="Compile every pipeline instead of reusing cached ones",
    )
    parser.add_argument(
        "--max-buffer-size", type=int, default=None,
        help="Requested maxBufferSize in bytes (clamped to the adapter)",
    )
    parser.add_argument("--seed", type=int, default=None, help="Seed for random inputs")
    parser.add_argument("--no-progress", action="store_true", help="Hide progress bars")
    return parser


def make_config(args):
    """DriverConfig from --config (if any) with command-line flags applied on top."""
    config = DriverConfig.from_file(args.config) if args.config else DriverConfig()
    if args.trials is not None:
        config.trials = args.trials
    if args.no_validate:
        config.validate = False
    if args.init is not None:
        config.initialize_host = args.init
    if args.output_dir is not None:
        config.output_dir = args.output_dir
    config.save_json = config.save_json or args.save_json
    config.save_csv = config.save_csv or args.save_csv
    config.save_svg = config.save_svg or args.save_svg
    if args.disable_pipeline_cache:
        config.enable_pipeline_cache = False
    if args.max_buffer_size is not None:
        config.max_buffer_size = args.max_buffer_size
    if args.seed is not None:
        config.seed = args.seed
    if args.no_progress:
        config.progress = False
    return config


def select_suites(names):
    if not names or "all" in names:
        return dict(SUITES)
    unknown = [n for n in names if n not in SUITES]
    if unknown:
        raise ValueError(f"Unknown suites {unknown}; see --list")
    return {name: SUITES[name] for name in names}


def list_suites():
    width = max(len(name) for name in SUITES)
    for name, suite in SUITES.items():
        print(f"{name:<{width}}  {len(suite):>5} runs  {suite.description or suite.name}")


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level)

    if args.list:
        list_suites()
        return 0

    try:
        suites = select_suites(args.suite)
    except ValueError as e:
        parser.error(str(e))
    config = make_config(args)

    try:
        driver = Driver(config, sink=render_suite)
    except UnsupportedDevice as e:
        logger.error(f"Unsupported device: {e}")
        return EXIT_UNSUPPORTED_DEVICE

    def on_sigint(signum, frame):
        driver.cancel()
        # a second Ctrl-C interrupts immediately
        signal.signal(signal.SIGINT, signal.default_int_handler)

    previous = signal.signal(signal.SIGINT, on_sigint)
    try:
        results = driver.run(suites)
    except UnsupportedDevice as e:
        logger.error(f"Unsupported device: {e}")
        return EXIT_UNSUPPORTED_DEVICE
    finally:
        signal.signal(signal.SIGINT, previous)

    errors = sum(r.validations.errors for r in results)
    done = sum(r.validations.done for r in results)
    rows = sum(len(r.rows) for r in results)
    logger.info(f"{len(results)} suites, {rows} rows, {done} validations, {errors} errors")
    for r in results:
        if r.aborted:
            logger.error(f"Suite '{r.name}' aborted: {r.aborted}")
    return EXIT_VALIDATION_FAILED if errors else 0


if __name__ == "__main__":
    sys.exit(main())
