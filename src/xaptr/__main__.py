from __future__ import annotations

import argparse
import logging
import signal
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from . import paths
from .compare import Comparator
from .config import (
    DEFAULT_BUILD_COMMAND,
    DEFAULT_CONFIGURATION,
    DEFAULT_REPETITION_COUNT,
    CompareConfig,
    PerfTestConfig,
    load_config_file,
    policy_from_mapping,
    timeouts_from_mapping,
)
from .errors import ConfigurationError, OrchestratorFailure, XaptrError
from .log import add_file_handler, remove_handler, setup_logging
from .orchestrator import TestOrchestrator
from .report import render_comparison, render_summary
from .results import load_raw_results

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    """Build CLI parser for the perf and compare commands."""
    parser = argparse.ArgumentParser(
        prog="xaptr",
        description="Repeatable performance runs for Xamarin/.NET Android apps, and statistical comparison of their results.",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Log debug output to the console.")
    sub = parser.add_subparsers(dest="cmd", required=True)

    perf = sub.add_parser("perf", help="Build, deploy and launch the app N times, recording metrics.")
    perf.add_argument("project", nargs="*", help="Project file or directory (default: current directory).")
    perf.add_argument("-r", "--repetitions", type=int, default=None, help=f"Number of runs (default: {DEFAULT_REPETITION_COUNT}).")
    perf.add_argument("-a", "--app", default=None, help="Android package name (default: detected from the project).")
    perf.add_argument("-c", "--configuration", default=None, help=f"Build configuration (default: {DEFAULT_CONFIGURATION}).")
    perf.add_argument("-b", "--build-command", default=None, help=f"Build tool command line (default: {DEFAULT_BUILD_COMMAND}).")
    perf.add_argument("-o", "--output-dir", type=Path, default=None, help="Base directory for data directories (default: <project-dir>/perfdata).")
    perf.add_argument("-m", "--profile-managed", action="store_true", default=None, help="Attach the Mono log profiler.")
    perf.add_argument("-n", "--profile-native", action="store_true", default=None, help="Record with simpleperf.")
    perf.add_argument("-x", "--config-file", type=Path, default=None, help="JSON config file supplying defaults.")
    perf.add_argument("--device", default=None, help="adb device serial.")
    perf.add_argument("--max-consecutive-failures", type=int, default=None, help="Abort after K failed runs in a row (0 disables).")
    perf.add_argument("--max-retries", type=int, default=None, help="Retries for deploy/launch timeouts.")
    perf.add_argument("--cooldown", type=float, default=None, help="Seconds to wait between runs.")
    perf.add_argument("--steady-state-delay", type=float, default=None, help="Seconds between launch and steady-state sampling.")

    compare = sub.add_parser("compare", help="Compare two data directories.")
    compare.add_argument("baseline", type=Path, help="Baseline data directory (or raw results file).")
    compare.add_argument("candidate", type=Path, help="Candidate data directory (or raw results file).")
    compare.add_argument("-o", "--output-dir", type=Path, default=None, help=f"Report directory (default: ./{paths.COMPARE_RESULTS_RELATIVE_PATH}).")
    compare.add_argument("-x", "--config-file", type=Path, default=None, help="JSON config file (its `compare` section is used).")
    compare.add_argument("--alpha", type=float, default=None, help="Significance level (default: 0.05).")
    compare.add_argument("--min-percent", type=float, default=None, help="Smallest change, in percent, reported as a change (default: 2).")
    compare.add_argument("--method", default=None, choices=["welch", "pooled-stddev"], help="Significance test (default: welch).")

    return parser


def _pick(cli_value: Any, file_data: dict[str, Any], key: str, default: Any) -> Any:
    if cli_value is not None:
        return cli_value
    if key in file_data:
        return file_data[key]
    return default


def perf_config_from_args(ns: argparse.Namespace, *, cwd: Path, now: datetime) -> PerfTestConfig:
    file_data = load_config_file(ns.config_file) if ns.config_file is not None else {}
    project_path = paths.locate_project(list(ns.project), cwd=cwd)

    package_name = _pick(ns.app, file_data, "package_name", None) or paths.detect_package_name(project_path)
    if not package_name:
        raise ConfigurationError(f"Could not detect the Android package name of {project_path.name}; pass --app")

    configuration = _pick(ns.configuration, file_data, "configuration", DEFAULT_CONFIGURATION)
    output_base = _pick(ns.output_dir, file_data, "output_dir", None)
    base = Path(output_base) if output_base is not None else paths.default_output_base(project_path)
    data_dir = paths.new_data_dir(base=base, configuration=configuration, now=now)

    return PerfTestConfig(
        project_path=project_path,
        package_name=package_name,
        data_dir=data_dir,
        configuration=configuration,
        build_command=_pick(ns.build_command, file_data, "build_command", DEFAULT_BUILD_COMMAND),
        repetition_count=int(_pick(ns.repetitions, file_data, "repetition_count", DEFAULT_REPETITION_COUNT)),
        profile_managed=bool(_pick(ns.profile_managed, file_data, "profile_managed", False)),
        profile_native=bool(_pick(ns.profile_native, file_data, "profile_native", False)),
        managed_profiler_options=file_data.get("managed_profiler_options", "log:calls,alloc"),
        adb=file_data.get("adb", "adb"),
        device_serial=_pick(ns.device, file_data, "device_serial", None),
        steady_state_delay_s=float(_pick(ns.steady_state_delay, file_data, "steady_state_delay_s", 5.0)),
        cooldown_s=float(_pick(ns.cooldown, file_data, "cooldown_s", 0.0)),
        max_consecutive_failures=int(_pick(ns.max_consecutive_failures, file_data, "max_consecutive_failures", 3)),
        max_retries=int(_pick(ns.max_retries, file_data, "max_retries", 0)),
        timeouts=timeouts_from_mapping(file_data.get("timeouts")),
    )


def compare_config_from_args(ns: argparse.Namespace, *, cwd: Path) -> CompareConfig:
    file_data = load_config_file(ns.config_file) if ns.config_file is not None else {}
    policy = policy_from_mapping(
        file_data.get("compare"),
        method=ns.method,
        alpha=ns.alpha,
        min_percent_change=ns.min_percent,
    )
    output_dir = ns.output_dir if ns.output_dir is not None else cwd / paths.COMPARE_RESULTS_RELATIVE_PATH
    return CompareConfig(
        baseline_dir=(cwd / ns.baseline).resolve(),
        candidate_dir=(cwd / ns.candidate).resolve(),
        output_dir=(cwd / output_dir).resolve(),
        policy=policy,
    )


def run_perf(
    config: PerfTestConfig,
    *,
    cancel: threading.Event | None = None,
    orchestrator: TestOrchestrator | None = None,
) -> int:
    config.validate()
    try:
        file_handler = add_file_handler(config.data_dir / paths.LOG_FILE_NAME)
    except OSError as e:
        raise OrchestratorFailure(f"Could not create data directory {config.data_dir}: {e}") from e
    try:
        runner = orchestrator if orchestrator is not None else TestOrchestrator()
        raw_set = runner.run(config, cancel)
        report = render_summary(raw_set, config.data_dir / paths.REPORT_FILE_NAME)
        if report is None:
            logger.warning("No summary report produced")
        failed = len(raw_set.runs) - len(raw_set.successful_runs)
        if failed:
            logger.warning(f"{failed}/{len(raw_set.runs)} run(s) failed; see {paths.RAW_RESULTS_FILE_NAME} for reasons")
        logger.info(f"Data directory: {config.data_dir}")
    finally:
        remove_handler(file_handler)
    return 0


def run_compare(config: CompareConfig) -> int:
    # Both inputs are loaded before any statistics or output.
    baseline = load_raw_results(config.baseline_dir)
    candidate = load_raw_results(config.candidate_dir)
    results = Comparator(config.policy).compare(baseline, candidate)
    report = render_comparison(
        results,
        config.output_dir / paths.COMPARE_REPORT_FILE_NAME,
        baseline=baseline,
        candidate=candidate,
    )
    if report is None:
        logger.warning("No comparison report produced: no metrics in either set")
        return 0
    regressed = [r.key for r in results if r.verdict == "regressed"]
    if regressed:
        logger.warning(f"Regressed: {', '.join(regressed)}")
    return 0


def main(argv: list[str] | None = None) -> int:
    """CLI entrypoint. Returns process exit code."""
    parser = build_parser()
    ns = parser.parse_args(argv)
    setup_logging(verbose=ns.verbose)
    cwd = Path.cwd()

    cancel = threading.Event()

    def _on_sigint(signum: int, frame: Any) -> None:
        if cancel.is_set():
            raise KeyboardInterrupt
        logger.warning("Interrupted; finishing the current step (press Ctrl+C again to force)")
        cancel.set()

    previous = signal.signal(signal.SIGINT, _on_sigint)
    try:
        if ns.cmd == "perf":
            return run_perf(perf_config_from_args(ns, cwd=cwd, now=datetime.now()), cancel=cancel)
        if ns.cmd == "compare":
            return run_compare(compare_config_from_args(ns, cwd=cwd))
    except XaptrError as e:
        logger.error(str(e))
        return 1
    finally:
        signal.signal(signal.SIGINT, previous)

    raise AssertionError(f"Unhandled cmd: {ns.cmd}")


if __name__ == "__main__":
    raise SystemExit(main())
