# main.py
# Version: 1.2.0
# Entry point for the SMART test scheduler: argument parsing, config/env resolution,
# component wiring, one dispatch run (or one health report), and notification of the outcome.

import sys
import argparse
from dataclasses import asdict, replace
from pathlib import Path
from typing import Optional, Sequence
import logging
import traceback

from app_config import ConfigManager, AppConfig
from app_io import CommandRunner, ToolPaths
from app_devices import DeviceCatalog
from app_guards import GuardEvaluator
from app_adapters import AdapterRegistry
from app_rotation import FileStateStore, RotationSelector
from app_core import DispatchEngine
from app_report import Notifier, format_report
from app_health import HealthCollector
from app_health_report import HealthReporter
from app_logging import LoggingManager
from app_utils import host_name

logger = logging.getLogger(__name__)

VERSION = "1.2.0"
EXIT_OK = 0
EXIT_ERROR = 1

def parse_arguments(argv: Optional[Sequence[str]] = None):
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="SMART Test Scheduler - start disk self-tests within safety guardrails",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  smart-test-scheduler                         # short tests on every disk
  smart-test-scheduler --type long             # long test on ONE rotating disk + NVMe
  smart-test-scheduler --type long --no-rotate --max-concurrent 2
  smart-test-scheduler --dry-run               # guards and targets only
  smart-test-scheduler --health-report         # SMART/ZFS health report by email/Discord
        """
    )

    parser.add_argument('--config', type=Path, default=None,
                        help='JSON config file (default /etc/smart-test-scheduler/config.json)')
    parser.add_argument('--type', dest='test_type', choices=['short', 'long'],
                        help='Self-test kind')
    parser.add_argument('--rotate', dest='rotate_long_tests', action='store_true', default=None,
                        help='Long runs test one rotating disk per run')
    parser.add_argument('--no-rotate', dest='rotate_long_tests', action='store_false',
                        help='Long runs test every rotating disk')
    parser.add_argument('--nvme-on-long', dest='include_nvme_on_long', action='store_true', default=None,
                        help='Include NVMe disks in rotating long runs')
    parser.add_argument('--no-nvme-on-long', dest='include_nvme_on_long', action='store_false',
                        help='Skip NVMe disks in rotating long runs')
    parser.add_argument('--max-concurrent', type=int,
                        help='Maximum self-tests running at once across the host')
    parser.add_argument('--max-load', type=float,
                        help='Skip the run if the 1-minute load average exceeds this')
    parser.add_argument('--state-file', help='Rotation index file')
    parser.add_argument('--pool-members-only', dest='only_pool_member_disks', action='store_true',
                        default=None, help='Only test disks that belong to a ZFS pool')
    parser.add_argument('--log-dir', help='Log directory')
    parser.add_argument('--dry-run', action='store_true',
                        help='Evaluate guards and list targets without starting tests')
    parser.add_argument('--health-report', action='store_true',
                        help='Build and deliver the SMART/ZFS health report instead of starting tests')
    parser.add_argument('--report-dir', help='Directory for saved HTML health reports')
    parser.add_argument('--config-info', action='store_true',
                        help='Print the effective configuration and exit')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging')
    parser.add_argument('--version', action='version', version=f'SMART Test Scheduler {VERSION}')

    return parser.parse_args(argv)

# CLI dest -> AppConfig field
CLI_OVERRIDES = (
    "test_type", "rotate_long_tests", "include_nvme_on_long", "max_concurrent",
    "max_load", "state_file", "only_pool_member_disks", "log_dir", "report_dir",
)

def build_config(args) -> AppConfig:
    """Config file, then environment, then command line."""
    config = ConfigManager(args.config).load_config()
    overrides = {name: getattr(args, name) for name in CLI_OVERRIDES if getattr(args, name) is not None}
    if overrides:
        config = replace(config, **overrides)
    return config

def handle_config_info(config: AppConfig, tools: ToolPaths):
    """Print the effective configuration."""
    print("SMART Test Scheduler Configuration")
    print("=" * 50)
    for key, value in asdict(config).items():
        print(f"{key}: {value}")
    print(f"effective max_concurrent: {config.effective_max_concurrent()}")
    print(f"smartctl: {tools.smartctl or 'not found'}")
    print(f"nvme: {tools.nvme or 'not found'}")
    print(f"zpool: {tools.zpool or 'not found'}")
    print(f"mail: {tools.mail or 'not found'}")
    print(f"msmtp: {tools.msmtp or 'not found'}")
    print(f"lsblk: {tools.lsblk or 'not found'}")

def build_engine(config: AppConfig, tools: ToolPaths, runner: CommandRunner,
                 logging_manager: Optional[LoggingManager] = None) -> DispatchEngine:
    catalog = DeviceCatalog(config.by_id_dir, runner, tools)
    guards = GuardEvaluator(runner, tools, config.loadavg_path)
    adapters = AdapterRegistry.default(runner, tools)
    rotation = RotationSelector(FileStateStore(config.state_file))
    return DispatchEngine(config, catalog, guards, adapters, rotation,
                          backend_available=bool(tools.smartctl),
                          logging_manager=logging_manager)

def handle_dry_run(engine: DispatchEngine) -> int:
    guard_state = engine.guards.evaluate(engine.config.max_load)
    print(f"Load average: {guard_state.load_average} (max {engine.config.max_load})")
    print(f"Guards: {'clear' if guard_state.ok else '; '.join(guard_state.reasons)}")
    print(f"Max concurrent: {engine.max_concurrent}")
    for target in engine.build_targets(advance_rotation=False):
        print(f"  {target.label}: {target.device.identity} -> {target.device.path}")
    return EXIT_OK

def handle_health_report(config: AppConfig, tools: ToolPaths, runner: CommandRunner,
                         logging_manager: LoggingManager) -> int:
    """Collect drive and pool health, then save and deliver the HTML report."""
    if not tools.smartctl:
        logger.error(f"smartctl not found in PATH: {config.search_path}")
        logger.error("Install smartmontools: apt update && apt install smartmontools")
        return EXIT_ERROR

    collector = HealthCollector(runner, tools, selftest_lines=config.selftest_lines)
    reporter = HealthReporter(config, collector, Notifier(config, runner, tools), logging_manager)
    report = reporter.run(host_name())
    if report.report_path:
        print(f"Report saved to: {report.report_path}")
    return EXIT_OK

def run(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_arguments(argv)
    config = build_config(args)
    runner = CommandRunner()
    tools = ToolPaths.resolve(config.search_path)

    if args.config_info:
        handle_config_info(config, tools)
        return EXIT_OK

    logging_manager = LoggingManager(Path(config.log_dir), config, debug=args.debug)

    if args.health_report:
        return handle_health_report(config, tools, runner, logging_manager)

    engine = build_engine(config, tools, runner, logging_manager)

    if args.dry_run:
        return handle_dry_run(engine)

    result = engine.run()
    if result.aborted:
        # no test window is routine, not a failure
        return EXIT_OK

    host = host_name()
    subject, message = format_report(result.summary, host)
    Notifier(config, runner, tools).notify(subject, message, result.summary.severity)
    logger.info("Done.")
    return EXIT_OK

def main():
    """Main application entry point."""
    logging.getLogger().setLevel(logging.INFO)
    try:
        exit_code = run()
    except Exception as e:
        logger.exception(f"Unexpected error in main: {e}")
        print("\nFull traceback:\n" + traceback.format_exc())
        exit_code = EXIT_ERROR
    finally:
        logging.shutdown()
    sys.exit(exit_code)

if __name__ == "__main__":
    main()
