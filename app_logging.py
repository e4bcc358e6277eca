# app_logging.py
# Version: 1.2.0
# Logging system for the SMART test scheduler with numbered size-based log rotation,
# a console mirror for cron mail, and an NDJSON stream of run, dispatch and health report events.

import json
import logging
import logging.handlers
import os
from pathlib import Path
from typing import Dict, Any, Optional
from datetime import datetime, timezone
import threading

from app_types import DispatchOutcome, GuardState, RunSummary

logger = logging.getLogger(__name__)

LOG_BASENAME = "scheduler"
LOG_EXT = ".log"
OWNED_HANDLER_ATTR = "_smart_scheduler_handler"

class SizeRotatingFileHandler(logging.handlers.RotatingFileHandler):
    """Rotating file handler with numbered files: scheduler1.log (current) to schedulerN.log."""

    def doRollover(self):
        """Perform rollover with numbered file naming scheme."""
        if self.stream:
            self.stream.close()
            self.stream = None

        base, ext = os.path.splitext(self.baseFilename)   # ".../scheduler1", ".log"

        # ".../scheduler1" -> ".../scheduler"
        if base.endswith("1"):
            root = base[:-1]
        else:
            root = base.rstrip("0123456789")

        max_keep = self.backupCount if self.backupCount > 0 else 5

        last = f"{root}{max_keep}{ext}"
        if os.path.exists(last):
            os.remove(last)

        # Shift N-1 -> N (descending)
        for i in range(max_keep - 1, 0, -1):
            src = f"{root}{i}{ext}"
            dst = f"{root}{i + 1}{ext}"
            if os.path.exists(src):
                if os.path.exists(dst):
                    os.remove(dst)
                os.rename(src, dst)

        self.mode = "w"
        self.stream = self._open()

class EventLogger:
    """Handles structured event logging with NDJSON output."""

    def __init__(self, log_dir: Path, config):
        self.log_dir = log_dir
        self.ndjson_enabled = config.log_ndjson
        self.ndjson_file: Optional[Path] = None
        self.ndjson_lock = threading.Lock()

        if self.ndjson_enabled:
            self.ndjson_file = self.log_dir / "events.ndjson"

    def _event(self, event_type: str, **details) -> Dict[str, Any]:
        return {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "event_type": event_type,
            **details
        }

    def log_run_start(self, test_type: str, rotate_long: bool, max_concurrent: int):
        if not self.ndjson_enabled:
            return
        self._write_ndjson_event(self._event(
            "run_start",
            test_type=test_type,
            rotate_long=rotate_long,
            max_concurrent=max_concurrent,
        ))

    def log_abort(self, reason: str, guard_state: Optional[GuardState] = None):
        if not self.ndjson_enabled:
            return
        event = self._event("run_aborted", reason=reason)
        if guard_state is not None:
            event["load_average"] = guard_state.load_average
            event["pool_idle"] = guard_state.pool_idle
        self._write_ndjson_event(event)

    def log_outcome(self, outcome: DispatchOutcome):
        if not self.ndjson_enabled:
            return
        self._write_ndjson_event(self._event(
            "dispatch",
            device=outcome.device.name,
            device_class=outcome.device.device_class.value,
            path=outcome.device.path,
            test_kind=outcome.kind.value,
            status=outcome.status.value,
            reason=outcome.reason,
        ))

    def log_run_summary(self, summary: RunSummary):
        if not self.ndjson_enabled:
            return
        self._write_ndjson_event(self._event(
            "run_summary",
            test_type=summary.test_kind.value,
            started=len(summary.started),
            skipped=len(summary.skipped),
            failed=len(summary.failed),
            severity=summary.severity.value,
        ))

    def log_health_report(self, state: str, drives: int, alerts: int, report_path: Optional[str]):
        if not self.ndjson_enabled:
            return
        self._write_ndjson_event(self._event(
            "health_report",
            state=state,
            drives=drives,
            alerts=alerts,
            report_path=report_path,
        ))

    def _write_ndjson_event(self, event: Dict[str, Any]):
        """Write an event to the NDJSON file."""
        if not self.ndjson_file:
            return

        try:
            with self.ndjson_lock:
                with open(self.ndjson_file, 'a', encoding='utf-8') as f:
                    f.write(json.dumps(event, ensure_ascii=False) + '\n')
        except OSError as e:
            logger.error(f"Failed to write NDJSON event: {e}")

class HumanLogger:
    """Handles human-readable log rotation and formatting."""

    def __init__(self, log_dir: Path, config, debug: bool = False):
        self.log_dir = log_dir
        self.max_size_kb = config.log_max_kb
        self.history_count = config.log_history_count
        self.level = logging.DEBUG if debug else logging.INFO

        self.log_dir.mkdir(parents=True, exist_ok=True)

        # Current/active file is ALWAYS "1"
        self.current_log = self.log_dir / f"{LOG_BASENAME}1{LOG_EXT}"

        self._setup_logging()

    def _setup_logging(self):
        """Set up the logging system."""
        self.formatter = logging.Formatter(
            '[%(asctime)s] %(levelname)s %(name)s: %(message)s',
            datefmt='%Y-%m-%d %H:%M:%S'
        )

        file_handler = SizeRotatingFileHandler(
            self.current_log,
            maxBytes=self.max_size_kb * 1024,
            backupCount=self.history_count,
            encoding='utf-8'
        )
        file_handler.setFormatter(self.formatter)
        file_handler.setLevel(self.level)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(self.formatter)
        console_handler.setLevel(self.level)

        root_logger = logging.getLogger()
        root_logger.setLevel(self.level)

        # Replace handlers from an earlier setup to prevent duplication
        for handler in list(root_logger.handlers):
            if getattr(handler, OWNED_HANDLER_ATTR, False):
                root_logger.removeHandler(handler)
                handler.close()
        setattr(file_handler, OWNED_HANDLER_ATTR, True)
        setattr(console_handler, OWNED_HANDLER_ATTR, True)

        root_logger.addHandler(file_handler)
        root_logger.addHandler(console_handler)

class LoggingManager:
    """Manages both human and NDJSON logging."""

    def __init__(self, log_dir: Path, config, debug: bool = False):
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)

        self.human_logger = HumanLogger(self.log_dir, config, debug=debug)
        self.event_logger = EventLogger(self.log_dir, config)

    def log_run_start(self, test_type: str, rotate_long: bool, max_concurrent: int):
        self.event_logger.log_run_start(test_type, rotate_long, max_concurrent)

    def log_abort(self, reason: str, guard_state: Optional[GuardState] = None):
        self.event_logger.log_abort(reason, guard_state)

    def log_outcome(self, outcome: DispatchOutcome):
        self.event_logger.log_outcome(outcome)

    def log_run_summary(self, summary: RunSummary):
        """Log the run totals to both human and NDJSON logs."""
        logger.info(f"Started: {len(summary.started)}  Skipped: {len(summary.skipped)}  "
                    f"Failed: {len(summary.failed)}")
        if summary.started:
            logger.info(f"Started items: {' '.join(summary.started)}")
        if summary.skipped:
            logger.info(f"Skipped items: {' '.join(summary.skipped)}")
        if summary.failed:
            logger.info(f"Failed items: {' '.join(summary.failed)}")
        self.event_logger.log_run_summary(summary)

    def log_health_report(self, state: str, drives: int, alerts: int, report_path: Optional[str]):
        logger.info(f"Health report: state={state} drives={drives} alerts={alerts}")
        self.event_logger.log_health_report(state, drives, alerts, report_path)
