# app_health_report.py
# Version: 1.0.0
# SMART/ZFS health report: HTML rendering through a mako template, a saved copy per run
# with age-based cleanup, HTML email through msmtp, and a state-gated Discord summary.

import os
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional
from dataclasses import dataclass, field
import logging

from mako.template import Template

from app_types import Severity
from app_health import (DriveHealth, HealthCollector, HealthThresholds, PoolHealth,
                        critical_alerts, drive_state, system_state)
from app_report import Notifier, build_discord_payload

logger = logging.getLogger(__name__)

REPORT_GLOB = "*.html"
DISCORD_FIELD_LIMIT = 1024
SECONDS_PER_DAY = 86400
FOOTER_TEXT = "SMART Test Scheduler health report"

STATE_ICONS = {
    Severity.OK: "✅",
    Severity.WARN: "⚠️",
    Severity.CRIT: "🔴",
}

HTML_TEMPLATE = """\
<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="UTF-8">
<meta name="viewport" content="width=device-width, initial-scale=1.0">
<title>${title}</title>
<style>
body { font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; background-color: #f5f5f5; margin: 0; padding: 20px; }
.container { max-width: 1400px; margin: 0 auto; background: white; padding: 30px; border-radius: 8px; }
h1 { color: #6D28D9; border-bottom: 3px solid #6D28D9; padding-bottom: 10px; }
h2 { color: #333; background: #f0f0f0; padding: 10px; border-left: 4px solid #6D28D9; margin-top: 30px; }
.info-box { background: #f9f9f9; border: 1px solid #ddd; padding: 15px; margin: 20px 0; border-radius: 4px; }
table { width: 100%; border-collapse: collapse; margin: 20px 0; font-size: 14px; }
th { background: #6D28D9; color: white; padding: 12px 8px; text-align: left; font-weight: 600; }
td { padding: 10px 8px; border-bottom: 1px solid #ddd; }
.status-ok { color: green; font-weight: bold; }
.status-warn { color: orange; font-weight: bold; }
.status-crit { color: red; font-weight: bold; }
.alert { background: #fff3cd; border: 1px solid #ffc107; padding: 15px; margin: 20px 0; border-radius: 4px; }
.alert-crit { background: #f8d7da; border: 1px solid #dc3545; }
.pre-box { background: #f4f4f4; border: 1px solid #ddd; padding: 15px; overflow-x: auto; font-family: 'Courier New', monospace; font-size: 12px; white-space: pre; }
.footer { margin-top: 40px; padding-top: 20px; border-top: 1px solid #ddd; text-align: center; color: #666; font-size: 12px; }
</style>
</head>
<body>
<div class="container">
<h1>${title}</h1>
<div class="info-box">
<strong>Hostname:</strong> ${report.host}<br>
<strong>Report Time:</strong> ${report_time}<br>
<strong>Platform Version:</strong> ${report.platform_version}<br>
<strong>State:</strong> <span class="${state_class(report.state)}">${report.state.value}</span>
</div>
% if report.alerts:
<div class="alert alert-crit">
<strong>CRITICAL ALERTS:</strong>
<ul>
% for alert in report.alerts:
<li>${alert}</li>
% endfor
</ul>
</div>
% endif
% if config.include_zfs_report:
<h2>ZFS Pool Status</h2>
% if report.pools is None:
<p>ZFS not available on this system.</p>
% else:
<div class="pre-box">${report.pool_listing}</div>
% for pool in report.pools:
<h3>Pool: ${pool.name} (${pool.health})</h3>
<div class="pre-box">${pool.status_text}</div>
% endfor
% endif
% endif
<h2>Drive Summary</h2>
<table>
<tr><th>Device</th><th>Type</th><th>Model</th><th>Serial</th><th>Capacity</th><th>Health</th><th>Temp (&deg;C)</th><th>Power On Hours</th><th>Reallocated</th><th>Pending</th><th>% Used</th></tr>
% for drive in report.drives:
<tr>
<td>${drive.device}</td>
<td>${drive.drive_type}</td>
<td>${na(drive.model)}</td>
<td>${na(drive.serial)}</td>
<td>${drive.capacity}</td>
<td class="${health_class(drive)}">${na(drive.health)}</td>
<td class="${temp_class(drive)}">${na(drive.temperature)}</td>
<td>${na(drive.power_on_hours)}</td>
<td>${na(drive.reallocated)}</td>
<td>${na(drive.media_errors if drive.is_nvme else drive.pending)}</td>
<td>${percent(drive.percent_used)}</td>
</tr>
% endfor
</table>
% if config.include_smart_attrs:
<h2>Detailed SMART Attributes</h2>
% for drive in report.drives:
<h3>${drive.device} - ${drive.model or 'Unknown'}</h3>
<div class="pre-box">${drive.attributes_text}</div>
% endfor
% endif
% if config.include_selftest_logs:
<h2>Self-Test Logs</h2>
% for drive in report.drives:
<h3>${drive.device} - ${drive.model or 'Unknown'}</h3>
<div class="pre-box">${drive.selftest_text}</div>
% endfor
% endif
<div class="footer">Generated by ${footer}</div>
</div>
</body>
</html>
"""

# every ${} expression is HTML-escaped; smartctl and zpool output is not trusted markup
HEALTH_TEMPLATE = Template(text=HTML_TEMPLATE, default_filters=['str', 'h'])

@dataclass
class HealthReport:
    host: str
    generated_at: datetime
    platform_version: str
    drives: List[DriveHealth]
    pools: Optional[List[PoolHealth]]  # None: ZFS not available
    pool_listing: str
    state: Severity
    alerts: List[str]
    drive_states: Dict[str, Severity] = field(default_factory=dict)
    report_path: Optional[str] = None

def _na(value) -> str:
    return "N/A" if value is None or value == "" else str(value)

def _percent(value: Optional[int]) -> str:
    return "N/A" if value is None else f"{value}%"

def render_html(report: HealthReport, config) -> str:
    """Render the full HTML report."""
    thresholds = HealthThresholds.from_config(config)

    def temp_class(drive: DriveHealth) -> str:
        if drive.temperature is None or drive.temperature < thresholds.temp_warn:
            return "status-ok"
        return "status-crit" if drive.temperature >= thresholds.temp_crit else "status-warn"

    def health_class(drive: DriveHealth) -> str:
        return "status-ok" if drive.health_passed else "status-crit"

    return HEALTH_TEMPLATE.render(
        title=config.report_subject_prefix,
        report=report,
        report_time=report.generated_at.strftime("%Y-%m-%d %H:%M:%S"),
        config=config,
        footer=FOOTER_TEXT,
        na=_na,
        percent=_percent,
        temp_class=temp_class,
        health_class=health_class,
        state_class=lambda s: f"status-{s.value.lower()}",
    )

def report_subject(report: HealthReport, prefix: str) -> str:
    """'<prefix> - <host> - YYYY-MM-DD', flagged when there are critical alerts."""
    subject = f"{prefix} - {report.host} - {report.generated_at.strftime('%Y-%m-%d')}"
    if report.alerts:
        subject = f"ALERT - {subject}"
    return subject

def should_send_discord(state: Severity, only_on_alerts: bool, trigger_on_warn: bool) -> bool:
    """Discord gating: always, on WARN or CRIT, or on CRIT only."""
    if not only_on_alerts:
        return True
    if trigger_on_warn:
        return state != Severity.OK
    return state == Severity.CRIT

def _truncate(text: str, limit: int = DISCORD_FIELD_LIMIT) -> str:
    if len(text) <= limit:
        return text
    return text[:limit - 3] + "..."

def build_health_discord_payload(report: HealthReport) -> Dict[str, Any]:
    """Webhook payload: system info, pool health and one line per drive."""
    drive_lines = []
    for drive in report.drives:
        icon = STATE_ICONS[report.drive_states.get(drive.device, Severity.OK)]
        drive_lines.append(
            f"{icon} **{os.path.basename(drive.device)}** ({drive.drive_type}): "
            f"{_na(drive.temperature)}°C | {_na(drive.power_on_hours)}h | {_na(drive.health)}"
        )
    alert_count = sum(1 for s in report.drive_states.values() if s != Severity.OK)

    if report.pools is None:
        zfs_summary = "ZFS not available"
    elif not report.pools:
        zfs_summary = "No ZFS pools found"
    else:
        zfs_summary = "\n".join(
            f"{STATE_ICONS[Severity.OK if p.online else Severity.CRIT]} **{p.name}**: {p.health}"
            for p in report.pools
        )

    payload = build_discord_payload(
        f"Health Report: {report.host}",
        f"System health monitoring report (state: {report.state.value})",
        report.state,
    )
    embed = payload["embeds"][0]
    embed["fields"] = [
        {
            "name": "System Info",
            "value": _truncate(
                f"**Hostname**: {report.host}\n"
                f"**Time**: {report.generated_at.strftime('%Y-%m-%d %H:%M:%S')}\n"
                f"**Version**: {report.platform_version.split('/')[0]}"
            ),
            "inline": False,
        },
        {"name": "ZFS Pools", "value": _truncate(zfs_summary), "inline": False},
        {
            "name": f"Drives ({len(report.drives)} total, {alert_count} alerts)",
            "value": _truncate("\n".join(drive_lines) or "No drives found"),
            "inline": False,
        },
    ]
    embed["footer"] = {"text": FOOTER_TEXT}
    return payload

def save_report(html: str, report_dir: Path, host: str, generated_at: datetime) -> Path:
    """Write report_<host>_<YYYY-MM-DD_HHMMSS>.html under report_dir."""
    report_dir.mkdir(parents=True, exist_ok=True)
    path = report_dir / f"report_{host}_{generated_at.strftime('%Y-%m-%d_%H%M%S')}.html"
    path.write_text(html, encoding="utf-8")
    logger.info(f"Report generated: {path}")
    return path

def cleanup_old_reports(report_dir: Path, keep_days: int, now: float) -> int:
    """Delete saved reports older than keep_days. Returns the number removed."""
    if not report_dir.is_dir():
        return 0
    cutoff = now - keep_days * SECONDS_PER_DAY
    removed = 0
    for path in report_dir.glob(REPORT_GLOB):
        try:
            if path.stat().st_mtime < cutoff:
                path.unlink()
                removed += 1
        except OSError as e:
            logger.warning(f"Could not remove old report {path}: {e}")
    if removed:
        logger.info(f"Removed {removed} report(s) older than {keep_days} days")
    return removed

class HealthReporter:
    """Collects, renders, saves and delivers one health report."""

    def __init__(self, config, collector: HealthCollector, notifier: Notifier,
                 logging_manager=None, now: Callable[[], datetime] = datetime.now):
        self.config = config
        self.collector = collector
        self.notifier = notifier
        self.logging_manager = logging_manager
        self.now = now
        self.thresholds = HealthThresholds.from_config(config)

    def build(self, host: str) -> HealthReport:
        drives = self.collector.collect()
        pools = self.collector.pools(with_status=self.config.include_zfs_report)
        pool_listing = self.collector.pool_listing() if self.config.include_zfs_report else ""
        state = system_state(drives, pools, self.thresholds)
        logger.info(f"Computed system state: {state.value}")
        return HealthReport(
            host=host,
            generated_at=self.now(),
            platform_version=self.collector.platform_version(),
            drives=drives,
            pools=pools,
            pool_listing=pool_listing,
            state=state,
            alerts=critical_alerts(drives, self.thresholds),
            drive_states={d.device: drive_state(d, self.thresholds) for d in drives},
        )

    def run(self, host: str) -> HealthReport:
        report_dir = Path(self.config.report_dir)
        cleanup_old_reports(report_dir, self.config.keep_reports_days, self.now().timestamp())

        report = self.build(host)
        html = render_html(report, self.config)
        try:
            report.report_path = str(save_report(html, report_dir, host, report.generated_at))
        except OSError as e:
            logger.error(f"Failed to save report under {report_dir}: {e}")

        subject = report_subject(report, self.config.report_subject_prefix)
        if self.config.send_email:
            self.notifier.send_html_email(subject, html, host)
        else:
            logger.info("Email sending disabled")

        if self.config.discord_enabled and self.config.discord_webhook:
            if should_send_discord(report.state, self.config.discord_only_on_alerts,
                                   self.config.discord_trigger_on_warn):
                logger.info(f"Sending Discord webhook (state={report.state.value})")
                self.notifier.post_webhook(build_health_discord_payload(report))
            else:
                logger.info(f"Skipping Discord webhook (state={report.state.value}, "
                            f"only_on_alerts={self.config.discord_only_on_alerts}, "
                            f"trigger_on_warn={self.config.discord_trigger_on_warn})")

        if self.logging_manager:
            self.logging_manager.log_health_report(report.state.value, len(report.drives),
                                                   len(report.alerts), report.report_path)
        return report
