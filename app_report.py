# app_report.py
# Version: 1.1.0
# Outcome reporting for the SMART test scheduler: plain-text run report, email through
# the local mail command or msmtp (HTML), and Discord webhook embeds. Delivery problems are logged only.

import time
from datetime import datetime, timezone
from email.message import EmailMessage
from email.utils import formatdate
from typing import Any, Dict, List, Optional, Tuple
import logging

import httpx

from app_types import RunSummary, Severity
from app_io import CommandRunner, ToolPaths

logger = logging.getLogger(__name__)

WEBHOOK_TIMEOUT_SECONDS = 15
WEBHOOK_MAX_RETRIES = 3
WEBHOOK_RETRY_BASE_DELAY = 1.0  # seconds
WEBHOOK_RETRY_MAX_DELAY = 10.0  # seconds
WEBHOOK_USERNAME = "SMART Test Scheduler"

# Discord embed colors
SEVERITY_COLORS = {
    Severity.OK: 3066993,     # green
    Severity.WARN: 15105570,  # orange
    Severity.CRIT: 15158332,  # red
}

def _section(title: str, items: List[str]) -> str:
    return f"\n\n{title}:\n" + "\n".join(f"- {item}" for item in items)

def format_report(summary: RunSummary, host: str) -> Tuple[str, str]:
    """Build (subject, message). Item lists keep dispatch order."""
    kind = summary.test_kind.value
    subject = f"SMART Test Scheduler ({kind}) - {host}"
    message = (
        f"Host: {host}\n"
        f"Type: {kind}\n"
        f"Rotate long HDD: {str(summary.rotate_long).lower()}\n"
        f"Include NVMe on long: {str(summary.include_nvme_on_long).lower()}\n"
        f"Started: {len(summary.started)}\n"
        f"Skipped: {len(summary.skipped)}\n"
        f"Failed: {len(summary.failed)}"
    )
    if summary.started:
        message += _section("Started", summary.started)
    if summary.skipped:
        message += _section("Skipped", summary.skipped)
    if summary.failed:
        message += _section("Failed", summary.failed)
    return subject, message

def build_discord_payload(subject: str, message: str, severity: Severity) -> Dict[str, Any]:
    """Discord-compatible webhook payload with a single embed."""
    return {
        "username": WEBHOOK_USERNAME,
        "embeds": [{
            "title": subject,
            "description": message,
            "color": SEVERITY_COLORS[severity],
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }],
    }

class Notifier:
    """Delivers a run report by email and/or Discord webhook, as configured."""

    def __init__(self, config, runner: CommandRunner, tools: ToolPaths,
                 max_retries: int = WEBHOOK_MAX_RETRIES, sleep=time.sleep):
        self.config = config
        self.runner = runner
        self.tools = tools
        self.max_retries = max_retries
        self.sleep = sleep

    def notify(self, subject: str, message: str, severity: Severity):
        if self.config.send_email and self.config.email:
            self.send_email(subject, message)
        if self.config.discord_enabled and self.config.discord_webhook:
            self.send_discord(subject, message, severity)

    def send_email(self, subject: str, message: str) -> bool:
        if not self.tools.mail:
            logger.warning("WARN: mail command not found; cannot email notification")
            return False
        result = self.runner.run([self.tools.mail, "-s", subject, self.config.email], input_text=message)
        if not result.ok:
            logger.warning(f"mail exited with rc={result.returncode}: {result.stderr.strip()}")
            return False
        logger.info(f"Notification emailed to {self.config.email}")
        return True

    def send_discord(self, subject: str, message: str, severity: Severity) -> Tuple[bool, Optional[str]]:
        """POST the report embed."""
        return self.post_webhook(build_discord_payload(subject, message, severity))

    def post_webhook(self, payload: Dict[str, Any]) -> Tuple[bool, Optional[str]]:
        """POST a webhook payload with retry and exponential backoff."""
        url = self.config.discord_webhook
        last_error: Optional[str] = None

        for attempt in range(self.max_retries):
            try:
                with httpx.Client(timeout=WEBHOOK_TIMEOUT_SECONDS) as client:
                    response = client.post(url, json=payload)

                if 200 <= response.status_code < 300:
                    logger.info(f"Discord notification sent (attempt {attempt + 1}/{self.max_retries})")
                    return True, None

                last_error = f"HTTP {response.status_code}: {response.text[:200]}"
                logger.warning(f"Discord webhook failed (attempt {attempt + 1}/{self.max_retries}): {last_error}")

            except httpx.TimeoutException:
                last_error = f"Timeout after {WEBHOOK_TIMEOUT_SECONDS}s"
                logger.warning(f"Discord webhook timeout (attempt {attempt + 1}/{self.max_retries})")

            except httpx.RequestError as e:
                last_error = f"Request error: {e}"
                logger.warning(f"Discord webhook request error (attempt {attempt + 1}/{self.max_retries}): {e}")

            if attempt < self.max_retries - 1:
                delay = min(WEBHOOK_RETRY_BASE_DELAY * (2 ** attempt), WEBHOOK_RETRY_MAX_DELAY)
                self.sleep(delay)

        logger.error(f"Discord webhook failed after {self.max_retries} attempts: {last_error}")
        return False, last_error

    def send_html_email(self, subject: str, html: str, host: str) -> bool:
        """Pipe a text/html message to `msmtp -t`; recipients come from the headers."""
        if not self.config.email:
            logger.debug("No email recipient configured; health report not mailed")
            return False
        if not self.tools.msmtp:
            logger.error("msmtp not found; cannot email health report")
            return False

        msg = EmailMessage()
        msg["To"] = self.config.email
        msg["From"] = self.config.mail_from or f"root@{host}"
        msg["Subject"] = subject
        msg["Date"] = formatdate(localtime=True)
        msg.set_content(html, subtype="html")

        result = self.runner.run([self.tools.msmtp, "-t"], input_text=msg.as_string())
        if not result.ok:
            logger.error(f"msmtp exited with rc={result.returncode}: {result.stderr.strip()}")
            return False
        logger.info(f"Health report emailed to {self.config.email}")
        return True
