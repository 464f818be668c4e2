"""
External Monitoring Integration for the Sync Module.

This module sends a report of every sync run to an external monitoring
endpoint so paused, failed or error-heavy runs can be alerted on.

Key Features:
- Webhook Integration: Sends run reports as JSON payloads to any HTTP endpoint.
- Pluggable Architecture: ExternalMonitor can be subclassed for other platforms.
- Configurable: Endpoint, headers and timeout come from the sync configuration.
"""

import requests
import json
from typing import Dict, Any, Optional
from .logging_manager import get_logger
from .models import SyncRunResult

logger = get_logger(__name__)

class ExternalMonitor:
    """
    Base class for external monitoring integrations.
    """
    def send_report(self, report: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def report_run(self, result: SyncRunResult, environment: Optional[str] = None) -> bool:
        """
        Send the report of a single sync run.
        """
        report = {
            "event": "sync_run",
            "environment": environment,
            "result": result.to_dict(),
        }
        return self.send_report(report)

class WebhookMonitor(ExternalMonitor):
    """
    Sends sync reports to a custom webhook endpoint.
    """
    def __init__(self, endpoint_url: str, headers: Optional[Dict[str, str]] = None, timeout: int = 10):
        self.endpoint_url = endpoint_url
        self.headers = headers or {'Content-Type': 'application/json'}
        self.timeout = timeout

    def send_report(self, report: Dict[str, Any]) -> bool:
        """
        Sends the report as a JSON payload to the configured webhook.

        Delivery failures are logged; monitoring never fails a sync run.
        """
        try:
            response = requests.post(
                self.endpoint_url,
                data=json.dumps(report, default=str),
                headers=self.headers,
                timeout=self.timeout
            )
            response.raise_for_status()
            logger.info(f"Successfully sent report to webhook: {self.endpoint_url}")
            return True
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to send report to webhook {self.endpoint_url}: {e}")
            return False

def get_monitor_from_config(config) -> Optional[ExternalMonitor]:
    """
    Factory function to create a monitor instance from the sync configuration.
    """
    monitor_config = getattr(config, 'monitoring', None)
    if not monitor_config:
        return None

    if monitor_config.type == 'webhook':
        if monitor_config.endpoint_url:
            return WebhookMonitor(
                endpoint_url=monitor_config.endpoint_url,
                headers=monitor_config.headers,
                timeout=monitor_config.timeout
            )

    logger.warning(f"Unknown or misconfigured monitor type: {monitor_config.type}")
    return None
