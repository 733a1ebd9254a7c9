# webhook.py
from __future__ import annotations

import json
import urllib.error
import urllib.request
from typing import Optional

from .codec import snapshot_to_dict
from .errors import WebhookError
from .status import RunSnapshot
from .ui.console import get_console


class WebhookNotifier:
    """
    Terminal-status webhook. Register `notifier` as a run's on_complete
    callback; the reporter fires it exactly once per run.
    """

    def __init__(self, url: str, headers: Optional[dict] = None, timeout: float = 10.0):
        self.url = url
        self.headers = dict(headers or {})
        self.timeout = timeout

    def send(self, snapshot: RunSnapshot) -> None:
        """
        POST the snapshot as JSON.

        Raises:
            WebhookError: If delivery fails
        """
        req_headers = {
            "Content-Type": "application/json",
        }
        req_headers.update(self.headers)
        req_data = json.dumps(snapshot_to_dict(snapshot)).encode("utf-8")
        req = urllib.request.Request(self.url, data=req_data, headers=req_headers, method="POST")

        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as response:
                response.read()
        except urllib.error.HTTPError as e:
            error_body = e.read().decode("utf-8") if e.fp else ""
            raise WebhookError(
                message=f"webhook request failed: {e.code} {e.reason}",
                details={"url": self.url, "body": error_body[:500]},
            ) from e
        except urllib.error.URLError as e:
            raise WebhookError(message=f"network error: {e.reason}", details={"url": self.url}) from e
        except OSError as e:
            raise WebhookError(message=f"delivery failed: {e}", details={"url": self.url}) from e

    def __call__(self, snapshot: RunSnapshot) -> None:
        # delivery failures never change the run outcome
        try:
            self.send(snapshot)
        except WebhookError as e:
            get_console().print_warning(f"run {snapshot.run_id}: {e}")
        else:
            get_console().print_debug(f"run {snapshot.run_id}: webhook delivered to {self.url}")
