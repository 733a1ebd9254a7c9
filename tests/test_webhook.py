import json
import urllib.error
import urllib.request

import pytest

from relayci.errors import WebhookError
from relayci.model import JobResult, Status
from relayci.status import StatusReporter
from relayci.webhook import WebhookNotifier


class _Response:
    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def read(self):
        return b"ok"


def _final_snapshot():
    reporter = StatusReporter("run-7", ["build"])
    reporter.job_finished(JobResult("build", Status.SUCCESS))
    return reporter.finalize()


def test_posts_snapshot_json(monkeypatch):
    sent = []

    def fake_urlopen(req, timeout=None):
        sent.append(req)
        return _Response()

    monkeypatch.setattr(urllib.request, "urlopen", fake_urlopen)
    WebhookNotifier("http://hooks.local/ci", headers={"X-Token": "t"})(_final_snapshot())

    req = sent[0]
    assert req.full_url == "http://hooks.local/ci"
    assert req.get_method() == "POST"
    assert req.get_header("X-token") == "t"
    body = json.loads(req.data.decode("utf-8"))
    assert body["run_id"] == "run-7"
    assert body["status"] == "success"
    assert body["jobs"] == {"build": "success"}


def test_delivery_failure(monkeypatch, quiet_console):
    def refuse(req, timeout=None):
        raise urllib.error.URLError("connection refused")

    monkeypatch.setattr(urllib.request, "urlopen", refuse)
    notifier = WebhookNotifier("http://hooks.local/ci")
    with pytest.raises(WebhookError):
        notifier.send(_final_snapshot())
    # the callback form only warns
    notifier(_final_snapshot())


def test_failed_delivery_does_not_change_run_outcome(monkeypatch):
    def refuse(req, timeout=None):
        raise OSError("boom")

    monkeypatch.setattr(urllib.request, "urlopen", refuse)
    reporter = StatusReporter("run-8", ["build"])
    reporter.on_complete(WebhookNotifier("http://hooks.local/ci"))
    reporter.job_finished(JobResult("build", Status.SUCCESS))
    assert reporter.finalize().status is Status.SUCCESS
