from __future__ import annotations
import os

WORKFLOW = os.environ.get("RELAYCI_WORKFLOW")
CACHE_DIR = os.environ.get("RELAYCI_CACHE_DIR", ".relayci/cache")
MAX_WORKERS = int(os.environ["RELAYCI_MAX_WORKERS"]) if os.environ.get("RELAYCI_MAX_WORKERS") else None
WEBHOOK_URL = os.environ.get("RELAYCI_WEBHOOK_URL")
DEFAULT_BRANCH = os.environ.get("RELAYCI_DEFAULT_BRANCH", "main")
SECRET_PREFIX = os.environ.get("RELAYCI_SECRET_PREFIX", "RELAYCI_SECRET_")
