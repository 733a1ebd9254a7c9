# backends.py
# Narrow adapters for the collaborators the engine does not own:
# container build backend, documentation deploy target, credential provider.
# The engine only sequences these calls and reports their outcome.
from __future__ import annotations

import json
import os
import subprocess
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Protocol, Sequence

from .errors import ExternalBackendError

TOOL_HINTS = {
    "docker": "Install Docker (with buildx) and ensure the daemon is running.",
    "firebase": "Install firebase-tools (npm install -g firebase-tools) or fix PATH.",
}


@dataclass(frozen=True)
class BuildResult:
    digest: str
    pushed_tags: List[str] = field(default_factory=list)


class BuildBackend(Protocol):
    def build(
        self,
        context: str,
        dockerfile: str,
        target: Optional[str],
        build_args: Mapping[str, str],
        tags: Sequence[str],
        cache_from: Sequence[str],
        cache_to: Optional[str],
        *,
        push: bool = True,
        no_cache: bool = False,
        timeout: Optional[float] = None,
    ) -> BuildResult:
        ...


class DeployTarget(Protocol):
    def deploy(self, path: str, channel: str, target: str, *, timeout: Optional[float] = None) -> str:
        ...


class CredentialProvider(Protocol):
    def token(self, name: str) -> str:
        ...


class EnvCredentialProvider:
    """
    Reads short-lived tokens from environment variables named
    <prefix><NAME>, e.g. RELAYCI_SECRET_REGISTRY_TOKEN. Tokens are handed
    to backends as-is and never written anywhere.
    """

    def __init__(self, prefix: str = "RELAYCI_SECRET_", environ: Optional[Mapping[str, str]] = None):
        self.prefix = prefix
        self.environ = environ if environ is not None else os.environ

    def token(self, name: str) -> str:
        var = f"{self.prefix}{name.upper().replace('-', '_')}"
        value = self.environ.get(var)
        if not value:
            raise ExternalBackendError(
                message=f"no credential available for {name!r}",
                backend="credentials",
                details={"env": var},
            )
        return value


def _run_tool(
    backend: str,
    cmd: List[str],
    *,
    cwd: Optional[str] = None,
    stdin: Optional[str] = None,
    env: Optional[Mapping[str, str]] = None,
    timeout: Optional[float] = None,
) -> subprocess.CompletedProcess:
    """Run an external CLI, mapping every way it can fail to ExternalBackendError."""
    full_env = os.environ.copy()
    full_env.update(env or {})
    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            input=stdin,
            env=full_env,
            text=True,
            capture_output=True,
            timeout=timeout,
        )
    except FileNotFoundError:
        raise ExternalBackendError(
            message=f"{cmd[0]} is not available",
            backend=backend,
            details={"hint": TOOL_HINTS.get(cmd[0], f"Install {cmd[0]} or fix PATH.")},
        )
    except subprocess.TimeoutExpired:
        raise ExternalBackendError(message=f"{cmd[0]} timed out", backend=backend)

    if proc.returncode != 0:
        raise ExternalBackendError(
            message=f"{backend} failed: {(proc.stderr or proc.stdout).strip()[-2000:]}",
            backend=backend,
            exit_code=proc.returncode,
        )
    return proc


class DockerBuildxBackend:
    """Build (and push) images with `docker buildx build`."""

    def __init__(
        self,
        registry: Optional[str] = None,
        username: str = "oauth2accesstoken",
        credentials: Optional[CredentialProvider] = None,
        token_name: str = "registry_token",
    ):
        self.registry = registry
        self.username = username
        self.credentials = credentials
        self.token_name = token_name

    def _login(self) -> None:
        if not self.registry or self.credentials is None:
            return
        token = self.credentials.token(self.token_name)
        _run_tool(
            "docker-login",
            ["docker", "login", self.registry, "--username", self.username, "--password-stdin"],
            stdin=token,
        )

    def build(
        self,
        context: str,
        dockerfile: str,
        target: Optional[str],
        build_args: Mapping[str, str],
        tags: Sequence[str],
        cache_from: Sequence[str],
        cache_to: Optional[str],
        *,
        push: bool = True,
        no_cache: bool = False,
        timeout: Optional[float] = None,
    ) -> BuildResult:
        if push:
            self._login()

        with tempfile.TemporaryDirectory(prefix="relayci-build-") as tmp:
            metadata = Path(tmp) / "metadata.json"
            cmd = ["docker", "buildx", "build", "--file", dockerfile, "--metadata-file", str(metadata)]
            if target:
                cmd.extend(["--target", target])
            for k, v in build_args.items():
                cmd.extend(["--build-arg", f"{k}={v}"])
            for tag in tags:
                cmd.extend(["--tag", tag])
            if no_cache:
                cmd.append("--no-cache")
            else:
                # sources are tried top-down by buildkit, first hit wins
                for src in cache_from:
                    cmd.extend(["--cache-from", src])
            if cache_to:
                cmd.extend(["--cache-to", cache_to])
            if push:
                cmd.append("--push")
            cmd.append(context)

            _run_tool("docker-build", cmd, timeout=timeout)

            try:
                meta = json.loads(metadata.read_text(encoding="utf-8"))
            except (OSError, ValueError):
                meta = {}

        digest = meta.get("containerimage.digest", "")
        return BuildResult(digest=digest, pushed_tags=list(tags) if push else [])


class FirebaseDeployTarget:
    """Deploy a built site to Firebase Hosting (live or preview channel)."""

    def __init__(
        self,
        project: str,
        credentials: Optional[CredentialProvider] = None,
        token_name: str = "firebase_token",
    ):
        self.project = project
        self.credentials = credentials
        self.token_name = token_name

    def deploy(self, path: str, channel: str, target: str, *, timeout: Optional[float] = None) -> str:
        env: Dict[str, str] = {}
        if self.credentials is not None:
            env["FIREBASE_TOKEN"] = self.credentials.token(self.token_name)

        if channel == "live":
            cmd = ["firebase", "deploy", "--only", f"hosting:{target}", "--project", self.project, "--json"]
        else:
            cmd = [
                "firebase", "hosting:channel:deploy", channel,
                "--only", target, "--project", self.project, "--json",
            ]
        proc = _run_tool("firebase-deploy", cmd, cwd=path, env=env, timeout=timeout)

        try:
            data = json.loads(proc.stdout or "{}")
        except ValueError:
            raise ExternalBackendError(message="firebase returned invalid JSON", backend="firebase-deploy")
        result = data.get("result") or {}
        url = ""
        if isinstance(result, dict):
            url = result.get("url") or ""
            if not url:
                # channel deploys: {"result": {"<site>": {"url": ...}}}
                for site in result.values():
                    if isinstance(site, dict) and site.get("url"):
                        url = site["url"]
                        break
        if not url:
            url = f"https://{target}.web.app" if channel == "live" else ""
        return url


@dataclass
class Backends:
    """Collaborators available to steps. Missing ones fail the step that needs them."""
    build: Optional[BuildBackend] = None
    deploy: Optional[DeployTarget] = None
    credentials: Optional[CredentialProvider] = None
