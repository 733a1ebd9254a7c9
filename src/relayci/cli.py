# cli.py
from __future__ import annotations

import json
import subprocess
import sys
import urllib.error
import urllib.request
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urljoin

import click

from relayci import settings
from relayci.backends import Backends, DockerBuildxBackend, EnvCredentialProvider, FirebaseDeployTarget
from relayci.cache import CacheResolver, LocalCacheBackend
from relayci.codec import workflow_to_dict
from relayci.errors import CIError
from relayci.git_facts import git
from relayci.model import EventKind, Status, TriggerEvent, Workflow
from relayci.runner import Orchestrator, collect_changed_files, load_workflow, validate_workflow
from relayci.ui.console import Console, get_console, set_console
from relayci.webhook import WebhookNotifier


def find_workflow_files() -> list[Path]:
    """
    Find all workflow files in the current directory.

    Returns:
        List of Path objects for workflow files
    """
    workflow_files = []
    current_dir = Path(".")

    # Look for relayci_workflow.py
    default_workflow = current_dir / "relayci_workflow.py"
    if default_workflow.exists():
        workflow_files.append(default_workflow)

    # Look for other *_workflow.py files
    for path in current_dir.glob("*_workflow.py"):
        if path != default_workflow:
            workflow_files.append(path)

    return sorted(workflow_files)


def discover_workflow(workflow_arg: str | None) -> Path:
    """
    Discover workflow file from argument, RELAYCI_WORKFLOW or default.

    Raises:
        SystemExit: If workflow cannot be found or multiple workflows exist
    """
    console = get_console()
    workflow_arg = workflow_arg or settings.WORKFLOW

    # If workflow is explicitly provided, use it
    if workflow_arg:
        workflow_path = Path(workflow_arg)
        if not workflow_path.exists() and workflow_path.suffix != ".py":
            workflow_path = Path(str(workflow_path) + ".py")
        if not workflow_path.exists():
            console.print_error(
                "Workflow file not found",
                f"Could not find workflow file: {workflow_arg}",
                suggestion="Create a workflow file or specify a different path:\n  relayci run --workflow my_workflow.py",
            )
            sys.exit(1)
        return workflow_path

    workflow_files = find_workflow_files()

    if len(workflow_files) == 0:
        console.print_error(
            "No workflow file found",
            "Could not find any workflow files.",
            details=[
                "Looked for:",
                "  relayci_workflow.py",
                "  *_workflow.py",
            ],
            suggestion="Create a workflow file:\n  relayci_workflow.py\n\nOr specify a workflow explicitly:\n  relayci run --workflow my_workflow.py",
        )
        sys.exit(1)

    if len(workflow_files) > 1:
        file_list = "\n".join(f"  {f}" for f in workflow_files)
        console.print_error(
            "Multiple workflow files found",
            "Found multiple workflow files. Please specify which one to use:",
            details=[file_list],
            suggestion="Specify a workflow explicitly:\n  relayci run --workflow relayci_workflow.py",
        )
        sys.exit(1)

    return workflow_files[0]


def _load_or_exit(ctx, workflow_arg: str | None) -> Tuple[Path, Workflow]:
    console = get_console()
    workflow_path = discover_workflow(workflow_arg)
    try:
        wf = load_workflow(workflow_path)
        validate_workflow(wf)
    except CIError as e:
        console.print_error(
            "Invalid workflow",
            f"{workflow_path} failed validation",
            details=[str(e)],
        )
        sys.exit(1)
    except Exception as e:
        console.print_error(
            "Failed to load workflow",
            f"Could not load workflow from {workflow_path}",
            details=[f"{type(e).__name__}: {e}"],
        )
        if ctx.obj.get("debug", False):
            console.print_exception(e)
        sys.exit(1)
    return workflow_path, wf


def _pairs(values: Tuple[str, ...], what: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for item in values:
        if "=" not in item:
            raise click.BadParameter(f"expected KEY=VALUE, got {item!r}", param_hint=what)
        k, v = item.split("=", 1)
        out[k.strip()] = v
    return out


def _git_or(default: str, fn, *args) -> str:
    try:
        return fn(*args)
    except (subprocess.CalledProcessError, FileNotFoundError):
        return default


def _local_event(
    event: str,
    ref: Optional[str],
    base_ref: Optional[str],
    sha: Optional[str],
    changed: Tuple[str, ...],
    git_diff: bool,
    compare_ref: str,
    inputs: Dict[str, str],
) -> TriggerEvent:
    """Build a TriggerEvent from flags, filling gaps from the local git checkout."""
    console = get_console()
    changed_files = set(changed)
    if git_diff and not changed_files:
        try:
            changed_files.update(collect_changed_files(compare_ref))
        except (subprocess.CalledProcessError, FileNotFoundError) as e:
            console.print_warning(f"git diff unavailable, treating the change set as empty: {e}")
        console.print_debug(f"changed files: {sorted(changed_files)}")

    remote = _git_or("", git.get_remote_url)
    repository = "/".join(remote.rstrip("/").replace(".git", "").replace(":", "/").split("/")[-2:]) if remote else ""

    kind = EventKind(event)
    return TriggerEvent(
        kind=kind,
        changed_files=frozenset(changed_files),
        ref=ref or _git_or(f"refs/heads/{settings.DEFAULT_BRANCH}", git.get_current_ref),
        sha=sha or _git_or("", git.head_sha),
        actor=_git_or("", git.get_actor),
        repository=repository,
        base_ref=base_ref or (settings.DEFAULT_BRANCH if kind is EventKind.PULL_REQUEST else None),
        inputs=dict(inputs),
    )


@click.group()
@click.option(
    "--debug",
    is_flag=True,
    default=False,
    help="Enable debug mode (show stack traces and detailed output)",
)
@click.option("--quiet", is_flag=True, default=False, help="Only print errors and the final results")
@click.pass_context
def cli(ctx, debug, quiet):
    """RelayCI: trigger-filtered, cache-aware CI pipeline runner."""
    console = Console(debug=debug, quiet=quiet)
    set_console(console)
    ctx.ensure_object(dict)
    ctx.obj["debug"] = debug


@cli.command()
@click.option(
    "--workflow",
    default=None,
    help="Workflow file path (defaults to relayci_workflow.py if present)",
)
@click.option(
    "--event",
    type=click.Choice([k.value for k in EventKind]),
    default=EventKind.PUSH.value,
    show_default=True,
    help="Event kind to simulate",
)
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--base-ref", default=None, help="Pull request target branch")
@click.option("--sha", default=None, help="Commit SHA (defaults to HEAD)")
@click.option("--changed", "changed", multiple=True, help="Changed file path (repeatable); disables git diff")
@click.option("--git-diff/--no-git-diff", default=True, show_default=True, help="Collect changed files from git")
@click.option("--compare-ref", default="origin/main", show_default=True, help="Git ref to diff against")
@click.option("--input", "inputs", multiple=True, help="Workflow input KEY=VALUE (repeatable)")
@click.option("--var", "variables", multiple=True, help="Expression variable KEY=VALUE (repeatable)")
@click.option("--workers", default=settings.MAX_WORKERS, type=int, help="Number of parallel jobs")
@click.option("--cache-dir", default=settings.CACHE_DIR, show_default=True, help="Cache directory")
@click.option("--webhook", default=settings.WEBHOOK_URL, help="POST the terminal run status to this URL")
@click.option("--registry", default=None, help="Container registry for docker_build steps")
@click.option("--firebase-project", default=None, help="Firebase project for deploy steps")
@click.option("--print-plan/--no-print-plan", default=True, show_default=True, help="Print job stages before running")
@click.pass_context
def run(
    ctx, workflow, event, ref, base_ref, sha, changed, git_diff, compare_ref, inputs, variables,
    workers, cache_dir, webhook, registry, firebase_project, print_plan,
):
    """Run a RelayCI workflow locally."""
    console = get_console()
    workflow_path, wf = _load_or_exit(ctx, workflow)

    try:
        trigger_event = _local_event(
            event, ref, base_ref, sha, changed, git_diff, compare_ref, _pairs(inputs, "--input"),
        )

        credentials = EnvCredentialProvider(prefix=settings.SECRET_PREFIX)
        backends = Backends(
            build=DockerBuildxBackend(registry=registry, credentials=credentials),
            deploy=FirebaseDeployTarget(firebase_project, credentials=credentials) if firebase_project else None,
            credentials=credentials,
        )
        callbacks = [WebhookNotifier(webhook)] if webhook else []

        orchestrator = Orchestrator(
            wf,
            workspace=".",
            cache=CacheResolver(LocalCacheBackend(cache_dir), default_scope=settings.DEFAULT_BRANCH),
            backends=backends,
            max_workers=workers,
            variables=_pairs(variables, "--var"),
            on_complete=callbacks,
        )

        if print_plan:
            console.print_header(f"{wf.name} ({workflow_path.name})")
            console.print_plan(orchestrator.graph.stages(), [j.name for j in wf.jobs if j.disabled])

        result = orchestrator.run(trigger_event)
        if result is None:
            # not triggered is not an error
            sys.exit(0)

        console.print_results(orchestrator.get(result.run_id).snapshot())

        if result.status in (Status.FAILURE, Status.CANCELLED):
            sys.exit(1)

    except KeyboardInterrupt:
        console.print_info("\nInterrupted by user")
        sys.exit(130)
    except click.BadParameter:
        raise
    except CIError as e:
        console.print_error("Run rejected", str(e))
        sys.exit(1)
    except Exception as e:
        console.print_exception(e)
        sys.exit(1)


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def plan(ctx, workflow):
    """Print the job stages of a workflow without running anything."""
    console = get_console()
    workflow_path, wf = _load_or_exit(ctx, workflow)
    graph = validate_workflow(wf)
    console.print_header(f"{wf.name} ({workflow_path.name})")
    for trigger in wf.triggers:
        console.print_info(f"on: {trigger.event.value}")
    console.print_plan(graph.stages(), [j.name for j in wf.jobs if j.disabled])


@cli.command()
@click.option("--workflow", default=None, help="Workflow file path")
@click.pass_context
def validate(ctx, workflow):
    """Check a workflow (graph, globs, expressions) and exit non-zero if invalid."""
    workflow_path, wf = _load_or_exit(ctx, workflow)
    get_console().print_info(f"{workflow_path}: OK ({len(wf.jobs)} jobs)")


def _post_json(url: str, data: dict) -> dict:
    req_headers = {
        "Content-Type": "application/json",
    }
    req_data = json.dumps(data).encode("utf-8")
    req = urllib.request.Request(url, data=req_data, headers=req_headers, method="POST")
    with urllib.request.urlopen(req) as response:
        response_data = response.read().decode("utf-8")
        return json.loads(response_data) if response_data else {}


@cli.command()
@click.option("--api", required=True, help="API base URL (e.g., http://localhost:8000)")
@click.option("--workflow", default=None, help="Workflow file path")
@click.option(
    "--event",
    type=click.Choice([k.value for k in EventKind]),
    default=EventKind.MANUAL.value,
    show_default=True,
)
@click.option("--ref", default=None, help="Git ref (defaults to the current branch)")
@click.option("--changed", "changed", multiple=True, help="Changed file path (repeatable)")
@click.option("--input", "inputs", multiple=True, help="Workflow input KEY=VALUE (repeatable)")
@click.pass_context
def submit(ctx, api, workflow, event, ref, changed, inputs):
    """Register a workflow with the control plane and trigger a run."""
    console = get_console()
    workflow_path, wf = _load_or_exit(ctx, workflow)
    console.print_info(f"Loaded {len(wf.jobs)} job(s) from {workflow_path}")

    if not ref:
        try:
            ref = git.get_current_ref()
            console.print_debug(f"Using git ref: {ref}")
        except (subprocess.CalledProcessError, FileNotFoundError):
            console.print_error(
                "Could not determine git ref",
                "Could not get current git ref.",
                suggestion="Please specify --ref explicitly:\n  relayci submit --api <url> --ref <ref>",
            )
            sys.exit(1)

    base_url = api.rstrip("/")
    try:
        _post_json(urljoin(base_url + "/", "workflows"), workflow_to_dict(wf))
        result = _post_json(
            urljoin(base_url + "/", "runs"),
            {
                "workflow": wf.name,
                "event": event,
                "ref": ref,
                "sha": _git_or("", git.head_sha),
                "changed_files": list(changed),
                "inputs": _pairs(inputs, "--input"),
            },
        )
    except urllib.error.HTTPError as e:
        error_body = e.read().decode("utf-8") if e.fp else ""
        console.print_error(
            "API request failed",
            f"HTTP {e.code} {e.reason}",
            details=[error_body] if error_body else None,
            suggestion=f"Check the API at {base_url} and verify your request.",
        )
        sys.exit(1)
    except urllib.error.URLError as e:
        console.print_error(
            "Network error",
            f"Could not connect to {base_url}",
            details=[str(e.reason)],
            suggestion="Verify the API URL is correct and the API is running.",
        )
        sys.exit(1)
    except json.JSONDecodeError as e:
        console.print_error(
            "Invalid API response",
            "Could not parse JSON response from API.",
            details=[str(e)],
        )
        sys.exit(1)

    if not result.get("triggered"):
        console.print_info(f"\nNo trigger of {wf.name} matched the {event} event; nothing to run.")
        return
    console.print_info(f"\nSuccessfully submitted run to {base_url}")
    console.print_info(f"  Run ID: {result.get('run_id')}")


if __name__ == "__main__":
    cli()
