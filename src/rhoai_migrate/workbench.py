"""Workbench migration from the OAuth-proxy sidecar model to kube-rbac-proxy.

``patch`` rewrites each Notebook CR with a JSON Patch computed from its live state and deletes the
StatefulSet so the controller recreates it (the Kueue webhook does not resync otherwise).
``cleanup`` removes the OAuth objects the old model left behind and ``verify`` checks both.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
import logging
from pathlib import Path
import re
import sys
import tempfile
import time
from typing import Any, Callable, Iterable, TextIO

from .k8s import (
    NOTEBOOK,
    OAUTH_CLIENT,
    ROUTE,
    KubernetesClients,
    delete_ignoring_missing,
    escape_json_pointer,
    get_custom_object,
    json_patch_custom_object,
    list_custom_objects,
    safe_call,
    safe_read,
)
from .models import BatchSummary

INJECT_AUTH_ANNOTATION = "notebooks.opendatahub.io/inject-auth"
INJECT_OAUTH_ANNOTATION = "notebooks.opendatahub.io/inject-oauth"
OAUTH_LOGOUT_URL_ANNOTATION = "notebooks.opendatahub.io/oauth-logout-url"
STOPPED_ANNOTATION = "kubeflow-resource-stopped"
QUEUE_NAME_LABEL = "kueue.x-k8s.io/queue-name"
NOTEBOOK_POD_LABEL = "notebook-name"

OAUTH_PROXY_CONTAINER = "oauth-proxy"
KUBE_RBAC_PROXY_CONTAINER = "kube-rbac-proxy"
OAUTH_FINALIZER = "notebook-oauth-client-finalizer.opendatahub.io"
OAUTH_VOLUMES = ("oauth-config", "oauth-client", "tls-certificates")
NOTEBOOK_ARGS_ENV = "NOTEBOOK_ARGS"
TORNADO_SETTINGS_FLAG = "--ServerApp.tornado_settings="
TORNADO_SETTINGS_PATTERN = re.compile(r"[\n\r\t ]*--ServerApp\.tornado_settings=[^\n]*")

PHASE_MIGRATION = "migration"
PHASE_CLEANUP = "cleanup"
PHASE_ALL = "all"
VERIFY_PHASES = (PHASE_MIGRATION, PHASE_CLEANUP, PHASE_ALL)

PATCH_WARNING = """
╔════════════════════════════════════════════════════════════════╗
║                        *** WARNING ***                         ║
║                                                                ║
║  You are about to PATCH notebook resources on this cluster.    ║
║                                                                ║
║  This operation will:                                          ║
║   - Modify notebook CRs (annotations, containers, volumes)     ║
║   - Delete StatefulSets, causing RUNNING workbenches to        ║
║     RESTART                                                    ║
║   - Strip legacy OAuth-proxy configuration                     ║
║                                                                ║
║  Running workbenches are stopped before patching and started   ║
║  again afterwards unless --skip-stop is given.                 ║
║                                                                ║
║  BEFORE PROCEEDING, make sure you have:                        ║
║   1. Verified you are connected to the correct cluster         ║
║   2. Backed up any critical notebook CRs if needed             ║
╚════════════════════════════════════════════════════════════════╝
"""

CLEANUP_WARNING = """
╔════════════════════════════════════════════════════════════════╗
║                        *** CAUTION ***                         ║
║                                                                ║
║  You are about to DELETE legacy OAuth resources on this        ║
║  cluster (Routes, Service, Secrets, OAuthClients).             ║
║                                                                ║
║  Only run this AFTER the patch + verify steps have completed   ║
║  successfully. Cleaning up before migration is finished may    ║
║  leave workbenches in a broken state.                          ║
╚════════════════════════════════════════════════════════════════╝
"""

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckResult:
    description: str
    passed: bool


def _annotations(notebook: dict[str, Any]) -> dict[str, Any] | None:
    return (notebook.get("metadata") or {}).get("annotations")


def _pod_spec(notebook: dict[str, Any]) -> dict[str, Any]:
    return ((((notebook.get("spec") or {}).get("template") or {}).get("spec")) or {})


def _containers(notebook: dict[str, Any]) -> list[dict[str, Any]]:
    return _pod_spec(notebook).get("containers") or []


def _annotation_path(key: str) -> str:
    return f"/metadata/annotations/{escape_json_pointer(key)}"


def _path_sort_key(path: str) -> tuple[tuple[int, int, str], ...]:
    # Numeric segments compare as integers so index 10 sorts after index 2.
    return tuple((0, int(token), "") if token.isdigit() else (1, 0, token) for token in path.split("/"))


def build_notebook_patch(notebook: dict[str, Any], *, queue_name: str | None = None) -> list[dict[str, Any]]:
    """Return the JSON Patch that moves ``notebook`` to the kube-rbac-proxy auth model.

    Every operation is guarded by the current state, so an already-migrated notebook yields ``[]``.
    Operations are ordered by path in reverse so array removals never shift a later index.
    """
    operations: list[dict[str, Any]] = []
    metadata = notebook.get("metadata") or {}
    annotations = _annotations(notebook)

    if annotations is None:
        operations.append({"op": "add", "path": "/metadata/annotations", "value": {INJECT_AUTH_ANNOTATION: "true"}})
        annotations = {}
    elif annotations.get(INJECT_AUTH_ANNOTATION) != "true":
        operations.append({"op": "add", "path": _annotation_path(INJECT_AUTH_ANNOTATION), "value": "true"})

    for key in (INJECT_OAUTH_ANNOTATION, OAUTH_LOGOUT_URL_ANNOTATION):
        if key in annotations:
            operations.append({"op": "remove", "path": _annotation_path(key)})

    if queue_name:
        labels = metadata.get("labels")
        if labels is None:
            operations.append({"op": "add", "path": "/metadata/labels", "value": {QUEUE_NAME_LABEL: queue_name}})
        elif labels.get(QUEUE_NAME_LABEL) != queue_name:
            operations.append(
                {"op": "add", "path": f"/metadata/labels/{escape_json_pointer(QUEUE_NAME_LABEL)}", "value": queue_name}
            )

    containers = _containers(notebook)
    for index, container in enumerate(containers):
        if container.get("name") == OAUTH_PROXY_CONTAINER:
            operations.append({"op": "remove", "path": f"/spec/template/spec/containers/{index}"})

    for index, finalizer in enumerate(metadata.get("finalizers") or []):
        if finalizer == OAUTH_FINALIZER:
            operations.append({"op": "remove", "path": f"/metadata/finalizers/{index}"})

    for index, volume in enumerate(_pod_spec(notebook).get("volumes") or []):
        if volume.get("name") in OAUTH_VOLUMES:
            operations.append({"op": "remove", "path": f"/spec/template/spec/volumes/{index}"})

    for container_index, container in enumerate(containers):
        for env_index, env in enumerate(container.get("env") or []):
            if env.get("name") != NOTEBOOK_ARGS_ENV:
                continue
            value = env.get("value") or ""
            if TORNADO_SETTINGS_FLAG not in value:
                continue
            operations.append(
                {
                    "op": "replace",
                    "path": f"/spec/template/spec/containers/{container_index}/env/{env_index}/value",
                    "value": TORNADO_SETTINGS_PATTERN.sub("", value),
                }
            )

    return list(reversed(sorted(operations, key=lambda operation: _path_sort_key(operation["path"]))))


def check_migration(notebook: dict[str, Any] | None) -> list[CheckResult]:
    if notebook is None:
        return [CheckResult("Notebook not found", False)]

    annotations = _annotations(notebook) or {}
    results: list[CheckResult] = []
    inject_auth = annotations.get(INJECT_AUTH_ANNOTATION)
    if inject_auth == "true":
        results.append(CheckResult("inject-auth annotation is set to 'true'", True))
    else:
        results.append(CheckResult(f"inject-auth annotation missing or incorrect (found: '{inject_auth or ''}')", False))

    inject_oauth = annotations.get(INJECT_OAUTH_ANNOTATION)
    if inject_oauth:
        results.append(CheckResult(f"Legacy inject-oauth annotation still exists: '{inject_oauth}'", False))
    else:
        results.append(CheckResult("Legacy inject-oauth annotation removed", True))

    containers = _containers(notebook)
    notebook_args = [
        env.get("value") or ""
        for container in containers
        for env in container.get("env") or []
        if env.get("name") == NOTEBOOK_ARGS_ENV
    ]
    if any(TORNADO_SETTINGS_FLAG in value for value in notebook_args):
        results.append(CheckResult("--ServerApp.tornado_settings still present in NOTEBOOK_ARGS", False))
    else:
        results.append(CheckResult("--ServerApp.tornado_settings removed from NOTEBOOK_ARGS", True))

    names = [str(container.get("name", "")) for container in containers]
    if KUBE_RBAC_PROXY_CONTAINER in names:
        results.append(CheckResult("kube-rbac-proxy sidecar container present (RHOAI 3.x)", True))
    else:
        results.append(CheckResult("kube-rbac-proxy sidecar container missing", False))
    if OAUTH_PROXY_CONTAINER in names:
        results.append(CheckResult("Legacy oauth-proxy sidecar still present (RHOAI 2.x)", False))
    else:
        results.append(CheckResult("Legacy oauth-proxy sidecar removed", True))
    return results


def all_passed(results: Iterable[CheckResult]) -> bool:
    return all(result.passed for result in results)


def log_checks(results: Iterable[CheckResult]) -> None:
    for result in results:
        if result.passed:
            log.info("  PASS: %s", result.description)
        else:
            log.warning("  FAIL: %s", result.description)


def confirm_operation(
    banner: str,
    *,
    cluster: str,
    user: str,
    target: str,
    assume_yes: bool,
    input_func: Callable[[str], str] = input,
    output: TextIO | None = None,
) -> bool:
    """Show ``banner`` and the connection details; return whether the operator typed ``yes``."""
    stream = output or sys.stdout
    stream.write(banner)
    stream.write(f"  Cluster: {cluster}\n")
    stream.write(f"  User:    {user}\n")
    stream.write(f"  Target:  {target}\n")
    stream.flush()
    if assume_yes:
        return True
    try:
        answer = input_func("\nType 'yes' to continue: ")
    except EOFError:
        return False
    return answer.strip() == "yes"


class StoppedWorkbenchTracker:
    """Remembers which notebooks this run stopped so an interrupted run can tell the operator."""

    def __init__(self, marker_path: Path | None = None) -> None:
        if marker_path is None:
            handle = tempfile.NamedTemporaryFile(
                mode="w",
                prefix="rhoai-stopped-workbenches-",
                suffix=".txt",
                delete=False,
            )
            handle.close()
            marker_path = Path(handle.name)
        self.marker_path = marker_path
        self._stopped: list[tuple[str, str]] = []

    def __enter__(self) -> StoppedWorkbenchTracker:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def record(self, namespace: str, name: str) -> None:
        self._stopped.append((namespace, name))
        self._flush()

    def release(self, namespace: str, name: str) -> None:
        if (namespace, name) in self._stopped:
            self._stopped.remove((namespace, name))
            self._flush()

    def remaining(self) -> list[tuple[str, str]]:
        return list(self._stopped)

    def close(self) -> None:
        if self._stopped:
            log.warning("The following workbenches were stopped by this run and are still stopped:")
            for namespace, name in self._stopped:
                log.warning("  %s/%s", namespace, name)
            log.warning("Start them again with:")
            for namespace, name in self._stopped:
                log.warning("  oc annotate notebook %s -n %s %s-", name, namespace, STOPPED_ANNOTATION)
            log.warning("Stopped workbench list kept in %s", self.marker_path)
            return
        self.marker_path.unlink(missing_ok=True)

    def _flush(self) -> None:
        self.marker_path.write_text(
            "".join(f"{namespace}/{name}\n" for namespace, name in self._stopped),
            encoding="utf-8",
        )


class WorkbenchUpgrader:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        tracker: StoppedWorkbenchTracker | None = None,
        assume_yes: bool = False,
        skip_stop: bool = False,
        queue_name: str | None = None,
        wait_timeout_seconds: int = 120,
        poll_interval_seconds: float = 2.0,
        input_func: Callable[[str], str] = input,
        interactive: Callable[[], bool] = lambda: sys.stdin.isatty(),
    ) -> None:
        self.clients = clients
        self.tracker = tracker
        self.assume_yes = assume_yes
        self.skip_stop = skip_stop
        self.queue_name = queue_name
        self.wait_timeout_seconds = wait_timeout_seconds
        self.poll_interval_seconds = poll_interval_seconds
        self.input_func = input_func
        self.interactive = interactive

    def notebooks(self) -> list[tuple[str, str]]:
        targets: list[tuple[str, str]] = []
        for item in list_custom_objects(self.clients, NOTEBOOK):
            metadata = item.get("metadata") or {}
            targets.append((metadata.get("name", ""), metadata.get("namespace", "")))
        return targets

    def process_all(self, operation: Callable[[str, str], bool]) -> BatchSummary:
        summary = BatchSummary()
        for name, namespace in self.notebooks():
            try:
                ok = operation(name, namespace)
            except Exception as error:  # pylint: disable=broad-except
                log.error("%s/%s: %s", namespace, name, _error_message(error))
                ok = False
            summary.record(f"{namespace}/{name}", ok)

        if summary.failed:
            log.warning("Processed %d notebook(s): %d failed.", summary.total, summary.failed)
        else:
            log.info("Processed %d notebook(s): all succeeded.", summary.total)
        return summary

    def patch(self, name: str, namespace: str) -> bool:
        log.info("Patching notebook '%s' in namespace '%s'...", name, namespace)
        notebook = self._get_notebook(name, namespace)
        if notebook is None:
            log.error("Notebook '%s' not found in namespace '%s'", name, namespace)
            return False

        if not build_notebook_patch(notebook, queue_name=self.queue_name):
            log.info("  Nothing to patch for '%s', skipping.", name)
            return True

        stopped_here = False
        if not self.skip_stop and not _is_stopped(notebook):
            self._stop(name, namespace, notebook)
            stopped_here = True
        try:
            # Stopping changed the annotations; rebuild against the current object.
            current = self._get_notebook(name, namespace) if stopped_here else notebook
            operations = build_notebook_patch(current or notebook, queue_name=self.queue_name)
            if operations:
                json_patch_custom_object(self.clients, NOTEBOOK, namespace=namespace, name=name, operations=operations)
            delete_ignoring_missing(
                operation=f"delete StatefulSet '{namespace}/{name}'",
                hint="Verify RBAC allows delete on statefulsets.",
                func=lambda: self.clients.apps_api.delete_namespaced_stateful_set(name=name, namespace=namespace),
            )
        finally:
            if stopped_here:
                self._start(name, namespace)

        log.info("  Patch applied for '%s'.", name)
        return True

    def cleanup(self, name: str, namespace: str) -> bool:
        log.info("==========================================================")
        log.info(" Starting cleanup for Notebook: %s", name)
        log.info(" Target Namespace:              %s", namespace)
        log.info("==========================================================")
        log.info("[Pre-check] Running verify checks before cleanup...")
        results = check_migration(self._get_notebook(name, namespace))
        log_checks(results)
        if all_passed(results):
            log.info("  Pre-check result: all verification checks passed.")
        else:
            log.warning("  Pre-check result: one or more verification checks failed.")
            if not self._continue_despite_failed_checks(name, namespace):
                log.info("  Skipping cleanup for '%s' in '%s'.", name, namespace)
                return True
            log.info("  Continuing cleanup for '%s' in '%s' by user choice.", name, namespace)

        core_api = self.clients.core_api
        custom_api = self.clients.custom_api
        log.info("[1/4] Removing Route...")
        self._delete(
            f"Route '{namespace}/{name}'",
            lambda: custom_api.delete_namespaced_custom_object(
                group=ROUTE.group,
                version=ROUTE.version,
                namespace=namespace,
                plural=ROUTE.plural,
                name=name,
            ),
        )
        log.info("[2/4] Removing Service...")
        for service in (name, f"{name}-tls"):
            self._delete(
                f"Service '{namespace}/{service}'",
                lambda service=service: core_api.delete_namespaced_service(name=service, namespace=namespace),
            )
        log.info("[3/4] Removing Secrets...")
        for secret in _cleanup_secret_names(name):
            self._delete(
                f"Secret '{namespace}/{secret}'",
                lambda secret=secret: core_api.delete_namespaced_secret(name=secret, namespace=namespace),
            )
        oauth_client = _oauth_client_name(name, namespace)
        log.info("[4/4] Removing OAuthClient: %s", oauth_client)
        self._delete(
            f"OAuthClient '{oauth_client}'",
            lambda: custom_api.delete_cluster_custom_object(
                group=OAUTH_CLIENT.group,
                version=OAUTH_CLIENT.version,
                plural=OAUTH_CLIENT.plural,
                name=oauth_client,
            ),
        )
        log.info("==========================================================")
        log.info(" Cleanup complete for '%s' in '%s'.", name, namespace)
        log.info("==========================================================")
        return True

    def check_cleanup(self, name: str, namespace: str) -> list[CheckResult]:
        core_api = self.clients.core_api
        custom_api = self.clients.custom_api
        probes: list[tuple[str, Callable[[], object]]] = [
            (
                f"Route '{name}'",
                lambda: custom_api.get_namespaced_custom_object(
                    group=ROUTE.group,
                    version=ROUTE.version,
                    namespace=namespace,
                    plural=ROUTE.plural,
                    name=name,
                ),
            ),
            (
                f"Service '{name}-tls'",
                lambda: core_api.read_namespaced_service(name=f"{name}-tls", namespace=namespace),
            ),
        ]
        for secret in _cleanup_secret_names(name):
            probes.append(
                (
                    f"Secret '{secret}'",
                    lambda secret=secret: core_api.read_namespaced_secret(name=secret, namespace=namespace),
                )
            )
        oauth_client = _oauth_client_name(name, namespace)
        probes.append(
            (
                f"OAuthClient '{oauth_client}'",
                lambda: custom_api.get_cluster_custom_object(
                    group=OAUTH_CLIENT.group,
                    version=OAUTH_CLIENT.version,
                    plural=OAUTH_CLIENT.plural,
                    name=oauth_client,
                ),
            )
        )

        results: list[CheckResult] = []
        for label, probe in probes:
            found = safe_read(operation=f"read {label}", hint="Verify RBAC allows get on the resource.", func=probe)
            if found is None:
                results.append(CheckResult(f"{label} is removed", True))
            else:
                results.append(CheckResult(f"{label} still exists", False))
        return results

    def verify(self, name: str, namespace: str, *, phase: str = PHASE_MIGRATION) -> bool:
        if phase not in VERIFY_PHASES:
            raise ValueError(f"Invalid --phase '{phase}'. Use migration, cleanup, or all.")
        log.info("=== Verifying Notebook: %s in %s ===", name, namespace)
        passed = True
        if phase in {PHASE_MIGRATION, PHASE_ALL}:
            log.info("  Phase: migration")
            notebook = self._get_notebook(name, namespace)
            results = check_migration(notebook)
            log_checks(results)
            if notebook is not None:
                names = " ".join(str(container.get("name", "")) for container in _containers(notebook))
                log.info("  Containers found: %s", names)
            passed = all_passed(results) and passed
        if phase in {PHASE_CLEANUP, PHASE_ALL}:
            log.info("  Phase: cleanup")
            results = self.check_cleanup(name, namespace)
            log_checks(results)
            passed = all_passed(results) and passed

        if passed:
            log.info("=== RESULT: ALL CHECKS PASSED ===")
        else:
            log.warning("=== RESULT: SOME CHECKS FAILED ===")
        return passed

    def _get_notebook(self, name: str, namespace: str) -> dict[str, Any] | None:
        return get_custom_object(self.clients, NOTEBOOK, namespace=namespace, name=name)

    def _continue_despite_failed_checks(self, name: str, namespace: str) -> bool:
        if self.assume_yes:
            log.info("  --yes provided: proceeding with cleanup for '%s' in '%s' despite failed pre-checks.", name, namespace)
            return True
        if not self.interactive():
            log.warning("  No interactive terminal detected and --yes not set; skipping cleanup for safety.")
            return False
        try:
            answer = self.input_func(
                f"Pre-checks failed for '{name}' in '{namespace}'. "
                "Type 'yes' to continue cleanup, or press Enter to skip: "
            )
        except EOFError:
            return False
        return answer.strip() == "yes"

    def _delete(self, label: str, func: Callable[[], object]) -> None:
        deleted = delete_ignoring_missing(
            operation=f"delete {label}",
            hint="Verify RBAC allows delete on the resource.",
            func=func,
        )
        if deleted:
            log.info("  Deleted %s", label)
        else:
            log.debug("  %s not found", label)

    def _stop(self, name: str, namespace: str, notebook: dict[str, Any]) -> None:
        log.info("  Stopping workbench '%s' before patching...", name)
        stamp = datetime.now(UTC).strftime("%Y-%m-%dT%H:%M:%SZ")
        if _annotations(notebook) is None:
            operation = {"op": "add", "path": "/metadata/annotations", "value": {STOPPED_ANNOTATION: stamp}}
        else:
            operation = {"op": "add", "path": _annotation_path(STOPPED_ANNOTATION), "value": stamp}
        json_patch_custom_object(self.clients, NOTEBOOK, namespace=namespace, name=name, operations=[operation])
        if self.tracker is not None:
            self.tracker.record(namespace, name)
        self._wait_for_pods_deleted(name, namespace)

    def _start(self, name: str, namespace: str) -> None:
        log.info("  Starting workbench '%s' again...", name)
        try:
            json_patch_custom_object(
                self.clients,
                NOTEBOOK,
                namespace=namespace,
                name=name,
                operations=[{"op": "remove", "path": _annotation_path(STOPPED_ANNOTATION)}],
            )
        except Exception as error:  # pylint: disable=broad-except
            log.error("  Could not start workbench '%s': %s", name, _error_message(error))
            return
        if self.tracker is not None:
            self.tracker.release(namespace, name)

    def _wait_for_pods_deleted(self, name: str, namespace: str) -> None:
        deadline = time.monotonic() + self.wait_timeout_seconds
        selector = f"{NOTEBOOK_POD_LABEL}={name}"
        while True:
            pods = safe_call(
                operation=f"list pods for notebook '{namespace}/{name}'",
                hint="Check RBAC verbs for pods.",
                func=lambda: self.clients.core_api.list_namespaced_pod(namespace=namespace, label_selector=selector).items,
            )
            if not pods:
                return
            if time.monotonic() >= deadline:
                log.warning(
                    "  Pods for '%s' still present after %ds, continuing anyway",
                    name,
                    self.wait_timeout_seconds,
                )
                return
            time.sleep(self.poll_interval_seconds)


def _is_stopped(notebook: dict[str, Any]) -> bool:
    return STOPPED_ANNOTATION in (_annotations(notebook) or {})


def _cleanup_secret_names(name: str) -> tuple[str, str, str]:
    return (f"{name}-oauth-client", f"{name}-oauth-config", f"{name}-tls")


def _oauth_client_name(name: str, namespace: str) -> str:
    return f"{name}-{namespace}-oauth-client"


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
