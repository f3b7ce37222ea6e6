from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

from .k8s import GUARDRAILS_ORCHESTRATOR, KubernetesClients, PreconditionError, get_custom_object, safe_call, safe_read

STATUS_OK = "OK"
STATUS_NEEDS_PATCH = "NEEDS PATCH"
STATUS_MISSING = "MISSING"

RESULT_PATCHED = "patched"
RESULT_SKIPPED = "skipped"
RESULT_PREVIEW = "preview"
RESULT_FAILED = "failed"

READINESS_PATH = "/health"
READINESS_PORT = 8034

log = logging.getLogger(__name__)


def readiness_probe() -> dict[str, Any]:
    return {
        "httpGet": {"path": READINESS_PATH, "port": READINESS_PORT, "scheme": "HTTP"},
        "initialDelaySeconds": 10,
        "timeoutSeconds": 10,
        "periodSeconds": 20,
        "successThreshold": 1,
        "failureThreshold": 3,
    }


def readiness_patch(container_name: str) -> dict[str, Any]:
    return {
        "spec": {
            "template": {
                "spec": {
                    "containers": [
                        {"name": container_name, "readinessProbe": readiness_probe()},
                    ]
                }
            }
        }
    }


def needs_patch(deployment: Any, container_name: str) -> bool:
    containers = deployment.spec.template.spec.containers or []
    for container in containers:
        if container.name != container_name:
            continue
        probe = container.readiness_probe
        http_get = probe.http_get if probe is not None else None
        if http_get is None:
            return True
        return http_get.path != READINESS_PATH or str(http_get.port) != str(READINESS_PORT)
    return True


@dataclass(frozen=True)
class GuardrailsPatcher:
    clients: KubernetesClients
    namespace: str
    name: str
    rollout_timeout_seconds: int = 120
    poll_interval_seconds: float = 2.0

    def ensure_orchestrator_exists(self) -> None:
        log.info("Checking GuardrailsOrchestrator %s in namespace %s", self.name, self.namespace)
        found = get_custom_object(self.clients, GUARDRAILS_ORCHESTRATOR, namespace=self.namespace, name=self.name)
        if found is None:
            raise PreconditionError(f"GuardrailsOrchestrator {self.name} not found in namespace {self.namespace}")

    def check(self) -> str:
        deployment = self._read_deployment()
        if deployment is None:
            log.warning("MISSING  deployment %s", self.name)
            return STATUS_MISSING
        if needs_patch(deployment, self.name):
            log.warning("[CHECK] NEEDS PATCH  deployment %s", self.name)
            return STATUS_NEEDS_PATCH
        log.info("[CHECK] OK  deployment %s (readinessProbe already set)", self.name)
        return STATUS_OK

    def fix(self, *, dry_run: bool = False) -> str:
        deployment = self._read_deployment()
        if deployment is None:
            log.warning("Deployment %s not found in namespace %s, skipping...", self.name, self.namespace)
            return RESULT_FAILED

        if dry_run:
            if needs_patch(deployment, self.name):
                log.info(
                    "[DRY-RUN] Would patch deployment %s in namespace %s (add readinessProbe: port %d, path %s)",
                    self.name,
                    self.namespace,
                    READINESS_PORT,
                    READINESS_PATH,
                )
            else:
                log.info("[DRY-RUN] Deployment %s already has expected readinessProbe, skip", self.name)
            return RESULT_PREVIEW

        if not needs_patch(deployment, self.name):
            log.info("Deployment %s already has expected readinessProbe, skip", self.name)
            return RESULT_SKIPPED

        log.info("Patching deployment %s in namespace %s", self.name, self.namespace)
        # A dict body is sent as a strategic merge patch, merging containers by name.
        safe_call(
            operation=f"patch deployment '{self.namespace}/{self.name}'",
            hint="Verify RBAC allows patch on deployments.",
            func=lambda: self.clients.apps_api.patch_namespaced_deployment(
                name=self.name,
                namespace=self.namespace,
                body=readiness_patch(self.name),
            ),
        )

        log.info("Waiting for rollout to complete...")
        if not self._wait_for_rollout():
            log.error("Deployment rollout failed for %s", self.name)
            return RESULT_FAILED
        log.info("Successfully patched deployment %s", self.name)
        return RESULT_PATCHED

    def _read_deployment(self) -> Any | None:
        return safe_read(
            operation=f"read deployment '{self.namespace}/{self.name}'",
            hint="Verify RBAC allows get on deployments.",
            func=lambda: self.clients.apps_api.read_namespaced_deployment(name=self.name, namespace=self.namespace),
        )

    def _wait_for_rollout(self) -> bool:
        deadline = time.time() + self.rollout_timeout_seconds
        while time.time() < deadline:
            deployment = self._read_deployment()
            if deployment is not None and rollout_complete(deployment):
                return True
            time.sleep(self.poll_interval_seconds)
        log.warning("Rollout of %s did not complete within %ds", self.name, self.rollout_timeout_seconds)
        return False


def rollout_complete(deployment: Any) -> bool:
    """Mirror ``oc rollout status``: the new generation is observed and every replica is updated and available."""
    status = deployment.status
    if status is None:
        return False
    generation = deployment.metadata.generation or 0
    if (status.observed_generation or 0) < generation:
        return False
    desired = deployment.spec.replicas if deployment.spec.replicas is not None else 1
    updated = status.updated_replicas or 0
    total = status.replicas or 0
    available = status.available_replicas or 0
    return updated >= desired and total <= updated and available >= updated
