from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Any

from kubernetes import client

from .k8s import PYTORCH_JOB, KubernetesClients, delete_ignoring_missing, safe_call, safe_read

VERIFY_NAMESPACE = "test-kfto-upgrade"
JOB_NAME = "pytorch-hello-world"
MASTER_POD_NAME = f"{JOB_NAME}-master-0"
TRAINING_IMAGE = "registry.redhat.io/rhoai/odh-training-cuda128-torch28-py312-rhel9:v3.3"

log = logging.getLogger(__name__)


class TrainerVerificationError(RuntimeError):
    """Raised when the smoke-test job's master pod is never scheduled."""


def pytorch_job_manifest(*, namespace: str = VERIFY_NAMESPACE, image: str = TRAINING_IMAGE) -> dict[str, Any]:
    return {
        "apiVersion": f"{PYTORCH_JOB.group}/{PYTORCH_JOB.version}",
        "kind": PYTORCH_JOB.kind,
        "metadata": {"name": JOB_NAME, "namespace": namespace},
        "spec": {
            "pytorchReplicaSpecs": {
                "Master": {
                    "replicas": 1,
                    "restartPolicy": "OnFailure",
                    "template": {
                        "spec": {
                            "containers": [
                                {
                                    "name": "pytorch",
                                    "image": image,
                                    "command": ["python", "-c", "print('Hello World')"],
                                }
                            ]
                        }
                    },
                }
            }
        },
    }


def pod_scheduled(pod: Any) -> bool:
    conditions = pod.status.conditions if pod.status and pod.status.conditions else []
    return any(condition.type == "PodScheduled" and condition.status == "True" for condition in conditions)


@dataclass(frozen=True)
class TrainerVerifier:
    clients: KubernetesClients
    namespace: str = VERIFY_NAMESPACE
    image: str = TRAINING_IMAGE
    timeout_seconds: int = 300
    poll_interval_seconds: float = 2.0

    def run(self) -> None:
        log.info("Creating namespace %s", self.namespace)
        safe_call(
            operation=f"create namespace '{self.namespace}'",
            hint="Verify RBAC allows create on namespaces.",
            func=lambda: self.clients.core_api.create_namespace(
                body=client.V1Namespace(metadata=client.V1ObjectMeta(name=self.namespace))
            ),
        )
        try:
            log.info("Creating PyTorchJob %s", JOB_NAME)
            safe_call(
                operation=f"create PyTorchJob '{self.namespace}/{JOB_NAME}'",
                hint="Verify the Kubeflow Training Operator CRDs are installed.",
                func=lambda: self.clients.custom_api.create_namespaced_custom_object(
                    group=PYTORCH_JOB.group,
                    version=PYTORCH_JOB.version,
                    namespace=self.namespace,
                    plural=PYTORCH_JOB.plural,
                    body=pytorch_job_manifest(namespace=self.namespace, image=self.image),
                ),
            )
            self._wait_for_master_scheduled()
        finally:
            self._cleanup()
        log.info("Kubeflow Training Operator verification completed successfully.")

    def _wait_for_master_scheduled(self) -> None:
        log.info("Waiting for pod %s to be scheduled (timeout %ds)...", MASTER_POD_NAME, self.timeout_seconds)
        deadline = time.time() + self.timeout_seconds
        while time.time() < deadline:
            pod = safe_read(
                operation=f"read pod '{self.namespace}/{MASTER_POD_NAME}'",
                hint="Check RBAC verbs for pods.",
                func=lambda: self.clients.core_api.read_namespaced_pod(name=MASTER_POD_NAME, namespace=self.namespace),
            )
            if pod is not None and pod_scheduled(pod):
                log.info("Pod %s is scheduled", MASTER_POD_NAME)
                return
            time.sleep(self.poll_interval_seconds)
        raise TrainerVerificationError(
            f"pod {MASTER_POD_NAME} was not scheduled within {self.timeout_seconds}s in namespace {self.namespace}"
        )

    def _cleanup(self) -> None:
        log.info("Deleting PyTorchJob %s and namespace %s", JOB_NAME, self.namespace)
        try:
            delete_ignoring_missing(
                operation=f"delete PyTorchJob '{self.namespace}/{JOB_NAME}'",
                hint="Verify RBAC allows delete on pytorchjobs.",
                func=lambda: self.clients.custom_api.delete_namespaced_custom_object(
                    group=PYTORCH_JOB.group,
                    version=PYTORCH_JOB.version,
                    namespace=self.namespace,
                    plural=PYTORCH_JOB.plural,
                    name=JOB_NAME,
                ),
            )
            delete_ignoring_missing(
                operation=f"delete namespace '{self.namespace}'",
                hint="Verify RBAC allows delete on namespaces.",
                func=lambda: self.clients.core_api.delete_namespace(name=self.namespace),
            )
        except Exception as error:  # pylint: disable=broad-except
            log.warning("Cleanup of namespace %s incomplete: %s", self.namespace, error)
