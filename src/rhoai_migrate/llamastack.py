"""Archive every LlamaStackDistribution before an upgrade.

Each distribution gets ``<backup>/<namespace>/<name>/`` holding the CR, its user ConfigMap, the
serving pod and deployment, and a copy of the pod's state directory. Backups can hold API tokens,
so directories are created 0700 and files 0600.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import os
from pathlib import Path
from typing import Any

import yaml

from .k8s import (
    LLAMASTACK_DISTRIBUTION,
    KubernetesClients,
    cluster_server,
    exec_in_pod,
    list_custom_objects,
    safe_call,
    safe_read,
)
from .metadata import count_files
from .models import BatchSummary
from .transfer import OcCommandError, OcCommandRunner

POD_DATA_PATH = "/opt/app-root/src/.llama/distributions/rh"
INSTANCE_LABEL = "app.kubernetes.io/instance"
DEFAULT_CONTAINER_ANNOTATION = "kubectl.kubernetes.io/default-container"
CONFIG_KEYS = ("run.yaml", "config.yaml")

DIRECTORY_MODE = 0o700
FILE_MODE = 0o600

log = logging.getLogger(__name__)


@dataclass
class LlamaStackBackupReport:
    backup_dir: Path
    summary: BatchSummary = field(default_factory=BatchSummary)
    custom_config: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)


def _secure_directory(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    os.chmod(path, DIRECTORY_MODE)
    return path


def _write_private(path: Path, content: str) -> Path:
    path.write_text(content, encoding="utf-8")
    os.chmod(path, FILE_MODE)
    return path


def _dump_yaml(payload: Any) -> str:
    return yaml.safe_dump(payload, default_flow_style=False, sort_keys=False)


def restrict_tree(root: Path) -> None:
    for current, directories, files in os.walk(root):
        os.chmod(current, DIRECTORY_MODE)
        for name in files:
            os.chmod(Path(current) / name, FILE_MODE)
        for name in directories:
            os.chmod(Path(current) / name, DIRECTORY_MODE)


def default_container(pod: Any) -> str | None:
    """Pick the container ``oc exec`` would use: the annotated default, else the first one."""
    annotations = pod.metadata.annotations or {}
    if annotations.get(DEFAULT_CONTAINER_ANNOTATION):
        return str(annotations[DEFAULT_CONTAINER_ANNOTATION])
    containers = pod.spec.containers or []
    return containers[0].name if containers else None


def deployment_name_from_pod(pod: Any) -> str | None:
    """Strip the pod-template hash from the owning ReplicaSet name."""
    for owner in pod.metadata.owner_references or []:
        if owner.kind == "ReplicaSet" and owner.name:
            base, separator, _ = owner.name.rpartition("-")
            return base if separator else owner.name
    return None


class LlamaStackBackup:
    def __init__(self, *, clients: KubernetesClients, oc: OcCommandRunner, exec_timeout_seconds: int = 600) -> None:
        self.clients = clients
        self.oc = oc
        self.exec_timeout_seconds = exec_timeout_seconds

    def cluster_version(self) -> str:
        version = safe_read(
            operation="read ClusterVersion 'version'",
            hint="Verify RBAC allows get on clusterversions.",
            func=lambda: self.clients.custom_api.get_cluster_custom_object(
                group="config.openshift.io",
                version="v1",
                plural="clusterversions",
                name="version",
            ),
        )
        if not version:
            return "unknown"
        return str(((version.get("status") or {}).get("desired") or {}).get("version") or "unknown")

    def run(self, backup_dir: Path) -> LlamaStackBackupReport:
        report = LlamaStackBackupReport(backup_dir=backup_dir)
        log.info("==========================================")
        log.info("LlamaStack Backup")
        log.info("==========================================")
        log.info("Cluster:          %s", cluster_server(self.clients))
        log.info("Cluster version:  %s", self.cluster_version())
        log.info("Backup directory: %s", backup_dir)

        _secure_directory(backup_dir)
        log.info("Finding all LlamaStackDistribution resources...")
        distributions = list_custom_objects(self.clients, LLAMASTACK_DISTRIBUTION)
        if not distributions:
            log.info("No LlamaStackDistribution resources found in the cluster.")
            return report
        log.info("Found %d LlamaStackDistribution resource(s)", len(distributions))

        for distribution in distributions:
            metadata = distribution.get("metadata") or {}
            namespace = str(metadata.get("namespace", ""))
            name = str(metadata.get("name", ""))
            try:
                self.backup_distribution(distribution, backup_dir=backup_dir, report=report)
                ok = True
            except Exception as error:  # pylint: disable=broad-except
                self._warn(report, f"{namespace}/{name}: backup failed: {_error_message(error)}")
                ok = False
            report.summary.record(f"{namespace}/{name}", ok)

        self._log_summary(report)
        return report

    def backup_distribution(
        self,
        distribution: dict[str, Any],
        *,
        backup_dir: Path,
        report: LlamaStackBackupReport,
    ) -> Path:
        metadata = distribution.get("metadata") or {}
        namespace = str(metadata["namespace"])
        name = str(metadata["name"])
        log.info("----------------------------------------")
        log.info("Processing: %s in namespace %s", name, namespace)
        log.info("----------------------------------------")

        _secure_directory(backup_dir / namespace)
        target = _secure_directory(backup_dir / namespace / name)

        log.info("  [1/3] Backing up LlamaStackDistribution YAML...")
        saved = _write_private(target / "llamastackdistribution.yaml", _dump_yaml(distribution))
        log.info("        Saved to: %s", saved)

        log.info("  [2/3] Checking for ConfigMap with run.yaml/config.yaml...")
        user_config = ((distribution.get("spec") or {}).get("server") or {}).get("userConfig") or {}
        configmap_name = user_config.get("configMapName")
        if configmap_name:
            log.info("        Found ConfigMap: %s", configmap_name)
            report.custom_config.append(f"{namespace}/{name}")
            self._backup_configmap(namespace, str(configmap_name), target, report)
        else:
            log.info("        No ConfigMap referenced (using default configuration)")

        log.info("  [3/3] Backing up data from LlamaStack pod...")
        self._backup_pod(namespace, name, target, report)
        log.info("  Completed backup for %s", name)
        return target

    def _backup_configmap(self, namespace: str, configmap_name: str, target: Path, report: LlamaStackBackupReport) -> None:
        configmap = safe_read(
            operation=f"read ConfigMap '{namespace}/{configmap_name}'",
            hint="Verify RBAC allows get on configmaps.",
            func=lambda: self.clients.core_api.read_namespaced_config_map(name=configmap_name, namespace=namespace),
        )
        if configmap is None:
            self._warn(report, f"{namespace}: ConfigMap {configmap_name} not found")
            return
        saved = _write_private(target / "configmap.yaml", _dump_yaml(self._serialize(configmap)))
        log.info("        Saved ConfigMap to: %s", saved)
        data = configmap.data or {}
        for key in CONFIG_KEYS:
            if data.get(key):
                extracted = _write_private(target / key, data[key])
                log.info("        Extracted %s to: %s", key, extracted)

    def _backup_pod(self, namespace: str, name: str, target: Path, report: LlamaStackBackupReport) -> None:
        pods = safe_call(
            operation=f"list pods for LlamaStackDistribution '{namespace}/{name}'",
            hint="Check RBAC verbs for pods.",
            func=lambda: self.clients.core_api.list_namespaced_pod(
                namespace=namespace,
                label_selector=f"{INSTANCE_LABEL}={name}",
            ).items,
        )
        if not pods:
            self._warn(report, f"{namespace}/{name}: no running pod found, skipping pod data backup")
            return
        pod = sorted(pods, key=lambda item: item.metadata.name or "")[0]
        pod_name = pod.metadata.name
        log.info("        Found pod: %s", pod_name)

        saved = _write_private(target / "pod.yaml", _dump_yaml(self._serialize(pod)))
        log.info("        Saved to: %s", saved)

        deployment_name = deployment_name_from_pod(pod)
        if deployment_name:
            deployment = safe_read(
                operation=f"read deployment '{namespace}/{deployment_name}'",
                hint="Verify RBAC allows get on deployments.",
                func=lambda: self.clients.apps_api.read_namespaced_deployment(name=deployment_name, namespace=namespace),
            )
            if deployment is not None:
                saved = _write_private(target / "deployment.yaml", _dump_yaml(self._serialize(deployment)))
                log.info("        Saved to: %s", saved)

        container = default_container(pod)
        try:
            result = exec_in_pod(
                self.clients,
                namespace=namespace,
                pod_name=pod_name,
                container=container,
                command=["test", "-d", POD_DATA_PATH],
                timeout_seconds=self.exec_timeout_seconds,
            )
        except Exception as error:  # pylint: disable=broad-except
            self._warn(report, f"{namespace}/{name}: could not check data directory in pod: {_error_message(error)}")
            return
        if not result.ok:
            self._warn(
                report,
                f"{namespace}/{name}: data directory not found in pod (may be empty or using different path)",
            )
            return

        log.info("        Copying data from %s...", POD_DATA_PATH)
        pod_data = _secure_directory(target / "pod-data")
        try:
            self.oc.rsync(
                namespace=namespace,
                source=f"{pod_name}:{POD_DATA_PATH}/",
                destination=f"{pod_data}/",
                container=container,
            )
        except OcCommandError as error:
            self._warn(report, f"{namespace}/{name}: failed to copy data from pod: {error}")
            return
        restrict_tree(pod_data)
        log.info("        Saved pod data to: %s/", pod_data)
        log.info("        Backed up %d file(s)", count_files(pod_data))

    def _serialize(self, obj: Any) -> Any:
        return self.clients.api_client.sanitize_for_serialization(obj)

    def _warn(self, report: LlamaStackBackupReport, message: str) -> None:
        report.warnings.append(message)
        log.warning("        %s", message)

    def _log_summary(self, report: LlamaStackBackupReport) -> None:
        log.info("==========================================")
        log.info("Backup Summary")
        log.info("==========================================")
        log.info("Backup location: %s", report.backup_dir)
        log.info(
            "Distributions: %d total, %d succeeded, %d failed",
            report.summary.total,
            report.summary.succeeded,
            report.summary.failed,
        )
        if report.custom_config:
            log.warning("==========================================")
            log.warning("CUSTOM CONFIG WARNINGS")
            log.warning("==========================================")
            for entry in report.custom_config:
                log.warning("%s", entry)
                log.warning("  This distribution was using a custom config.")
                log.warning("  State was backed up from the default location: %s", POD_DATA_PATH)
                log.warning(
                    "  VERIFY in the config that this location was correct, "
                    "as it may have been altered in the custom config."
                )
        log.info("SECURITY NOTE:")
        log.info("Backup files may contain sensitive information (API tokens, passwords, etc.)")
        log.info("  - Keep backups secure and delete when no longer needed")
        log.info("Next steps:")
        log.info("1. Review the archived configurations in: %s", report.backup_dir)
        log.info("2. Use archives as reference when creating your new LlamaStackDistribution")
        log.info("3. Update your client applications to use the new LlamaStack APIs")


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
