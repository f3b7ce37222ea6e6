"""Ordered fallback lookups for the pods, mounts and secrets behind a TrustyAIService.

Every lookup is a list of named strategies tried in priority order; the first one that yields a
non-empty value wins. When all of them come up empty a ``DiscoveryError`` names each strategy
that was tried so the operator can see what the cluster is missing.
"""

from __future__ import annotations

import base64
import binascii
from dataclasses import dataclass
import logging
from typing import Any, Callable, Generic, Iterable, TypeVar

from .k8s import (
    TRUSTYAI_SERVICE,
    KubernetesClients,
    exec_in_pod,
    get_custom_object,
    list_custom_objects,
    list_running_pods,
    list_secret_names,
    safe_read,
)
from .models import DatabaseCredentials

T = TypeVar("T")

log = logging.getLogger(__name__)

SERVICE_CONTAINER_NAME = "trustyai-service"
DATABASE_CONTAINER_NAME = "mariadb"
OPERATOR_VOLUME_NAME = "volume"

USERNAME_KEYS = (
    "databaseUsername",
    "databaseUser",
    "database-username",
    "database-user",
    "MYSQL_USER",
    "DB_USER",
    "user",
    "username",
)
PASSWORD_KEYS = ("databasePassword", "database-password", "MYSQL_PASSWORD", "DB_PASSWORD", "password")
DATABASE_NAME_KEYS = ("databaseName", "database-name", "MYSQL_DATABASE", "DB_NAME", "database")
DATABASE_SERVICE_KEYS = ("databaseService", "database-service", "DB_HOST")

DUMP_COMMANDS = ("mariadb-dump", "mysqldump")
CLIENT_COMMANDS = ("mariadb", "mysql")

_SYSTEM_SECRET_MARKERS = ("kubernetes.io", "openshift", "builder", "deployer", "default")


@dataclass(frozen=True)
class Strategy(Generic[T]):
    description: str
    probe: Callable[[], T | None]


@dataclass(frozen=True)
class DiscoveryResult(Generic[T]):
    value: T
    strategy: str


@dataclass(frozen=True)
class MountLocation:
    mount_path: str
    pvc_name: str | None


class DiscoveryError(RuntimeError):
    def __init__(self, *, subject: str, attempted: list[str]) -> None:
        tried = "; ".join(attempted) if attempted else "no strategies"
        super().__init__(f"Could not locate {subject}. Tried: {tried}")
        self.subject = subject
        self.attempted = attempted


def first_match(subject: str, strategies: Iterable[Strategy[T]]) -> DiscoveryResult[T]:
    attempted: list[str] = []
    for strategy in strategies:
        value = strategy.probe()
        if value:
            log.debug("Located %s via %s", subject, strategy.description)
            return DiscoveryResult(value=value, strategy=strategy.description)
        attempted.append(strategy.description)
    raise DiscoveryError(subject=subject, attempted=attempted)


def detect_service_name(clients: KubernetesClients, namespace: str) -> str | None:
    services = list_custom_objects(clients, TRUSTYAI_SERVICE, namespace=namespace)
    if not services:
        return None
    return (services[0].get("metadata") or {}).get("name")


def decode_secret_value(encoded: str) -> str:
    try:
        decoded = base64.b64decode(encoded, validate=False).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return ""
    return decoded.rstrip("\r\n")


def non_system_secret_names(names: Iterable[str]) -> list[str]:
    return [name for name in names if not any(marker in name for marker in _SYSTEM_SECRET_MARKERS)]


class ResourceLocator:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        namespace: str,
        service_name: str,
        exec_timeout_seconds: int = 600,
    ) -> None:
        self.clients = clients
        self.namespace = namespace
        self.service_name = service_name
        self.exec_timeout_seconds = exec_timeout_seconds
        self._service_resource: dict[str, Any] | None = None
        self._service_resource_loaded = False

    def service_resource(self) -> dict[str, Any]:
        if not self._service_resource_loaded:
            self._service_resource = get_custom_object(
                self.clients,
                TRUSTYAI_SERVICE,
                namespace=self.namespace,
                name=self.service_name,
            )
            self._service_resource_loaded = True
        return self._service_resource or {}

    def storage_spec(self) -> dict[str, Any]:
        spec = self.service_resource().get("spec") or {}
        return spec.get("storage") or {}

    def find_service_pod(self) -> DiscoveryResult[Any]:
        name = self.service_name
        return first_match(
            f"running TrustyAI service pod for '{name}' in namespace {self.namespace}",
            [
                Strategy(f"label app={name}", lambda: self._first_pod_with_label(f"app={name}")),
                Strategy(
                    f"label app.kubernetes.io/name={name}",
                    lambda: self._first_pod_with_label(f"app.kubernetes.io/name={name}"),
                ),
                Strategy(
                    "label app.kubernetes.io/part-of=trustyai",
                    lambda: self._first_pod_with_label("app.kubernetes.io/part-of=trustyai"),
                ),
                Strategy(f"pod name containing '{name}'", lambda: self._first_pod_named_like(name)),
            ],
        )

    def find_mount(self, pod: Any, *, recorded_mount_path: str | None = None) -> DiscoveryResult[MountLocation]:
        strategies: list[Strategy[MountLocation]] = []
        if recorded_mount_path is not None:
            strategies.append(
                Strategy(
                    "mountPath recorded in backup metadata",
                    lambda: MountLocation(recorded_mount_path, None) if recorded_mount_path else None,
                )
            )
        strategies.extend(
            [
                Strategy(f"volume named '{OPERATOR_VOLUME_NAME}'", lambda: self._mount_for_operator_volume(pod)),
                Strategy(
                    f"PVC-backed volume with claim name containing '{self.service_name}'",
                    lambda: self._mount_for_matching_claim(pod),
                ),
                Strategy("TrustyAIService spec.storage.folder", self._mount_from_service_resource),
            ]
        )
        return first_match(f"PVC mount path in pod {_pod_name(pod)}", strategies)

    def find_credentials_secret(self, *, recorded_secret: str | None = None) -> DiscoveryResult[str]:
        strategies: list[Strategy[str]] = []
        if recorded_secret is not None:
            strategies.append(
                Strategy(
                    f"secret '{recorded_secret}' recorded in backup metadata",
                    lambda: self._existing_secret(recorded_secret, origin="backup metadata"),
                )
            )
        strategies.extend(
            [
                Strategy(
                    "TrustyAIService spec.storage.databaseConfigurations",
                    lambda: self._existing_secret(
                        self.storage_spec().get("databaseConfigurations"),
                        origin="CR spec.storage.databaseConfigurations",
                    ),
                ),
                Strategy(
                    f"secret '{self.service_name}-db-credentials'",
                    lambda: self._existing_secret(f"{self.service_name}-db-credentials", origin=None),
                ),
                Strategy("secret name containing 'db-credentials'", lambda: self._first_secret_named_like("db-credentials")),
                Strategy("secret name containing 'mariadb'", lambda: self._first_secret_named_like("mariadb")),
            ]
        )
        return first_match(f"database credentials secret in namespace {self.namespace}", strategies)

    def read_secret_data(self, secret_name: str) -> dict[str, str]:
        secret = safe_read(
            operation=f"read secret '{self.namespace}/{secret_name}'",
            hint="Verify RBAC allows get on secrets.",
            func=lambda: self.clients.core_api.read_namespaced_secret(name=secret_name, namespace=self.namespace),
        )
        if secret is None:
            return {}
        return dict(secret.data or {})

    def extract_credentials(self, secret_name: str) -> DatabaseCredentials:
        data = self.read_secret_data(secret_name)
        username = _first_secret_value(data, USERNAME_KEYS)
        password = _first_secret_value(data, PASSWORD_KEYS)
        database = _first_secret_value(data, DATABASE_NAME_KEYS)
        if not (username and password and database):
            keys = ", ".join(sorted(data)) or "(none)"
            raise DiscoveryError(
                subject=f"database credentials in secret {secret_name} (keys present: {keys})",
                attempted=[
                    f"username keys {', '.join(USERNAME_KEYS)}",
                    f"password keys {', '.join(PASSWORD_KEYS)}",
                    f"database keys {', '.join(DATABASE_NAME_KEYS)}",
                ],
            )
        return DatabaseCredentials(username=username, password=password, database=database)

    def find_database_pod(self, *, secret_name: str, recorded_pod: str | None = None) -> DiscoveryResult[str]:
        strategies: list[Strategy[str]] = []
        if recorded_pod is not None:
            strategies.append(
                Strategy(f"pod '{recorded_pod}' recorded in backup metadata", lambda: self._existing_pod(recorded_pod))
            )
        strategies.extend(
            [
                Strategy(
                    f"pod name containing 'mariadb-{self.service_name}'",
                    lambda: self._first_pod_name_like(f"mariadb-{self.service_name}"),
                ),
                Strategy("pod name containing 'mariadb'", lambda: self._first_pod_name_like("mariadb")),
                Strategy("pod name containing 'mysql'", lambda: self._first_pod_name_like("mysql")),
                Strategy(
                    "pod named after the database service in the credentials secret",
                    lambda: self._pod_for_database_service(secret_name),
                ),
            ]
        )
        return first_match(f"MariaDB/MySQL pod in namespace {self.namespace}", strategies)

    def detect_command(self, pod_name: str, candidates: Iterable[str]) -> str | None:
        for candidate in candidates:
            try:
                result = exec_in_pod(
                    self.clients,
                    namespace=self.namespace,
                    pod_name=pod_name,
                    container=DATABASE_CONTAINER_NAME,
                    command=["which", candidate],
                    timeout_seconds=self.exec_timeout_seconds,
                )
            except Exception as error:  # pylint: disable=broad-except
                log.debug("Checking for %s in %s failed: %s", candidate, pod_name, error)
                continue
            if result.ok:
                return candidate
        return None

    def secret_diagnostics(self) -> list[str]:
        return non_system_secret_names(list_secret_names(self.clients, self.namespace))

    def _first_pod_with_label(self, label_selector: str) -> Any | None:
        pods = list_running_pods(self.clients, self.namespace, label_selector=label_selector)
        return pods[0] if pods else None

    def _first_pod_named_like(self, pattern: str) -> Any | None:
        lowered = pattern.lower()
        for pod in list_running_pods(self.clients, self.namespace):
            if lowered in (pod.metadata.name or "").lower():
                return pod
        return None

    def _first_pod_name_like(self, pattern: str) -> str | None:
        pod = self._first_pod_named_like(pattern)
        return pod.metadata.name if pod is not None else None

    def _existing_pod(self, pod_name: str) -> str | None:
        pod = safe_read(
            operation=f"read pod '{self.namespace}/{pod_name}'",
            hint="Verify RBAC allows get on pods.",
            func=lambda: self.clients.core_api.read_namespaced_pod(name=pod_name, namespace=self.namespace),
        )
        if pod is None:
            # Upgrades roll the StatefulSet, so recorded pod names go stale.
            log.warning("MariaDB pod from metadata (%s) no longer exists, searching...", pod_name)
            return None
        return pod_name

    def _pod_for_database_service(self, secret_name: str) -> str | None:
        service = _first_secret_value(self.read_secret_data(secret_name), DATABASE_SERVICE_KEYS)
        if not service:
            return None
        return self._first_pod_name_like(service)

    def _existing_secret(self, secret_name: str | None, *, origin: str | None) -> str | None:
        if not secret_name:
            return None
        found = safe_read(
            operation=f"read secret '{self.namespace}/{secret_name}'",
            hint="Verify RBAC allows get on secrets.",
            func=lambda: self.clients.core_api.read_namespaced_secret(name=secret_name, namespace=self.namespace),
        )
        if found is None:
            if origin:
                log.warning("Secret '%s' from %s not found, searching...", secret_name, origin)
            return None
        return secret_name

    def _first_secret_named_like(self, pattern: str) -> str | None:
        lowered = pattern.lower()
        for name in list_secret_names(self.clients, self.namespace):
            if lowered in name.lower():
                return name
        return None

    def _mount_for_operator_volume(self, pod: Any) -> MountLocation | None:
        mount_path = _mount_path_for_volume(pod, OPERATOR_VOLUME_NAME)
        if not mount_path:
            return None
        return MountLocation(mount_path=mount_path, pvc_name=_claim_name_for_volume(pod, OPERATOR_VOLUME_NAME))

    def _mount_for_matching_claim(self, pod: Any) -> MountLocation | None:
        lowered = self.service_name.lower()
        for volume in pod.spec.volumes or []:
            claim = volume.persistent_volume_claim
            if claim is None or not claim.claim_name:
                continue
            if lowered not in claim.claim_name.lower():
                continue
            mount_path = _mount_path_for_volume(pod, volume.name)
            if mount_path:
                return MountLocation(mount_path=mount_path, pvc_name=claim.claim_name)
        return None

    def _mount_from_service_resource(self) -> MountLocation | None:
        folder = self.storage_spec().get("folder")
        if not folder:
            return None
        return MountLocation(mount_path=str(folder), pvc_name=f"{self.service_name}-pvc")


def _first_secret_value(data: dict[str, str], keys: Iterable[str]) -> str:
    for key in keys:
        encoded = data.get(key)
        if encoded:
            decoded = decode_secret_value(encoded)
            if decoded:
                return decoded
    return ""


def _service_container(pod: Any) -> Any | None:
    containers = pod.spec.containers or []
    for container in containers:
        if container.name == SERVICE_CONTAINER_NAME:
            return container
    return containers[0] if containers else None


def _mount_path_for_volume(pod: Any, volume_name: str) -> str | None:
    container = _service_container(pod)
    if container is None:
        return None
    for mount in container.volume_mounts or []:
        if mount.name == volume_name:
            return mount.mount_path
    return None


def _claim_name_for_volume(pod: Any, volume_name: str) -> str | None:
    for volume in pod.spec.volumes or []:
        if volume.name == volume_name and volume.persistent_volume_claim is not None:
            return volume.persistent_volume_claim.claim_name
    return None


def _pod_name(pod: Any) -> str:
    return pod.metadata.name if pod.metadata else "<unknown>"


def log_listing(title: str, entries: list[str]) -> None:
    log.info(title)
    if not entries:
        log.info("  (none)")
    for entry in entries:
        log.info("  %s", entry)
