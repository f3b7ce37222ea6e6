from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
import logging
from pathlib import Path
import shutil
from typing import Callable

from .config import AppConfig
from .discovery import (
    CLIENT_COMMANDS,
    DATABASE_CONTAINER_NAME,
    DUMP_COMMANDS,
    SERVICE_CONTAINER_NAME,
    DiscoveryError,
    ResourceLocator,
    detect_service_name,
    log_listing,
)
from .k8s import (
    TRUSTYAI_SERVICE,
    KubernetesClients,
    describe_volume_mounts,
    ensure_namespace_exists,
    exec_in_pod,
    get_custom_object,
    list_pod_names,
)
from .metadata import DATA_DIR_NAME, DUMP_FILE_NAME, count_files, count_lines, write_metadata
from .models import (
    DUMP_METHOD_CLIENT,
    DUMP_METHOD_NATIVE,
    STORAGE_FORMAT_DATABASE,
    STORAGE_FORMAT_PVC,
    BackupMetadata,
    DatabaseCredentials,
    DatabaseDetails,
    ExecResult,
    PvcDetails,
    normalize_storage_format,
)
from .sqldump import SqlDumpError, native_dump_command, query_command, write_client_dump
from .transfer import OcCommandError, OcCommandRunner

TIMESTAMP_FORMAT = "%Y%m%d-%H%M%S"

log = logging.getLogger(__name__)


class BackupStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


@dataclass(frozen=True)
class BackupOutcome:
    backup_path: Path
    metadata: BackupMetadata


class TrustyAIBackupExecutor:
    def __init__(
        self,
        *,
        clients: KubernetesClients,
        oc: OcCommandRunner,
        config: AppConfig,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.clients = clients
        self.oc = oc
        self.config = config
        self.clock = clock

    def run(self, *, namespace: str, backup_dir: Path, service_name: str | None = None) -> BackupOutcome:
        ensure_namespace_exists(self.clients, namespace)
        service_name = self._resolve_service_name(namespace, service_name)
        service = get_custom_object(self.clients, TRUSTYAI_SERVICE, namespace=namespace, name=service_name)
        if service is None:
            log.warning(
                "TrustyAIService '%s' not found in namespace %s; defaulting to PVC storage", service_name, namespace
            )
            service = {}

        storage = (service.get("spec") or {}).get("storage") or {}
        storage_format = normalize_storage_format(str(storage.get("format") or STORAGE_FORMAT_PVC))
        timestamp = self.clock().strftime(TIMESTAMP_FORMAT)

        log.info("Namespace: %s", namespace)
        log.info("TrustyAIService: %s", service_name)
        log.info("Storage format: %s", storage_format)

        backup_dir.mkdir(parents=True, exist_ok=True)
        locator = ResourceLocator(
            clients=self.clients,
            namespace=namespace,
            service_name=service_name,
            exec_timeout_seconds=self.config.exec_timeout_seconds,
        )
        if storage_format == STORAGE_FORMAT_PVC:
            return self._backup_pvc(locator, backup_dir=backup_dir, timestamp=timestamp)
        return self._backup_database(locator, backup_dir=backup_dir, timestamp=timestamp)

    def _resolve_service_name(self, namespace: str, service_name: str | None) -> str:
        if service_name:
            return service_name
        detected = detect_service_name(self.clients, namespace)
        if not detected:
            raise BackupStageError(stage="discover", reason=f"No TrustyAIService found in namespace {namespace}")
        log.info("Auto-detected TrustyAIService: %s", detected)
        return detected

    def _backup_pvc(self, locator: ResourceLocator, *, backup_dir: Path, timestamp: str) -> BackupOutcome:
        log.info("Starting PVC backup...")
        namespace = locator.namespace
        try:
            pod_match = locator.find_service_pod()
        except DiscoveryError as error:
            log_listing("Pods in namespace:", list_pod_names(self.clients, namespace))
            raise BackupStageError(stage="discover", reason=str(error)) from error
        pod = pod_match.value
        pod_name = pod.metadata.name
        log.info("TrustyAI pod: %s", pod_name)

        try:
            mount = locator.find_mount(pod).value
        except DiscoveryError as error:
            log_listing("Pod volume mounts:", describe_volume_mounts(pod))
            raise BackupStageError(stage="discover", reason=str(error)) from error
        pvc_name = mount.pvc_name or "unknown"
        log.info("PVC: %s", pvc_name)
        log.info("Mount path: %s", mount.mount_path)

        backup_path = backup_dir / f"trustyai-data-{namespace}-{timestamp}"
        data_dir = backup_path / DATA_DIR_NAME
        data_dir.mkdir(parents=True, exist_ok=True)

        log.info("Copying data from %s:%s/ ...", pod_name, mount.mount_path)
        try:
            self.oc.rsync(
                namespace=namespace,
                source=f"{pod_name}:{mount.mount_path.rstrip('/')}/",
                destination=f"{data_dir}/",
                container=SERVICE_CONTAINER_NAME,
            )
        except OcCommandError as error:
            raise BackupStageError(stage="sync", reason=str(error)) from error

        file_count = count_files(data_dir)
        if file_count == 0:
            log.warning("PVC appears to be empty (0 files copied)")
        else:
            log.info("Copied %d file(s)", file_count)

        metadata = BackupMetadata(
            timestamp=timestamp,
            namespace=namespace,
            service_name=locator.service_name,
            storage_format=STORAGE_FORMAT_PVC,
            pvc=PvcDetails(
                pvc_name=pvc_name,
                mount_path=mount.mount_path,
                source_pod=pod_name,
                file_count=file_count,
            ),
        )
        self._write_metadata(backup_path, metadata)
        return BackupOutcome(backup_path=backup_path, metadata=metadata)

    def _backup_database(self, locator: ResourceLocator, *, backup_dir: Path, timestamp: str) -> BackupOutcome:
        log.info("Starting database backup...")
        namespace = locator.namespace
        try:
            secret_name = locator.find_credentials_secret().value
        except DiscoveryError as error:
            log_listing("Available secrets (non-system):", locator.secret_diagnostics())
            raise BackupStageError(stage="discover", reason=str(error)) from error
        log.info("Credentials secret: %s", secret_name)

        try:
            credentials = locator.extract_credentials(secret_name)
        except DiscoveryError as error:
            raise BackupStageError(stage="credentials", reason=str(error)) from error
        log.info("Database: %s (user: %s)", credentials.database, credentials.username)

        try:
            mariadb_pod = locator.find_database_pod(secret_name=secret_name).value
        except DiscoveryError as error:
            log_listing("Pods in namespace:", list_pod_names(self.clients, namespace))
            raise BackupStageError(stage="discover", reason=str(error)) from error
        log.info("MariaDB pod: %s", mariadb_pod)

        dump_command = locator.detect_command(mariadb_pod, DUMP_COMMANDS)
        if dump_command:
            dump_method = DUMP_METHOD_NATIVE
            log.info("Dump command: %s", dump_command)
        else:
            dump_command = locator.detect_command(mariadb_pod, CLIENT_COMMANDS)
            if not dump_command:
                raise BackupStageError(stage="dump", reason=f"No MariaDB/MySQL client found in pod {mariadb_pod}")
            dump_method = DUMP_METHOD_CLIENT
            log.info("No dump tool found, using %s client with SQL-based dump", dump_command)

        backup_path = backup_dir / f"trustyai-db-{namespace}-{timestamp}"
        backup_path.mkdir(parents=True, exist_ok=True)
        dump_file = backup_path / DUMP_FILE_NAME
        log.info("Dumping database to %s...", dump_file)

        try:
            if dump_method == DUMP_METHOD_NATIVE:
                self._native_dump(namespace, mariadb_pod, dump_command, credentials, dump_file)
            else:
                self._client_dump(namespace, mariadb_pod, dump_command, credentials, dump_file)
            line_count = count_lines(dump_file)
            if line_count <= 1:
                first_line = _first_line(dump_file)
                raise BackupStageError(
                    stage="verify",
                    reason=f"Database dump appears empty ({line_count} lines). First line: {first_line}",
                )
        except Exception:
            shutil.rmtree(backup_path, ignore_errors=True)
            raise
        log.info("Database dump: %d lines", line_count)

        metadata = BackupMetadata(
            timestamp=timestamp,
            namespace=namespace,
            service_name=locator.service_name,
            storage_format=STORAGE_FORMAT_DATABASE,
            database=DatabaseDetails(
                mariadb_pod=mariadb_pod,
                credentials_secret=secret_name,
                database_name=credentials.database,
                database_user=credentials.username,
                dump_command=dump_command,
                dump_method=dump_method,
                dump_lines=line_count,
            ),
        )
        self._write_metadata(backup_path, metadata)
        return BackupOutcome(backup_path=backup_path, metadata=metadata)

    def _native_dump(
        self,
        namespace: str,
        pod_name: str,
        tool: str,
        credentials: DatabaseCredentials,
        dump_file: Path,
    ) -> None:
        try:
            with dump_file.open("w", encoding="utf-8") as handle:
                result = exec_in_pod(
                    self.clients,
                    namespace=namespace,
                    pod_name=pod_name,
                    container=DATABASE_CONTAINER_NAME,
                    command=native_dump_command(tool, credentials),
                    timeout_seconds=self.config.exec_timeout_seconds,
                    stdout_handle=handle,
                )
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="dump", reason=_error_message(error)) from error

        if result.ok:
            return
        has_output = dump_file.stat().st_size > 0
        if has_output and result.returncode in self.config.tolerated_dump_exit_codes:
            log.warning("%s exited with code %d but produced output, continuing", tool, result.returncode)
            return
        detail = "no output" if not has_output else result.stderr.strip() or "output discarded"
        raise BackupStageError(stage="dump", reason=f"Database dump failed (exit code {result.returncode}, {detail})")

    def _client_dump(
        self,
        namespace: str,
        pod_name: str,
        client: str,
        credentials: DatabaseCredentials,
        dump_file: Path,
    ) -> None:
        def run_query(sql: str) -> ExecResult:
            return exec_in_pod(
                self.clients,
                namespace=namespace,
                pod_name=pod_name,
                container=DATABASE_CONTAINER_NAME,
                command=query_command(client, credentials, sql),
                timeout_seconds=self.config.exec_timeout_seconds,
            )

        try:
            with dump_file.open("w", encoding="utf-8") as handle:
                tables = write_client_dump(
                    run_query,
                    client=client,
                    database=credentials.database,
                    output=handle,
                    generated_at=self.clock().isoformat(timespec="seconds"),
                )
        except SqlDumpError as error:
            raise BackupStageError(stage="dump", reason=str(error)) from error
        except Exception as error:  # pylint: disable=broad-except
            raise BackupStageError(stage="dump", reason=_error_message(error)) from error
        if tables == 0:
            log.warning("No tables found in database %s", credentials.database)
        else:
            log.info("Dumped %d table(s)", tables)

    def _write_metadata(self, backup_path: Path, metadata: BackupMetadata) -> None:
        try:
            write_metadata(backup_path, metadata)
        except OSError as error:
            raise BackupStageError(stage="metadata", reason=_error_message(error)) from error
        log.info("Backup completed successfully!")
        log.info("Backup directory: %s", backup_path)


def _first_line(path: Path) -> str:
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        return handle.readline().rstrip("\n")


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
