from __future__ import annotations

from dataclasses import dataclass
import logging
from pathlib import Path
import re

from .config import AppConfig
from .discovery import (
    CLIENT_COMMANDS,
    DATABASE_CONTAINER_NAME,
    SERVICE_CONTAINER_NAME,
    DiscoveryError,
    ResourceLocator,
    detect_service_name,
    log_listing,
)
from .k8s import KubernetesClients, describe_volume_mounts, ensure_namespace_exists, exec_in_pod, list_pod_names
from .metadata import DATA_DIR_NAME, DUMP_FILE_NAME, ResolvedBackup, count_lines, resolve_backup
from .models import STORAGE_FORMAT_PVC, ExecResult
from .sqldump import client_command, count_tables, query_command
from .transfer import OcCommandError, OcCommandRunner

DRY_RUN_FILE_PREVIEW = 20
DRY_RUN_DUMP_PREVIEW = 5

_ERROR_LINE = re.compile(r"^ERROR", re.IGNORECASE)

log = logging.getLogger(__name__)


class RestoreStageError(RuntimeError):
    def __init__(self, *, stage: str, reason: str) -> None:
        normalized_reason = reason.strip() or "unknown error"
        super().__init__(f"{stage} stage failed: {normalized_reason}")
        self.stage = stage


@dataclass(frozen=True)
class RestoreOutcome:
    backup_dir: Path
    storage_format: str
    target_pod: str | None
    dry_run: bool
    file_count: int = 0
    table_count: int | None = None


def restore_errors(stderr: str) -> list[str]:
    """Return stderr lines that mark a failed statement; warnings and sequence output are ignored."""
    return [line for line in stderr.splitlines() if _ERROR_LINE.match(line)]


class TrustyAIRestoreExecutor:
    def __init__(self, *, clients: KubernetesClients, oc: OcCommandRunner, config: AppConfig) -> None:
        self.clients = clients
        self.oc = oc
        self.config = config

    def run(
        self,
        *,
        namespace: str,
        backup_path: Path,
        metadata_file: Path | None = None,
        service_name: str | None = None,
        dry_run: bool = False,
    ) -> RestoreOutcome:
        resolved = resolve_backup(backup_path, metadata_file)
        if resolved.metadata_path is not None:
            log.info("Found metadata file: %s", resolved.metadata_path)
        if resolved.metadata is not None:
            log.info(
                "Backup taken %s from namespace %s",
                resolved.metadata.timestamp or "<unknown>",
                resolved.metadata.namespace or "<unknown>",
            )
        ensure_namespace_exists(self.clients, namespace)

        service_name = service_name or resolved.value("trustyaiService") or detect_service_name(self.clients, namespace)
        if not service_name:
            raise RestoreStageError(stage="discover", reason=f"No TrustyAIService found in namespace {namespace}")

        log.info("Starting TrustyAI data restore...")
        log.info("Namespace: %s", namespace)
        log.info("TrustyAIService: %s", service_name)
        log.info("Storage format: %s", resolved.storage_format)
        log.info("Backup path: %s", resolved.backup_dir)
        if dry_run:
            log.warning("DRY RUN MODE - No changes will be made")

        locator = ResourceLocator(
            clients=self.clients,
            namespace=namespace,
            service_name=service_name,
            exec_timeout_seconds=self.config.exec_timeout_seconds,
        )
        if resolved.storage_format == STORAGE_FORMAT_PVC:
            return self._restore_pvc(locator, resolved, dry_run=dry_run)
        return self._restore_database(locator, resolved, dry_run=dry_run)

    def _restore_pvc(self, locator: ResourceLocator, resolved: ResolvedBackup, *, dry_run: bool) -> RestoreOutcome:
        log.info("Starting PVC restore...")
        data_dir = resolved.backup_dir / DATA_DIR_NAME
        if not data_dir.is_dir():
            raise RestoreStageError(stage="validate", reason=f"No data/ subdirectory found in backup: {resolved.backup_dir}")

        files = sorted(path for path in data_dir.rglob("*") if path.is_file())
        if not files:
            log.warning("Backup directory is empty (0 files). Nothing to restore.")
            return RestoreOutcome(
                backup_dir=resolved.backup_dir,
                storage_format=resolved.storage_format,
                target_pod=None,
                dry_run=dry_run,
            )
        log.info("Found %d file(s) to restore", len(files))

        try:
            pod = locator.find_service_pod().value
        except DiscoveryError as error:
            log_listing("Pods in namespace:", list_pod_names(self.clients, locator.namespace))
            raise RestoreStageError(stage="discover", reason=str(error)) from error
        pod_name = pod.metadata.name
        log.info("TrustyAI pod: %s", pod_name)

        try:
            mount = locator.find_mount(pod, recorded_mount_path=resolved.value("mountPath")).value
        except DiscoveryError as error:
            log_listing("Pod volume mounts:", describe_volume_mounts(pod))
            raise RestoreStageError(stage="discover", reason=str(error)) from error
        mount_path = mount.mount_path.rstrip("/")
        log.info("Mount path: %s", mount_path)

        outcome = RestoreOutcome(
            backup_dir=resolved.backup_dir,
            storage_format=resolved.storage_format,
            target_pod=pod_name,
            dry_run=dry_run,
            file_count=len(files),
        )
        if dry_run:
            log.info("[DRY RUN] Would rsync %d file(s) from %s/ to %s:%s/", len(files), data_dir, pod_name, mount_path)
            log.info("[DRY RUN] Files:")
            for path in files[:DRY_RUN_FILE_PREVIEW]:
                log.info("  %s", path)
            if len(files) > DRY_RUN_FILE_PREVIEW:
                log.info("[DRY RUN] ... and %d more", len(files) - DRY_RUN_FILE_PREVIEW)
            return outcome

        log.info("Copying data into %s:%s/ ...", pod_name, mount_path)
        try:
            self.oc.rsync(
                namespace=locator.namespace,
                source=f"{data_dir}/",
                destination=f"{pod_name}:{mount_path}/",
                container=SERVICE_CONTAINER_NAME,
            )
        except OcCommandError as error:
            raise RestoreStageError(stage="sync", reason=str(error)) from error

        log.info("PVC restore completed successfully!")
        log.warning("You may need to restart the TrustyAI pod for it to pick up restored data:")
        log.warning("  oc delete pod %s -n %s", pod_name, locator.namespace)
        return outcome

    def _restore_database(self, locator: ResourceLocator, resolved: ResolvedBackup, *, dry_run: bool) -> RestoreOutcome:
        log.info("Starting database restore...")
        dump_file = resolved.backup_dir / DUMP_FILE_NAME
        if not dump_file.is_file():
            raise RestoreStageError(stage="validate", reason=f"No dump.sql found in backup: {resolved.backup_dir}")
        line_count = count_lines(dump_file)
        if line_count <= 1:
            raise RestoreStageError(
                stage="validate",
                reason=f"SQL dump appears empty ({line_count} lines). Cannot restore.",
            )
        log.info("SQL dump: %d lines", line_count)

        try:
            secret_name = locator.find_credentials_secret(
                recorded_secret=resolved.value("credentialsSecret")
            ).value
        except DiscoveryError as error:
            log_listing("Available secrets (non-system):", locator.secret_diagnostics())
            raise RestoreStageError(stage="discover", reason=str(error)) from error
        log.info("Credentials secret: %s", secret_name)

        try:
            credentials = locator.extract_credentials(secret_name)
        except DiscoveryError as error:
            raise RestoreStageError(stage="credentials", reason=str(error)) from error
        log.info("Database: %s (user: %s)", credentials.database, credentials.username)

        try:
            mariadb_pod = locator.find_database_pod(
                secret_name=secret_name,
                recorded_pod=resolved.value("mariadbPod"),
            ).value
        except DiscoveryError as error:
            log_listing("Pods in namespace:", list_pod_names(self.clients, locator.namespace))
            raise RestoreStageError(stage="discover", reason=str(error)) from error
        log.info("MariaDB pod: %s", mariadb_pod)

        client = locator.detect_command(mariadb_pod, CLIENT_COMMANDS)
        if not client:
            raise RestoreStageError(
                stage="discover",
                reason=f"Neither mariadb nor mysql client found in pod {mariadb_pod}",
            )
        log.info("Client command: %s", client)

        if dry_run:
            log.info("[DRY RUN] Would restore %d-line SQL dump to database %s", line_count, credentials.database)
            log.info("[DRY RUN] Target pod: %s", mariadb_pod)
            log.info("[DRY RUN] Client: %s", client)
            log.info("[DRY RUN] Dump header:")
            for line in _head(dump_file, DRY_RUN_DUMP_PREVIEW):
                log.info("  %s", line)
            return RestoreOutcome(
                backup_dir=resolved.backup_dir,
                storage_format=resolved.storage_format,
                target_pod=mariadb_pod,
                dry_run=True,
            )

        log.info("Restoring database from dump...")
        try:
            with dump_file.open("rb") as handle:
                result = self.oc.exec_with_input(
                    namespace=locator.namespace,
                    pod_name=mariadb_pod,
                    container=DATABASE_CONTAINER_NAME,
                    command=client_command(client, credentials),
                    input_handle=handle,
                )
        except OcCommandError as error:
            raise RestoreStageError(stage="restore", reason=str(error)) from error

        errors = restore_errors(result.stderr)
        if errors:
            raise RestoreStageError(stage="restore", reason=f"Database restore failed: {'; '.join(errors)}")

        log.info("Verifying restore...")

        def run_query(sql: str) -> ExecResult:
            return exec_in_pod(
                self.clients,
                namespace=locator.namespace,
                pod_name=mariadb_pod,
                container=DATABASE_CONTAINER_NAME,
                command=query_command(client, credentials, sql),
                timeout_seconds=self.config.exec_timeout_seconds,
            )

        try:
            table_count = count_tables(run_query)
        except Exception as error:  # pylint: disable=broad-except
            log.warning("Could not count tables after restore: %s", _error_message(error))
            table_count = None
        log.info("Tables in database after restore: %d", table_count or 0)
        log.info("Database restore completed successfully!")
        return RestoreOutcome(
            backup_dir=resolved.backup_dir,
            storage_format=resolved.storage_format,
            target_pod=mariadb_pod,
            dry_run=False,
            table_count=table_count or 0,
        )


def _head(path: Path, limit: int) -> list[str]:
    lines: list[str] = []
    with path.open("r", encoding="utf-8", errors="replace") as handle:
        for line in handle:
            lines.append(line.rstrip("\n"))
            if len(lines) >= limit:
                break
    return lines


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__
