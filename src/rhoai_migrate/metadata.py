from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any
import json

from .models import (
    STORAGE_FORMAT_DATABASE,
    STORAGE_FORMAT_PVC,
    BackupMetadata,
    DatabaseDetails,
    PvcDetails,
    normalize_storage_format,
)

METADATA_FILE_NAME = "metadata.json"
DATA_DIR_NAME = "data"
DUMP_FILE_NAME = "dump.sql"

_PVC_KEYS = ("pvcName", "mountPath", "sourcePod", "fileCount")
_DATABASE_KEYS = (
    "mariadbPod",
    "credentialsSecret",
    "mariadbSecret",
    "databaseName",
    "databaseUser",
    "dumpCommand",
    "dumpMethod",
    "dumpLines",
)


class MetadataError(RuntimeError):
    """Raised when a backup directory or its metadata cannot be interpreted."""


@dataclass(frozen=True)
class ResolvedBackup:
    backup_dir: Path
    storage_format: str
    metadata_path: Path | None
    raw_metadata: dict[str, Any]
    metadata: BackupMetadata | None = None

    def value(self, key: str) -> str | None:
        value = self.raw_metadata.get(key)
        if value is None:
            return None
        rendered = str(value).strip()
        return rendered or None


def metadata_to_dict(metadata: BackupMetadata) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "timestamp": metadata.timestamp,
        "namespace": metadata.namespace,
        "trustyaiService": metadata.service_name,
        "storageFormat": metadata.storage_format,
    }
    if metadata.pvc is not None:
        payload.update(
            {
                "pvcName": metadata.pvc.pvc_name,
                "mountPath": metadata.pvc.mount_path,
                "sourcePod": metadata.pvc.source_pod,
                "fileCount": metadata.pvc.file_count,
            }
        )
    if metadata.database is not None:
        payload.update(
            {
                "mariadbPod": metadata.database.mariadb_pod,
                "credentialsSecret": metadata.database.credentials_secret,
                "databaseName": metadata.database.database_name,
                "databaseUser": metadata.database.database_user,
                "dumpCommand": metadata.database.dump_command,
                "dumpMethod": metadata.database.dump_method,
                "dumpLines": metadata.database.dump_lines,
            }
        )
    return payload


def metadata_from_dict(payload: dict[str, Any]) -> BackupMetadata:
    """Build a validated record; each details group is read when declared or when any of its keys is present."""
    if not payload.get("storageFormat"):
        raise MetadataError("Invalid backup metadata: storageFormat is missing")
    storage_format = normalize_storage_format(str(payload["storageFormat"]))
    try:
        pvc: PvcDetails | None = None
        database: DatabaseDetails | None = None
        if storage_format == STORAGE_FORMAT_PVC or any(key in payload for key in _PVC_KEYS):
            pvc = PvcDetails(
                pvc_name=str(payload.get("pvcName", "unknown")),
                mount_path=str(payload.get("mountPath", "")),
                source_pod=str(payload.get("sourcePod", "")),
                file_count=int(payload.get("fileCount", 0)),
            )
        if storage_format == STORAGE_FORMAT_DATABASE or any(key in payload for key in _DATABASE_KEYS):
            database = DatabaseDetails(
                mariadb_pod=str(payload.get("mariadbPod", "")),
                credentials_secret=str(payload.get("credentialsSecret") or payload.get("mariadbSecret") or ""),
                database_name=str(payload.get("databaseName", "")),
                database_user=str(payload.get("databaseUser", "")),
                dump_command=str(payload.get("dumpCommand", "")),
                dump_method=str(payload.get("dumpMethod", "")),
                dump_lines=int(payload.get("dumpLines", 0)),
            )
        return BackupMetadata(
            timestamp=str(payload.get("timestamp", "")),
            namespace=str(payload.get("namespace", "")),
            service_name=str(payload.get("trustyaiService", "")),
            storage_format=storage_format,
            pvc=pvc,
            database=database,
        )
    except (KeyError, TypeError, ValueError) as error:
        raise MetadataError(f"Invalid backup metadata: {error}") from error


def write_metadata(backup_dir: Path, metadata: BackupMetadata) -> Path:
    path = backup_dir / METADATA_FILE_NAME
    path.write_text(json.dumps(metadata_to_dict(metadata), indent=2) + "\n", encoding="utf-8")
    return path


def read_metadata_file(path: Path) -> dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise MetadataError(f"Unable to read metadata file {path}: {error}") from error
    if not isinstance(payload, dict):
        raise MetadataError(f"Metadata file {path} must contain a JSON object")
    # Legacy backups recorded the secret under a different key.
    if not payload.get("credentialsSecret") and payload.get("mariadbSecret"):
        payload["credentialsSecret"] = payload["mariadbSecret"]
    return payload


def resolve_backup(backup_path: Path, metadata_file: Path | None = None) -> ResolvedBackup:
    """Locate a backup directory and decide whether it holds PVC files or a SQL dump.

    Precedence: explicit or sibling ``metadata.json``, then a ``data/`` subdirectory,
    then ``dump.sql``.
    """
    backup_dir = backup_path
    if backup_path.is_file() and backup_path.name in {METADATA_FILE_NAME, DUMP_FILE_NAME}:
        backup_dir = backup_path.parent
    if not backup_dir.exists():
        raise MetadataError(f"Backup path not found: {backup_path}")
    if not backup_dir.is_dir():
        raise MetadataError(
            f"Backup path must be a directory: {backup_path}. Expected a backup directory created by the backup command."
        )

    if metadata_file is None:
        candidate = backup_dir / METADATA_FILE_NAME
        if candidate.is_file():
            metadata_file = candidate
    elif not metadata_file.is_file():
        raise MetadataError(f"Metadata file not found: {metadata_file}")

    raw_metadata: dict[str, Any] = {}
    if metadata_file is not None:
        raw_metadata = read_metadata_file(metadata_file)
        declared = raw_metadata.get("storageFormat")
        if declared:
            return ResolvedBackup(
                backup_dir=backup_dir,
                storage_format=normalize_storage_format(str(declared)),
                metadata_path=metadata_file,
                raw_metadata=raw_metadata,
                metadata=metadata_from_dict(raw_metadata),
            )

    if (backup_dir / DATA_DIR_NAME).is_dir():
        storage_format = STORAGE_FORMAT_PVC
    elif (backup_dir / DUMP_FILE_NAME).is_file():
        storage_format = STORAGE_FORMAT_DATABASE
    else:
        raise MetadataError(
            f"Cannot determine backup type from {backup_path}. "
            "Expected data/ subdirectory (PVC) or dump.sql (database) inside."
        )

    return ResolvedBackup(
        backup_dir=backup_dir,
        storage_format=storage_format,
        metadata_path=metadata_file,
        raw_metadata=raw_metadata,
    )


def count_files(directory: Path) -> int:
    if not directory.is_dir():
        return 0
    return sum(1 for path in directory.rglob("*") if path.is_file())


def count_lines(path: Path) -> int:
    newline_count = 0
    with path.open("rb") as file_handle:
        for chunk in iter(lambda: file_handle.read(64 * 1024), b""):
            newline_count += chunk.count(b"\n")
    return newline_count

