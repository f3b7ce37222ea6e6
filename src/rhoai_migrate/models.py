from __future__ import annotations

from dataclasses import dataclass, field

STORAGE_FORMAT_PVC = "PVC"
STORAGE_FORMAT_DATABASE = "DATABASE"

DUMP_METHOD_NATIVE = "native"
DUMP_METHOD_CLIENT = "client"

_STORAGE_FORMAT_ALIASES = {
    "PVC": STORAGE_FORMAT_PVC,
    "pvc": STORAGE_FORMAT_PVC,
    "DATABASE": STORAGE_FORMAT_DATABASE,
    "database": STORAGE_FORMAT_DATABASE,
    "DB": STORAGE_FORMAT_DATABASE,
    "db": STORAGE_FORMAT_DATABASE,
}


class UnknownStorageFormatError(ValueError):
    """Raised when a storage format is neither PVC nor DATABASE."""


def normalize_storage_format(value: str) -> str:
    try:
        return _STORAGE_FORMAT_ALIASES[value.strip()]
    except KeyError:
        raise UnknownStorageFormatError(
            f"Unknown storage format: {value!r}. Expected PVC or DATABASE."
        ) from None


@dataclass(frozen=True)
class PvcDetails:
    pvc_name: str
    mount_path: str
    source_pod: str
    file_count: int


@dataclass(frozen=True)
class DatabaseDetails:
    mariadb_pod: str
    credentials_secret: str
    database_name: str
    database_user: str
    dump_command: str
    dump_method: str
    dump_lines: int


@dataclass(frozen=True)
class BackupMetadata:
    timestamp: str
    namespace: str
    service_name: str
    storage_format: str
    pvc: PvcDetails | None = None
    database: DatabaseDetails | None = None

    def __post_init__(self) -> None:
        if self.storage_format == STORAGE_FORMAT_PVC:
            if self.pvc is None or self.database is not None:
                raise ValueError("PVC metadata requires PVC details and no database details")
        elif self.storage_format == STORAGE_FORMAT_DATABASE:
            if self.database is None or self.pvc is not None:
                raise ValueError("DATABASE metadata requires database details and no PVC details")
        else:
            raise UnknownStorageFormatError(f"Unknown storage format: {self.storage_format!r}")


@dataclass(frozen=True)
class DatabaseCredentials:
    username: str
    password: str = field(repr=False)
    database: str


@dataclass(frozen=True)
class ExecResult:
    returncode: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0


@dataclass
class BatchSummary:
    total: int = 0
    failed_items: list[str] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return len(self.failed_items)

    @property
    def succeeded(self) -> int:
        return self.total - self.failed

    def record(self, item: str, ok: bool) -> None:
        self.total += 1
        if not ok:
            self.failed_items.append(item)
