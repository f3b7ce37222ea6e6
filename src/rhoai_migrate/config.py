from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
import os


def _parse_exit_codes(value: str) -> frozenset[int]:
    codes: set[int] = set()
    for token in value.split(","):
        token = token.strip()
        if not token:
            continue
        codes.add(int(token))
    return frozenset(codes)


@dataclass(frozen=True)
class AppConfig:
    namespace: str | None = os.getenv("TRUSTYAI_NAMESPACE") or None
    backup_dir: Path = Path(os.getenv("BACKUP_DIR", "./backups"))
    oc_binary: str = os.getenv("RHOAI_OC_BINARY", "oc")
    wait_timeout_seconds: int = field(default_factory=lambda: int(os.getenv("RHOAI_WAIT_TIMEOUT_SECONDS", "120")))
    exec_timeout_seconds: int = field(default_factory=lambda: int(os.getenv("RHOAI_EXEC_TIMEOUT_SECONDS", "600")))
    # mysqldump exits 2 on Galera "LOCK TABLE on SEQUENCES" warnings while still producing a full dump.
    tolerated_dump_exit_codes: frozenset[int] = field(
        default_factory=lambda: _parse_exit_codes(os.getenv("RHOAI_TOLERATED_DUMP_EXIT_CODES", "2"))
    )
