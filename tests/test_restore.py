from __future__ import annotations

import base64
import json
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from rhoai_migrate.config import AppConfig
from rhoai_migrate.k8s import KubernetesClients
from rhoai_migrate.metadata import MetadataError
from rhoai_migrate.models import ExecResult
from rhoai_migrate.restore import RestoreStageError, TrustyAIRestoreExecutor, restore_errors

SERVICE_POD = "trustyai-service-5c8d"


def _b64(value: str) -> str:
    return base64.b64encode(value.encode("utf-8")).decode("ascii")


def _not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


def _pod(name: str, *, labels: dict[str, str] | None = None, mount_path: str | None = None) -> SimpleNamespace:
    mounts = [SimpleNamespace(name="volume", mount_path=mount_path)] if mount_path else []
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name, labels=labels or {}),
        spec=SimpleNamespace(
            containers=[SimpleNamespace(name="trustyai-service", volume_mounts=mounts)],
            volumes=[],
        ),
    )


def _clients(*, pods: list[SimpleNamespace], secrets: list[SimpleNamespace] | None = None) -> KubernetesClients:
    secrets = secrets or []
    core_api = Mock()
    custom_api = Mock()

    def list_pods(namespace: str, field_selector: str | None = None, label_selector: str | None = None) -> Any:
        selected = pods
        if label_selector:
            key, _, value = label_selector.partition("=")
            selected = [pod for pod in pods if pod.metadata.labels.get(key) == value]
        return SimpleNamespace(items=selected)

    def read_pod(name: str, namespace: str) -> SimpleNamespace:
        for pod in pods:
            if pod.metadata.name == name:
                return pod
        raise _not_found()

    def read_secret(name: str, namespace: str) -> SimpleNamespace:
        for secret in secrets:
            if secret.metadata.name == name:
                return secret
        raise _not_found()

    core_api.list_namespaced_pod.side_effect = list_pods
    core_api.read_namespaced_pod.side_effect = read_pod
    core_api.read_namespaced_secret.side_effect = read_secret
    core_api.list_namespaced_secret.return_value = SimpleNamespace(items=secrets)
    custom_api.get_namespaced_custom_object.return_value = {"spec": {"storage": {"format": "PVC"}}}
    custom_api.list_namespaced_custom_object.return_value = {
        "items": [{"metadata": {"name": "detected-service", "namespace": "ns1"}}]
    }
    return KubernetesClients(
        api_client=Mock(),
        core_api=core_api,
        apps_api=Mock(),
        custom_api=custom_api,
        version_api=Mock(),
    )


def _credentials_secret(name: str = "db-credentials") -> SimpleNamespace:
    return SimpleNamespace(
        metadata=SimpleNamespace(name=name),
        data={
            "databaseUsername": _b64("trusty"),
            "databasePassword": _b64("s3cret"),
            "databaseName": _b64("trustyai"),
        },
    )


def _database_clients() -> KubernetesClients:
    return _clients(
        pods=[_pod("mariadb-trustyai-service-0")],
        secrets=[_credentials_secret("trustyai-service-db-credentials")],
    )


def _executor(clients: KubernetesClients, oc: Mock) -> TrustyAIRestoreExecutor:
    return TrustyAIRestoreExecutor(clients=clients, oc=oc, config=AppConfig(exec_timeout_seconds=5))


def _pvc_backup(root: Path, *, files: dict[str, str], metadata: dict[str, Any] | None = None) -> Path:
    backup_dir = root / "trustyai-data-ns1-20260101-120000"
    data_dir = backup_dir / "data"
    data_dir.mkdir(parents=True)
    for name, content in files.items():
        (data_dir / name).write_text(content, encoding="utf-8")
    if metadata is not None:
        (backup_dir / "metadata.json").write_text(json.dumps(metadata), encoding="utf-8")
    return backup_dir


def _database_backup(root: Path, *, dump: str, metadata: dict[str, Any] | None = None) -> Path:
    backup_dir = root / "trustyai-db-ns1-20260101-120000"
    backup_dir.mkdir(parents=True)
    (backup_dir / "dump.sql").write_text(dump, encoding="utf-8")
    if metadata is not None:
        (backup_dir / "metadata.json").write_text(json.dumps(metadata), encoding="utf-8")
    return backup_dir


def _client_available(monkeypatch: pytest.MonkeyPatch, client: str = "mariadb") -> None:
    def which(clients: Any, **kwargs: Any) -> ExecResult:
        return ExecResult(returncode=0 if kwargs["command"][1] == client else 1, stdout="", stderr="")

    monkeypatch.setattr("rhoai_migrate.discovery.exec_in_pod", Mock(side_effect=which))


def test_restore_errors_keeps_only_error_lines() -> None:
    stderr = "Warning: Using a password on the command line\nERROR 1062 (23000): Duplicate entry\nerror 2 lower\n"

    assert restore_errors(stderr) == ["ERROR 1062 (23000): Duplicate entry", "error 2 lower"]


def test_restore_pvc_backup_rsyncs_data_directory_into_recorded_mount(tmp_path: Path) -> None:
    backup_dir = _pvc_backup(
        tmp_path,
        files={"a.txt": "a", "b.txt": "b"},
        metadata={"storageFormat": "PVC", "trustyaiService": "trustyai-service", "mountPath": "/inputs"},
    )
    oc = Mock()
    clients = _clients(pods=[_pod(SERVICE_POD, labels={"app": "trustyai-service"}, mount_path="/other")])

    outcome = _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir)

    oc.rsync.assert_called_once_with(
        namespace="ns1",
        source=f"{backup_dir / 'data'}/",
        destination=f"{SERVICE_POD}:/inputs/",
        container="trustyai-service",
    )
    assert outcome.file_count == 2
    assert outcome.target_pod == SERVICE_POD
    assert not outcome.dry_run


def test_restore_pvc_backup_without_metadata_discovers_mount_from_pod(tmp_path: Path) -> None:
    backup_dir = _pvc_backup(tmp_path, files={"a.txt": "a"})
    oc = Mock()
    clients = _clients(pods=[_pod("trustyai-service-xyz", mount_path="/inputs/")])

    _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir, service_name="trustyai-service")

    assert oc.rsync.call_args.kwargs["destination"] == "trustyai-service-xyz:/inputs/"


def test_restore_pvc_backup_uses_detected_service_when_no_name_given(tmp_path: Path) -> None:
    backup_dir = _pvc_backup(tmp_path, files={"a.txt": "a"})
    oc = Mock()
    clients = _clients(pods=[_pod("detected-service-0", labels={"app": "detected-service"}, mount_path="/inputs")])

    outcome = _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir)

    assert outcome.target_pod == "detected-service-0"


def test_restore_pvc_backup_with_zero_files_is_non_fatal(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    backup_dir = _pvc_backup(tmp_path, files={}, metadata={"storageFormat": "PVC", "trustyaiService": "svc"})
    oc = Mock()

    with caplog.at_level("WARNING"):
        outcome = _executor(_clients(pods=[]), oc).run(namespace="ns1", backup_path=backup_dir)

    assert outcome.target_pod is None
    assert outcome.file_count == 0
    oc.rsync.assert_not_called()
    assert "Nothing to restore" in caplog.text


def test_restore_pvc_backup_in_dry_run_does_not_copy(tmp_path: Path, caplog: pytest.LogCaptureFixture) -> None:
    backup_dir = _pvc_backup(
        tmp_path,
        files={f"file-{index:02d}.csv": "x" for index in range(25)},
        metadata={"storageFormat": "PVC", "trustyaiService": "trustyai-service", "mountPath": "/inputs"},
    )
    oc = Mock()
    clients = _clients(pods=[_pod(SERVICE_POD, labels={"app": "trustyai-service"})])

    with caplog.at_level("INFO"):
        outcome = _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir, dry_run=True)

    oc.rsync.assert_not_called()
    assert outcome.dry_run
    assert outcome.file_count == 25
    assert "[DRY RUN] ... and 5 more" in caplog.text


def test_restore_pvc_backup_without_service_pod_raises_discover_stage_error(tmp_path: Path) -> None:
    backup_dir = _pvc_backup(tmp_path, files={"a.txt": "a"}, metadata={"storageFormat": "PVC", "trustyaiService": "svc"})

    with pytest.raises(RestoreStageError, match="discover stage failed"):
        _executor(_clients(pods=[]), Mock()).run(namespace="ns1", backup_path=backup_dir)


def test_restore_with_metadata_declaring_pvc_but_no_data_directory_raises_validate_error(tmp_path: Path) -> None:
    (tmp_path / "metadata.json").write_text(json.dumps({"storageFormat": "PVC"}), encoding="utf-8")

    with pytest.raises(RestoreStageError, match="validate stage failed: No data/ subdirectory"):
        _executor(_clients(pods=[]), Mock()).run(namespace="ns1", backup_path=tmp_path, service_name="svc")


def test_restore_with_unrecognised_backup_layout_raises_metadata_error(tmp_path: Path) -> None:
    with pytest.raises(MetadataError, match="Cannot determine backup type"):
        _executor(_clients(pods=[]), Mock()).run(namespace="ns1", backup_path=tmp_path)


def test_restore_with_metadata_mixing_pvc_and_database_fields_fails_before_touching_cluster(tmp_path: Path) -> None:
    (tmp_path / "data").mkdir()
    metadata = {"storageFormat": "PVC", "mountPath": "/inputs", "mariadbPod": "mariadb-0"}
    (tmp_path / "metadata.json").write_text(json.dumps(metadata), encoding="utf-8")
    clients = _clients(pods=[])
    oc = Mock()

    with pytest.raises(MetadataError, match="Invalid backup metadata"):
        _executor(clients, oc).run(namespace="ns1", backup_path=tmp_path)

    clients.core_api.read_namespace.assert_not_called()
    oc.rsync.assert_not_called()


def test_restore_database_backup_pipes_dump_and_counts_tables(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    backup_dir = _database_backup(
        tmp_path,
        dump="-- dump\nCREATE TABLE a (id int);\nCREATE TABLE b (id int);\n",
        metadata={
            "storageFormat": "DATABASE",
            "trustyaiService": "trustyai-service",
            "credentialsSecret": "db-credentials",
            "mariadbPod": "mariadb-custom-0",
        },
    )
    clients = _clients(pods=[_pod("mariadb-custom-0")], secrets=[_credentials_secret()])
    _client_available(monkeypatch)
    count = Mock(return_value=ExecResult(returncode=0, stdout="a\nb\n", stderr=""))
    monkeypatch.setattr("rhoai_migrate.restore.exec_in_pod", count)
    oc = Mock()
    oc.exec_with_input.return_value = ExecResult(returncode=0, stdout="", stderr="Warning: something benign\n")

    outcome = _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir)

    kwargs = oc.exec_with_input.call_args.kwargs
    assert kwargs["pod_name"] == "mariadb-custom-0"
    assert kwargs["container"] == "mariadb"
    assert kwargs["command"] == ["mariadb", "-u", "trusty", "-ps3cret", "trustyai"]
    assert outcome.table_count == 2
    assert outcome.target_pod == "mariadb-custom-0"
    assert count.call_args.kwargs["command"][-1] == "SHOW TABLES;"


def test_restore_database_backup_with_error_lines_raises_restore_stage_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    backup_dir = _database_backup(tmp_path, dump="-- dump\nINSERT INTO a VALUES (1);\n")
    clients = _database_clients()
    _client_available(monkeypatch, "mysql")
    oc = Mock()
    oc.exec_with_input.return_value = ExecResult(
        returncode=1,
        stdout="",
        stderr="ERROR 1146 (42S02): Table 'a' doesn't exist\n",
    )

    with pytest.raises(RestoreStageError, match="restore stage failed: Database restore failed: ERROR 1146"):
        _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir, service_name="trustyai-service")


def test_restore_database_backup_in_dry_run_does_not_execute(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    backup_dir = _database_backup(tmp_path, dump="-- header one\n-- header two\nCREATE TABLE a (id int);\n")
    clients = _database_clients()
    _client_available(monkeypatch)
    oc = Mock()

    with caplog.at_level("INFO"):
        outcome = _executor(clients, oc).run(
            namespace="ns1",
            backup_path=backup_dir,
            service_name="trustyai-service",
            dry_run=True,
        )

    oc.exec_with_input.assert_not_called()
    assert outcome.dry_run
    assert outcome.target_pod == "mariadb-trustyai-service-0"
    assert "-- header two" in caplog.text


def test_restore_database_backup_with_single_line_dump_is_fatal(tmp_path: Path) -> None:
    backup_dir = _database_backup(tmp_path, dump="-- only line\n")

    with pytest.raises(RestoreStageError, match="validate stage failed: SQL dump appears empty \\(1 lines\\)"):
        _executor(_clients(pods=[]), Mock()).run(namespace="ns1", backup_path=backup_dir, service_name="svc")


def test_restore_database_backup_without_client_raises_discover_stage_error(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    backup_dir = _database_backup(tmp_path, dump="-- dump\nSELECT 1;\n")
    clients = _database_clients()
    _client_available(monkeypatch, "psql")

    with pytest.raises(RestoreStageError, match="Neither mariadb nor mysql client found"):
        _executor(clients, Mock()).run(namespace="ns1", backup_path=backup_dir, service_name="trustyai-service")


def test_restore_database_backup_with_table_count_api_error_still_succeeds(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    backup_dir = _database_backup(tmp_path, dump="-- dump\nSELECT 1;\n")
    clients = _database_clients()
    _client_available(monkeypatch)
    monkeypatch.setattr(
        "rhoai_migrate.restore.exec_in_pod",
        Mock(side_effect=ApiException(status=500, reason="exec failed")),
    )
    oc = Mock()
    oc.exec_with_input.return_value = ExecResult(returncode=0, stdout="", stderr="")

    outcome = _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir, service_name="trustyai-service")

    assert outcome.table_count == 0
    assert not outcome.dry_run


def test_restore_database_backup_with_table_count_timeout_still_succeeds(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
    caplog: pytest.LogCaptureFixture,
) -> None:
    backup_dir = _database_backup(tmp_path, dump="-- dump\nSELECT 1;\n")
    clients = _database_clients()
    _client_available(monkeypatch)
    monkeypatch.setattr(
        "rhoai_migrate.restore.exec_in_pod",
        Mock(side_effect=TimeoutError("command 'mariadb' in pod ns1/mariadb-0 did not finish within 5s")),
    )
    oc = Mock()
    oc.exec_with_input.return_value = ExecResult(returncode=0, stdout="", stderr="")

    with caplog.at_level("WARNING"):
        outcome = _executor(clients, oc).run(namespace="ns1", backup_path=backup_dir, service_name="trustyai-service")

    assert outcome.table_count == 0
    assert "Could not count tables after restore: command 'mariadb'" in caplog.text
