from __future__ import annotations

import copy
import io
from pathlib import Path
from types import SimpleNamespace
from typing import Any
from unittest.mock import Mock

import pytest
from kubernetes.client import ApiException

from rhoai_migrate.k8s import KubernetesClients, KubernetesDiscoveryError
from rhoai_migrate.workbench import (
    INJECT_AUTH_ANNOTATION,
    INJECT_OAUTH_ANNOTATION,
    OAUTH_FINALIZER,
    OAUTH_LOGOUT_URL_ANNOTATION,
    PHASE_ALL,
    PHASE_CLEANUP,
    QUEUE_NAME_LABEL,
    STOPPED_ANNOTATION,
    StoppedWorkbenchTracker,
    WorkbenchUpgrader,
    all_passed,
    build_notebook_patch,
    check_migration,
    confirm_operation,
)


def _not_found() -> ApiException:
    return ApiException(status=404, reason="Not Found")


def _notebook(
    *,
    annotations: dict[str, str] | None = None,
    containers: list[dict[str, Any]] | None = None,
    volumes: list[dict[str, Any]] | None = None,
    finalizers: list[str] | None = None,
    labels: dict[str, str] | None = None,
) -> dict[str, Any]:
    metadata: dict[str, Any] = {"name": "wb", "namespace": "team-a"}
    if annotations is not None:
        metadata["annotations"] = annotations
    if finalizers is not None:
        metadata["finalizers"] = finalizers
    if labels is not None:
        metadata["labels"] = labels
    return {
        "apiVersion": "kubeflow.org/v1",
        "kind": "Notebook",
        "metadata": metadata,
        "spec": {
            "template": {
                "spec": {
                    "containers": containers if containers is not None else [{"name": "wb"}],
                    "volumes": volumes or [],
                }
            }
        },
    }


def _legacy_notebook() -> dict[str, Any]:
    return _notebook(
        annotations={INJECT_OAUTH_ANNOTATION: "true"},
        containers=[{"name": "notebook"}, {"name": "oauth-proxy"}],
    )


def _migrated_notebook() -> dict[str, Any]:
    return _notebook(
        annotations={INJECT_AUTH_ANNOTATION: "true"},
        containers=[{"name": "notebook"}, {"name": "kube-rbac-proxy"}],
    )


def _apply(document: dict[str, Any], operations: list[dict[str, Any]]) -> dict[str, Any]:
    patched = copy.deepcopy(document)
    for operation in operations:
        tokens = [token.replace("~1", "/").replace("~0", "~") for token in operation["path"].split("/")[1:]]
        parent: Any = patched
        for token in tokens[:-1]:
            parent = parent[int(token)] if isinstance(parent, list) else parent[token]
        last = tokens[-1]
        if isinstance(parent, list):
            index = int(last)
            if operation["op"] == "remove":
                del parent[index]
            elif operation["op"] == "replace":
                parent[index] = operation["value"]
            else:
                parent.insert(index, operation["value"])
        elif operation["op"] == "remove":
            del parent[last]
        else:
            parent[last] = operation["value"]
    return patched


def _clients(
    *,
    custom_api: Mock | None = None,
    core_api: Mock | None = None,
    apps_api: Mock | None = None,
) -> KubernetesClients:
    if core_api is None:
        core_api = Mock()
        core_api.list_namespaced_pod.return_value = SimpleNamespace(items=[])
    return KubernetesClients(
        api_client=Mock(),
        core_api=core_api,
        apps_api=apps_api or Mock(),
        custom_api=custom_api or Mock(),
        version_api=Mock(),
    )


def _upgrader(clients: KubernetesClients, **kwargs: Any) -> WorkbenchUpgrader:
    kwargs.setdefault("poll_interval_seconds", 0)
    kwargs.setdefault("interactive", lambda: False)
    return WorkbenchUpgrader(clients=clients, **kwargs)


def test_build_notebook_patch_for_legacy_notebook_produces_migrated_shape() -> None:
    notebook = _legacy_notebook()

    operations = build_notebook_patch(notebook)
    patched = _apply(notebook, operations)

    assert [container["name"] for container in patched["spec"]["template"]["spec"]["containers"]] == ["notebook"]
    assert patched["metadata"]["annotations"] == {INJECT_AUTH_ANNOTATION: "true"}
    assert build_notebook_patch(patched) == []


def test_build_notebook_patch_for_migrated_notebook_is_empty() -> None:
    assert build_notebook_patch(_migrated_notebook()) == []


def test_build_notebook_patch_without_annotations_adds_annotation_map() -> None:
    operations = build_notebook_patch(_notebook(containers=[{"name": "notebook"}]))

    assert operations == [
        {"op": "add", "path": "/metadata/annotations", "value": {INJECT_AUTH_ANNOTATION: "true"}},
    ]


def test_build_notebook_patch_orders_array_removals_by_descending_numeric_index() -> None:
    volumes = [{"name": f"vol-{index}"} for index in range(11)]
    volumes[2] = {"name": "oauth-config"}
    volumes[10] = {"name": "tls-certificates"}
    notebook = _notebook(annotations={INJECT_AUTH_ANNOTATION: "true"}, volumes=volumes)

    operations = build_notebook_patch(notebook)

    assert [operation["path"] for operation in operations] == [
        "/spec/template/spec/volumes/10",
        "/spec/template/spec/volumes/2",
    ]
    remaining = _apply(notebook, operations)["spec"]["template"]["spec"]["volumes"]
    assert [volume["name"] for volume in remaining] == [f"vol-{index}" for index in range(11) if index not in {2, 10}]


def test_build_notebook_patch_strips_tornado_settings_and_legacy_metadata() -> None:
    notebook = _notebook(
        annotations={
            INJECT_AUTH_ANNOTATION: "false",
            INJECT_OAUTH_ANNOTATION: "true",
            OAUTH_LOGOUT_URL_ANNOTATION: "https://logout",
        },
        finalizers=["keep.me/finalizer", OAUTH_FINALIZER],
        containers=[
            {
                "name": "notebook",
                "env": [
                    {"name": "JUPYTER_IMAGE", "value": "img"},
                    {
                        "name": "NOTEBOOK_ARGS",
                        "value": "--ServerApp.port=8888\n"
                        "                  --ServerApp.tornado_settings={\"user\":\"x\"}\n"
                        "--ServerApp.base_url=/notebook/team-a/wb",
                    },
                ],
            },
            {"name": "oauth-proxy"},
        ],
        volumes=[{"name": "oauth-client"}, {"name": "shm"}],
    )

    patched = _apply(notebook, build_notebook_patch(notebook))

    metadata = patched["metadata"]
    assert metadata["annotations"] == {INJECT_AUTH_ANNOTATION: "true"}
    assert metadata["finalizers"] == ["keep.me/finalizer"]
    pod_spec = patched["spec"]["template"]["spec"]
    assert [volume["name"] for volume in pod_spec["volumes"]] == ["shm"]
    assert pod_spec["containers"][0]["env"][1]["value"] == (
        "--ServerApp.port=8888\n--ServerApp.base_url=/notebook/team-a/wb"
    )
    assert all_passed(check_migration({**patched, "spec": _with_rbac_proxy(pod_spec)})) is True


def _with_rbac_proxy(pod_spec: dict[str, Any]) -> dict[str, Any]:
    return {"template": {"spec": {**pod_spec, "containers": [*pod_spec["containers"], {"name": "kube-rbac-proxy"}]}}}


def test_build_notebook_patch_with_queue_name_sets_label() -> None:
    notebook = _notebook(annotations={INJECT_AUTH_ANNOTATION: "true"}, labels={"app": "wb"})

    operations = build_notebook_patch(notebook, queue_name="default")

    assert operations == [
        {"op": "add", "path": "/metadata/labels/kueue.x-k8s.io~1queue-name", "value": "default"},
    ]
    assert build_notebook_patch(_apply(notebook, operations), queue_name="default") == []


def test_build_notebook_patch_with_queue_name_and_no_labels_adds_label_map() -> None:
    operations = build_notebook_patch(_notebook(annotations={INJECT_AUTH_ANNOTATION: "true"}), queue_name="q1")

    assert operations == [{"op": "add", "path": "/metadata/labels", "value": {QUEUE_NAME_LABEL: "q1"}}]


def test_check_migration_without_notebook_reports_single_failure() -> None:
    results = check_migration(None)

    assert len(results) == 1
    assert results[0].description == "Notebook not found"
    assert not results[0].passed


def test_check_migration_for_legacy_notebook_reports_each_failure() -> None:
    results = check_migration(_legacy_notebook())

    failed = [result.description for result in results if not result.passed]
    assert "inject-auth annotation missing or incorrect (found: '')" in failed
    assert "Legacy inject-oauth annotation still exists: 'true'" in failed
    assert "kube-rbac-proxy sidecar container missing" in failed
    assert "Legacy oauth-proxy sidecar still present (RHOAI 2.x)" in failed


def test_check_migration_for_migrated_notebook_passes() -> None:
    results = check_migration(_migrated_notebook())

    assert len(results) == 5
    assert all_passed(results)


def test_confirm_operation_accepts_only_literal_yes() -> None:
    output = io.StringIO()
    kwargs = {"cluster": "https://api", "user": "admin", "target": "ALL notebooks", "assume_yes": False, "output": output}

    assert confirm_operation("BANNER\n", input_func=lambda prompt: "yes", **kwargs) is True
    assert confirm_operation("BANNER\n", input_func=lambda prompt: "y", **kwargs) is False
    assert "  Cluster: https://api\n" in output.getvalue()


def test_confirm_operation_with_closed_stdin_declines() -> None:
    def _eof(prompt: str) -> str:
        raise EOFError

    confirmed = confirm_operation(
        "BANNER\n",
        cluster="c",
        user="u",
        target="t",
        assume_yes=False,
        input_func=_eof,
        output=io.StringIO(),
    )

    assert confirmed is False


def test_confirm_operation_with_assume_yes_skips_prompt() -> None:
    prompt = Mock()

    assert confirm_operation("B", cluster="c", user="u", target="t", assume_yes=True, input_func=prompt, output=io.StringIO())
    prompt.assert_not_called()


def test_stopped_workbench_tracker_removes_marker_when_everything_restarted(tmp_path: Path) -> None:
    marker = tmp_path / "stopped.txt"

    with StoppedWorkbenchTracker(marker) as tracker:
        tracker.record("team-a", "wb")
        assert marker.read_text(encoding="utf-8") == "team-a/wb\n"
        tracker.release("team-a", "wb")

    assert not marker.exists()


def test_stopped_workbench_tracker_keeps_marker_and_warns_when_workbenches_remain_stopped(
    tmp_path: Path,
    caplog: pytest.LogCaptureFixture,
) -> None:
    marker = tmp_path / "stopped.txt"
    tracker = StoppedWorkbenchTracker(marker)
    tracker.record("team-a", "wb")
    tracker.record("team-b", "other")
    tracker.release("team-a", "wb")

    with caplog.at_level("WARNING"):
        tracker.close()

    assert marker.read_text(encoding="utf-8") == "team-b/other\n"
    assert tracker.remaining() == [("team-b", "other")]
    assert f"oc annotate notebook other -n team-b {STOPPED_ANNOTATION}-" in caplog.text


def test_patch_stops_patches_deletes_statefulset_and_restarts(tmp_path: Path) -> None:
    legacy = _legacy_notebook()
    stopped = copy.deepcopy(legacy)
    stopped["metadata"]["annotations"][STOPPED_ANNOTATION] = "2026-01-01T00:00:00Z"
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = [legacy, stopped]
    apps_api = Mock()
    tracker = StoppedWorkbenchTracker(tmp_path / "stopped.txt")

    ok = _upgrader(_clients(custom_api=custom_api, apps_api=apps_api), tracker=tracker).patch("wb", "team-a")

    assert ok is True
    bodies = [call.kwargs["body"] for call in custom_api.patch_namespaced_custom_object.call_args_list]
    assert len(bodies) == 3
    assert bodies[0][0]["op"] == "add"
    assert bodies[0][0]["path"] == "/metadata/annotations/kubeflow-resource-stopped"
    assert {"op": "remove", "path": "/spec/template/spec/containers/1"} in bodies[1]
    assert bodies[2] == [{"op": "remove", "path": "/metadata/annotations/kubeflow-resource-stopped"}]
    apps_api.delete_namespaced_stateful_set.assert_called_once_with(name="wb", namespace="team-a")
    assert tracker.remaining() == []


def test_patch_with_skip_stop_applies_single_patch() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = _legacy_notebook()

    ok = _upgrader(_clients(custom_api=custom_api), skip_stop=True).patch("wb", "team-a")

    assert ok is True
    assert custom_api.patch_namespaced_custom_object.call_count == 1


def test_patch_with_already_migrated_notebook_skips_without_touching_cluster() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = _migrated_notebook()
    apps_api = Mock()

    ok = _upgrader(_clients(custom_api=custom_api, apps_api=apps_api)).patch("wb", "team-a")

    assert ok is True
    custom_api.patch_namespaced_custom_object.assert_not_called()
    apps_api.delete_namespaced_stateful_set.assert_not_called()


def test_patch_with_missing_notebook_returns_false() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = _not_found()

    assert _upgrader(_clients(custom_api=custom_api)).patch("wb", "team-a") is False


def test_patch_with_failed_migration_patch_still_restarts_workbench(tmp_path: Path) -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = _legacy_notebook()
    custom_api.patch_namespaced_custom_object.side_effect = [
        None,
        ApiException(status=422, reason="Unprocessable Entity"),
        None,
    ]
    tracker = StoppedWorkbenchTracker(tmp_path / "stopped.txt")

    with pytest.raises(KubernetesDiscoveryError, match="422"):
        _upgrader(_clients(custom_api=custom_api), tracker=tracker).patch("wb", "team-a")

    assert custom_api.patch_namespaced_custom_object.call_count == 3
    assert tracker.remaining() == []


def test_process_all_counts_failures_and_continues() -> None:
    custom_api = Mock()
    custom_api.list_cluster_custom_object.return_value = {
        "items": [
            {"metadata": {"name": "wb-b", "namespace": "team-a"}},
            {"metadata": {"name": "wb-a", "namespace": "team-a"}},
            {"metadata": {"name": "wb-c", "namespace": "team-b"}},
        ]
    }
    operation = Mock(side_effect=[True, RuntimeError("boom"), False])

    summary = _upgrader(_clients(custom_api=custom_api)).process_all(operation)

    assert [call.args for call in operation.call_args_list] == [
        ("wb-a", "team-a"),
        ("wb-b", "team-a"),
        ("wb-c", "team-b"),
    ]
    assert summary.total == 3
    assert summary.failed_items == ["team-a/wb-b", "team-b/wb-c"]


def test_cleanup_with_passing_prechecks_deletes_legacy_oauth_objects() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = _migrated_notebook()
    custom_api.delete_namespaced_custom_object.side_effect = _not_found()
    core_api = Mock()

    ok = _upgrader(_clients(custom_api=custom_api, core_api=core_api)).cleanup("wb", "team-a")

    assert ok is True
    assert [call.kwargs["name"] for call in core_api.delete_namespaced_service.call_args_list] == ["wb", "wb-tls"]
    assert [call.kwargs["name"] for call in core_api.delete_namespaced_secret.call_args_list] == [
        "wb-oauth-client",
        "wb-oauth-config",
        "wb-tls",
    ]
    custom_api.delete_cluster_custom_object.assert_called_once_with(
        group="oauth.openshift.io",
        version="v1",
        plural="oauthclients",
        name="wb-team-a-oauth-client",
    )


def test_cleanup_with_failing_prechecks_and_no_terminal_skips_deletion() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = _legacy_notebook()
    core_api = Mock()

    ok = _upgrader(_clients(custom_api=custom_api, core_api=core_api)).cleanup("wb", "team-a")

    assert ok is True
    core_api.delete_namespaced_secret.assert_not_called()
    custom_api.delete_cluster_custom_object.assert_not_called()


def test_cleanup_with_failing_prechecks_and_operator_confirmation_proceeds() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.return_value = _legacy_notebook()
    core_api = Mock()
    upgrader = _upgrader(
        _clients(custom_api=custom_api, core_api=core_api),
        interactive=lambda: True,
        input_func=lambda prompt: "yes",
    )

    upgrader.cleanup("wb", "team-a")

    assert core_api.delete_namespaced_secret.call_count == 3


def test_verify_cleanup_phase_passes_when_every_legacy_object_is_gone() -> None:
    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = _not_found()
    custom_api.get_cluster_custom_object.side_effect = _not_found()
    core_api = Mock()
    core_api.read_namespaced_service.side_effect = _not_found()
    core_api.read_namespaced_secret.side_effect = _not_found()

    assert _upgrader(_clients(custom_api=custom_api, core_api=core_api)).verify("wb", "team-a", phase=PHASE_CLEANUP)


def test_verify_all_phase_fails_when_oauth_client_remains() -> None:
    def get_object(**kwargs: Any) -> dict[str, Any]:
        if kwargs["plural"] == "notebooks":
            return _migrated_notebook()
        raise _not_found()

    custom_api = Mock()
    custom_api.get_namespaced_custom_object.side_effect = get_object
    custom_api.get_cluster_custom_object.return_value = {"metadata": {"name": "wb-team-a-oauth-client"}}
    core_api = Mock()
    core_api.read_namespaced_service.side_effect = _not_found()
    core_api.read_namespaced_secret.side_effect = _not_found()

    upgrader = _upgrader(_clients(custom_api=custom_api, core_api=core_api))
    results = upgrader.check_cleanup("wb", "team-a")

    assert upgrader.verify("wb", "team-a", phase=PHASE_ALL) is False
    assert [result.description for result in results if not result.passed] == [
        "OAuthClient 'wb-team-a-oauth-client' still exists"
    ]


def test_verify_with_unknown_phase_raises_value_error() -> None:
    with pytest.raises(ValueError, match="Invalid --phase"):
        _upgrader(_clients()).verify("wb", "team-a", phase="bogus")
