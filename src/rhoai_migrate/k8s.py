from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import time
from typing import Any, Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException
from kubernetes.stream import stream

from .models import ExecResult

T = TypeVar("T")


@dataclass(frozen=True)
class CustomResource:
    group: str
    version: str
    plural: str
    kind: str


TRUSTYAI_SERVICE = CustomResource("trustyai.opendatahub.io", "v1", "trustyaiservices", "TrustyAIService")
GUARDRAILS_ORCHESTRATOR = CustomResource(
    "trustyai.opendatahub.io", "v1alpha1", "guardrailsorchestrators", "GuardrailsOrchestrator"
)
NOTEBOOK = CustomResource("kubeflow.org", "v1", "notebooks", "Notebook")
LLAMASTACK_DISTRIBUTION = CustomResource("llamastack.io", "v1alpha1", "llamastackdistributions", "LlamaStackDistribution")
PYTORCH_JOB = CustomResource("kubeflow.org", "v1", "pytorchjobs", "PyTorchJob")
ROUTE = CustomResource("route.openshift.io", "v1", "routes", "Route")
OAUTH_CLIENT = CustomResource("oauth.openshift.io", "v1", "oauthclients", "OAuthClient")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    apps_api: client.AppsV1Api
    custom_api: client.CustomObjectsApi
    version_api: client.VersionApi


class KubernetesDiscoveryError(RuntimeError):
    """Raised when a Kubernetes API call fails for a reason other than not-found."""


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class PreconditionError(RuntimeError):
    """Raised when the cluster is not in a state where the operation can start."""


def load_kubernetes_clients(
    *,
    kubeconfig_path: str | None,
    context: str | None,
    in_cluster: bool,
) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    try:
        if in_cluster:
            config.load_incluster_config()
        else:
            config.load_kube_config(config_file=expanded, context=context)
    except Exception as error:  # pylint: disable=broad-except
        raise KubernetesAuthenticationError(
            _format_authentication_error(
                in_cluster=in_cluster,
                kubeconfig_path=expanded,
                context=context,
                error=error,
            )
        ) from error

    api_client = client.ApiClient()
    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        apps_api=client.AppsV1Api(api_client),
        custom_api=client.CustomObjectsApi(api_client),
        version_api=client.VersionApi(api_client),
    )


def check_cluster_access(clients: KubernetesClients) -> str:
    """Return the API server URL after confirming the API answers with the loaded credentials."""
    try:
        clients.version_api.get_code()
    except ApiException as error:
        if error.status in {401, 403}:
            raise PreconditionError(
                "Not logged in to the OpenShift cluster (API rejected the credentials). Run 'oc login' first."
            ) from error
        raise PreconditionError(
            _format_api_exception_message(
                operation="reach the cluster API",
                hint="Confirm cluster connectivity and kubeconfig context.",
                error=error,
            )
        ) from error
    except Exception as error:  # pylint: disable=broad-except
        raise PreconditionError(f"Unable to reach the cluster API: {_error_message(error)}") from error
    return cluster_server(clients)


def cluster_server(clients: KubernetesClients) -> str:
    configuration = getattr(clients.api_client, "configuration", None)
    host = getattr(configuration, "host", None)
    return str(host) if host else "<unknown>"


def ensure_namespace_exists(clients: KubernetesClients, namespace: str) -> None:
    found = safe_read(
        operation=f"read namespace '{namespace}'",
        hint="Verify RBAC allows get on namespaces.",
        func=lambda: clients.core_api.read_namespace(name=namespace),
    )
    if found is None:
        raise PreconditionError(f"Namespace {namespace} does not exist")


def safe_read(*, operation: str, hint: str, func: Callable[[], T]) -> T | None:
    """Run a read call, mapping 404 to ``None`` and any other API failure to a discovery error."""
    try:
        return func()
    except ApiException as error:
        if error.status == 404:
            return None
        raise KubernetesDiscoveryError(
            _format_api_exception_message(operation=operation, hint=hint, error=error)
        ) from error


def safe_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        raise KubernetesDiscoveryError(
            _format_api_exception_message(operation=operation, hint=hint, error=error)
        ) from error


def delete_ignoring_missing(*, operation: str, hint: str, func: Callable[[], object]) -> bool:
    """Run a delete call; return ``False`` when the object was already gone."""
    try:
        func()
    except ApiException as error:
        if error.status == 404:
            return False
        raise KubernetesDiscoveryError(
            _format_api_exception_message(operation=operation, hint=hint, error=error)
        ) from error
    return True


def current_user(clients: KubernetesClients) -> str:
    try:
        user = clients.custom_api.get_cluster_custom_object(
            group="user.openshift.io",
            version="v1",
            plural="users",
            name="~",
        )
    except ApiException:
        return "<unknown>"
    return str((user.get("metadata") or {}).get("name") or "<unknown>")


def get_custom_object(
    clients: KubernetesClients,
    resource: CustomResource,
    *,
    namespace: str,
    name: str,
) -> dict[str, Any] | None:
    return safe_read(
        operation=f"get {resource.kind} '{namespace}/{name}'",
        hint=f"Verify the {resource.kind} CRD is installed and RBAC allows get on {resource.plural}.",
        func=lambda: clients.custom_api.get_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
        ),
    )


def list_custom_objects(
    clients: KubernetesClients,
    resource: CustomResource,
    *,
    namespace: str | None = None,
) -> list[dict[str, Any]]:
    hint = f"Verify the {resource.kind} CRD is installed and RBAC allows list on {resource.plural}."
    if namespace is None:
        response = safe_read(
            operation=f"list {resource.kind} resources across all namespaces",
            hint=hint,
            func=lambda: clients.custom_api.list_cluster_custom_object(
                group=resource.group,
                version=resource.version,
                plural=resource.plural,
            ),
        )
    else:
        response = safe_read(
            operation=f"list {resource.kind} resources in namespace '{namespace}'",
            hint=hint,
            func=lambda: clients.custom_api.list_namespaced_custom_object(
                group=resource.group,
                version=resource.version,
                namespace=namespace,
                plural=resource.plural,
            ),
        )
    if not response:
        return []
    items = response.get("items") or []
    return sorted(items, key=lambda item: (_metadata(item).get("namespace", ""), _metadata(item).get("name", "")))


def list_running_pods(clients: KubernetesClients, namespace: str, *, label_selector: str | None = None) -> list[Any]:
    kwargs: dict[str, Any] = {"namespace": namespace, "field_selector": "status.phase=Running"}
    if label_selector:
        kwargs["label_selector"] = label_selector
    pods = safe_call(
        operation=f"list running pods in namespace '{namespace}'",
        hint="Check RBAC verbs for pods and confirm the namespace still exists.",
        func=lambda: clients.core_api.list_namespaced_pod(**kwargs).items,
    )
    return sorted(pods or [], key=lambda pod: pod.metadata.name or "")


def list_pod_names(clients: KubernetesClients, namespace: str) -> list[str]:
    pods = safe_call(
        operation=f"list pods in namespace '{namespace}'",
        hint="Check RBAC verbs for pods.",
        func=lambda: clients.core_api.list_namespaced_pod(namespace=namespace).items,
    )
    return sorted(pod.metadata.name for pod in pods or [] if pod.metadata and pod.metadata.name)


def list_secret_names(clients: KubernetesClients, namespace: str) -> list[str]:
    secrets = safe_call(
        operation=f"list secrets in namespace '{namespace}'",
        hint="Check RBAC verbs for secrets.",
        func=lambda: clients.core_api.list_namespaced_secret(namespace=namespace).items,
    )
    return sorted(secret.metadata.name for secret in secrets or [] if secret.metadata and secret.metadata.name)


def exec_in_pod(
    clients: KubernetesClients,
    *,
    namespace: str,
    pod_name: str,
    command: list[str],
    container: str | None = None,
    timeout_seconds: int = 600,
    stdout_handle: Any | None = None,
) -> ExecResult:
    """Run a command inside a pod and collect its exit code.

    When ``stdout_handle`` is given, stdout is streamed into it instead of being buffered.
    """
    kwargs: dict[str, Any] = {
        "command": command,
        "stderr": True,
        "stdin": False,
        "stdout": True,
        "tty": False,
        "_preload_content": False,
    }
    if container:
        kwargs["container"] = container
    response = stream(
        clients.core_api.connect_get_namespaced_pod_exec,
        pod_name,
        namespace,
        **kwargs,
    )

    stdout_chunks: list[str] = []
    stderr_chunks: list[str] = []
    deadline = time.time() + timeout_seconds
    try:
        while response.is_open():
            response.update(timeout=1)
            if response.peek_stdout():
                chunk = response.read_stdout()
                if stdout_handle is not None:
                    stdout_handle.write(chunk)
                else:
                    stdout_chunks.append(chunk)
            if response.peek_stderr():
                stderr_chunks.append(response.read_stderr())
            if time.time() > deadline:
                raise TimeoutError(
                    f"command {command[0]!r} in pod {namespace}/{pod_name} did not finish within {timeout_seconds}s"
                )
    finally:
        response.close()

    returncode = response.returncode
    return ExecResult(
        returncode=returncode if returncode is not None else 1,
        stdout="".join(stdout_chunks),
        stderr="".join(stderr_chunks),
    )


def json_patch_custom_object(
    clients: KubernetesClients,
    resource: CustomResource,
    *,
    namespace: str,
    name: str,
    operations: list[dict[str, Any]],
) -> dict[str, Any]:
    """Apply an RFC 6902 patch; a list body makes the client send application/json-patch+json."""
    return safe_call(
        operation=f"patch {resource.kind} '{namespace}/{name}'",
        hint=f"Verify RBAC allows patch on {resource.plural}.",
        func=lambda: clients.custom_api.patch_namespaced_custom_object(
            group=resource.group,
            version=resource.version,
            namespace=namespace,
            plural=resource.plural,
            name=name,
            body=operations,
        ),
    )


def escape_json_pointer(token: str) -> str:
    return token.replace("~", "~0").replace("/", "~1")


def describe_volume_mounts(pod: Any) -> list[str]:
    containers = pod.spec.containers if pod.spec and pod.spec.containers else []
    if not containers:
        return []
    return [f"{mount.name}: {mount.mount_path}" for mount in containers[0].volume_mounts or []]


def _metadata(item: dict[str, Any]) -> dict[str, Any]:
    return item.get("metadata") or {}


def _format_api_exception_message(*, operation: str, hint: str, error: ApiException) -> str:
    status = error.status if error.status is not None else "unknown"
    reason = error.reason or "no reason provided"
    return (
        f"Kubernetes API call failed while trying to {operation}: "
        f"API status {status} ({reason}). {hint}"
    )


def _error_message(error: Exception) -> str:
    message = str(error).strip()
    return message or error.__class__.__name__


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(
    *,
    in_cluster: bool,
    kubeconfig_path: str | None,
    context: str | None,
    error: Exception,
) -> str:
    reason = str(error).strip() or error.__class__.__name__
    if in_cluster:
        return (
            "Kubernetes authentication setup failed while loading in-cluster service account credentials: "
            f"{reason}. Ensure the pod has a mounted service account token and Kubernetes service host "
            "environment variables."
        )

    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Run 'oc login' or verify the kubeconfig path and context are valid."
    )
