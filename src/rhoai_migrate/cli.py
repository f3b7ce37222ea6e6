from __future__ import annotations

import argparse
from datetime import datetime
from functools import partial
import logging
from pathlib import Path
import sys
from typing import Callable, TextIO

from .backup import TIMESTAMP_FORMAT, BackupStageError, TrustyAIBackupExecutor
from .config import AppConfig
from .discovery import DiscoveryError
from .guardrails import RESULT_FAILED, RESULT_PREVIEW, GuardrailsPatcher
from .k8s import (
    KubernetesAuthenticationError,
    KubernetesClients,
    KubernetesDiscoveryError,
    PreconditionError,
    check_cluster_access,
    cluster_server,
    current_user,
    ensure_namespace_exists,
    load_kubernetes_clients,
)
from .llamastack import LlamaStackBackup
from .metadata import MetadataError
from .models import UnknownStorageFormatError
from .restore import RestoreStageError, TrustyAIRestoreExecutor
from .sqldump import SqlDumpError
from .trainer import TrainerVerificationError, TrainerVerifier
from .transfer import OcCommandError, OcCommandRunner
from .workbench import (
    CLEANUP_WARNING,
    PATCH_WARNING,
    PHASE_MIGRATION,
    VERIFY_PHASES,
    StoppedWorkbenchTracker,
    WorkbenchUpgrader,
    confirm_operation,
)

PACKAGE_LOGGER = "rhoai_migrate"

_STAGE_HINTS: tuple[tuple[str, str], ...] = (
    (
        "discover stage failed",
        "Check the namespace, the TrustyAIService name (-s) and that its pods are Running.",
    ),
    (
        "credentials stage failed",
        "Make sure the database secret holds user, password and database name keys.",
    ),
    (
        "sync stage failed",
        "Check that oc rsync can reach the pod and the trustyai-service container has rsync or tar.",
    ),
    (
        "dump stage failed",
        "Check the MariaDB pod logs and that the database user can read every table.",
    ),
    (
        "verify stage failed",
        "The dump came back empty; confirm the database name and that the service has written data.",
    ),
    (
        "validate stage failed",
        "Point -f at a backup directory created by 'rhoai-migrate trustyai backup'.",
    ),
    (
        "restore stage failed",
        "Review the SQL errors above; the target database may need to be emptied first.",
    ),
    (
        "metadata stage failed",
        "Validate the local backup directory is writable.",
    ),
)

_LEVEL_TAGS = {
    logging.DEBUG: ("DEBUG", "\033[0;36m"),
    logging.INFO: ("INFO", "\033[0;32m"),
    logging.WARNING: ("WARN", "\033[0;33m"),
    logging.ERROR: ("ERROR", "\033[0;31m"),
    logging.CRITICAL: ("ERROR", "\033[0;31m"),
}
_RESET = "\033[0m"

log = logging.getLogger(__name__)


class TaggedFormatter(logging.Formatter):
    """Render records as ``[INFO] message``, colouring the tag when writing to a terminal."""

    def __init__(self, *, color: bool = False) -> None:
        super().__init__()
        self.color = color

    def format(self, record: logging.LogRecord) -> str:
        tag, color = _LEVEL_TAGS.get(record.levelno, (record.levelname, ""))
        message = super().format(record)
        if self.color and color:
            return f"{color}[{tag}]{_RESET} {message}"
        return f"[{tag}] {message}"


class _BelowErrorFilter(logging.Filter):
    def filter(self, record: logging.LogRecord) -> bool:
        return record.levelno < logging.ERROR


def _stream_handler(stream: TextIO) -> logging.Handler:
    handler = logging.StreamHandler(stream)
    handler.setFormatter(TaggedFormatter(color=_is_terminal(stream)))
    handler._rhoai_handler = True  # type: ignore[attr-defined]
    return handler


def _is_terminal(stream: TextIO) -> bool:
    isatty = getattr(stream, "isatty", None)
    return bool(isatty and isatty())


def configure_logging(*, verbose: bool, stdout: TextIO | None = None, stderr: TextIO | None = None) -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if getattr(handler, "_rhoai_handler", False):
            root.removeHandler(handler)

    info_handler = _stream_handler(stdout or sys.stdout)
    info_handler.addFilter(_BelowErrorFilter())
    error_handler = _stream_handler(stderr or sys.stderr)
    error_handler.setLevel(logging.ERROR)
    root.addHandler(info_handler)
    root.addHandler(error_handler)
    logging.getLogger(PACKAGE_LOGGER).setLevel(logging.DEBUG if verbose else logging.INFO)


def _actionable_next_step(message: str) -> str:
    normalized = message.strip()
    if not normalized:
        return "No follow-up action required."

    for stage, hint in _STAGE_HINTS:
        if stage in normalized:
            return f"{normalized} | Next step: {hint}"
    return f"{normalized} | Next step: Inspect pod events and application logs for more detail."


class _ArgumentParser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog="rhoai-migrate",
        description="Back up, restore and migrate Red Hat OpenShift AI workloads across upgrades.",
    )
    parser.add_argument("--kubeconfig", help="path to the kubeconfig file (default: standard search path)")
    parser.add_argument("--context", help="kubeconfig context to use")
    parser.add_argument("--in-cluster", action="store_true", help="use the pod service account instead of a kubeconfig")
    parser.add_argument("-v", "--verbose", action="store_true", help="log debug output, including commands executed")
    subparsers = parser.add_subparsers(dest="command", required=True)

    trustyai = subparsers.add_parser("trustyai", help="back up or restore TrustyAI data storage")
    trustyai_commands = trustyai.add_subparsers(dest="subcommand", required=True)

    backup = trustyai_commands.add_parser("backup", help="back up a TrustyAIService's PVC or database")
    backup.add_argument("-n", "--namespace", help="namespace of the TrustyAIService (or TRUSTYAI_NAMESPACE)")
    backup.add_argument("-d", "--backup-dir", type=Path, help="directory for backups (or BACKUP_DIR, default ./backups)")
    backup.add_argument("-s", "--service-name", help="TrustyAIService name (default: first one in the namespace)")

    restore = trustyai_commands.add_parser("restore", help="restore a backup created by 'trustyai backup'")
    restore.add_argument("-n", "--namespace", help="namespace of the TrustyAIService (or TRUSTYAI_NAMESPACE)")
    restore.add_argument("-f", "--file", type=Path, required=True, help="backup directory to restore")
    restore.add_argument("-s", "--service-name", help="TrustyAIService name (default: from metadata, then cluster)")
    restore.add_argument("-m", "--metadata", type=Path, help="metadata JSON file (default: <backup>/metadata.json)")
    restore.add_argument("-d", "--dry-run", action="store_true", help="show what would be restored without changes")

    workbench = subparsers.add_parser("workbench", help="migrate workbenches from oauth-proxy to kube-rbac-proxy")
    workbench.add_argument("action", choices=("patch", "cleanup", "verify"))
    workbench.add_argument("--name", help="notebook name (single-workbench mode)")
    workbench.add_argument("--namespace", help="notebook namespace (single-workbench mode)")
    workbench.add_argument("--all", action="store_true", help="operate on every notebook in the cluster")
    workbench.add_argument("--phase", help="verify phase: migration|cleanup|all (default: migration)")
    workbench.add_argument("-y", "--yes", action="store_true", help="skip confirmation prompts")
    workbench.add_argument("--skip-stop", action="store_true", help="do not stop running workbenches before patching")
    workbench.add_argument("--queue-name", help="set the kueue.x-k8s.io/queue-name label while patching")

    guardrails = subparsers.add_parser("guardrails", help="check or fix the GuardrailsOrchestrator readiness probe")
    guardrails.add_argument("-n", "--namespace", required=True, help="target namespace")
    guardrails.add_argument("-g", "--gorch-name", required=True, help="GuardrailsOrchestrator CR/deployment name")
    mode = guardrails.add_mutually_exclusive_group()
    mode.add_argument("--check", dest="mode", action="store_const", const="check", help="report status only (default)")
    mode.add_argument("--fix", dest="mode", action="store_const", const="fix", help="apply the readinessProbe patch")
    guardrails.add_argument("--dry-run", action="store_true", help="show what would be patched without applying")
    guardrails.set_defaults(mode="check")

    llamastack = subparsers.add_parser("llamastack", help="back up LlamaStackDistribution resources")
    llamastack_commands = llamastack.add_subparsers(dest="subcommand", required=True)
    llamastack_backup = llamastack_commands.add_parser("backup", help="archive every LlamaStackDistribution")
    llamastack_backup.add_argument("-d", "--backup-dir", type=Path, help="backup directory")

    trainer = subparsers.add_parser("trainer", help="post-upgrade checks for the Kubeflow Training Operator")
    trainer_commands = trainer.add_subparsers(dest="subcommand", required=True)
    trainer_commands.add_parser("verify", help="schedule a one-replica PyTorchJob and clean it up")
    return parser


ClientFactory = Callable[..., KubernetesClients]


class CommandContext:
    def __init__(
        self,
        args: argparse.Namespace,
        config: AppConfig,
        *,
        client_factory: ClientFactory = load_kubernetes_clients,
        input_func: Callable[[str], str] = input,
    ) -> None:
        self.args = args
        self.config = config
        self.client_factory = client_factory
        self.input_func = input_func

    def connect(self) -> KubernetesClients:
        clients = self.client_factory(
            kubeconfig_path=self.args.kubeconfig,
            context=self.args.context,
            in_cluster=self.args.in_cluster,
        )
        log.info("Checking cluster connectivity...")
        check_cluster_access(clients)
        return clients

    def oc(self) -> OcCommandRunner:
        runner = OcCommandRunner(
            binary=self.config.oc_binary,
            kubeconfig_path=self.args.kubeconfig,
            context=self.args.context,
        )
        runner.require()
        return runner

    def trustyai_namespace(self) -> str:
        namespace = self.args.namespace or self.config.namespace
        if not namespace:
            raise PreconditionError("Namespace is required. Use -n flag or set TRUSTYAI_NAMESPACE environment variable.")
        return namespace


def _run_trustyai_backup(context: CommandContext) -> int:
    namespace = context.trustyai_namespace()
    oc = context.oc()
    clients = context.connect()
    backup_dir = context.args.backup_dir or context.config.backup_dir
    outcome = TrustyAIBackupExecutor(clients=clients, oc=oc, config=context.config).run(
        namespace=namespace,
        backup_dir=backup_dir,
        service_name=context.args.service_name,
    )
    log.info("Backup written to %s", outcome.backup_path)
    return 0


def _run_trustyai_restore(context: CommandContext) -> int:
    namespace = context.trustyai_namespace()
    oc = context.oc()
    clients = context.connect()
    outcome = TrustyAIRestoreExecutor(clients=clients, oc=oc, config=context.config).run(
        namespace=namespace,
        backup_path=context.args.file,
        metadata_file=context.args.metadata,
        service_name=context.args.service_name,
        dry_run=context.args.dry_run,
    )
    log.info("==========================================")
    log.info("Restore Summary")
    log.info("==========================================")
    log.info("Namespace: %s", namespace)
    log.info("Storage format: %s", outcome.storage_format)
    log.info("Backup path: %s", outcome.backup_dir)
    if outcome.dry_run:
        log.info("DRY RUN completed - no changes were made")
    else:
        log.info("Restore completed successfully")
    log.info("==========================================")
    return 0


def _validate_workbench_args(args: argparse.Namespace) -> str:
    if args.all and (args.name or args.namespace):
        raise PreconditionError("--all cannot be combined with --name/--namespace.")
    if not args.all and not (args.name and args.namespace):
        raise PreconditionError("Both --name and --namespace are required for single-workbench mode.")
    if args.phase and args.action != "verify":
        raise PreconditionError("--phase is only supported with the verify command.")
    phase = args.phase or PHASE_MIGRATION
    if phase not in VERIFY_PHASES:
        raise PreconditionError(f"Invalid --phase '{phase}'. Use migration, cleanup, or all.")
    return phase


def _run_workbench(context: CommandContext) -> int:
    args = context.args
    phase = _validate_workbench_args(args)
    clients = context.connect()

    if args.action in {"patch", "cleanup"}:
        target = "ALL notebooks in the cluster" if args.all else f"notebook '{args.name}' in namespace '{args.namespace}'"
        confirmed = confirm_operation(
            PATCH_WARNING if args.action == "patch" else CLEANUP_WARNING,
            cluster=cluster_server(clients),
            user=current_user(clients),
            target=target,
            assume_yes=args.yes,
            input_func=context.input_func,
        )
        if not confirmed:
            log.error("Aborted.")
            return 1

    tracker = StoppedWorkbenchTracker() if args.action == "patch" and not args.skip_stop else None
    upgrader = WorkbenchUpgrader(
        clients=clients,
        tracker=tracker,
        assume_yes=args.yes,
        skip_stop=args.skip_stop,
        queue_name=args.queue_name,
        wait_timeout_seconds=context.config.wait_timeout_seconds,
        input_func=context.input_func,
    )
    operations: dict[str, Callable[[str, str], bool]] = {
        "patch": upgrader.patch,
        "cleanup": upgrader.cleanup,
        "verify": partial(upgrader.verify, phase=phase),
    }
    operation = operations[args.action]
    try:
        if args.all:
            ok = upgrader.process_all(operation).failed == 0
        else:
            ok = operation(args.name, args.namespace)
    finally:
        if tracker is not None:
            tracker.close()
    return 0 if ok else 1


def _run_guardrails(context: CommandContext) -> int:
    args = context.args
    clients = context.connect()
    ensure_namespace_exists(clients, args.namespace)
    patcher = GuardrailsPatcher(
        clients=clients,
        namespace=args.namespace,
        name=args.gorch_name,
        rollout_timeout_seconds=context.config.wait_timeout_seconds,
    )
    patcher.ensure_orchestrator_exists()

    if args.mode == "check" and not args.dry_run:
        patcher.check()
        log.info("Check complete.")
        return 0

    result = patcher.fix(dry_run=args.dry_run)
    log.info("==========================================")
    log.info("GuardrailsOrchestrator Deployment Patch Summary")
    log.info("==========================================")
    if args.dry_run or result == RESULT_PREVIEW:
        log.info("(DRY-RUN: no changes were made)")
        return 0
    if result == RESULT_FAILED:
        log.error("FAIL: %s", args.gorch_name)
        return 1
    log.info("OK: %s patched successfully!", args.gorch_name)
    return 0


def _run_llamastack_backup(context: CommandContext) -> int:
    oc = context.oc()
    clients = context.connect()
    backup_dir = context.args.backup_dir
    if backup_dir is None:
        backup_dir = context.config.backup_dir / f"llamastack-backups-{datetime.now().strftime(TIMESTAMP_FORMAT)}"
    LlamaStackBackup(clients=clients, oc=oc, exec_timeout_seconds=context.config.exec_timeout_seconds).run(backup_dir)
    return 0


def _run_trainer_verify(context: CommandContext) -> int:
    clients = context.connect()
    TrainerVerifier(clients=clients).run()
    return 0


_COMMANDS: dict[tuple[str, str | None], Callable[[CommandContext], int]] = {
    ("trustyai", "backup"): _run_trustyai_backup,
    ("trustyai", "restore"): _run_trustyai_restore,
    ("workbench", None): _run_workbench,
    ("guardrails", None): _run_guardrails,
    ("llamastack", "backup"): _run_llamastack_backup,
    ("trainer", "verify"): _run_trainer_verify,
}

_EXPECTED_ERRORS = (
    KubernetesAuthenticationError,
    KubernetesDiscoveryError,
    PreconditionError,
    DiscoveryError,
    OcCommandError,
    MetadataError,
    UnknownStorageFormatError,
    SqlDumpError,
    TrainerVerificationError,
)


def run(
    argv: list[str] | None = None,
    *,
    config: AppConfig | None = None,
    client_factory: ClientFactory = load_kubernetes_clients,
    input_func: Callable[[str], str] = input,
) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(verbose=args.verbose)
    try:
        config = config or AppConfig()
    except ValueError as error:
        log.error("Invalid configuration: %s", error)
        return 1
    handler = _COMMANDS[(args.command, getattr(args, "subcommand", None))]
    context = CommandContext(args, config, client_factory=client_factory, input_func=input_func)

    try:
        return handler(context)
    except (BackupStageError, RestoreStageError) as error:
        log.error("%s", _actionable_next_step(str(error)))
        return 1
    except _EXPECTED_ERRORS as error:
        log.error("%s", error)
        return 1


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
