from __future__ import annotations

from types import FrameType
from typing import Mapping
import signal

import httpx
from botocore.exceptions import BotoCoreError

from .backup import BackupWorkflow, WorkflowSettings
from .config import AppConfig, load_config
from .errors import ConfigurationError, error_message
from .k8s import KubernetesAuthenticationError, KubernetesWorkloadApi, load_kubernetes_clients
from .logs import RunLog
from .notify import build_notifier
from .quiesce import QuiesceController
from .storage import ObjectStorage

EXIT_SUCCESS = 0
EXIT_FAILURE = 1
EXIT_TERMINATED = 128 + int(signal.SIGTERM)


def main(environ: Mapping[str, str] | None = None, *, run_log: RunLog | None = None) -> int:
    run_log = run_log or RunLog()
    log = run_log.bind()

    try:
        app_config = load_config(environ)
    except ConfigurationError as error:
        log.error("invalid_configuration", stage=error.stage, error=str(error))
        return EXIT_FAILURE

    try:
        api, storage = _build_collaborators(app_config)
    except (KubernetesAuthenticationError, BotoCoreError, ValueError) as error:
        log.error("setup_failed", error=error_message(error))
        return EXIT_FAILURE

    # SIGTERM becomes SystemExit so pending restore scopes unwind and scale the workload back.
    previous_handler = signal.signal(signal.SIGTERM, _terminate)
    try:
        with httpx.Client() as http_client:
            workflow = BackupWorkflow(
                quiesce_controller=QuiesceController(
                    api,
                    restore_timeout_seconds=app_config.backup.restore_timeout_seconds,
                    wait_timeout_seconds=app_config.resource.wait_timeout_seconds,
                ),
                storage=storage,
                notifier=build_notifier(app_config.telegram, http_client),
                settings=WorkflowSettings.from_config(app_config),
                run_log=run_log,
            )
            outcome = workflow.run()
    except SystemExit:
        log.error("backup_interrupted")
        raise
    finally:
        signal.signal(signal.SIGTERM, previous_handler)

    return EXIT_SUCCESS if outcome.succeeded else EXIT_FAILURE


def _build_collaborators(app_config: AppConfig) -> tuple[KubernetesWorkloadApi, ObjectStorage]:
    clients = load_kubernetes_clients(
        kubeconfig_path=app_config.kubernetes.kubeconfig_path,
        context=app_config.kubernetes.context,
        in_cluster=app_config.kubernetes.in_cluster,
    )
    return KubernetesWorkloadApi(clients), ObjectStorage.from_config(app_config.s3)


def _terminate(signum: int, frame: FrameType | None) -> None:
    # A second SIGTERM must not interrupt the restore the first one triggers.
    signal.signal(signal.SIGTERM, signal.SIG_IGN)
    raise SystemExit(EXIT_TERMINATED)


if __name__ == "__main__":
    raise SystemExit(main())
