from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Mapping
from urllib.parse import urlparse
import math
import os
import re

from .errors import ConfigurationError
from .models import KIND_DEPLOYMENT, KIND_REPLICASET, KIND_STATEFULSET, WorkloadRef

DEFAULT_BACKUP_TIMEOUT_SECONDS = 180.0
DEFAULT_RESTORE_TIMEOUT_SECONDS = 60.0
DEFAULT_WAIT_TIMEOUT_SECONDS = 120.0

_KIND_ALIASES = {
    "deployment": KIND_DEPLOYMENT,
    "deployments": KIND_DEPLOYMENT,
    "statefulset": KIND_STATEFULSET,
    "statefulsets": KIND_STATEFULSET,
    "replicaset": KIND_REPLICASET,
    "replicasets": KIND_REPLICASET,
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_FALSE_VALUES = {"", "0", "false", "no", "off"}
_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


@dataclass(frozen=True)
class ResourceConfig:
    workload: WorkloadRef
    wait: bool = False
    wait_timeout_seconds: float = DEFAULT_WAIT_TIMEOUT_SECONDS


@dataclass(frozen=True)
class BackupConfig:
    directory: Path
    temp_directory: Path | None = None
    timeout_seconds: float = DEFAULT_BACKUP_TIMEOUT_SECONDS
    restore_timeout_seconds: float = DEFAULT_RESTORE_TIMEOUT_SECONDS


@dataclass(frozen=True)
class S3Config:
    access_key_id: str
    secret_access_key: str
    bucket: str
    endpoint_url: str | None = None
    region: str | None = None
    storage_class: str | None = None
    unsecure: bool = False
    archive_lifetime_seconds: float = 0.0


@dataclass(frozen=True)
class TelegramConfig:
    bot_token: str | None = None
    chat_id: int | None = None

    @property
    def enabled(self) -> bool:
        return bool(self.bot_token)


@dataclass(frozen=True)
class KubernetesConfig:
    kubeconfig_path: str | None = None
    context: str | None = None

    @property
    def in_cluster(self) -> bool:
        return not self.kubeconfig_path


@dataclass(frozen=True)
class AppConfig:
    resource: ResourceConfig
    backup: BackupConfig
    s3: S3Config
    telegram: TelegramConfig
    kubernetes: KubernetesConfig


def load_config(environ: Mapping[str, str] | None = None) -> AppConfig:
    """Read and validate the whole configuration, reporting every problem at once."""
    env = os.environ if environ is None else environ
    problems: list[str] = []

    def text(name: str, *, required: bool = False) -> str | None:
        value = (env.get(name) or "").strip()
        if not value:
            if required:
                problems.append(f"{name} is required")
            return None
        return value

    def flag(name: str) -> bool:
        raw = (env.get(name) or "").strip().lower()
        if raw in _TRUE_VALUES:
            return True
        if raw not in _FALSE_VALUES:
            problems.append(f"{name} must be a boolean, got {env.get(name)!r}")
        return False

    def duration(name: str, default: float) -> float:
        raw = text(name)
        if raw is None:
            return default
        try:
            return parse_duration(raw)
        except ValueError as error:
            problems.append(f"{name} {error}")
            return default

    resource_id = text("RESOURCE_ID", required=True)
    namespace = text("RESOURCE_NAMESPACE", required=True)
    workload: WorkloadRef | None = None
    if resource_id is not None and namespace is not None:
        try:
            workload = parse_workload_ref(resource_id, namespace)
        except ConfigurationError as error:
            problems.extend(error.problems)

    wait = flag("RESOURCE_WAIT")
    wait_timeout = duration("RESOURCE_WAIT_TIMEOUT", DEFAULT_WAIT_TIMEOUT_SECONDS)

    directory = text("BACKUP_DIRECTORY", required=True)
    temp_directory = text("BACKUP_TEMP_DIRECTORY")
    backup_timeout = duration("BACKUP_TIMEOUT", DEFAULT_BACKUP_TIMEOUT_SECONDS)
    restore_timeout = duration("RESTORE_TIMEOUT", DEFAULT_RESTORE_TIMEOUT_SECONDS)
    for name, value in (("BACKUP_TIMEOUT", backup_timeout), ("RESTORE_TIMEOUT", restore_timeout)):
        if value <= 0:
            problems.append(f"{name} must be positive")

    access_key_id = text("S3_ACCESS_KEY_ID", required=True)
    secret_access_key = text("S3_SECRET_ACCESS_KEY", required=True)
    bucket = text("S3_BUCKET", required=True)
    unsecure = flag("S3_UNSECURE")
    endpoint_url = text("S3_ENDPOINT_URL")
    if endpoint_url is not None:
        try:
            endpoint_url = normalize_endpoint_url(endpoint_url, unsecure=unsecure)
        except ValueError as error:
            problems.append(f"S3_ENDPOINT_URL {error}")
    archive_lifetime = duration("S3_ARCHIVE_LIFETIME", 0.0)

    bot_token = text("TELEGRAM_BOT_TOKEN")
    chat_id: int | None = None
    raw_chat_id = text("TELEGRAM_CHAT_ID", required=bot_token is not None)
    if raw_chat_id is not None:
        try:
            chat_id = int(raw_chat_id)
        except ValueError:
            problems.append(f"TELEGRAM_CHAT_ID must be an integer, got {raw_chat_id!r}")

    if (
        problems
        or workload is None
        or directory is None
        or access_key_id is None
        or secret_access_key is None
        or bucket is None
    ):
        raise ConfigurationError(problems)

    return AppConfig(
        resource=ResourceConfig(workload=workload, wait=wait, wait_timeout_seconds=wait_timeout),
        backup=BackupConfig(
            directory=Path(directory),
            temp_directory=Path(temp_directory) if temp_directory else None,
            timeout_seconds=backup_timeout,
            restore_timeout_seconds=restore_timeout,
        ),
        s3=S3Config(
            access_key_id=access_key_id,
            secret_access_key=secret_access_key,
            bucket=bucket,
            endpoint_url=endpoint_url,
            region=text("S3_REGION"),
            storage_class=text("S3_STORAGE_CLASS"),
            unsecure=unsecure,
            archive_lifetime_seconds=archive_lifetime,
        ),
        telegram=TelegramConfig(bot_token=bot_token, chat_id=chat_id),
        kubernetes=KubernetesConfig(
            kubeconfig_path=text("KUBECONFIG"),
            context=text("KUBE_CONTEXT"),
        ),
    )


def parse_workload_ref(identifier: str, namespace: str) -> WorkloadRef:
    problems: list[str] = []
    type_part, separator, name = identifier.strip().partition("/")
    kind = _KIND_ALIASES.get(type_part.strip().lower())
    if not separator:
        problems.append(f"RESOURCE_ID must be TYPE/NAME, got {identifier!r}")
    else:
        if kind is None:
            problems.append(
                f"RESOURCE_ID TYPE must be deployment(s), statefulset(s) or replicaset(s), got {type_part!r}"
            )
        if not name.strip():
            problems.append("RESOURCE_ID NAME must not be empty")
    if not namespace.strip():
        problems.append("RESOURCE_NAMESPACE must not be empty")
    if problems or kind is None:
        raise ConfigurationError(problems)

    return WorkloadRef(kind=kind, name=name.strip(), namespace=namespace.strip())


def parse_duration(value: str) -> float:
    """Parse a Go-style duration such as ``90s``, ``1h30m`` or ``720h`` into seconds.

    A bare number is taken as seconds.
    """
    stripped = value.strip()
    if not stripped:
        raise ValueError("must not be empty")
    try:
        seconds = float(stripped)
    except ValueError:
        seconds = None
    if seconds is None:
        sign = 1.0
        body = stripped
        if body[0] in "+-":
            sign = -1.0 if body[0] == "-" else 1.0
            body = body[1:]
        position = 0
        total = 0.0
        while position < len(body):
            match = _DURATION_PART.match(body, position)
            if match is None:
                raise ValueError(f"is not a valid duration: {value!r}")
            total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            position = match.end()
        if not body:
            raise ValueError(f"is not a valid duration: {value!r}")
        seconds = sign * total
    if not math.isfinite(seconds):
        raise ValueError(f"is not a valid duration: {value!r}")
    if seconds < 0:
        raise ValueError(f"must not be negative, got {value!r}")
    return seconds


def normalize_endpoint_url(endpoint: str, *, unsecure: bool = False) -> str:
    candidate = endpoint.strip()
    if "://" not in candidate:
        scheme = "http" if unsecure else "https"
        candidate = f"{scheme}://{candidate}"
    parsed = urlparse(candidate)
    if parsed.scheme not in {"http", "https"} or not parsed.netloc:
        raise ValueError(f"must be a host[:port] or http(s) URL, got {endpoint!r}")
    return candidate.rstrip("/")
