"""Runbook orchestration for Defender device tagging and Intune cleanup.

Each runbook is a strictly sequential pipeline:

    secret store -> token -> inventory fetch -> reconcile/remove -> exit code

Configuration, authentication and fetch errors are fatal and end the run
with exit code 1 before any device is touched.
"""

from __future__ import annotations

import logging
import sys
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime

import requests

from .api import ApiClient, FetchError
from .config import Config, ConfigurationError, LogFormat, RunMode
from .credentials import (
    AuthenticationError,
    BearerToken,
    acquire_token,
    api_scope,
    resolve_credentials,
)
from .filters import (
    DevicePredicate,
    InactivityCriteria,
    inactivity_predicate,
    subscription_predicate,
)
from .inventory import DeviceInventoryFetcher
from .reconciler import TagReconciler
from .removal import RemovalCriteria, StaleDeviceRemover
from .secret_store import SecretStore, create_secret_store
from .security import SecretRedactionFilter

logger = logging.getLogger(__name__)

_HANDLER_NAME = "tagger"


@dataclass(frozen=True)
class RunReport:
    """What the process prints and returns."""

    exit_code: int
    summary: str
    fatal: bool = False


def setup_logging(log_format: LogFormat = LogFormat.JSON) -> None:
    """Configure logging with secret redaction on every record."""
    import json

    class JsonFormatter(logging.Formatter):
        """Format logs as JSON for structured logging."""

        def format(self, record: logging.LogRecord) -> str:
            log_data = {
                "timestamp": datetime.now(UTC).isoformat().replace("+00:00", "Z"),
                "level": record.levelname,
                "message": record.getMessage(),
                "logger": record.name,
            }

            # Add extra fields from the record
            for key, value in record.__dict__.items():
                if key not in _STANDARD_RECORD_ATTRS:
                    log_data[key] = value

            if record.exc_info:
                log_data["exception"] = self.formatException(record.exc_info)

            return json.dumps(log_data, default=str)

    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(_HANDLER_NAME)
    handler.addFilter(SecretRedactionFilter())
    if log_format == LogFormat.JSON:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))

    root_logger = logging.getLogger()
    for existing in list(root_logger.handlers):
        if existing.get_name() == _HANDLER_NAME:
            root_logger.removeHandler(existing)
    root_logger.addHandler(handler)
    root_logger.setLevel(logging.INFO)

    # Reduce noise from Azure SDK
    logging.getLogger("azure").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)


_STANDARD_RECORD_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "taskName",
        "message",
    }
)


def _authenticate(config: Config, store: SecretStore | None, api_url: str) -> BearerToken:
    """Resolve the app registration and exchange it for a token.

    Raises:
        ConfigurationError: Before any network call, if a secret is missing.
        AuthenticationError: If the token endpoint rejects the grant.
    """
    if store is not None:
        bundle = resolve_credentials(store, config.secret_names)
    else:
        secret_store = create_secret_store(config)
        try:
            bundle = resolve_credentials(secret_store, config.secret_names)
        finally:
            secret_store.close()
    return acquire_token(bundle, api_scope(api_url), config.authority_host)


def _fatal(message: str, error: Exception) -> RunReport:
    logger.error(message, extra={"error": str(error), "error_type": type(error).__name__})
    return RunReport(exit_code=1, summary=f"{message}: {error}", fatal=True)


def _run_tagging(
    config: Config,
    tag: str,
    mode: RunMode,
    build_predicate: Callable[[], DevicePredicate],
    *,
    store: SecretStore | None,
    session: requests.Session | None,
    sleep: Callable[[float], None],
) -> RunReport:
    try:
        token = _authenticate(config, store, config.defender_api_url)
    except ConfigurationError as e:
        return _fatal("Configuration error", e)
    except AuthenticationError as e:
        return _fatal("Authentication failed", e)

    with ApiClient(
        token, config.defender_api_url, session=session, timeout=config.http_timeout_seconds
    ) as client:
        try:
            devices = DeviceInventoryFetcher(client).fetch_machines()
        except FetchError as e:
            return _fatal("Inventory fetch failed", e)

        result = TagReconciler(client, config, sleep=sleep).reconcile(
            devices, tag, build_predicate(), mode
        )

    return RunReport(exit_code=result.exit_code, summary=result.summary())


def run_subscription_tagging(
    config: Config,
    subscriptions: list[str],
    tag: str,
    mode: RunMode = RunMode.APPLY,
    *,
    store: SecretStore | None = None,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> RunReport:
    """Tag every Defender machine running in one of the subscriptions."""
    logger.info(
        "Starting subscription tagging",
        extra={"tag": tag, "subscriptions": subscriptions, "mode": mode.value},
    )
    return _run_tagging(
        config,
        tag,
        mode,
        lambda: subscription_predicate(subscriptions),
        store=store,
        session=session,
        sleep=sleep,
    )


def run_inactivity_tagging(
    config: Config,
    criteria: InactivityCriteria,
    tag: str,
    mode: RunMode = RunMode.APPLY,
    *,
    store: SecretStore | None = None,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> RunReport:
    """Tag every Inactive Defender machine inside the day window."""
    logger.info(
        "Starting inactivity tagging",
        extra={
            "tag": tag,
            "days_inactive": criteria.min_days,
            "max_days_inactive": criteria.max_days,
            "include_stale": criteria.include_stale,
            "mode": mode.value,
        },
    )
    return _run_tagging(
        config,
        tag,
        mode,
        lambda: inactivity_predicate(criteria, now),
        store=store,
        session=session,
        sleep=sleep,
    )


def run_stale_removal(
    config: Config,
    criteria: RemovalCriteria,
    mode: RunMode = RunMode.WHAT_IF,
    *,
    confirm: bool = False,
    store: SecretStore | None = None,
    session: requests.Session | None = None,
    sleep: Callable[[float], None] = time.sleep,
    now: datetime | None = None,
) -> RunReport:
    """Delete Intune managed devices that stopped syncing."""
    logger.info(
        "Starting stale device removal",
        extra={
            "days_inactive": criteria.days_inactive,
            "operating_systems": list(criteria.operating_systems),
            "mode": mode.value,
        },
    )

    if mode == RunMode.APPLY and not confirm:
        return _fatal(
            "Configuration error",
            ConfigurationError("Device removal requires explicit confirmation (--confirm)"),
        )

    try:
        token = _authenticate(config, store, config.graph_api_url)
    except ConfigurationError as e:
        return _fatal("Configuration error", e)
    except AuthenticationError as e:
        return _fatal("Authentication failed", e)

    with ApiClient(
        token, config.graph_api_url, session=session, timeout=config.http_timeout_seconds
    ) as client:
        try:
            devices = DeviceInventoryFetcher(client).fetch_managed_devices()
        except FetchError as e:
            return _fatal("Inventory fetch failed", e)

        result = StaleDeviceRemover(client, config, sleep=sleep).remove(
            devices, criteria, mode, confirm=confirm, now=now
        )

    return RunReport(exit_code=result.exit_code, summary=result.summary())
