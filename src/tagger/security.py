"""Secret hygiene for runbook output.

SECURITY INVARIANTS:
1. The application secret and bearer tokens never reach a log sink
2. Identifiers are masked when logged for correlation
3. Vault access uses a managed identity, never a second secret
"""

from __future__ import annotations

import logging
import threading

from azure.identity import ManagedIdentityCredential

logger = logging.getLogger(__name__)

REDACTED = "***"

# Shorter values are too likely to collide with ordinary log text
MIN_REDACTABLE_LENGTH = 4

_registered_secrets: set[str] = set()
_registry_lock = threading.Lock()


def register_secret(value: str | None) -> None:
    """Mark a value as secret so every log record redacts it."""
    if value and len(value) >= MIN_REDACTABLE_LENGTH:
        with _registry_lock:
            _registered_secrets.add(value)


def clear_registered_secrets() -> None:
    """Forget all registered secrets (used between runs and in tests)."""
    with _registry_lock:
        _registered_secrets.clear()


def redact(text: str) -> str:
    """Replace every registered secret in text."""
    with _registry_lock:
        secrets = sorted(_registered_secrets, key=len, reverse=True)
    for secret in secrets:
        if secret in text:
            text = text.replace(secret, REDACTED)
    return text


class SecretRedactionFilter(logging.Filter):
    """Scrub registered secrets from log messages and structured extras."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        scrubbed = redact(message)
        if scrubbed != message:
            record.msg = scrubbed
            record.args = None

        for key, value in list(record.__dict__.items()):
            if isinstance(value, str) and key not in ("msg", "name", "levelname"):
                scrubbed_value = redact(value)
                if scrubbed_value != value:
                    setattr(record, key, scrubbed_value)
        return True


def mask_identifier(value: str | None) -> str | None:
    """Keep the first 8 characters of an identifier for log correlation."""
    if value is None:
        return None
    return value[:8] + "..." if len(value) > 8 else value


def get_managed_identity_credential(
    client_id: str | None = None,
) -> ManagedIdentityCredential:
    """Get a ManagedIdentityCredential for Key Vault access.

    Args:
        client_id: Optional client ID for user-assigned managed identity.
                   If None, uses system-assigned managed identity.
    """
    if client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": mask_identifier(client_id)},
        )
        return ManagedIdentityCredential(client_id=client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def log_security_audit_event(
    event_type: str,
    tenant_id: str | None = None,
    target: str | None = None,
    action: str | None = None,
    result: str | None = None,
    count: int | None = None,
) -> None:
    """Log a security-relevant audit event.

    Args:
        event_type: Type of security event (auth, tag, delete).
        tenant_id: Tenant the runbook acted on (masked).
        target: API collection or resource acted on.
        action: Action being performed.
        result: Result of the action (success, failure, denied).
        count: Number of devices affected, if any.
    """
    logger.info(
        f"Security audit: {event_type}",
        extra={
            "security_audit": True,
            "event_type": event_type,
            "tenant_id": mask_identifier(tenant_id),
            "target": target,
            "action": action,
            "result": result,
            "count": count,
        },
    )
