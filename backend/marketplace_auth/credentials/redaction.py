"""
Credential redaction and audit logging utilities.

SECURITY REQUIREMENTS:
- Tokens NEVER appear in logs (access_token, refresh_token, sign, secrets)
- ALLOWED in logs: shop_name, seller_name, shop_id, external_account_id
- All credential state changes are logged for audit trail

Audit Events:
- credential.stored
- credential.shop_linked
- credential.refreshed
- credential.refresh_failed
- credential.reauthorization_required
- credential.decryption_failed

Usage:
    from marketplace_auth.credentials.redaction import CredentialAuditLogger, AuditEventType

    audit = CredentialAuditLogger()
    audit.log(
        event_type=AuditEventType.CREDENTIAL_REFRESHED,
        credential_id=cred.id,
        platform="tiktok",
        shop_id=cred.shop_id,
    )
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)

REDACTED_VALUE = "[REDACTED]"

AUDIT_LOGGER_NAME = "marketplace_auth.audit"


class AuditEventType(str, Enum):
    """Credential audit event types."""
    CREDENTIAL_STORED = "credential.stored"
    CREDENTIAL_SHOP_LINKED = "credential.shop_linked"
    CREDENTIAL_REFRESHED = "credential.refreshed"
    CREDENTIAL_REFRESH_FAILED = "credential.refresh_failed"
    CREDENTIAL_REAUTHORIZATION_REQUIRED = "credential.reauthorization_required"
    CREDENTIAL_DECRYPTION_FAILED = "credential.decryption_failed"


# Secret-bearing substrings inside free text
CREDENTIAL_SECRET_PATTERNS = [
    re.compile(r"ENC::[A-Za-z0-9+/=]+:[A-Za-z0-9+/=]+:[A-Za-z0-9+/=]+"),
    re.compile(r"\b(?:ROW|TTP)_[A-Za-z0-9_\-]{16,}"),  # TikTok Shop tokens
    re.compile(r"(bearer\s+)[A-Za-z0-9._\-]+", re.IGNORECASE),
]

# key=value or "key": "value" pairs whose value must be hidden
SECRET_PAIR_PATTERN = re.compile(
    r"""(?P<key>["']?\b(?:access_token|refresh_token|app_secret|partner_key|sign|code|auth_code)["']?\s*[=:]\s*["']?)(?P<value>[^&\s"',}]+)""",
    re.IGNORECASE,
)

SECRET_KEY_SUBSTRINGS = ("token", "secret", "password", "authorization")

# Attributes every LogRecord carries; never treated as extras
_STANDARD_RECORD_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}


def is_credential_secret_key(key: str) -> bool:
    """
    Check if a key name indicates a credential secret.

    Args:
        key: The key name to check

    Returns:
        True if the key likely contains a secret
    """
    key_lower = key.lower()
    if any(pattern in key_lower for pattern in SECRET_KEY_SUBSTRINGS):
        return True
    return key_lower in ("sign", "signature", "code", "auth_code") or key_lower.endswith("key")


def redact_credential_value(value: Any) -> Any:
    """Redact secret patterns from a string value; other types pass through."""
    if not isinstance(value, str):
        return value

    result = SECRET_PAIR_PATTERN.sub(lambda m: m.group("key") + REDACTED_VALUE, value)
    for pattern in CREDENTIAL_SECRET_PATTERNS:
        if pattern.groups:
            result = pattern.sub(lambda m: m.group(1) + REDACTED_VALUE, result)
        else:
            result = pattern.sub(REDACTED_VALUE, result)
    return result


def redact_credential_data(data: Any, _depth: int = 0) -> Any:
    """
    Recursively redact credential secrets from a data structure.

    SECURITY:
    - Always use this before logging platform responses or request params
    - shop_name and seller_name are NOT redacted

    Usage:
        safe = redact_credential_data({"access_token": "ROW_xxx", "shop_id": "1"})
    """
    # Prevent infinite recursion
    if _depth > 10:
        return data

    if isinstance(data, dict):
        result = {}
        for key, value in data.items():
            if isinstance(key, str) and is_credential_secret_key(key):
                result[key] = REDACTED_VALUE
            else:
                result[key] = redact_credential_data(value, _depth + 1)
        return result

    if isinstance(data, (list, tuple)):
        return type(data)(redact_credential_data(item, _depth + 1) for item in data)

    if isinstance(data, str):
        return redact_credential_value(data)

    return data


class CredentialAuditLogger:
    """
    Structured audit logger for credential operations.

    SECURITY:
    - Tokens are NEVER logged
    - Only identifiers (credential id, platform, shop id, account id) are recorded
    """

    def __init__(self, logger_name: str = AUDIT_LOGGER_NAME):
        self.logger = logging.getLogger(logger_name)

    def log(
        self,
        event_type: AuditEventType,
        credential_id: Optional[int],
        platform: str,
        shop_id: Optional[str] = None,
        external_account_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
        level: int = logging.INFO,
    ) -> None:
        """
        Log an audit event.

        Args:
            event_type: Type of audit event
            credential_id: Credential ID
            platform: Marketplace name
            shop_id: Shop the credential controls, if resolved
            external_account_id: Platform account id
            metadata: Additional context (will be redacted)
            level: Log level for the record
        """
        safe_metadata = redact_credential_data(metadata) if metadata else {}
        # LogRecord refuses extras that shadow its own attributes
        safe_metadata = {
            (f"meta_{key}" if key in _STANDARD_RECORD_ATTRS else key): value
            for key, value in safe_metadata.items()
        }

        audit_record = {
            "event_type": event_type.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "credential_id": credential_id,
            "platform": platform,
            "shop_id": shop_id,
            "external_account_id": external_account_id,
            **safe_metadata,
        }

        self.logger.log(level, f"Credential audit: {event_type.value}", extra=audit_record)

    def log_error(
        self,
        event_type: AuditEventType,
        credential_id: Optional[int],
        platform: str,
        error: str,
        shop_id: Optional[str] = None,
        external_account_id: Optional[str] = None,
    ) -> None:
        """Log a failure event with a sanitized error message."""
        self.log(
            event_type=event_type,
            credential_id=credential_id,
            platform=platform,
            shop_id=shop_id,
            external_account_id=external_account_id,
            metadata={"error": redact_credential_value(error)},
            level=logging.WARNING,
        )


class CredentialLoggingFilter(logging.Filter):
    """
    Logging filter that redacts credential secrets from log records.

    Usage:
        handler.addFilter(CredentialLoggingFilter())
    """

    def filter(self, record: logging.LogRecord) -> bool:
        # Format before redacting; a redacted template may lose its placeholders
        if record.args:
            record.msg = redact_credential_value(record.getMessage())
            record.args = None
        elif isinstance(record.msg, str):
            record.msg = redact_credential_value(record.msg)

        # Extra fields
        for key in list(record.__dict__.keys()):
            if key in _STANDARD_RECORD_ATTRS:
                continue
            value = record.__dict__[key]
            if is_credential_secret_key(key):
                setattr(record, key, REDACTED_VALUE)
            else:
                setattr(record, key, redact_credential_data(value))

        return True


def configure_logging(level: int = logging.INFO) -> None:
    """
    Configure credential-safe logging for a worker process.

    Sets the standard format on the root logger and installs the redaction
    filter on every root handler, so records from any module are scrubbed.
    """
    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    redaction_filter = CredentialLoggingFilter()
    for handler in logging.getLogger().handlers:
        if not any(isinstance(f, CredentialLoggingFilter) for f in handler.filters):
            handler.addFilter(redaction_filter)

    logger.info("Credential logging configured with redaction filter")
