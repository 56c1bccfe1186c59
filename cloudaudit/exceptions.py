"""
Cloud Audit Engine - Error taxonomy.

Configuration errors are raised synchronously before an audit exists.
Authentication and transient provider errors come out of the credential
providers. Persistence errors are fatal to a running audit.
"""

from typing import Optional


class CloudAuditError(Exception):
    """Base class for every error raised by the engine."""


class ConfigurationError(CloudAuditError, ValueError):
    """Invalid input rejected before an audit starts."""


class CredentialFormatError(ConfigurationError):
    """Stored secret is malformed or cannot be decrypted."""


class ScheduleValidationError(ConfigurationError):
    """Schedule fields are out of range or inconsistent."""


class AccountNotFoundError(ConfigurationError):
    """No account with the given id exists for the provider."""


class UnknownProviderError(ConfigurationError):
    """Provider tag is not one of AWS, GCP or AZURE."""


class AuthenticationError(CloudAuditError):
    """The provider rejected the credentials."""


class TransientProviderError(CloudAuditError):
    """Network failure or throttling; the caller may retry."""


class CheckError(CloudAuditError):
    """A check unit could not query the provider (permission denied, bad response)."""


class PersistenceError(CloudAuditError):
    """A database write or read failed."""


class AuditAlreadyRunningError(CloudAuditError):
    """An audit for the account is already in progress."""

    def __init__(self, account_id: str, audit_id: Optional[str] = None):
        self.account_id = account_id
        self.audit_id = audit_id
        msg = f"An audit is already running for account {account_id}"
        if audit_id:
            msg += f" (audit {audit_id})"
        super().__init__(msg)
