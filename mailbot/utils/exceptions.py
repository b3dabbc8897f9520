"""
Exception taxonomy for webhook handling and the push pipeline.

Every failure raised here is reported to the webhook sender as HTTP 400
with the exception message. Messages must never carry secret values.
"""

from typing import Any, Dict, Optional


class MailbotError(Exception):
    """Base exception for the commit email bot"""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary representation."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
        }


class AuthError(MailbotError):
    """Missing, malformed or mismatching webhook signature"""


class ParseError(MailbotError):
    """Webhook body is not a valid event document"""


class PipelineError(MailbotError):
    """Base class for failures inside the push pipeline"""


class ConfigError(PipelineError):
    """Repository configuration is present but invalid"""


class GitSyncError(PipelineError):
    """Cloning or fetching the repository mirror failed"""

    def __init__(self, message: str, command: Optional[str] = None, stderr: str = ""):
        super().__init__(message, details={"command": command, "stderr": stderr})
        self.command = command
        self.stderr = stderr


class InstallationAuthError(PipelineError):
    """Installation token could not be issued"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message, details={"status_code": status_code})
        self.status_code = status_code


class NotifierError(PipelineError):
    """Notifier exited with a non-zero status"""

    def __init__(self, message: str, return_code: Optional[int] = None, stderr: str = ""):
        super().__init__(message, details={"return_code": return_code, "stderr": stderr})
        self.return_code = return_code
        self.stderr = stderr


class PipelineTimeoutError(PipelineError):
    """Push pipeline exceeded its deadline"""
