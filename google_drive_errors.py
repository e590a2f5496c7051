"""
Error types raised by the Google Drive auth and upload helpers.

- AuthorizationError: interactive authorization must be (re)run
- RefreshError: the refresh token no longer works; reconnect
- TransportTimeout: a call ran past its deadline (safe to retry)
- UploadFailure: the upload endpoint rejected the file or answered garbage
- PermissionWarning: the file exists but could not be made public
"""


class DriveError(Exception):
    """Base class for Drive errors."""


class AuthorizationError(DriveError):
    pass


class RefreshError(DriveError):
    pass


class TransportTimeout(DriveError):
    def __init__(self, timeout: float, label: str = "Request"):
        self.timeout = timeout
        self.label = label
        super().__init__(f"{label} timed out after {timeout:g}s")


class UploadFailure(DriveError):
    pass


class PermissionWarning(UserWarning):
    def __init__(self, file_id: str, reason: str):
        self.file_id = file_id
        self.reason = reason
        super().__init__(f"Could not make file {file_id} public: {reason}")
