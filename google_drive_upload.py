"""
Upload a file to Google Drive into a (possibly nested) folder path.

One upload runs through four stages, reported to an optional callback:

    preparing (10) -> uploading (30) -> setting-permission (70) -> complete (100)

Any failure along the way is reported once as an "error" stage and
upload_file() returns None; it never raises. The only step allowed to fail
quietly is making the file public: the file is already uploaded by then, it
just stays private.
"""

import base64
import json
import mimetypes
import threading
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from googleapiclient.errors import HttpError

from google_drive_auth import AuthState, ClientCredentials, OAuthAuthenticator, TokenSet
from google_drive_errors import AuthorizationError, PermissionWarning, RefreshError, UploadFailure
from google_drive_find_folder import ROOT_FOLDER_ID, FolderResolver
from google_drive_logging import setup_logger
from google_drive_transport import DRIVE_UPLOAD_URL, REQUEST_TIMEOUT, UPLOAD_TIMEOUT, DriveTransport

logger = setup_logger(__name__)

UPLOAD_URL = f"{DRIVE_UPLOAD_URL}/files?uploadType=multipart&fields=id,webViewLink,webContentLink,name,mimeType"

DEFAULT_MIME_TYPE = "application/octet-stream"

# multiple of 3, so each chunk encodes without padding and the pieces concatenate
ENCODE_CHUNK_SIZE = 8190

STAGE_PREPARING = "preparing"
STAGE_UPLOADING = "uploading"
STAGE_SETTING_PERMISSION = "setting-permission"
STAGE_COMPLETE = "complete"
STAGE_ERROR = "error"


@dataclass
class UploadProgress:
    stage: str
    message: str
    progress: int
    error: Optional[str] = None


@dataclass(frozen=True)
class UploadResult:
    file_id: str
    view_link: str
    download_link: str
    file_name: str
    mime_type: str


@dataclass
class DriveFile:
    """A file to upload: in-memory bytes, or a local path read at upload time."""

    name: str
    mime_type: str = DEFAULT_MIME_TYPE
    data: Optional[bytes] = None
    path: Optional[str] = None

    @classmethod
    def from_path(cls, path, mime_type: Optional[str] = None, name: Optional[str] = None):
        path = Path(path)
        if mime_type is None:
            mime_type = mimetypes.guess_type(path.name)[0] or DEFAULT_MIME_TYPE
        return cls(name=name or path.name, mime_type=mime_type, path=str(path))

    def read_bytes(self) -> bytes:
        if self.data is not None:
            return bytes(self.data)
        if self.path is None:
            raise ValueError(f"Nothing to upload for {self.name!r}: no data and no path")
        return Path(self.path).read_bytes()


@dataclass
class DriveConfig:
    """
    Credentials plus the current tokens of one uploader.

    on_token_refresh(tokens) is called after every refresh and before the new
    token is used, so a refreshed token is persisted before anything relies on it.
    """

    credentials: ClientCredentials
    tokens: TokenSet = field(default_factory=TokenSet)
    on_token_refresh: Optional[Callable[[TokenSet], None]] = None


@dataclass(frozen=True)
class MultipartPayload:
    body: bytes
    boundary: str

    @property
    def content_type(self) -> str:
        return f"multipart/related; boundary={self.boundary}"


# ------------------------
# Payload helpers
# ------------------------
def encode_base64_chunked(data: bytes, chunk_size: int = ENCODE_CHUNK_SIZE) -> str:
    """Base64-encode `data` a chunk at a time and join the pieces once."""
    if chunk_size <= 0 or chunk_size % 3:
        raise ValueError("chunk_size must be a positive multiple of 3")
    view = memoryview(data)
    chunks = [
        base64.b64encode(view[i : i + chunk_size]).decode("ascii")
        for i in range(0, len(view), chunk_size)
    ]
    return "".join(chunks)


def build_multipart_body(metadata: dict, data: bytes, mime_type: str, boundary: Optional[str] = None) -> MultipartPayload:
    """
    Build a multipart/related body: JSON metadata part, then the file content
    as a base64 part, separated by `boundary`.
    """
    boundary = boundary or f"-------{uuid.uuid4().hex}"
    delimiter = f"\r\n--{boundary}\r\n"
    close_delimiter = f"\r\n--{boundary}--"

    body = (
        delimiter
        + "Content-Type: application/json; charset=UTF-8\r\n\r\n"
        + json.dumps(metadata)
        + delimiter
        + f"Content-Type: {mime_type or DEFAULT_MIME_TYPE}\r\n"
        + "Content-Transfer-Encoding: base64\r\n\r\n"
        + encode_base64_chunked(data)
        + close_delimiter
    )
    return MultipartPayload(body=body.encode("utf-8"), boundary=boundary)


def fallback_links(file_id: str):
    """(view, download) links built from the file id alone."""
    return (
        f"https://drive.google.com/file/d/{file_id}/view",
        f"https://drive.google.com/uc?export=view&id={file_id}",
    )


# ------------------------
# Uploader
# ------------------------
class GoogleDriveUploader:
    """Uploads files into Drive folder paths, keeping the access token fresh."""

    def __init__(
        self,
        config: DriveConfig,
        authenticator: Optional[OAuthAuthenticator] = None,
        transport: Optional[DriveTransport] = None,
        root_id: str = ROOT_FOLDER_ID,
        request_timeout: float = REQUEST_TIMEOUT,
        upload_timeout: float = UPLOAD_TIMEOUT,
    ):
        self.config = config
        self.authenticator = authenticator or OAuthAuthenticator(config.credentials)
        self.transport = transport or DriveTransport()
        self.request_timeout = request_timeout
        self.upload_timeout = upload_timeout
        self.folders = FolderResolver(self.transport, self.ensure_valid_token, root_id, timeout=request_timeout)
        self._token_lock = threading.Lock()

    # ------------------------
    # Connection
    # ------------------------
    def connect_google_drive(self) -> TokenSet:
        """Run the browser consent flow and adopt (and persist) the new tokens."""
        tokens = self.authenticator.start_authorization()
        with self._token_lock:
            if self.config.on_token_refresh is not None:
                self.config.on_token_refresh(tokens)
            self.config.tokens = tokens
        return tokens

    def is_connected(self) -> bool:
        tokens = self.config.tokens
        return bool(tokens.access_token and tokens.refresh_token)

    @property
    def auth_state(self) -> AuthState:
        return self.authenticator.state_of(self.config.tokens)

    def disconnect(self) -> None:
        with self._token_lock:
            self.config.tokens = TokenSet()
        self.folders.clear_cache()

    def ensure_valid_token(self) -> str:
        """
        Return a usable access token, refreshing it first if it is stale.

        Concurrent callers wait on the same refresh instead of starting their
        own. Refreshed tokens are adopted only after on_token_refresh returns,
        so a failed save leaves the old tokens in place to be refreshed again.
        A failed refresh drops the tokens (reconnect required).
        """
        with self._token_lock:
            tokens = self.config.tokens
            if tokens.expires_at and tokens.refresh_token and self.authenticator.is_token_expired(tokens.expires_at):
                logger.debug("Access token expired, refreshing")
                try:
                    fresh = self.authenticator.refresh_access_token(tokens.refresh_token)
                except RefreshError:
                    self.config.tokens = TokenSet()
                    raise

                if self.config.on_token_refresh is not None:
                    self.config.on_token_refresh(fresh)
                self.config.tokens = fresh
                logger.info("Google Drive token automatically refreshed")

            access_token = self.config.tokens.access_token

        if not access_token:
            raise AuthorizationError("Not connected to Google Drive. Please connect first.")
        return access_token

    # ------------------------
    # Upload
    # ------------------------
    def upload_file(
        self,
        file: DriveFile,
        folder_path: str,
        on_progress: Optional[Callable[[UploadProgress], None]] = None,
    ) -> Optional[UploadResult]:
        """
        Upload `file` into `folder_path` (created if missing) and make it
        viewable by anyone with the link.

        Returns the UploadResult, or None after reporting an "error" stage.
        """

        def report(stage, message, progress, error=None):
            if on_progress is not None:
                on_progress(UploadProgress(stage=stage, message=message, progress=progress, error=error))

        try:
            report(STAGE_PREPARING, "Preparing upload...", 10)
            self.ensure_valid_token()
            folder_id = self.folders.ensure_folder(folder_path)

            data = file.read_bytes()
            mime_type = file.mime_type or DEFAULT_MIME_TYPE
            metadata = {"name": file.name, "mimeType": mime_type, "parents": [folder_id]}
            payload = build_multipart_body(metadata, data, mime_type)

            report(STAGE_UPLOADING, "Uploading to Google Drive...", 30)
            file_id = self._send_upload(payload)
            logger.info("Uploaded %r (%s bytes) -> %s", file.name, len(data), file_id)

            report(STAGE_SETTING_PERMISSION, "Setting public access...", 70)
            self.make_file_public(file_id)

            info = self.get_file_info(file_id)
            view_link, download_link = fallback_links(file_id)
            result = UploadResult(
                file_id=file_id,
                view_link=info.get("webViewLink") or view_link,
                download_link=info.get("webContentLink") or download_link,
                file_name=file.name,
                mime_type=mime_type,
            )

        except Exception as exc:
            logger.error("Error uploading %r to Google Drive: %s", file.name, exc)
            try:
                report(STAGE_ERROR, "Upload failed", 0, error=str(exc) or type(exc).__name__)
            except Exception:
                logger.exception("Progress callback failed while reporting an upload error")
            return None

        # past this point the file is uploaded and public
        try:
            report(STAGE_COMPLETE, "Upload complete!", 100)
        except Exception:
            logger.exception("Progress callback failed while reporting upload completion")
        return result

    def _send_upload(self, payload: MultipartPayload) -> str:
        access_token = self.ensure_valid_token()
        try:
            response = self.transport.post(
                UPLOAD_URL,
                payload.body,
                payload.content_type,
                access_token,
                timeout=self.upload_timeout,
            )
        except HttpError as exc:
            raise UploadFailure(f"Upload failed: {exc.resp.status}") from exc
        except ValueError as exc:
            raise UploadFailure("Upload response was not valid JSON") from exc

        file_id = response.get("id") if isinstance(response, dict) else None
        if not isinstance(file_id, str) or not file_id:
            raise UploadFailure("Upload response missing file ID")
        return file_id

    def make_file_public(self, file_id: str) -> Optional[PermissionWarning]:
        """
        Give "anyone with the link" read access. Never raises: a failure is
        logged and returned as a PermissionWarning.
        """
        try:
            request = self.transport.permissions().create(
                fileId=file_id,
                body={"role": "reader", "type": "anyone"},
                fields="id",
            )
            self.transport.execute(request, self.ensure_valid_token(), timeout=self.request_timeout)
        except Exception as exc:
            warning = PermissionWarning(file_id, str(exc))
            logger.warning(str(warning))
            return warning
        return None

    def get_file_info(self, file_id: str) -> dict:
        """webViewLink / webContentLink for file_id, or {} if they can't be fetched."""
        try:
            request = self.transport.files().get(fileId=file_id, fields="webViewLink,webContentLink")
            return self.transport.execute(request, self.ensure_valid_token(), timeout=self.request_timeout) or {}
        except Exception as exc:
            logger.debug("Could not fetch links for %s: %s", file_id, exc)
            return {}

    # ------------------------
    # Account
    # ------------------------
    def _about_user(self) -> dict:
        request = self.transport.about().get(fields="user")
        return self.transport.execute(request, self.ensure_valid_token(), timeout=self.request_timeout)

    def test_connection(self) -> bool:
        try:
            self._about_user()
        except Exception as exc:
            logger.debug("Connection test failed: %s", exc)
            return False
        return True

    def get_user_info(self) -> Optional[dict]:
        """{"email", "name"} of the connected account, or None."""
        try:
            user = self._about_user().get("user", {})
        except Exception as exc:
            logger.debug("Could not fetch user info: %s", exc)
            return None
        return {"email": user.get("emailAddress", ""), "name": user.get("displayName", "")}
