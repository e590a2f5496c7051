"""
Settings for the Drive uploader, read from the environment (and .env).

    GOOGLE_DRIVE_CLIENT_ID / GOOGLE_DRIVE_CLIENT_SECRET
    GOOGLE_OAUTH_CLIENT_SECRET      client secrets JSON, used when the two above are unset
    GOOGLE_DRIVE_FOLDER             default destination path, e.g. "DriveEmbedder/Uploads"
    GOOGLE_DRIVE_REDIRECT_PORT      local OAuth redirect port (8586)
    GOOGLE_DRIVE_TOKEN_FILE         where tokens are kept (token.json)
    GOOGLE_DRIVE_REQUEST_TIMEOUT    seconds, metadata calls (15)
    GOOGLE_DRIVE_UPLOAD_TIMEOUT     seconds, the upload call (60)
    GOOGLE_DRIVE_REDIRECT_TIMEOUT   seconds to wait for the browser redirect (120)
    GOOGLE_DRIVE_EXPIRY_MARGIN      seconds before expiry a token counts as stale (60)
    LOG_LEVEL
"""

import json
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from dotenv import find_dotenv, load_dotenv

from google_drive_auth import (
    EXPIRY_MARGIN,
    REDIRECT_PORT,
    REDIRECT_TIMEOUT,
    ClientCredentials,
)
from google_drive_transport import REQUEST_TIMEOUT, UPLOAD_TIMEOUT

DEFAULT_DRIVE_FOLDER = "DriveEmbedder/Uploads"
DEFAULT_TOKEN_FILE = "token.json"


@dataclass
class DriveSettings:
    client_id: str = ""
    client_secret: str = ""
    drive_folder: str = DEFAULT_DRIVE_FOLDER
    redirect_port: int = REDIRECT_PORT
    token_file: str = DEFAULT_TOKEN_FILE
    request_timeout: float = REQUEST_TIMEOUT
    upload_timeout: float = UPLOAD_TIMEOUT
    redirect_timeout: float = REDIRECT_TIMEOUT
    expiry_margin: float = EXPIRY_MARGIN
    log_level: str = "INFO"

    @property
    def credentials(self) -> ClientCredentials:
        return ClientCredentials(self.client_id, self.client_secret)

    def is_configured(self) -> bool:
        return bool(self.client_id and self.client_secret)


def load_client_secrets(path) -> ClientCredentials:
    """
    Read client id/secret from a Google Cloud Console client secrets JSON.
    Handles both "installed" (desktop) and "web" layouts.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    creds = data.get("installed") or data.get("web") or {}
    if not creds.get("client_id") or not creds.get("client_secret"):
        raise ValueError(f"{path} is not a client secrets file for a desktop or web app")
    return ClientCredentials(creds["client_id"], creds["client_secret"])


def _number(name: str, default: float, cast=float):
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        value = cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None
    if value <= 0:
        raise ValueError(f"{name} must be positive, got {raw!r}")
    return value


def load_settings(env_file: Optional[str] = None) -> DriveSettings:
    """Build DriveSettings from .env plus the process environment (environment wins)."""
    load_dotenv(env_file or find_dotenv(usecwd=True))

    client_id = os.getenv("GOOGLE_DRIVE_CLIENT_ID", "").strip()
    client_secret = os.getenv("GOOGLE_DRIVE_CLIENT_SECRET", "").strip()
    if not client_id or not client_secret:
        secrets_path = os.getenv("GOOGLE_OAUTH_CLIENT_SECRET", "").strip()
        if secrets_path and Path(secrets_path).exists():
            creds = load_client_secrets(secrets_path)
            client_id, client_secret = creds.client_id, creds.client_secret

    return DriveSettings(
        client_id=client_id,
        client_secret=client_secret,
        drive_folder=os.getenv("GOOGLE_DRIVE_FOLDER", "").strip() or DEFAULT_DRIVE_FOLDER,
        redirect_port=_number("GOOGLE_DRIVE_REDIRECT_PORT", REDIRECT_PORT, int),
        token_file=os.getenv("GOOGLE_DRIVE_TOKEN_FILE", "").strip() or DEFAULT_TOKEN_FILE,
        request_timeout=_number("GOOGLE_DRIVE_REQUEST_TIMEOUT", REQUEST_TIMEOUT),
        upload_timeout=_number("GOOGLE_DRIVE_UPLOAD_TIMEOUT", UPLOAD_TIMEOUT),
        redirect_timeout=_number("GOOGLE_DRIVE_REDIRECT_TIMEOUT", REDIRECT_TIMEOUT),
        expiry_margin=_number("GOOGLE_DRIVE_EXPIRY_MARGIN", EXPIRY_MARGIN),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
