#!/usr/bin/env python3
# Dependencies
# Enable the Google Drive API in Google Cloud Console.
# Create an OAuth client ID (Desktop app) and put its id/secret in .env
# (GOOGLE_DRIVE_CLIENT_ID / GOOGLE_DRIVE_CLIENT_SECRET) or point
# GOOGLE_OAUTH_CLIENT_SECRET at the downloaded client secrets JSON.
#
# Usage:
#   upload-to-drive connect
#   upload-to-drive upload /path/to/file
#   upload-to-drive upload /path/to/file "Parent/SubFolder"
#   upload-to-drive find "Parent/SubFolder"
#   upload-to-drive whoami
#   upload-to-drive disconnect

"""
Command line front end for the Drive uploader.

Tokens are kept in the token file (token.json by default) and rewritten
whenever they are refreshed.
"""

import argparse
import sys
from pathlib import Path

from googleapiclient.errors import HttpError

from google_drive_auth import LocalRedirectServer, OAuthAuthenticator, TokenSet
from google_drive_errors import DriveError
from google_drive_logging import set_log_level
from google_drive_settings import DriveSettings, load_settings
from google_drive_token_store import FileTokenStore, TokenStore
from google_drive_upload import DriveConfig, DriveFile, GoogleDriveUploader, UploadProgress

STAGE_ICONS = {
    "preparing": "📦",
    "uploading": "⬆️ ",
    "setting-permission": "🔐",
    "complete": "✅",
}


def build_uploader(settings: DriveSettings, store: TokenStore) -> GoogleDriveUploader:
    """Wire settings and the token store into an uploader."""
    config = DriveConfig(
        credentials=settings.credentials,
        tokens=store.load() or TokenSet(),
        on_token_refresh=store.save,
    )
    authenticator = OAuthAuthenticator(
        settings.credentials,
        receiver=LocalRedirectServer(port=settings.redirect_port),
        expiry_margin=settings.expiry_margin,
        redirect_timeout=settings.redirect_timeout,
        request_timeout=settings.request_timeout,
    )
    return GoogleDriveUploader(
        config,
        authenticator=authenticator,
        request_timeout=settings.request_timeout,
        upload_timeout=settings.upload_timeout,
    )


def print_progress(progress: UploadProgress) -> None:
    if progress.stage == "error":
        print(f"❌ {progress.message}: {progress.error}")
        return
    icon = STAGE_ICONS.get(progress.stage, "•")
    print(f"{icon} [{progress.progress:3d}%] {progress.message}")


def cmd_connect(uploader: GoogleDriveUploader, args) -> int:
    print("🌐 Opening browser for Google Drive authorization...")
    try:
        uploader.connect_google_drive()
    except DriveError as exc:
        print(f"❌ Connection failed: {exc}")
        return 1
    print("✅ Google Drive connected.")
    return 0


def cmd_upload(uploader: GoogleDriveUploader, args) -> int:
    file_path = Path(args.file)
    if not file_path.is_file():
        print(f"Error: file '{file_path}' does not exist.")
        return 1

    result = uploader.upload_file(DriveFile.from_path(file_path), args.folder, on_progress=print_progress)
    if result is None:
        return 1

    print("\n✅ File uploaded successfully.")
    print(f"🔗 View link: {result.view_link}")
    print(f"⬇️  Download link: {result.download_link}")
    print(f"📂 Uploaded into: {args.folder or 'My Drive'}")
    return 0


def cmd_find(uploader: GoogleDriveUploader, args) -> int:
    """Look a folder path up without creating anything."""
    try:
        folder_id = uploader.folders.find_folder_by_path(args.folder)
    except (DriveError, HttpError) as exc:
        print(f"❌ Folder lookup failed: {exc}")
        return 1
    if folder_id is None:
        print(f"📂 Folder not found: {args.folder}")
        return 1
    print(f"📂 {args.folder} -> {folder_id}")
    return 0


def cmd_whoami(uploader: GoogleDriveUploader, args) -> int:
    info = uploader.get_user_info()
    if info is None:
        print("❌ Could not reach Google Drive with the saved tokens.")
        return 1
    print(f"👤 {info['name']} <{info['email']}>")
    return 0


def cmd_disconnect(uploader: GoogleDriveUploader, args, store: TokenStore) -> int:
    uploader.disconnect()
    store.clear()
    print("🔌 Google Drive disconnected.")
    return 0


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="upload-to-drive", description="Upload files to Google Drive.")
    parser.add_argument("--env-file", help="Path to a .env file with the OAuth client settings")
    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("connect", help="Authorize access to Google Drive")

    upload = subparsers.add_parser("upload", help="Upload a file")
    upload.add_argument("file", help="Local file to upload")
    upload.add_argument("folder", nargs="?", default=None, help='Destination path, e.g. "Parent/SubFolder"')

    find = subparsers.add_parser("find", help="Show the ID of an existing folder path")
    find.add_argument("folder", help='Folder path, e.g. "My Drive/Parent/SubFolder"')

    subparsers.add_parser("whoami", help="Show the connected account")
    subparsers.add_parser("disconnect", help="Forget the saved tokens")

    args = parser.parse_args(argv)

    try:
        settings = load_settings(args.env_file)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    set_log_level(settings.log_level)

    if not settings.is_configured():
        print("Error: set GOOGLE_DRIVE_CLIENT_ID and GOOGLE_DRIVE_CLIENT_SECRET (or GOOGLE_OAUTH_CLIENT_SECRET) first.")
        return 1

    store = FileTokenStore(settings.token_file)
    uploader = build_uploader(settings, store)

    if args.command == "connect":
        return cmd_connect(uploader, args)
    if args.command == "disconnect":
        return cmd_disconnect(uploader, args, store)

    if not uploader.is_connected():
        print("Error: not connected to Google Drive. Run 'upload-to-drive connect' first.")
        return 1

    if args.command == "upload":
        if args.folder is None:
            args.folder = settings.drive_folder
        return cmd_upload(uploader, args)
    if args.command == "find":
        return cmd_find(uploader, args)
    return cmd_whoami(uploader, args)


if __name__ == "__main__":
    sys.exit(main())
