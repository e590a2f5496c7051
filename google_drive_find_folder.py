"""
Resolve folder paths like "Parent/Sub/Target" to Drive folder IDs.

- Always starts at "My Drive" root ("root")
- Walks each path component in order
- ensure_folder() creates missing components, find_folder_by_path() never does
- Every resolved cumulative path ("/Parent", "/Parent/Sub") is cached for
  the resolver's lifetime; folders deleted remotely are not noticed
"""

import threading
from typing import Callable, Optional

from google_drive_errors import DriveError
from google_drive_logging import setup_logger
from google_drive_transport import REQUEST_TIMEOUT

logger = setup_logger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
ROOT_FOLDER_ID = "root"


def escape_query_value(value: str) -> str:
    """Escape a literal for a Drive `q` string: backslashes first, then quotes."""
    return value.replace("\\", "\\\\").replace("'", "\\'")


def folder_query(name: str, parent_id: str) -> str:
    """Query for a non-trashed folder called exactly `name` directly under parent_id."""
    return (
        f"name = '{escape_query_value(name)}' "
        f"and '{escape_query_value(parent_id)}' in parents "
        f"and mimeType = '{FOLDER_MIME_TYPE}' "
        f"and trashed = false"
    )


def split_folder_path(folder_path: str) -> list:
    """Split on '/', dropping empty components, so "A//B/" and "/A/B" both give ["A", "B"]."""
    return [p for p in (folder_path or "").split("/") if p.strip()]


class FolderResolver:
    """
    Path -> folder ID, creating folders top-down as needed.

    ensure_folder() calls on one resolver are serialized, so two uploads to the
    same new path in this process create the folder once. Separate processes
    can still race and create a duplicate; the later lookup then just picks
    the first match.
    """

    def __init__(
        self,
        transport,
        token_provider: Callable[[], str],
        root_id: str = ROOT_FOLDER_ID,
        timeout: float = REQUEST_TIMEOUT,
    ):
        self._transport = transport
        self._token_provider = token_provider
        self.root_id = root_id
        self.timeout = timeout
        self._cache = {}
        self._lock = threading.RLock()

    @property
    def cache(self) -> dict:
        return dict(self._cache)

    def clear_cache(self) -> None:
        with self._lock:
            self._cache.clear()

    def find_folder(self, name: str, parent_id: str) -> Optional[str]:
        """Return the ID of the folder `name` under parent_id, or None."""
        request = self._transport.files().list(
            q=folder_query(name, parent_id),
            spaces="drive",
            fields="files(id, name)",
            pageSize=10,
        )
        results = self._transport.execute(request, self._token_provider(), timeout=self.timeout)

        folders = results.get("files", [])
        if not folders or not folders[0].get("id"):
            return None

        # If multiple, just pick the first (they should be unique under a parent)
        if len(folders) > 1:
            logger.warning("Found %s folders named %r under %s; using the first", len(folders), name, parent_id)
        return folders[0]["id"]

    def create_folder(self, name: str, parent_id: str) -> str:
        """Create a new folder under parent_id and return its id."""
        metadata = {
            "name": name,
            "mimeType": FOLDER_MIME_TYPE,
            "parents": [parent_id],
        }
        request = self._transport.files().create(body=metadata, fields="id")
        folder = self._transport.execute(request, self._token_provider(), timeout=self.timeout)

        folder_id = (folder or {}).get("id")
        if not folder_id:
            raise DriveError(f"Folder creation failed: no id returned for {name!r}")
        logger.info("Created folder %r under %s -> %s", name, parent_id, folder_id)
        return folder_id

    def ensure_folder(self, folder_path: str) -> str:
        """
        Ensure a path like "1415 Meridian/Receipts" exists under the root and
        return the ID of its last component. An empty path is the root itself.
        """
        with self._lock:
            parent_id = self.root_id
            cumulative_path = ""

            for name in split_folder_path(folder_path):
                cumulative_path += "/" + name

                cached = self._cache.get(cumulative_path)
                if cached:
                    parent_id = cached
                    continue

                existing_id = self.find_folder(name, parent_id)
                if existing_id:
                    parent_id = existing_id
                else:
                    parent_id = self.create_folder(name, parent_id)

                self._cache[cumulative_path] = parent_id

            return parent_id

    def find_folder_by_path(self, folder_path: str) -> Optional[str]:
        """
        Resolve an existing folder path without creating anything.

        A leading "My Drive" component is ignored. Returns None if any
        component is missing or the path is empty.
        """
        components = split_folder_path(folder_path)
        if components and components[0].strip().lower() in ("my drive", "mydrive"):
            components = components[1:]
        if not components:
            return None

        parent_id = self.root_id
        cumulative_path = ""
        for name in components:
            cumulative_path += "/" + name
            folder_id = self._cache.get(cumulative_path) or self.find_folder(name, parent_id)
            if folder_id is None:
                logger.debug("Path component not found: %r", cumulative_path)
                return None
            with self._lock:
                self._cache[cumulative_path] = folder_id
            parent_id = folder_id

        return parent_id
