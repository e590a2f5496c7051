"""
Where OAuth tokens live between runs.

The uploader never touches storage itself; it calls the on_token_refresh
callback it was given. FileTokenStore.save is shaped to be that callback.
"""

import json
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from google_drive_auth import TokenSet
from google_drive_logging import setup_logger

logger = setup_logger(__name__)


class TokenStore(ABC):
    @abstractmethod
    def load(self) -> Optional[TokenSet]:
        """Return the stored tokens, or None if nothing is stored."""

    @abstractmethod
    def save(self, tokens: TokenSet) -> None:
        """Persist tokens, replacing what was there."""

    @abstractmethod
    def clear(self) -> None:
        """Forget stored tokens."""


class FileTokenStore(TokenStore):
    """Tokens in a JSON file (token.json by default)."""

    def __init__(self, file_path="token.json"):
        self.file_path = Path(file_path)

    def load(self) -> Optional[TokenSet]:
        if not self.file_path.exists():
            return None
        try:
            with open(self.file_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, ValueError):
            logger.exception("Could not read token file %s", self.file_path)
            return None
        tokens = TokenSet.from_dict(data)
        logger.debug("Loaded tokens from %s", self.file_path)
        return tokens

    def save(self, tokens: TokenSet) -> None:
        self.file_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.file_path.with_suffix(self.file_path.suffix + ".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(tokens.to_dict(), f, indent=2)
        tmp_path.replace(self.file_path)
        logger.debug("Saved tokens to %s", self.file_path)

    def clear(self) -> None:
        if self.file_path.exists():
            self.file_path.unlink()
            logger.info("Removed token file %s", self.file_path)


class InMemoryTokenStore(TokenStore):
    """Tokens held in memory (lost on exit)."""

    def __init__(self, tokens: Optional[TokenSet] = None):
        self._tokens = tokens

    def load(self) -> Optional[TokenSet]:
        return self._tokens

    def save(self, tokens: TokenSet) -> None:
        self._tokens = tokens

    def clear(self) -> None:
        self._tokens = None
