"""
Durable state storage with encryption

Every record the agent needs to survive a restart (agentState, sessionMemory,
wakeups, userMemory, userScripts, ujs_<id>) is one Fernet-encrypted JSON file.
"""

import base64
import json
import os
import re
from pathlib import Path
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from webpilot.utils.logging import get_logger

logger = get_logger(__name__)

_KEY_PATTERN = re.compile(r"^[A-Za-z0-9_.-]+$")


class StateStore:
    """Key/value store of encrypted JSON records."""

    def __init__(self, state_dir: str = "state", encryption_key: Optional[str] = None):
        """
        Initialize the store.

        Args:
            state_dir: Directory holding one file per record
            encryption_key: Secret used to derive the Fernet key. If None, uses ENV var or generates new.
        """
        self.state_dir = Path(state_dir)
        self.state_dir.mkdir(parents=True, exist_ok=True)

        if encryption_key:
            key = encryption_key.encode()
        else:
            key_str = os.getenv("ENCRYPTION_KEY")
            if key_str:
                key = key_str.encode()
            else:
                # A generated key cannot decrypt records written by a previous process
                logger.warning("No encryption key found. Generating new key, state will not survive restarts")
                key = Fernet.generate_key()

        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=b"webpilot_state_salt",
            iterations=100000,
        )
        derived_key = base64.urlsafe_b64encode(kdf.derive(key))
        self.cipher = Fernet(derived_key)

    def _path(self, key: str) -> Path:
        if not _KEY_PATTERN.match(key):
            raise ValueError(f"Invalid state key: {key!r}")
        return self.state_dir / f"{key}.encrypted"

    def get(self, key: str, default: Any = None) -> Any:
        """
        Load and decrypt one record.

        Args:
            key: Record name

        Returns:
            The decoded JSON value, or `default` if missing or unreadable
        """
        path = self._path(key)
        if not path.exists():
            return default

        try:
            decrypted = self.cipher.decrypt(path.read_bytes())
            return json.loads(decrypted.decode())
        except (InvalidToken, ValueError) as e:
            logger.error(f"[STORE] Failed to load {key}: {e}")
            return default

    def set(self, key: str, value: Any) -> None:
        """
        Encrypt and save one record. The write is atomic (temp file + rename)
        so a process torn down mid-write never leaves a truncated record.
        """
        path = self._path(key)
        encrypted = self.cipher.encrypt(json.dumps(value).encode())

        tmp = path.with_suffix(".tmp")
        tmp.write_bytes(encrypted)
        os.replace(tmp, path)
        logger.debug(f"[STORE] Saved {key}")
