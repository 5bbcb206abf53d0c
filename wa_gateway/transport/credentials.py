"""Per-session credential directories."""

import json
import os
import shutil
from pathlib import Path
from typing import Any

from wa_gateway.logging_config import get_logger
from wa_gateway.transport.base import AuthState

logger = get_logger("credentials")

CREDS_FILENAME = "creds.json"


class CredentialStore:
    def __init__(self, root: str | Path):
        self.root = Path(root).resolve()

    def path_for(self, session_id: str) -> Path:
        path = (self.root / session_id).resolve()
        if self.root not in path.parents:
            raise ValueError(f"Invalid session id for credential path: {session_id!r}")
        return path

    def load(self, session_id: str) -> AuthState:
        directory = self.path_for(session_id)
        directory.mkdir(parents=True, exist_ok=True)
        creds_file = directory / CREDS_FILENAME
        creds: dict[str, Any] = {}
        if creds_file.exists():
            try:
                creds = json.loads(creds_file.read_text(encoding="utf-8"))
            except (OSError, ValueError) as e:
                logger.warning(f"Unreadable credentials for {session_id}: {e}")
        return AuthState(session_id=session_id, directory=directory, creds=creds)

    def save(self, session_id: str, creds: dict[str, Any]) -> None:
        directory = self.path_for(session_id)
        directory.mkdir(parents=True, exist_ok=True)
        target = directory / CREDS_FILENAME
        tmp = target.with_suffix(".json.tmp")
        try:
            tmp.write_text(json.dumps(creds, ensure_ascii=False, default=str), encoding="utf-8")
            os.replace(tmp, target)
        except Exception:
            tmp.unlink(missing_ok=True)
            raise

    def purge(self, session_id: str) -> bool:
        directory = self.path_for(session_id)
        if not directory.exists():
            return False
        shutil.rmtree(directory, ignore_errors=True)
        logger.info(f"Credentials purged for {session_id}", extra={"context": {"path": str(directory)}})
        return True
