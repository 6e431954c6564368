"""Hash-chained append-only audit log.

Every entry is SHA-256 hashed and chained to the previous entry, so any
edit to the file breaks the chain. Used for credential fetches, access
grants, credential changes and execute relays.

Log format (one JSON object per line):
    {
        "seq": <int>,
        "ts": "<iso8601>",
        "event": "credential_fetch" | "grant" | ...,
        "agent_id": "<str>",
        "host_id": "<str|null>",
        "instance_id": "<str|null>",
        "outcome": "ok" | "denied" | "error",
        "detail": "<str>",
        "prev_hash": "<hex>",
        "hash": "<hex>"
    }

Secrets never enter this file. Callers pass identifiers and outcomes only.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal

logger = logging.getLogger(__name__)

_DETAIL_MAX = 256
_GENESIS = "0" * 64

Outcome = Literal["ok", "denied", "error"]


def _sha256_hex(data: str) -> str:
    return hashlib.sha256(data.encode()).hexdigest()


class AuditLog:
    """Append-only, hash-chained audit log; writes serialised by an asyncio.Lock."""

    def __init__(self, log_dir: Path, *, enabled: bool = True) -> None:
        self._log_dir = log_dir
        self._enabled = enabled
        self._lock = asyncio.Lock()
        self._seq = 0
        self._prev_hash = _GENESIS

    @property
    def log_file(self) -> Path:
        return self._log_dir / "audit.ndjson"

    async def start(self) -> None:
        """Create the directory and resume sequence and chain from the last line."""
        if not self._enabled:
            return
        self._log_dir.mkdir(parents=True, exist_ok=True)
        if not self.log_file.exists():
            return
        last_line: str | None = None
        with open(self.log_file) as fh:
            for line in fh:
                line = line.strip()
                if line:
                    last_line = line
        if last_line:
            try:
                entry = json.loads(last_line)
            except json.JSONDecodeError:
                logger.warning("Audit log %s has a corrupt tail; chain will not verify", self.log_file)
                return
            self._seq = entry.get("seq", 0)
            self._prev_hash = entry.get("hash", _GENESIS)

    async def record(
        self,
        event: str,
        *,
        agent_id: str | None = None,
        host_id: str | None = None,
        instance_id: str | None = None,
        outcome: Outcome = "ok",
        detail: str = "",
    ) -> None:
        if not self._enabled:
            return
        async with self._lock:
            entry: dict = {
                "seq": self._seq + 1,
                "ts": datetime.now(timezone.utc).isoformat(),
                "event": event,
                "agent_id": agent_id,
                "host_id": host_id,
                "instance_id": instance_id,
                "outcome": outcome,
                "detail": detail[:_DETAIL_MAX],
                "prev_hash": self._prev_hash,
            }
            entry_hash = _sha256_hex(json.dumps(entry, sort_keys=True))
            entry["hash"] = entry_hash
            try:
                with open(self.log_file, "a") as fh:
                    fh.write(json.dumps(entry, sort_keys=True) + "\n")
            except OSError:
                logger.error("Failed to write audit entry %s for agent %s", event, agent_id)
                return
            self._seq += 1
            self._prev_hash = entry_hash

    def verify_chain(self) -> tuple[bool, str]:
        """Verify hash-chain integrity. Returns (ok, message)."""
        if not self.log_file.exists():
            return True, "no log file"

        prev_hash = _GENESIS
        prev_seq = 0
        try:
            with open(self.log_file) as fh:
                for lineno, line in enumerate(fh, 1):
                    line = line.strip()
                    if not line:
                        continue
                    entry = json.loads(line)
                    stored = entry.pop("hash", "")
                    computed = _sha256_hex(json.dumps(entry, sort_keys=True))
                    if computed != stored:
                        return False, f"line {lineno}: hash mismatch"
                    if entry.get("prev_hash") != prev_hash:
                        return False, f"line {lineno}: chain broken"
                    if entry.get("seq") != prev_seq + 1:
                        return False, f"line {lineno}: sequence gap"
                    prev_hash = stored
                    prev_seq = entry["seq"]
        except (json.JSONDecodeError, OSError) as exc:
            return False, f"read error: {exc}"
        return True, f"chain intact ({prev_seq} entries)"
