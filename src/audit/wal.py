"""
Append-Only Audit Log

Tamper-evident JSONL trail of audit events.

"A memory that can be rewritten is not memory. It is fiction."

Writers are short-lived processes, so the chain head is never cached in
memory: every append takes an exclusive lock on the file, reads the last
line to learn the previous hash and sequence, then appends.

Format: JSONL (one JSON object per line)
{"seq": 1, "prev_line_hash": null, "event": {...}, "line_hash": "abc123..."}
{"seq": 2, "prev_line_hash": "abc123...", "event": {...}, "line_hash": "def456..."}
"""

import fcntl
import hashlib
import json
import os
from pathlib import Path
from typing import IO, Iterator, Optional, Union

from loguru import logger

from .models import AuditEvent

TAIL_BLOCK_SIZE = 4096


class AuditLog:
    """
    Append-only, hash-chained log of audit events.

    Features:
    - Append-only (file opened in append mode under an exclusive lock)
    - Line-level hash chain (each line hashes the previous)
    - Crash-safe (fsync after each write)
    """

    def __init__(
        self,
        log_dir: Union[str, Path],
        log_name: str = "learning-events.jsonl",
        sync_on_write: bool = True,
    ):
        self.log_dir = Path(log_dir)
        self.path = self.log_dir / log_name
        self.sync_on_write = sync_on_write

    @staticmethod
    def _compute_line_hash(data: dict) -> str:
        """Compute hash for a log line."""
        canonical = json.dumps(data, sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode()).hexdigest()

    @staticmethod
    def _read_last_record(f: IO[bytes]) -> Optional[dict]:
        """Read the last non-empty line of an open binary file."""
        size = f.seek(0, os.SEEK_END)
        if size == 0:
            return None

        block = TAIL_BLOCK_SIZE
        while True:
            start = max(0, size - block)
            f.seek(start)
            chunk = f.read(size - start)
            lines = [line for line in chunk.split(b"\n") if line.strip()]
            # The first line of a partial chunk may be truncated; widen the read
            if start > 0 and len(lines) < 2:
                block *= 2
                continue
            if not lines:
                return None
            try:
                return json.loads(lines[-1])
            except json.JSONDecodeError as e:
                logger.warning(f"Error parsing last audit line: {e}")
                return None

    def append(self, event: AuditEvent) -> dict:
        """
        Append an audit event to the log.

        Returns the log record (with seq, line_hash, etc.).
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)

        with open(self.path, "a+b") as f:
            fcntl.flock(f.fileno(), fcntl.LOCK_EX)
            try:
                last = self._read_last_record(f)
                record = {
                    "seq": (last.get("seq", 0) + 1) if last else 1,
                    "prev_line_hash": last.get("line_hash") if last else None,
                    "event": json.loads(event.canonical_form()),
                }
                # Line hash includes prev_line_hash for chaining
                record["line_hash"] = self._compute_line_hash(record)

                line = json.dumps(record, separators=(",", ":")) + "\n"
                f.seek(0, os.SEEK_END)
                f.write(line.encode())
                f.flush()
                if self.sync_on_write:
                    os.fsync(f.fileno())
            finally:
                fcntl.flock(f.fileno(), fcntl.LOCK_UN)

        return record

    def verify_chain(self) -> dict:
        """
        Verify the hash chain integrity of the log.

        Returns verification result with any broken links.
        """
        if not self.path.exists():
            return {"valid": True, "file": str(self.path), "line_count": 0, "broken_links": []}

        broken_links = []
        line_count = 0
        prev_hash = None

        with open(self.path, "r", encoding="utf-8") as f:
            for line_num, line in enumerate(f, 1):
                if not line.strip():
                    continue

                try:
                    data = json.loads(line.strip())
                except json.JSONDecodeError as e:
                    broken_links.append({
                        "line": line_num,
                        "error": f"JSON decode error: {e}",
                    })
                    continue

                if data.get("prev_line_hash") != prev_hash:
                    broken_links.append({
                        "line": line_num,
                        "seq": data.get("seq"),
                        "error": "prev_line_hash mismatch",
                        "expected": prev_hash,
                        "actual": data.get("prev_line_hash"),
                    })

                stored_hash = data.pop("line_hash", None)
                computed_hash = self._compute_line_hash(data)
                if stored_hash != computed_hash:
                    broken_links.append({
                        "line": line_num,
                        "seq": data.get("seq"),
                        "error": "line_hash mismatch (tampering detected)",
                        "stored": stored_hash[:16] if stored_hash else None,
                        "computed": computed_hash[:16],
                    })

                prev_hash = stored_hash
                line_count += 1

        return {
            "valid": len(broken_links) == 0,
            "file": str(self.path),
            "line_count": line_count,
            "broken_links": broken_links,
        }

    def iterate_records(self, start_seq: int = 0) -> Iterator[dict]:
        """Iterate over log records, optionally from a starting sequence."""
        if not self.path.exists():
            return

        with open(self.path, "r", encoding="utf-8") as f:
            for line in f:
                if not line.strip():
                    continue
                try:
                    data = json.loads(line.strip())
                except json.JSONDecodeError:
                    continue
                if data.get("seq", 0) >= start_seq:
                    yield data
