"""
Call Journal

A hash-chained, publicly auditable record of every committed contract call.
Each committed call (setup, purchase, castVote, sweep) is sealed into its
own block; rejected calls never reach the journal.

Key properties:
- Blocks link to their predecessor by hash, so any edit breaks the chain
- A light proof-of-work makes rewriting history cost something
- The journal is an audit trail; the contract state itself lives in storage
"""

import hashlib
import json
import os
import time
import threading
from pathlib import Path
from typing import Optional

JOURNAL_FILE = Path(os.environ.get("TOKENVOTE_JOURNAL_FILE", Path(__file__).parent / "journal.json"))


HEADER_FIELDS = ("index", "timestamp", "calls", "previous_hash", "nonce")


class Block:
    """One sealed entry of the journal, holding the calls committed together."""

    def __init__(self, index: int, timestamp: float, calls: list, previous_hash: str, nonce: int = 0):
        self.index = index
        self.timestamp = timestamp
        self.calls = calls  # list of {"operation", "caller", "args", "value", "result"}
        self.previous_hash = previous_hash
        self.nonce = nonce
        self.hash = self._compute_hash()

    def header(self) -> dict:
        return {field: getattr(self, field) for field in HEADER_FIELDS}

    def _compute_hash(self) -> str:
        content = json.dumps(self.header(), sort_keys=True)
        return hashlib.sha256(content.encode()).hexdigest()

    def seal(self, difficulty: int):
        """Advance the nonce until the hash carries ``difficulty`` leading zeros."""
        prefix = "0" * difficulty
        while not self.hash.startswith(prefix):
            self.nonce += 1
            self.hash = self._compute_hash()

    def to_dict(self) -> dict:
        return dict(self.header(), hash=self.hash)

    @classmethod
    def from_dict(cls, data: dict) -> "Block":
        block = cls(**{field: data[field] for field in HEADER_FIELDS})
        # Keep the stored hash so tampering shows up on verification
        block.hash = data["hash"]
        return block


class Journal:
    DIFFICULTY = 2  # leading zeros in hex

    def __init__(self, path: Optional[Path] = None):
        self._lock = threading.Lock()
        self.path = Path(path) if path is not None else JOURNAL_FILE
        self.chain: list[Block] = []
        self._load_or_init()

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_or_init(self):
        if self.path.exists():
            try:
                with open(self.path) as f:
                    data = json.load(f)
                self.chain = [Block.from_dict(b) for b in data["chain"]]
                if not self.chain or self._first_invalid() is not None:
                    raise ValueError("loaded journal is invalid")
                return
            except (OSError, ValueError, KeyError, TypeError) as e:
                print(f"[journal] Warning: could not load journal ({e}), reinitializing")

        genesis = Block(
            index=0,
            timestamp=time.time(),
            calls=[],
            previous_hash="0" * 64,
        )
        self.chain = [genesis]
        self._save()

    def _save(self):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "w") as f:
            json.dump({"chain": [b.to_dict() for b in self.chain]}, f, indent=2)

    # ------------------------------------------------------------------
    # Core operations
    # ------------------------------------------------------------------

    def record_call(self, operation: str, caller: str, args: dict, value: int, result) -> dict:
        """
        Seal one committed call into a new block.

        Returns { tx_hash, block_index }.
        """
        record = {
            "operation": operation,
            "caller": caller,
            "args": args,
            # the attached value is journaled as a decimal string; args and result as given
            "value": str(value),
            "result": result,
            "timestamp": time.time(),
        }
        with self._lock:
            block = Block(
                index=len(self.chain),
                timestamp=time.time(),
                calls=[record],
                previous_hash=self.chain[-1].hash,
            )
            block.seal(self.DIFFICULTY)
            self.chain.append(block)
            try:
                self._save()
            except OSError:
                self.chain.pop()
                raise
            return {"tx_hash": block.hash, "block_index": block.index}

    # ------------------------------------------------------------------
    # Query / audit
    # ------------------------------------------------------------------

    def get_chain(self) -> list:
        with self._lock:
            return [b.to_dict() for b in self.chain]

    def get_block(self, index: int) -> Optional[dict]:
        with self._lock:
            if 0 <= index < len(self.chain):
                return self.chain[index].to_dict()
            return None

    def calls_by(self, caller: str) -> list:
        """Every journaled call made by ``caller``, oldest first."""
        with self._lock:
            return [
                dict(call, block_index=b.index, tx_hash=b.hash)
                for b in self.chain[1:]
                for call in b.calls
                if call.get("caller") == caller
            ]

    def get_stats(self) -> dict:
        with self._lock:
            counts: dict[str, int] = {}
            for block in self.chain[1:]:
                for call in block.calls:
                    counts[call["operation"]] = counts.get(call["operation"], 0) + 1
            return {
                "block_count": len(self.chain),
                "total_calls": sum(counts.values()),
                "calls_by_operation": counts,
            }

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def _first_invalid(self) -> Optional[int]:
        """Index of the first block that breaks the chain, or None."""
        prefix = "0" * self.DIFFICULTY
        for previous, block in zip(self.chain, self.chain[1:]):
            broken = (
                block.index != previous.index + 1
                or block.previous_hash != previous.hash
                or block.hash != block._compute_hash()
                or not block.hash.startswith(prefix)
            )
            if broken:
                return block.index
        return None

    def verify_chain(self) -> dict:
        """Audit the whole journal; reports the first broken block if any."""
        with self._lock:
            first_invalid = self._first_invalid()
            valid = first_invalid is None
            return {
                "valid": valid,
                "block_count": len(self.chain),
                "first_invalid_block": first_invalid,
                "message": "Journal integrity verified" if valid else f"Journal integrity FAILED at block {first_invalid}",
            }


# Singleton instance shared across the application
_journal_instance: Optional[Journal] = None
_journal_lock = threading.Lock()


def get_journal() -> Journal:
    global _journal_instance
    if _journal_instance is None:
        with _journal_lock:
            if _journal_instance is None:
                _journal_instance = Journal()
    return _journal_instance
