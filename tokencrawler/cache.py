"""
Cache Manager
=============
Skips a phase when its inputs and configuration are unchanged since the last
successful run and its output is still on disk.

Storage: ``<output_dir>/.cache.json``, one record per phase::

    {"version": 1, "phases": {"metadata": {CacheRecord...}, ...}}

A record is a hit only if the config hash and input hash both match and the
``output_ref`` file still exists. Every read-modify-write runs under one
asyncio.Lock and lands via atomic rename.
"""

from __future__ import annotations

import asyncio
import hashlib
import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Tuple, Union

from .artifacts import CACHE_FILE, write_json_atomic
from .models import CacheRecord, Phase, PhaseOutcome

logger = logging.getLogger(__name__)

CACHE_VERSION = 1


def _canonical(data: Any) -> str:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)


def _sha256(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


class CacheManager:
    """
    Usage::

        cache = CacheManager(output_dir)
        hit, record = await cache.should_skip(Phase.METADATA, config, input_hash)
        if not hit:
            outcome = await run_phase()
            await cache.record_completion(Phase.METADATA, config, input_hash, "metadata.json", outcome)
    """

    def __init__(self, output_dir: Union[str, Path], enabled: bool = True):
        self.output_dir = Path(output_dir)
        self.cache_file = self.output_dir / CACHE_FILE
        self.enabled = enabled
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Hashing
    # ------------------------------------------------------------------

    @staticmethod
    def hash_config(config: Dict[str, Any]) -> str:
        return _sha256(_canonical(config))

    @staticmethod
    def hash_inputs(inputs: Union[str, Iterable[str]]) -> str:
        """Order-independent hash of a URL set (or of a single string)."""
        if isinstance(inputs, str):
            return _sha256(inputs)
        return _sha256(_canonical(sorted(set(inputs))))

    @classmethod
    def fingerprint(cls, phase: Phase, config: Dict[str, Any], input_hash: str) -> str:
        return _sha256(_canonical({
            "phase": phase.value,
            "config": cls.hash_config(config),
            "input": input_hash,
        }))

    # ------------------------------------------------------------------
    # Lookup / record
    # ------------------------------------------------------------------

    async def should_skip(self, phase: Phase, config: Dict[str, Any],
                          input_hash: str) -> Tuple[bool, Optional[CacheRecord]]:
        """Return ``(True, record)`` on a valid hit, else ``(False, None)``."""
        if not self.enabled:
            logger.info(f"[CACHE] {phase.label}: forced run, cache bypassed")
            return False, None

        async with self._lock:
            data = await asyncio.to_thread(self._load)
        raw = data["phases"].get(phase.value)
        if not raw:
            return self._miss(phase, "first run")

        try:
            record = CacheRecord.from_dict(raw)
        except (KeyError, ValueError) as e:
            return self._miss(phase, f"unreadable record ({e})")

        if record.config_hash != self.hash_config(config):
            return self._miss(phase, "config changed")
        if record.input_hash != input_hash:
            return self._miss(phase, "input changed")
        if not record.output_ref or not (self.output_dir / record.output_ref).exists():
            return self._miss(phase, f"output missing ({record.output_ref or 'none'})")

        logger.info(f"[CACHE] {phase.label}: hit (completed {record.completed_at})")
        return True, record

    async def record_completion(self, phase: Phase, config: Dict[str, Any], input_hash: str,
                                output_ref: str, outcome: Optional[PhaseOutcome] = None) -> CacheRecord:
        """Store the phase's record, replacing any previous one."""
        record = CacheRecord(
            phase=phase,
            config_hash=self.hash_config(config),
            input_hash=input_hash,
            fingerprint=self.fingerprint(phase, config, input_hash),
            completed_at=datetime.now(timezone.utc).isoformat(),
            output_ref=output_ref,
            outcome=outcome.to_dict() if outcome is not None else {},
        )
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            data["phases"][phase.value] = record.to_dict()
            await asyncio.to_thread(write_json_atomic, self.cache_file, data)
        logger.debug(f"[CACHE] {phase.label}: recorded {record.fingerprint[:12]}")
        return record

    async def invalidate(self, phase: Optional[Phase] = None) -> None:
        """Drop one phase's record, or every record when ``phase`` is None."""
        async with self._lock:
            data = await asyncio.to_thread(self._load)
            if phase is None:
                data["phases"] = {}
            else:
                data["phases"].pop(phase.value, None)
            await asyncio.to_thread(write_json_atomic, self.cache_file, data)
        logger.info(f"[CACHE] invalidated {phase.value if phase else 'all phases'}")

    @staticmethod
    def outcome_from(record: CacheRecord) -> PhaseOutcome:
        """Rebuild the cached PhaseOutcome, flagged ``from_cache``."""
        if record.outcome:
            return PhaseOutcome.from_dict(record.outcome, from_cache=True)
        return PhaseOutcome(phase=record.phase, from_cache=True)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _load(self) -> Dict[str, Any]:
        empty = {"version": CACHE_VERSION, "phases": {}}
        if not self.cache_file.exists():
            return empty
        try:
            data = json.loads(self.cache_file.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"[CACHE] {self.cache_file} unreadable ({e}), treating as empty")
            return empty
        if not isinstance(data, dict) or not isinstance(data.get("phases"), dict):
            logger.warning(f"[CACHE] {self.cache_file} has unexpected shape, treating as empty")
            return empty
        return data

    @staticmethod
    def _miss(phase: Phase, reason: str) -> Tuple[bool, None]:
        logger.info(f"[CACHE] {phase.label}: miss ({reason})")
        return False, None
