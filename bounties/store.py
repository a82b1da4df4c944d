"""
Bounty Store - canonical copy of every discovered bounty (bounties.json).

Status only moves forward: open -> claimed -> submitted -> completed.
The one reversal is a fresh open re-scan overwriting a claimed bounty.
Completed records are terminal.
"""

import logging
from pathlib import Path
from typing import Optional

from core.store import atomic_write_json, read_json

from .models import Bounty, BountySource, BountyStatus

logger = logging.getLogger("roly.bounty_store")


class BountyStore:

    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._path = self.data_dir / "bounties.json"
        self._bounties: dict[str, dict] = read_json(self._path, {})

    def _save(self):
        atomic_write_json(self._path, self._bounties)

    @staticmethod
    def _merge(existing: Bounty, incoming: Bounty) -> Optional[Bounty]:
        """Record to store for incoming, or None to keep existing untouched."""
        if existing.status is BountyStatus.COMPLETED:
            return None
        if incoming.status is BountyStatus.OPEN and existing.status.rank > BountyStatus.CLAIMED.rank:
            # re-scan of a bounty we already submitted: refresh listing data only
            return incoming.with_status(existing.status, existing.claimed_at)
        return incoming

    def store_bounties(self, bounties: list[Bounty]) -> int:
        """Insert or replace by id under the monotonic-status rules. Returns rows written."""
        written = 0
        for bounty in bounties:
            current = self._bounties.get(bounty.id)
            record = bounty
            if current is not None:
                existing = Bounty.from_dict(current)
                record = self._merge(existing, bounty)
                if record is None:
                    continue
                if existing.discovered_at < record.discovered_at:
                    record = Bounty.from_dict({**record.to_dict(), "discovered_at": existing.discovered_at})
            self._bounties[bounty.id] = record.to_dict()
            written += 1
        if written:
            self._save()
            logger.info(f"Stored {written} bounties ({len(bounties) - written} terminal, skipped)")
        return written

    def get_bounties(
        self,
        status: Optional[BountyStatus] = None,
        source: Optional[BountySource] = None,
        limit: int = 50,
    ) -> list[Bounty]:
        """Newest discovery first."""
        rows = [
            b for b in self._bounties.values()
            if (status is None or b["status"] == status.value)
            and (source is None or b["source"] == source.value)
        ]
        rows.sort(key=lambda b: b["discovered_at"], reverse=True)
        return [Bounty.from_dict(b) for b in rows[:limit]]

    def get_bounty(self, bounty_id: str) -> Optional[Bounty]:
        row = self._bounties.get(bounty_id)
        return Bounty.from_dict(row) if row else None

    def update_status(self, bounty_id: str, status: BountyStatus, claimed_at: Optional[float] = None) -> bool:
        """Forward-only status change. False when unknown id or a backward move."""
        current = self.get_bounty(bounty_id)
        if current is None:
            logger.warning(f"update_status: unknown bounty {bounty_id}")
            return False
        if status.rank < current.status.rank:
            logger.warning(
                f"Refusing status regression for {bounty_id}: "
                f"{current.status.value} -> {status.value}"
            )
            return False
        self._bounties[bounty_id] = current.with_status(status, claimed_at).to_dict()
        self._save()
        logger.info(f"Bounty {bounty_id}: {current.status.value} -> {status.value}")
        return True

    def count_by_status(self) -> dict[str, int]:
        counts = {s.value: 0 for s in BountyStatus}
        for b in self._bounties.values():
            counts[b["status"]] = counts.get(b["status"], 0) + 1
        return counts

    def __len__(self) -> int:
        return len(self._bounties)
