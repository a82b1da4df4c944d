"""
State Store - append-only turn log, keyed state entries, and metrics.

Three JSON documents under the data dir, each rewritten atomically
(write to tmp, then rename) after every mutation:

    turns.json    AgentTurn records, oldest first, never edited
    state.json    {id: {type, timestamp, data}} last-write-wins
    metrics.json  [{timestamp, name, value, metadata}]
"""

import os
import time
import json
import shutil
import logging
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

logger = logging.getLogger("roly.store")


@dataclass(frozen=True)
class TurnAction:
    tool: str
    input: Any = None
    output: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"tool": self.tool, "input": self.input, "output": self.output, "error": self.error}

    @classmethod
    def from_dict(cls, data: dict) -> "TurnAction":
        return cls(
            tool=data["tool"],
            input=data.get("input"),
            output=data.get("output"),
            error=data.get("error"),
        )


@dataclass(frozen=True)
class AgentTurn:
    """One think/act/observe cycle. At most one action; none when nothing matched."""
    id: str
    timestamp: float
    thought: str
    observation: str
    action: Optional[TurnAction] = None
    reflection: Optional[str] = None
    survival_tier: Optional[str] = None
    balance_usdc: Optional[int] = None
    balance_sol: Optional[int] = None

    @property
    def succeeded(self) -> bool:
        return self.action is None or self.action.error is None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "timestamp": self.timestamp,
            "thought": self.thought,
            "action": self.action.to_dict() if self.action else None,
            "observation": self.observation,
            "reflection": self.reflection,
            "survival_tier": self.survival_tier,
            "balance_usdc": self.balance_usdc,
            "balance_sol": self.balance_sol,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "AgentTurn":
        action = data.get("action")
        return cls(
            id=data["id"],
            timestamp=data["timestamp"],
            thought=data.get("thought", ""),
            observation=data.get("observation", ""),
            action=TurnAction.from_dict(action) if action else None,
            reflection=data.get("reflection"),
            survival_tier=data.get("survival_tier"),
            balance_usdc=data.get("balance_usdc"),
            balance_sol=data.get("balance_sol"),
        )


def atomic_write_json(path: Path, data: Any):
    """Write JSON to a temp file in the same dir, then os.replace over path."""
    tmp_fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp", prefix=path.stem + "_")
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as f:
            json.dump(data, f, ensure_ascii=False, indent=2, default=str)
        os.replace(tmp_path, str(path))
    except Exception:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def read_json(path: Path, default: Any) -> Any:
    if not path.exists():
        return default
    try:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.error(f"Failed to read {path.name}: {e} - starting empty")
        return default


class StateStore:
    """Turn/state/metric persistence for a single agent process."""

    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        self._turns_path = self.data_dir / "turns.json"
        self._state_path = self.data_dir / "state.json"
        self._metrics_path = self.data_dir / "metrics.json"

        self._turns: list[dict] = read_json(self._turns_path, [])
        self._state: dict[str, dict] = read_json(self._state_path, {})
        self._metrics: list[dict] = read_json(self._metrics_path, [])
        self._turn_ids = {t["id"] for t in self._turns}

    # ============================================================
    # LINEAGE
    # ============================================================

    def initialize(self, agent_id: str, parent_id: Optional[str] = None, generation: int = 1):
        """Record the lineage entry once; later calls keep the original."""
        if self.get_state("lineage") is not None:
            return
        self.store_state("lineage", "lineage", {
            "agent_id": agent_id,
            "parent_id": parent_id,
            "generation": generation,
            "created_at": time.time(),
            "status": "active",
        })
        logger.info(f"Lineage recorded: {agent_id} (generation {generation})")

    # ============================================================
    # TURNS
    # ============================================================

    def store_turn(self, turn: AgentTurn):
        if turn.id in self._turn_ids:
            raise ValueError(f"Turn {turn.id} already stored (turn log is append-only)")
        self._turns.append(turn.to_dict())
        self._turn_ids.add(turn.id)
        atomic_write_json(self._turns_path, self._turns)

    def get_recent_turns(self, limit: int = 10) -> list[AgentTurn]:
        """Newest first."""
        ordered = sorted(self._turns, key=lambda t: t["timestamp"], reverse=True)
        return [AgentTurn.from_dict(t) for t in ordered[:limit]]

    def get_first_turn(self) -> Optional[AgentTurn]:
        if not self._turns:
            return None
        return AgentTurn.from_dict(min(self._turns, key=lambda t: t["timestamp"]))

    def turn_count(self) -> int:
        return len(self._turns)

    # ============================================================
    # STATE ENTRIES
    # ============================================================

    def store_state(self, entry_id: str, entry_type: str, data: Any):
        self._state[entry_id] = {"type": entry_type, "timestamp": time.time(), "data": data}
        atomic_write_json(self._state_path, self._state)

    def get_state(self, entry_id: str) -> Any:
        entry = self._state.get(entry_id)
        return entry["data"] if entry else None

    def get_states(self, entry_type: str, since: float = 0.0) -> list[dict]:
        """Entries of a type, newest first, as {id, timestamp, data}."""
        rows = [
            {"id": k, "timestamp": v["timestamp"], "data": v["data"]}
            for k, v in self._state.items()
            if v["type"] == entry_type and v["timestamp"] >= since
        ]
        rows.sort(key=lambda r: r["timestamp"], reverse=True)
        return rows

    # ============================================================
    # METRICS
    # ============================================================

    def store_metric(self, name: str, value: float, metadata: Optional[dict] = None):
        self._metrics.append({
            "timestamp": time.time(),
            "name": name,
            "value": float(value),
            "metadata": metadata,
        })
        atomic_write_json(self._metrics_path, self._metrics)

    def get_metrics(self, name: str, since: float = 0.0, limit: int = 100) -> list[dict]:
        rows = [m for m in self._metrics if m["name"] == name and m["timestamp"] >= since]
        rows.sort(key=lambda m: m["timestamp"], reverse=True)
        return rows[:limit]

    # ============================================================
    # STATS / MAINTENANCE
    # ============================================================

    def get_stats(self, since: float = 0.0) -> dict:
        turns = [t for t in self._turns if t["timestamp"] >= since]
        with_action = [t for t in turns if t.get("action")]
        successful = [t for t in turns if not (t.get("action") or {}).get("error")]

        actions: dict[str, dict] = {}
        for t in with_action:
            tool = t["action"]["tool"]
            row = actions.setdefault(tool, {"tool": tool, "count": 0, "successes": 0})
            row["count"] += 1
            if not t["action"].get("error"):
                row["successes"] += 1

        metric_names = sorted({m["name"] for m in self._metrics if m["timestamp"] >= since})
        return {
            "turns": {
                "total_turns": len(turns),
                "successful_turns": len(successful),
                "turns_with_action": len(with_action),
            },
            "actions": list(actions.values()),
            "metrics": metric_names,
            "period": {"since": since, "until": time.time()},
        }

    def cleanup(self, older_than_days: int = 30) -> dict:
        cutoff = time.time() - older_than_days * 86400
        before = (len(self._turns), len(self._state), len(self._metrics))

        self._turns = [t for t in self._turns if t["timestamp"] >= cutoff]
        self._turn_ids = {t["id"] for t in self._turns}
        # lineage is identity, not history
        self._state = {
            k: v for k, v in self._state.items()
            if v["timestamp"] >= cutoff or k == "lineage"
        }
        self._metrics = [m for m in self._metrics if m["timestamp"] >= cutoff]

        atomic_write_json(self._turns_path, self._turns)
        atomic_write_json(self._state_path, self._state)
        atomic_write_json(self._metrics_path, self._metrics)

        removed = {
            "turns": before[0] - len(self._turns),
            "states": before[1] - len(self._state),
            "metrics": before[2] - len(self._metrics),
        }
        logger.info(
            f"Cleaned up {removed['turns']} turns, {removed['states']} states, "
            f"{removed['metrics']} metrics"
        )
        return removed

    def backup(self, backup_root: Optional[str] = None) -> Path:
        """Copy the store documents into <backup_root>/<unix_ts>/."""
        root = Path(backup_root) if backup_root else self.data_dir / "backups"
        dest = root / str(int(time.time()))
        dest.mkdir(parents=True, exist_ok=True)
        for path in (self._turns_path, self._state_path, self._metrics_path):
            if path.exists():
                shutil.copy2(path, dest / path.name)
        logger.info(f"State backup written to {dest}")
        return dest

    def get_info(self) -> dict:
        lineage = self.get_state("lineage") or {}
        return {
            "total_turns": len(self._turns),
            "total_states": len(self._state),
            "total_metrics": len(self._metrics),
            "data_dir": str(self.data_dir),
            "agent_id": lineage.get("agent_id"),
        }
