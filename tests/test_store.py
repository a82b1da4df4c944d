import json
import time

import pytest

from core.store import AgentTurn, StateStore, TurnAction


def _turn(turn_id, ts, action=None, observation="ok"):
    return AgentTurn(id=turn_id, timestamp=ts, thought=f"thinking {turn_id}", observation=observation,
                     action=action)


class TestTurns:

    def test_round_trip_through_disk(self, tmp_path):
        data_dir = str(tmp_path / "s")
        action = TurnAction(tool="read_file", input="README.md", output={"content": "héllo"}, error=None)
        turn = AgentTurn(
            id="turn_1", timestamp=1000.0, thought="Line one\nLine \"two\" ✓",
            observation="Action completed successfully. Result: ...", action=action,
            reflection="worked", survival_tier="normal", balance_usdc=12_000_000, balance_sol=5_000,
        )
        StateStore(data_dir).store_turn(turn)

        reloaded = StateStore(data_dir).get_recent_turns(1)[0]
        assert reloaded == turn
        assert reloaded.thought == "Line one\nLine \"two\" ✓"
        assert reloaded.action.output == {"content": "héllo"}

    def test_turn_log_is_append_only(self, store):
        store.store_turn(_turn("a", 1.0))
        with pytest.raises(ValueError):
            store.store_turn(_turn("a", 2.0))

    def test_recent_turns_newest_first_and_first_turn(self, store):
        for i in range(5):
            store.store_turn(_turn(f"t{i}", float(i)))
        assert [t.id for t in store.get_recent_turns(3)] == ["t4", "t3", "t2"]
        assert store.get_first_turn().id == "t0"
        assert store.turn_count() == 5

    def test_succeeded_reflects_action_error(self):
        assert _turn("x", 1.0).succeeded
        assert not _turn("y", 1.0, action=TurnAction(tool="t", error="boom")).succeeded


class TestStateAndMetrics:

    def test_state_last_write_wins(self, store):
        store.store_state("k", "thing", {"v": 1})
        store.store_state("k", "thing", {"v": 2})
        assert store.get_state("k") == {"v": 2}
        assert store.get_state("missing") is None
        assert [r["id"] for r in store.get_states("thing")] == ["k"]

    def test_lineage_written_once(self, store):
        store.initialize("agent-1", None, 1)
        store.initialize("agent-2", "agent-1", 2)
        lineage = store.get_state("lineage")
        assert lineage["agent_id"] == "agent-1"
        assert lineage["generation"] == 1

    def test_metrics_and_stats(self, store):
        store.store_metric("balance_usdc", 5)
        store.store_turn(_turn("ok", time.time(), action=TurnAction(tool="check_balance", output={})))
        store.store_turn(_turn("bad", time.time(), action=TurnAction(tool="check_balance", error="x")))
        store.store_turn(_turn("idle", time.time()))

        stats = store.get_stats()
        assert stats["turns"] == {"total_turns": 3, "successful_turns": 2, "turns_with_action": 2}
        assert stats["actions"] == [{"tool": "check_balance", "count": 2, "successes": 1}]
        assert stats["metrics"] == ["balance_usdc"]
        assert store.get_metrics("balance_usdc")[0]["value"] == 5.0

    def test_cleanup_keeps_lineage(self, store):
        store.initialize("agent-1")
        store.store_turn(_turn("old", time.time() - 40 * 86400))
        store.store_turn(_turn("new", time.time()))
        # age the lineage entry past the cutoff
        store._state["lineage"]["timestamp"] -= 40 * 86400

        removed = store.cleanup(30)
        assert removed["turns"] == 1
        assert [t.id for t in store.get_recent_turns(10)] == ["new"]
        assert store.get_state("lineage") is not None

    def test_backup_copies_documents(self, store, tmp_path):
        store.store_state("k", "thing", 1)
        dest = store.backup(str(tmp_path / "backups"))
        assert json.loads((dest / "state.json").read_text())["k"]["data"] == 1

    def test_corrupt_file_starts_empty(self, tmp_path):
        data_dir = tmp_path / "s"
        data_dir.mkdir()
        (data_dir / "turns.json").write_text("{not json")
        assert StateStore(str(data_dir)).turn_count() == 0
