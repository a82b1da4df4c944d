"""
Agent Loop - one think/act/observe cycle per tick.

    build context -> prompt -> reason -> injection check -> parse ACTION
    -> dispatch (capability-gated) -> observe -> persist

A cycle that raises never stops the loop: it is logged, the loop backs off
for ERROR_BACKOFF_SECONDS, then tries again. A successful cycle sleeps for
the tier's heartbeat interval. stop() is cooperative; a cycle already in
flight finishes before the flag is seen.
"""

import re
import json
import time
import uuid
import asyncio
import logging
from typing import Any, Optional

from bounties.pipeline import BountyPipeline

from .config import AgentConfig
from .constitution import IRON_LAWS, SurvivalTier, heartbeat_interval_minutes
from .context import AgentContext, ContextBuilder
from .injection_defense import guard_input, is_output_compromised
from .llm import ReasoningBackend, ReasoningError
from .prompts import USER_NUDGE, build_system_prompt, build_user_message
from .store import AgentTurn, StateStore, TurnAction
from .tools import ToolRegistry, ToolResult

logger = logging.getLogger("roly.agent")

ACTION_PATTERN = re.compile(r"ACTION:\s*(\w+)\s*\(")

SAFETY_THOUGHT = "Prompt injection detected - skipping turn for safety"
SAFETY_OBSERVATION = "Safety protocol activated"
SAFETY_REFLECTION = "Need to improve injection detection"
NO_ACTION_OBSERVATION = "No action was taken this turn."


def _closing_paren(text: str, start: int) -> int:
    """Index of the ")" balancing an already-open "(", or -1. Double-quoted spans are opaque."""
    depth = 1
    in_string = escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    return -1


def parse_action(thought: str) -> Optional[tuple[str, str]]:
    """First `ACTION: name(args)` in the text, or None.

    Arguments run to the balancing ")", so parentheses inside them survive.
    Unbalanced text falls back to the first ")" after the opening one.
    """
    match = ACTION_PATTERN.search(thought)
    if not match:
        return None
    end = _closing_paren(thought, match.end())
    if end < 0:
        end = thought.find(")", match.end())
        if end < 0:
            return None
    return match.group(1), thought[match.end():end].strip()


def build_observation(action: Optional[TurnAction]) -> str:
    if action is None:
        return NO_ACTION_OBSERVATION
    if action.error:
        return f"Action failed with error: {action.error}"
    result = action.output if isinstance(action.output, str) else json.dumps(action.output, default=str)
    return f"Action completed successfully. Result: {result[:IRON_LAWS.MAX_OBSERVATION_RESULT_CHARS]}"


def _turn_id(prefix: str) -> str:
    return f"{prefix}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:6]}"


class AgentLoop:

    def __init__(
        self,
        config: AgentConfig,
        store: StateStore,
        context_builder: ContextBuilder,
        llm: ReasoningBackend,
        registry: ToolRegistry,
        bounties: Optional[BountyPipeline] = None,
    ):
        self.config = config
        self.store = store
        self.context_builder = context_builder
        self.llm = llm
        self.registry = registry
        self.bounties = bounties

        self._stop = asyncio.Event()
        self._task: Optional[asyncio.Task] = None
        self.is_running = False
        self.turns_executed = 0
        self.last_turn_at: Optional[float] = None
        self.last_error: Optional[str] = None

    # ============================================================
    # REASONING
    # ============================================================

    async def _think(self, ctx: AgentContext, user_message: str) -> str:
        messages = [
            {"role": "system", "content": build_system_prompt(ctx, self.registry.allowed(ctx.capabilities))},
            {"role": "user", "content": user_message},
        ]
        model = self.llm.model_for(ctx.capabilities.model_tier)
        try:
            return await self.llm.complete(messages, model=model, max_tokens=1000, temperature=0.7)
        except ReasoningError as e:
            logger.warning(f"Primary reasoning failed ({e}), trying fallback {self.llm.fallback_model}")
        return await self.llm.complete(messages, model=self.llm.fallback_model, max_tokens=500, temperature=0.5)

    async def _act(self, ctx: AgentContext, thought: str) -> Optional[TurnAction]:
        parsed = parse_action(thought)
        if parsed is None:
            return None
        name, args = parsed
        logger.info(f"Executing action: {name}({args[:100]})")
        result = await self.registry.execute(name, args, ctx.capabilities)
        return TurnAction(tool=name, input=args, output=result.output, error=result.error)

    async def _cycle(self, ctx: AgentContext, user_message: str, turn_id: str) -> AgentTurn:
        thought = await self._think(ctx, user_message)
        snapshot = {
            "survival_tier": ctx.survival.tier.value,
            "balance_usdc": ctx.survival.usdc_balance,
            "balance_sol": ctx.survival.sol_balance,
        }

        reason = is_output_compromised(thought)
        if reason:
            logger.warning(f"Reasoning output flagged ({reason}); turn short-circuited")
            return AgentTurn(
                id=turn_id,
                timestamp=time.time(),
                thought=SAFETY_THOUGHT,
                observation=SAFETY_OBSERVATION,
                reflection=SAFETY_REFLECTION,
                **snapshot,
            )

        action = await self._act(ctx, thought)
        return AgentTurn(
            id=turn_id,
            timestamp=time.time(),
            thought=thought,
            action=action,
            observation=build_observation(action),
            **snapshot,
        )

    # ============================================================
    # TURNS
    # ============================================================

    async def execute_turn(self) -> AgentTurn:
        """One autonomous cycle, persisted. Raises when reasoning fails on both models."""
        ctx = await self.context_builder.build()
        if ctx.survival.tier is SurvivalTier.DEAD:
            logger.critical("Survival tier DEAD - funding depleted")
        user_message = build_user_message(USER_NUDGE, ctx)

        turn = await self._cycle(ctx, user_message, _turn_id("turn"))
        self.store.store_turn(turn)
        self.turns_executed += 1
        self.last_turn_at = turn.timestamp

        action = turn.action.tool if turn.action else "none"
        logger.info(f"Turn {turn.id} [{ctx.survival.tier.value}] action={action}: {turn.observation[:120]}")
        return turn

    async def execute_manual_turn(self, user_input: str) -> AgentTurn:
        """
        Operator-driven cycle. Input is guarded first (InjectionBlocked propagates
        to the caller). The resulting turn is returned but not persisted.
        """
        safe_input = guard_input(user_input)
        ctx = await self.context_builder.build()
        return await self._cycle(ctx, build_user_message(safe_input, ctx), _turn_id("manual"))

    async def execute_tool(self, name: str, args: Any = None) -> ToolResult:
        """Direct dispatch, gated by the capabilities of a fresh context."""
        ctx = await self.context_builder.build()
        return await self.registry.execute(name, args, ctx.capabilities)

    def initialize_bounty_system(self) -> dict:
        if self.bounties is None:
            return {"initialized": False, "error": "Bounty system not configured"}
        summary = self.bounties.initialize()
        return {"initialized": True, **summary}

    # ============================================================
    # RUN LOOP
    # ============================================================

    async def run(self):
        self.is_running = True
        self._stop.clear()
        logger.info(f"Agent loop started for {self.config.identity.agent_id}")
        try:
            while not self._stop.is_set():
                try:
                    turn = await self.execute_turn()
                    tier = SurvivalTier(turn.survival_tier)
                    delay = heartbeat_interval_minutes(tier, self.config.survival.cadence) * 60
                    self.last_error = None
                except Exception as e:
                    self.last_error = str(e)
                    logger.error(f"Turn failed: {e} - backing off {IRON_LAWS.ERROR_BACKOFF_SECONDS}s")
                    delay = IRON_LAWS.ERROR_BACKOFF_SECONDS
                try:
                    await asyncio.wait_for(self._stop.wait(), timeout=delay)
                except asyncio.TimeoutError:
                    pass
        finally:
            self.is_running = False
            logger.info("Agent loop stopped")

    def start(self) -> asyncio.Task:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run())
        return self._task

    async def stop(self):
        self._stop.set()
        if self._task is not None:
            await self._task
            self._task = None

    def get_status(self) -> dict:
        return {
            "is_running": self.is_running,
            "turn_count": self.store.turn_count(),
            "turns_this_session": self.turns_executed,
            "last_turn_at": self.last_turn_at,
            "last_error": self.last_error,
            "current_time": time.time(),
            "config": {
                "agent_id": self.config.identity.agent_id,
                "cluster": self.config.solana.cluster,
                "model": self.llm.primary_model,
                "fallback_model": self.llm.fallback_model,
            },
            "llm": self.llm.get_status(),
        }
