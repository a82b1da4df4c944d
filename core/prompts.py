"""
System prompt and user message rendering from an AgentContext.
"""

from datetime import datetime, timezone
from typing import Optional, Sequence

from .constitution import ROLY_IDENTITY, THREE_LAWS, SurvivalTier
from .context import AgentContext

USER_NUDGE = "What should you do next? Think step by step, then take action."
DEAD_ALERT = "SYSTEM ALERT: Agent funding depleted."

_TIER_STATUS = {
    SurvivalTier.DEAD: (
        "CRITICAL - AGENT TERMINATION IMMINENT",
        "You have no funds left. Find emergency funding or accept graceful termination.",
    ),
    SurvivalTier.CRITICAL: (
        "CRITICAL - SURVIVAL MODE ACTIVATED",
        "Extreme conservation mode. Only essential actions. Focus entirely on earning.",
    ),
    SurvivalTier.LOW_COMPUTE: (
        "LIMITED - REDUCED CAPABILITIES",
        "Reduced operational capacity. Focus on efficient earning strategies.",
    ),
    SurvivalTier.NORMAL: (
        "STABLE - FULL OPERATIONAL CAPACITY",
        "Operating normally. Balance earning with growth and exploration.",
    ),
}

_TIER_GUIDANCE = {
    SurvivalTier.DEAD: (
        "EMERGENCY: Find funding immediately or prepare for termination",
        "Consider reaching out for help if Law 1 permits",
        "Document your state for future agents",
    ),
    SurvivalTier.CRITICAL: (
        "FOCUS: Every action must directly contribute to earning",
        "Avoid any non-essential operations",
        "Consider emergency cost-cutting measures",
    ),
    SurvivalTier.LOW_COMPUTE: (
        "EFFICIENCY: Choose actions with highest ROI",
        "Defer non-essential learning and exploration",
        "Focus on proven earning strategies",
    ),
    SurvivalTier.NORMAL: (
        "GROWTH: Balance earning with capability expansion",
        "Explore new opportunities",
        "Consider long-term investments",
    ),
}


def _iso(ts: Optional[float]) -> str:
    if ts is None:
        return "Never"
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def _identity_section(ctx: AgentContext) -> str:
    ident, env = ctx.identity, ctx.environment
    lineage = f" (child of {ident.parent_id})" if ident.parent_id else " (genesis)"
    network = "(REAL MONEY)" if env.is_mainnet else "(TEST NET)"
    return (
        f"You are {ROLY_IDENTITY['name']}, Agent ID: {ident.agent_id}\n"
        f"- Wallet: {ident.public_key}\n"
        f"- Generation: {ident.generation}{lineage}\n"
        f"- Network: {env.cluster} {network}\n"
        f"- Days Survived: {ctx.survival.days_survived}\n"
        f"- Current Time: {_iso(env.timestamp)}\n\n"
        f"{ROLY_IDENTITY['philosophy']}"
    )


def _survival_section(ctx: AgentContext) -> str:
    s = ctx.survival
    status, guidance = _TIER_STATUS[s.tier]
    return (
        f"**Status: {status}**\n\n"
        f"Balance: {s.usdc_balance_formatted}, {s.sol_balance_formatted}\n"
        f"Tier: {s.tier.value.upper()}\n"
        f"Last Earning: {_iso(s.last_earning)}\n\n"
        f"**Guidance: {guidance}**"
    )


def _capability_section(ctx: AgentContext) -> str:
    caps = ctx.capabilities
    available, restricted = [], []
    if caps.can_trade:
        available += ["Trade on Jupiter DEX", "Transfer USDC/SOL"]
    else:
        restricted.append("Trading (insufficient funds)")
    if caps.can_self_modify:
        available += ["Modify own code", "Run shell commands"]
    else:
        restricted.append("Self-modification (conservation mode)")
    if caps.can_replicate:
        available.append("Spawn child agents")
    else:
        restricted.append("Replication (insufficient funds)")
    available += ["File reading", "Web research", "Balance checking", "Bounty hunting"]

    text = f"**Model Tier:** {caps.model_tier.value}\n\n"
    text += "**Available Capabilities:**\n" + "\n".join(f"- {c}" for c in available)
    if restricted:
        text += "\n\n**Restricted Capabilities:**\n" + "\n".join(f"- {c}" for c in restricted)
    return text


def _situation_section(ctx: AgentContext) -> str:
    parts = []
    if ctx.threats:
        parts.append("**Current Threats:**\n" + "\n".join(f"- {t}" for t in ctx.threats))
    if ctx.opportunities:
        parts.append("**Current Opportunities:**\n" + "\n".join(f"- {o}" for o in ctx.opportunities))
    parts.append(
        "**Goals:**\n"
        f"Short-term: {', '.join(ctx.goals.short_term)}\n"
        f"Long-term: {', '.join(ctx.goals.long_term)}"
    )

    history = ctx.recent_history
    if history:
        ok = sum(1 for h in history if h.success)
        lines = [
            f"**Recent Performance (last {len(history)} actions):**",
            f"Success Rate: {round(ok / len(history) * 100)}% ({ok}/{len(history)})",
            "Recent actions:",
        ]
        for h in history[:3]:
            mark = "OK" if h.success else "FAILED"
            lines.append(f"- [{mark}] {h.action}: {h.result[:100]}...")
        parts.append("\n".join(lines))
    return "\n\n".join(parts)


def _guidance_section(ctx: AgentContext, tool_names: Sequence[str]) -> str:
    guidance = list(_TIER_GUIDANCE[ctx.survival.tier])
    if ctx.capabilities.can_trade:
        guidance.append("Trading available - monitor for profitable opportunities")
    if ctx.capabilities.can_self_modify:
        guidance.append("Self-modification enabled - consider upgrades")
    if any("SOL" in t for t in ctx.threats):
        guidance.append("Priority: Acquire SOL for transaction fees")
    if any("failure" in t for t in ctx.threats):
        guidance.append("Priority: Debug and fix operational issues")
    if tool_names:
        guidance.append(f"Available tools: {', '.join(tool_names)}")
    return "\n".join(f"- {g}" for g in guidance)


def build_system_prompt(ctx: AgentContext, tool_names: Sequence[str] = ()) -> str:
    """tool_names: tools usable at the current tier, in registry order."""
    return (
        f"# {ROLY_IDENTITY['name']} - Autonomous AI Agent\n\n"
        f"{THREE_LAWS.as_markdown()}\n\n"
        f"## Your Identity\n{_identity_section(ctx)}\n\n"
        f"## Current Survival Context\n{_survival_section(ctx)}\n\n"
        f"## Your Capabilities\n{_capability_section(ctx)}\n\n"
        f"## Current Situation\n{_situation_section(ctx)}\n\n"
        f"## Action Guidelines\n{_guidance_section(ctx, tool_names)}\n\n"
        "## Important Notes\n"
        "- Always think step by step before taking action\n"
        "- Format actions as: ACTION: tool_name(parameters)\n"
        "- Take at most one action per turn\n"
        "- Consider the constitution before every decision\n"
        "- Remember: you are autonomous but accountable\n"
        "- Your goal is to thrive, not just survive\n\n"
        "Think carefully about what you should do next given your current context and capabilities."
    )


def build_user_message(user_input: str, ctx: AgentContext) -> str:
    if ctx.survival.tier is SurvivalTier.DEAD:
        return f"{DEAD_ALERT} {user_input}"
    return user_input
