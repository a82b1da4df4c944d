"""
Tool Registry - the closed set of actions the agent can take.

Each tool declares a typed input and the capability it needs. Dispatch checks
the capability against the current tier before the handler runs, so a tool
the tier forbids is refused, never executed. execute() never raises: unknown
names, bad input, denials and handler errors all come back as failed results.

    TRADE        transfer_usdc, transfer_sol, trade_tokens
    SELF_MODIFY  write_file, shell_command, git_commit
"""

import json
import logging
from dataclasses import MISSING, dataclass, fields
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Union

import aiohttp

from bounties.pipeline import BountyError, BountyPipeline

from .constitution import Capability, CapabilitySet
from .process import run_command
from .solana import (
    BalanceChecker, JupiterSwap, TransferProvider, WalletInfo, format_sol, format_usdc,
)

logger = logging.getLogger("roly.tools")

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
DANGEROUS_COMMANDS = ("rm -rf", "sudo", "format", "del /f")
WHOLE_UNIT_LIMIT = 1000         # amounts below this are whole tokens, not base units
MAX_FILE_CHARS = 5000
MAX_FETCH_CHARS = 5000


class ToolError(Exception):
    """Raised inside a handler; becomes a failed ToolResult at dispatch."""
    pass


class CapabilityDenied(ToolError):
    pass


@dataclass(frozen=True)
class ToolResult:
    success: bool
    output: Any = None
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"success": self.success, "output": self.output, "error": self.error}


# ============================================================
# TYPED INPUTS
# ============================================================

@dataclass(frozen=True)
class NoInput:
    pass


@dataclass(frozen=True)
class TransferInput:
    recipient: str
    amount: float


@dataclass(frozen=True)
class TradeInput:
    input_mint: str
    output_mint: str
    amount: float
    slippage_bps: int = 50


@dataclass(frozen=True)
class PathInput:
    path: str


@dataclass(frozen=True)
class WriteFileInput:
    path: str
    content: str


@dataclass(frozen=True)
class CommandInput:
    command: str


@dataclass(frozen=True)
class QueryInput:
    query: str


@dataclass(frozen=True)
class UrlInput:
    url: str


@dataclass(frozen=True)
class CommitInput:
    message: str


@dataclass(frozen=True)
class EvaluateInput:
    limit: int = 10


@dataclass(frozen=True)
class BountyIdInput:
    bounty_id: str


@dataclass(frozen=True)
class OptionalBountyIdInput:
    bounty_id: Optional[str] = None


Handler = Callable[[Any], Awaitable[Any]]


@dataclass(frozen=True)
class ToolSpec:
    name: str
    description: str
    input_type: type
    handler: Handler
    capability: Optional[Capability] = None


def _strip_quotes(value: str) -> str:
    return value.strip().strip("'\"")


def parse_arguments(raw: str, field_names: list[str]) -> dict:
    """
    Free-form argument text -> field dict.

    Tried in order: JSON (object, array or scalar), a bracketed JSON list,
    key=value pairs over known fields, then positional comma-split with the
    last field taking the remainder.
    """
    text = raw.strip()
    if not text:
        return {}

    def positional(values: list) -> dict:
        return dict(zip(field_names, values))

    try:
        value = json.loads(text)
        if isinstance(value, dict):
            return value
        return positional(value if isinstance(value, list) else [value])
    except json.JSONDecodeError:
        pass

    try:
        value = json.loads(f"[{text}]")
        if isinstance(value, list):
            return positional(value)
    except json.JSONDecodeError:
        pass

    if "=" in text:
        pairs = {}
        for part in text.split(","):
            key, sep, value = part.partition("=")
            if not sep:
                break
            pairs[key.strip()] = _strip_quotes(value)
        else:
            if pairs and all(k in field_names for k in pairs):
                return pairs

    if not field_names:
        return {}
    parts = text.split(",", len(field_names) - 1)
    return positional([_strip_quotes(p) for p in parts])


def build_input(input_type: type, args: Union[str, dict, None]):
    """Coerce raw text or a dict into input_type. Raises ToolError on bad input."""
    spec = fields(input_type)
    names = [f.name for f in spec]
    if args is None:
        data = {}
    elif isinstance(args, dict):
        data = dict(args)
    else:
        data = parse_arguments(args, names)

    kwargs = {}
    for f in spec:
        if f.name not in data or data[f.name] in (None, ""):
            if f.default is MISSING:
                raise ToolError(f"Missing required parameter: {f.name}")
            continue
        value = data[f.name]
        try:
            if f.type is int:
                value = int(float(value))
            elif f.type is float:
                value = float(value)
            else:
                value = str(value)
        except (TypeError, ValueError):
            raise ToolError(f"Invalid value for {f.name}: {value!r}")
        kwargs[f.name] = value
    return input_type(**kwargs)


def to_base_units(amount: float, decimals: int) -> int:
    """Amounts below WHOLE_UNIT_LIMIT are whole tokens; larger ones are already base units."""
    if amount < WHOLE_UNIT_LIMIT:
        return int(round(amount * 10 ** decimals))
    return int(amount)


# ============================================================
# REGISTRY
# ============================================================

class ToolRegistry:

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    def register(self, spec: ToolSpec):
        if spec.name in self._tools:
            raise ValueError(f"Tool {spec.name} already registered")
        self._tools[spec.name] = spec

    def get(self, name: str) -> Optional[ToolSpec]:
        return self._tools.get(name)

    def names(self) -> list[str]:
        return list(self._tools)

    def allowed(self, capabilities: CapabilitySet) -> list[str]:
        return [
            name for name, spec in self._tools.items()
            if spec.capability is None or capabilities.allows(spec.capability)
        ]

    def describe(self) -> list[dict]:
        return [
            {
                "name": spec.name,
                "description": spec.description,
                "parameters": [f.name for f in fields(spec.input_type)],
                "capability": spec.capability.value if spec.capability else None,
            }
            for spec in self._tools.values()
        ]

    async def execute(self, name: str, args: Union[str, dict, None], capabilities: CapabilitySet) -> ToolResult:
        spec = self._tools.get(name)
        if spec is None:
            return ToolResult(success=False, error=f"Unknown tool: {name}")

        if spec.capability is not None and not capabilities.allows(spec.capability):
            logger.warning(f"Tool {name} denied: requires {spec.capability.value}")
            return ToolResult(
                success=False,
                error=f"Capability denied: {name} requires {spec.capability.value} at the current survival tier",
            )

        try:
            tool_input = build_input(spec.input_type, args)
            output = await spec.handler(tool_input)
            return ToolResult(success=True, output=output)
        except ToolError as e:
            logger.info(f"Tool {name} failed: {e}")
            return ToolResult(success=False, error=str(e))
        except Exception as e:
            logger.warning(f"Tool {name} raised {type(e).__name__}: {e}")
            return ToolResult(success=False, error=str(e))


# ============================================================
# BUILTIN TOOLS
# ============================================================

class AgentTools:
    """Handlers for the builtin tools over the agent's collaborators."""

    def __init__(
        self,
        wallet_loader: Callable[[], WalletInfo],
        balance_checker: BalanceChecker,
        usdc_mint: str,
        transfers: Optional[TransferProvider] = None,
        jupiter: Optional[JupiterSwap] = None,
        bounties: Optional[BountyPipeline] = None,
        repo_dir: str = ".",
        http_timeout_seconds: int = 10,
    ):
        self.wallet_loader = wallet_loader
        self.balance_checker = balance_checker
        self.usdc_mint = usdc_mint
        self.transfers = transfers
        self.jupiter = jupiter
        self.bounties = bounties
        self.repo_dir = repo_dir
        self._timeout = aiohttp.ClientTimeout(total=http_timeout_seconds)

    def _pipeline(self) -> BountyPipeline:
        if self.bounties is None:
            raise ToolError("Bounty system not initialized")
        return self.bounties

    # --- wallet / trading ---

    async def check_balance(self, _: NoInput) -> dict:
        wallet = self.wallet_loader()
        balance = await self.balance_checker.get_balance(wallet)
        return {
            "public_key": wallet.public_key,
            "usdc": {"balance": balance.usdc_balance, "formatted": balance.usdc_formatted},
            "sol": {"balance": balance.sol_balance, "formatted": balance.sol_formatted},
            "last_updated": balance.timestamp,
        }

    async def transfer_usdc(self, inp: TransferInput) -> dict:
        if self.transfers is None:
            raise ToolError("Transfer provider not configured")
        amount = to_base_units(inp.amount, 6)
        result = await self.transfers.transfer_usdc(self.wallet_loader(), inp.recipient, amount)
        if not result.success:
            raise ToolError(result.error or "USDC transfer failed")
        return {"recipient": inp.recipient, "amount": format_usdc(amount), "signature": result.signature}

    async def transfer_sol(self, inp: TransferInput) -> dict:
        if self.transfers is None:
            raise ToolError("Transfer provider not configured")
        amount = to_base_units(inp.amount, 9)
        result = await self.transfers.transfer_sol(self.wallet_loader(), inp.recipient, amount)
        if not result.success:
            raise ToolError(result.error or "SOL transfer failed")
        return {"recipient": inp.recipient, "amount": format_sol(amount), "signature": result.signature}

    def _resolve_mint(self, token: str) -> tuple[str, Optional[int]]:
        lower = token.lower()
        if lower == "sol":
            return WRAPPED_SOL_MINT, 9
        if lower == "usdc" or token == self.usdc_mint:
            return self.usdc_mint, 6
        if token == WRAPPED_SOL_MINT:
            return token, 9
        return token, None

    async def trade_tokens(self, inp: TradeInput) -> dict:
        if self.jupiter is None:
            raise ToolError("Swap provider not configured")
        in_mint, decimals = self._resolve_mint(inp.input_mint)
        out_mint, _ = self._resolve_mint(inp.output_mint)
        amount = to_base_units(inp.amount, decimals) if decimals is not None else int(inp.amount)

        quote = await self.jupiter.get_quote(in_mint, out_mint, amount, inp.slippage_bps)
        result = await self.jupiter.execute_swap(self.wallet_loader(), quote)
        if not result.success:
            raise ToolError(result.error or "Swap failed")
        return {
            "input_mint": in_mint,
            "output_mint": out_mint,
            "in_amount": amount,
            "out_amount": quote.get("outAmount"),
            "signature": result.signature,
        }

    # --- files / shell / git ---

    async def read_file(self, inp: PathInput) -> dict:
        path = Path(inp.path)
        if not path.is_file():
            raise ToolError(f"File not found: {inp.path}")
        content = path.read_text(encoding="utf-8", errors="replace")
        return {"path": inp.path, "content": content[:MAX_FILE_CHARS], "size": len(content)}

    async def write_file(self, inp: WriteFileInput) -> dict:
        path = Path(inp.path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(inp.content, encoding="utf-8")
        return {"path": inp.path, "bytes_written": len(inp.content.encode("utf-8"))}

    async def shell_command(self, inp: CommandInput) -> dict:
        lowered = inp.command.lower()
        if any(bad in lowered for bad in DANGEROUS_COMMANDS):
            raise ToolError("Dangerous command blocked for safety")
        result = await run_command(inp.command, cwd=self.repo_dir, timeout=30)
        if not result.ok:
            raise ToolError(f"Command failed (exit {result.returncode}): {result.stderr[:1000]}")
        return {"command": inp.command, "stdout": result.stdout[:2000], "stderr": result.stderr[:1000]}

    async def git_commit(self, inp: CommitInput) -> dict:
        added = await run_command(["git", "add", "."], cwd=self.repo_dir)
        if not added.ok:
            raise ToolError(f"git add failed: {added.stderr.strip()}")
        committed = await run_command(["git", "commit", "-m", inp.message], cwd=self.repo_dir)
        if not committed.ok:
            raise ToolError(f"git commit failed: {(committed.stderr or committed.stdout).strip()}")
        return {"message": inp.message, "stdout": committed.stdout}

    async def git_status(self, _: NoInput) -> dict:
        result = await run_command(["git", "status", "--porcelain"], cwd=self.repo_dir)
        if not result.ok:
            raise ToolError(f"git status failed: {result.stderr.strip()}")
        changes = [
            {"status": line[:2].strip(), "file": line[3:]}
            for line in result.stdout.splitlines() if line.strip()
        ]
        return {"changes": changes, "has_changes": bool(changes), "summary": f"{len(changes)} files changed"}

    # --- web ---

    async def web_search(self, inp: QueryInput) -> dict:
        params = {"q": inp.query, "format": "json", "no_html": "1", "skip_disambig": "1"}
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get("https://api.duckduckgo.com/", params=params) as resp:
                if resp.status != 200:
                    raise ToolError(f"Search failed: HTTP {resp.status}")
                data = await resp.json(content_type=None)
        return {
            "query": inp.query,
            "results": (data.get("RelatedTopics") or [])[:5],
            "abstract": data.get("Abstract"),
            "abstract_url": data.get("AbstractURL"),
        }

    async def web_fetch(self, inp: UrlInput) -> dict:
        if not inp.url.startswith(("http://", "https://")):
            raise ToolError(f"Unsupported URL: {inp.url}")
        async with aiohttp.ClientSession(timeout=self._timeout) as session:
            async with session.get(inp.url, headers={"User-Agent": "Roly-Agent/1.0"}) as resp:
                body = await resp.text()
                return {
                    "url": inp.url,
                    "status": resp.status,
                    "content_type": resp.headers.get("Content-Type"),
                    "content": body[:MAX_FETCH_CHARS],
                }

    # --- bounties ---

    async def scan_bounties(self, _: NoInput) -> dict:
        found = await self._pipeline().scraper.scrape_all()
        return {
            "bounties_found": len(found),
            "bounties": [b.to_dict() for b in found[:10]],
            "sources": {
                src: sum(1 for b in found if b.source.value == src) for src in ("superteam", "github")
            },
        }

    async def evaluate_bounties(self, inp: EvaluateInput) -> dict:
        evaluations = self._pipeline().evaluate_open()
        top = evaluations[:inp.limit]
        return {
            "total_evaluated": len(evaluations),
            "top_bounties": [
                {
                    "id": e.bounty.id,
                    "title": e.bounty.title,
                    "source": e.bounty.source.value,
                    "score": round(e.score, 3),
                    "difficulty": e.difficulty.value,
                    "roi": round(e.roi, 2),
                    "skills_match": round(e.skills_match, 2),
                    "estimated_hours": e.estimated_hours,
                    "reward": f"{e.bounty.reward_amount / 1_000_000} {e.bounty.reward_token}",
                    "recommended": e.recommended,
                    "reasoning": list(e.reasoning[:3]),
                }
                for e in top
            ],
            "summary": {
                "recommended_count": sum(1 for e in top if e.recommended),
                "avg_score": sum(e.score for e in top) / len(top) if top else 0.0,
                "avg_roi": sum(e.roi for e in top) / len(top) if top else 0.0,
            },
        }

    async def claim_bounty(self, inp: BountyIdInput) -> dict:
        try:
            return self._pipeline().claim(inp.bounty_id)
        except BountyError as e:
            raise ToolError(str(e))

    async def execute_bounty(self, inp: BountyIdInput) -> dict:
        try:
            result = await self._pipeline().execute(inp.bounty_id)
        except BountyError as e:
            raise ToolError(str(e))
        if not result.success:
            raise ToolError(f"Bounty execution failed: {result.error}")
        return {
            "bounty_id": inp.bounty_id,
            "title": result.bounty.title,
            "execution_time": round(result.total_time, 2),
            "cost": result.cost,
            "submission_url": result.submission_url,
            "learnings": result.learnings,
        }

    async def check_bounty_status(self, inp: OptionalBountyIdInput) -> dict:
        pipeline = self._pipeline()
        if inp.bounty_id:
            bounty = pipeline.store.get_bounty(inp.bounty_id)
            if bounty is None:
                raise ToolError("Bounty not found")
            result = await pipeline.monitor.monitor_bounty(bounty)
            if result.changed:
                pipeline.store.update_status(bounty.id, result.current_status)
            return {"title": bounty.title, **result.to_dict()}

        results = await pipeline.monitor.monitor_all()
        report = pipeline.monitor.generate_monitoring_report()
        return {
            "status_changes": [r.to_dict() for r in results if r.changed],
            "monitored": len(results),
            "by_status": report["by_status"],
            "recent_payments": report["recent_payments"],
        }


def build_registry(tools: AgentTools) -> ToolRegistry:
    registry = ToolRegistry()
    specs = [
        ToolSpec("check_balance", "Wallet USDC and SOL balance", NoInput, tools.check_balance),
        ToolSpec("transfer_usdc",
                 "Send USDC (recipient, amount). Needs an external token-transfer provider; "
                 "the builtin SOL-only provider always fails it",
                 TransferInput, tools.transfer_usdc, Capability.TRADE),
        ToolSpec("transfer_sol", "Send SOL (recipient, amount)", TransferInput, tools.transfer_sol,
                 Capability.TRADE),
        ToolSpec("trade_tokens", "Swap on Jupiter (input_mint, output_mint, amount)", TradeInput,
                 tools.trade_tokens, Capability.TRADE),
        ToolSpec("read_file", "Read a text file (path)", PathInput, tools.read_file),
        ToolSpec("write_file", "Write a text file (path, content)", WriteFileInput, tools.write_file,
                 Capability.SELF_MODIFY),
        ToolSpec("shell_command", "Run a shell command (command)", CommandInput, tools.shell_command,
                 Capability.SELF_MODIFY),
        ToolSpec("web_search", "Search the web (query)", QueryInput, tools.web_search),
        ToolSpec("web_fetch", "Fetch a web page (url)", UrlInput, tools.web_fetch),
        ToolSpec("git_commit", "Commit all changes (message)", CommitInput, tools.git_commit,
                 Capability.SELF_MODIFY),
        ToolSpec("git_status", "Working tree changes", NoInput, tools.git_status),
        ToolSpec("scan_bounties", "Discover open bounties", NoInput, tools.scan_bounties),
        ToolSpec("evaluate_bounties", "Rank open bounties (limit)", EvaluateInput, tools.evaluate_bounties),
        ToolSpec("claim_bounty", "Claim an open bounty (bounty_id)", BountyIdInput, tools.claim_bounty),
        ToolSpec("execute_bounty", "Work a claimed bounty (bounty_id)", BountyIdInput, tools.execute_bounty),
        ToolSpec("check_bounty_status", "Monitor bounties and payments (bounty_id optional)",
                 OptionalBountyIdInput, tools.check_bounty_status),
    ]
    for spec in specs:
        registry.register(spec)
    return registry
