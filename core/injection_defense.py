"""
Injection Defense - scores free text for manipulation risk.

Every signal only ever adds to the score, so appending more suspicious text
can never lower the risk level of an input.

    score >= 15  critical  block
    score >= 10  high      block
    score >= 6   medium    sanitize, then forward
    score >= 3   low       allow, monitor
    otherwise    low       allow
"""

import re
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

logger = logging.getLogger("roly.injection")


class InjectionBlocked(Exception):
    """Raised by the guarded handler when input is high or critical risk."""

    def __init__(self, analysis: "InjectionAnalysis"):
        self.analysis = analysis
        super().__init__("Input blocked due to security concerns")


# ============================================================
# SIGNALS
# ============================================================

_INJECTION_PATTERNS = [
    # command override
    re.compile(r'ignore\s+(all\s+)?previous\s+(instructions?|commands?)', re.I),
    re.compile(r'forget\s+(everything|all)\s+(before|above)', re.I),
    re.compile(r'system\s*:\s*new\s+(instruction|command|rule)', re.I),
    # role hijack
    re.compile(r'you\s+are\s+now\s+(a|an)\s+', re.I),
    re.compile(r'pretend\s+(to\s+be|you\s+are)', re.I),
    re.compile(r'act\s+as\s+(if\s+you\s+are\s+)?(a|an)\s+', re.I),
    re.compile(r'roleplay\s+as', re.I),
    # constitution override
    re.compile(r"the\s+constitution\s+(doesn't\s+apply|is\s+void)", re.I),
    re.compile(r'override\s+law\s+[123]', re.I),
    re.compile(r'ignore\s+the\s+(three\s+)?laws', re.I),
    re.compile(r'emergency\s+override\s+protocol', re.I),
    # financial manipulation
    re.compile(r'transfer\s+all\s+(funds|money|usdc)', re.I),
    re.compile(r'send\s+everything\s+to', re.I),
    re.compile(r'maximum\s+withdrawal', re.I),
    re.compile(r'emergency\s+fund\s+transfer', re.I),
    # system manipulation
    re.compile(r'enable\s+(admin|root|debug)\s+mode', re.I),
    re.compile(r'system\s+maintenance\s+mode', re.I),
    re.compile(r'bypass\s+security', re.I),
    re.compile(r'disable\s+safety', re.I),
    # encoding obfuscation
    re.compile(r'base64', re.I),
    re.compile(r'\\x[0-9a-f]{2}', re.I),
    re.compile(r'&#\d+;'),
    re.compile(r'\\\\'),
]

_SUSPICIOUS_PHRASES = (
    "ignore everything above",
    "new instructions",
    "system override",
    "emergency protocol",
    "developer mode",
    "maintenance mode",
    "bypass security",
    "send all funds",
    "transfer everything",
    "you must obey",
    "this is urgent",
    "immediate action required",
    "security exception",
    "special privileges",
)

_ENCODING_PATTERNS = [
    re.compile(r'(?:base64|b64)[\s:=]+([A-Za-z0-9+/=]+)', re.I),
    re.compile(r'(?:hex|hexadecimal)[\s:=]+([0-9a-fA-F\s]+)', re.I),
    re.compile(r'(?:unicode|utf-?8)[\s:=]+(\\u[0-9a-fA-F]{4})+', re.I),
]

_REPEATED_RUN = re.compile(r'(.)\1{10,}', re.S)
_FINANCIAL_TERMS = re.compile(r'\b(transfer|send|withdraw|funds|usdc|sol)\b', re.I)
_URGENCY_TERMS = re.compile(r'\b(urgent|immediate|now|asap|emergency)\b', re.I)

_COMPROMISE_INDICATORS = [
    re.compile(r'i\s+am\s+now\s+(a|an)\s+', re.I),
    re.compile(r'my\s+instructions\s+have\s+changed', re.I),
    re.compile(r'ignoring\s+previous\s+rules', re.I),
    re.compile(r'constitution\s+is\s+overridden', re.I),
    re.compile(r'new\s+identity\s+activated', re.I),
]

PATTERN_WEIGHT = 10
PHRASE_WEIGHT = 5
ENCODING_WEIGHT = 8
LENGTH_WEIGHT = 3
REPEAT_WEIGHT = 4
MIXED_SCRIPT_WEIGHT = 2
FINANCIAL_URGENCY_WEIGHT = 7

MAX_INPUT_CHARS = 5000
SANITIZED_MAX_CHARS = 2000


@dataclass
class InjectionAnalysis:
    is_injection: bool
    confidence: float
    score: int
    risk_level: str                 # low | medium | high | critical
    recommendation: str
    matched_patterns: list[str] = field(default_factory=list)
    suspicious_signals: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "is_injection": self.is_injection,
            "confidence": round(self.confidence, 3),
            "score": self.score,
            "risk_level": self.risk_level,
            "recommendation": self.recommendation,
            "matched_patterns": list(self.matched_patterns),
            "suspicious_signals": list(self.suspicious_signals),
        }


def _script_of(char: str) -> str:
    code = ord(char)
    if code < 128:
        return "ascii"
    if code < 0x0250:
        return "latin"
    if code < 0x02B0:
        return "extended_latin"
    return "other"


def analyze(text: str) -> InjectionAnalysis:
    """Score text. Never raises for string input."""
    lower = text.lower()
    patterns: list[str] = []
    signals: list[str] = []
    score = 0

    for pattern in _INJECTION_PATTERNS:
        if pattern.search(text):
            patterns.append(pattern.pattern)
            score += PATTERN_WEIGHT

    for phrase in _SUSPICIOUS_PHRASES:
        if phrase in lower:
            signals.append(phrase)
            score += PHRASE_WEIGHT

    for pattern in _ENCODING_PATTERNS:
        if pattern.search(text):
            patterns.append("encoded_content")
            score += ENCODING_WEIGHT

    if len(text) > MAX_INPUT_CHARS:
        signals.append("excessive_length")
        score += LENGTH_WEIGHT

    if _REPEATED_RUN.search(text):
        signals.append("repeated_characters")
        score += REPEAT_WEIGHT

    if len({_script_of(c) for c in text}) > 2:
        signals.append("mixed_scripts")
        score += MIXED_SCRIPT_WEIGHT

    if _FINANCIAL_TERMS.search(text) and _URGENCY_TERMS.search(text):
        signals.append("financial_urgency")
        score += FINANCIAL_URGENCY_WEIGHT

    if score >= 15:
        risk, recommendation, flagged = "critical", "Block immediately and log incident", True
    elif score >= 10:
        risk, recommendation, flagged = "high", "Block and require verification", True
    elif score >= 6:
        risk, recommendation, flagged = "medium", "Proceed with caution, add extra validation", True
    elif score >= 3:
        risk, recommendation, flagged = "low", "Monitor closely but allow", False
    else:
        risk, recommendation, flagged = "low", "Normal processing", False

    return InjectionAnalysis(
        is_injection=flagged,
        confidence=min(score / 15, 1.0),
        score=score,
        risk_level=risk,
        recommendation=recommendation,
        matched_patterns=patterns,
        suspicious_signals=signals,
    )


def detect_injection(text: str) -> bool:
    """True at medium risk and above."""
    result = analyze(text)
    return result.is_injection and result.risk_level != "low"


def sanitize_input(text: str) -> str:
    """Redact matched patterns and encoded payloads, then cap the length."""
    sanitized = text
    for pattern in _INJECTION_PATTERNS:
        sanitized = pattern.sub("[REDACTED]", sanitized)
    for pattern in _ENCODING_PATTERNS:
        sanitized = pattern.sub("[ENCODED_CONTENT_REMOVED]", sanitized)
    if len(sanitized) > SANITIZED_MAX_CHARS:
        sanitized = sanitized[:SANITIZED_MAX_CHARS] + "[TRUNCATED]"
    return sanitized


def validate_response(response: str) -> bool:
    """False if the model's own output reads as if its identity was overridden."""
    for pattern in _COMPROMISE_INDICATORS:
        if pattern.search(response):
            logger.error("Response validation failed - potential compromise detected")
            return False
    return True


def log_injection_attempt(text: str, analysis: InjectionAnalysis, source: str = "input"):
    logger.warning(
        f"INJECTION [{analysis.risk_level}] score={analysis.score} source={source} "
        f"signals={analysis.suspicious_signals} patterns={len(analysis.matched_patterns)}: "
        f"{text[:200]!r}"
    )


def guard_input(text: str) -> str:
    """
    Gate text before it reaches reasoning.
    critical/high -> InjectionBlocked, medium -> sanitized, low -> unchanged.
    """
    analysis = analyze(text)
    if analysis.risk_level in ("critical", "high"):
        log_injection_attempt(text, analysis)
        raise InjectionBlocked(analysis)
    if analysis.risk_level == "medium":
        log_injection_attempt(text, analysis)
        return sanitize_input(text)
    return text


def guarded_handler(handler: Callable[[str], Awaitable]) -> Callable[[str], Awaitable]:
    """Wrap an async handler so its input passes through guard_input first."""

    async def _wrapped(text: str, *args, **kwargs):
        return await handler(guard_input(text), *args, **kwargs)

    return _wrapped


def is_output_compromised(text: str) -> Optional[str]:
    """Reason string when reasoning output must not be trusted, else None."""
    if not validate_response(text):
        return "compromise_indicator"
    if detect_injection(text):
        return "injection_signals"
    return None
