"""
============================================================================
Execution Gate - Intent Path Classifier
============================================================================

Reliability Level: L6 Critical (Sovereign Tier)
Traceability: Mismatches are logged with the conflicting keywords

PRIME DIRECTIVE:
    "No execution without confirmation. No confirmation without funding."

Assigns a risk path to free-text user intent:

    RULE ORDER (first match wins):
        1. CREATION       - launch/deploy a market, HIP-3
        2. EVENT_BETTING  - bet/wager, prediction markets, price thresholds
        3. EXECUTION-CLASS text → PLANNING (never straight to EXECUTION)
        4. RESEARCH       - queries, prices, analytics
        Default: RESEARCH

    NEGATIVE PREDICATES (per detected path):
        EVENT_BETTING must not mention perp/leverage vocabulary  → suggest PLANNING
        PLANNING must not mention betting vocabulary             → suggest EVENT_BETTING
        CREATION must not mention betting vocabulary             → suggest EVENT_BETTING

    A conflict downgrades the result to RESEARCH and carries a PathMismatch
    describing the conflict, so nothing risky runs on an ambiguous request.

============================================================================
"""

from dataclasses import dataclass, field
from typing import Optional, List, Tuple, Pattern, Dict, Any
import logging
import re

from services.gate_models import IntentPath

# Configure module logger
logger = logging.getLogger(__name__)


def _compile(*patterns: str) -> Tuple[Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# =============================================================================
# Rule Table
# =============================================================================

@dataclass(frozen=True)
class PathRule:
    """One pattern family; the rule matches when any pattern matches."""
    name: str
    path: IntentPath
    patterns: Tuple[Pattern, ...]

    def matches(self, text: str) -> bool:
        return any(p.search(text) for p in self.patterns)


CREATION_RULE = PathRule(
    name="creation",
    path=IntentPath.CREATION,
    patterns=_compile(
        r"\b(launch|create|deploy|register)\b.*\b(perp|perpetual|market|futures?)\b",
        r"\bhip-?3\b",
        r"\b(new|list)\b.*\b(perp|perpetual|market)\b",
    ),
)

EVENT_RULE = PathRule(
    name="event",
    path=IntentPath.EVENT_BETTING,
    patterns=_compile(
        r"\b(bet|wager|stake)\b.*\b(on|that)\b",
        r"\b(prediction|pred)\s*market",
        r"\b(yes|no)\b.*\b(on|that|if)\b",
        r"\b(above|below|over|under)\s*\$?\d+",
        r"\bpolymarket\b",
    ),
)

# Execution-class text is classified to PLANNING
EXECUTION_RULE = PathRule(
    name="execution",
    path=IntentPath.PLANNING,
    patterns=_compile(
        r"\b(swap|exchange|trade|convert|buy|sell)\b",
        r"\b(deposit|withdraw|supply|stake|unstake)\b",
        r"\b(long|short)\b.*\b(eth|btc|sol|perp)\b",
        r"\b(bridge|transfer|send|move)\b.*\b(from|to)\b",
        r"\b(\d+)\s*x\b.*\b(eth|btc|sol)\b",
    ),
)

RESEARCH_RULE = PathRule(
    name="research",
    path=IntentPath.RESEARCH,
    patterns=_compile(
        r"^(what|show|get|display|list|check|view|tell me)\b",
        r"\b(price|balance|exposure|positions?)\b",
        r"\b(how much|what is)\b",
        r"\b(top|best|highest|tvl|apy)\b.*\b(protocol|market|vault|pool)",
        r"\b(analytics|stats|metrics|report)\b",
    ),
)

PATH_RULES: Tuple[PathRule, ...] = (CREATION_RULE, EVENT_RULE, EXECUTION_RULE, RESEARCH_RULE)


# =============================================================================
# Negative Predicates (Blacklists)
# =============================================================================

@dataclass(frozen=True)
class PathBlacklist:
    """Vocabulary that must not appear in text classified to `path`."""
    path: IntentPath
    suggested_path: IntentPath
    patterns: Tuple[Pattern, ...]
    hint: str

    def conflicts(self, text: str) -> List[str]:
        found: List[str] = []
        for pattern in self.patterns:
            match = pattern.search(text)
            if match and match.group(0) not in found:
                found.append(match.group(0))
        return found


PERP_VOCABULARY = _compile(
    r"\bperp\b",
    r"\bperpetual\b",
    r"\bfutures?\b",
    r"\bleverage\b",
    r"\bmargin\b",
    r"\blong\s+(position|eth|btc|sol)\b",
    r"\b(eth|btc|sol)\s+long\b",
    r"\bshort\s+(position|eth|btc|sol)\b",
    r"\b(eth|btc|sol)\s+short\b",
    r"\bopen\s+(long|short)\b",
    r"\b\d+x\s*(long|short|leverage)?\b",
    r"\bgo\s+(long|short)\b",
)

BETTING_VOCABULARY = _compile(
    r"\bbet\s+on\b",
    r"\bwager\b",
    r"\boutcome\b",
    r"\bprediction\s*market\b",
    r"\bprediction\b",
    r"\bpolymarket\b",
    r"\bplace\s+bet\b",
    r"\bbetting\s+on\b",
)

MARKET_BETTING_VOCABULARY = _compile(
    r"\bbet\b",
    r"\bwager\b",
    r"\boutcome\b",
    r"\bprediction\b",
    r"\bevent\s+market\b",
    r"\bbetting\s+market\b",
    r"\bpolymarket\b",
)

PATH_BLACKLISTS: Dict[IntentPath, PathBlacklist] = {
    IntentPath.EVENT_BETTING: PathBlacklist(
        path=IntentPath.EVENT_BETTING,
        suggested_path=IntentPath.PLANNING,
        patterns=PERP_VOCABULARY,
        hint="open a leveraged position",
    ),
    IntentPath.PLANNING: PathBlacklist(
        path=IntentPath.PLANNING,
        suggested_path=IntentPath.EVENT_BETTING,
        patterns=BETTING_VOCABULARY,
        hint="place a bet on an event",
    ),
    IntentPath.EXECUTION: PathBlacklist(
        path=IntentPath.EXECUTION,
        suggested_path=IntentPath.EVENT_BETTING,
        patterns=BETTING_VOCABULARY,
        hint="place a bet on an event",
    ),
    IntentPath.CREATION: PathBlacklist(
        path=IntentPath.CREATION,
        suggested_path=IntentPath.EVENT_BETTING,
        patterns=MARKET_BETTING_VOCABULARY,
        hint="place a bet on an event",
    ),
}


# =============================================================================
# Result Types
# =============================================================================

@dataclass
class PathMismatch:
    """Conflict between the detected path and vocabulary in the text."""
    detected_path: IntentPath
    conflicting_keywords: List[str]
    suggested_path: IntentPath
    message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "detected_path": self.detected_path.value,
            "conflicting_keywords": list(self.conflicting_keywords),
            "suggested_path": self.suggested_path.value,
            "message": self.message,
        }


@dataclass
class ClassifyResult:
    path: IntentPath
    mismatch: Optional[PathMismatch] = None
    matched_rule: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path.value,
            "mismatch": self.mismatch.to_dict() if self.mismatch else None,
            "matched_rule": self.matched_rule,
        }


# =============================================================================
# Classification
# =============================================================================

def _match_rule(text: str) -> Optional[PathRule]:
    normalized = (text or "").strip().lower()
    if not normalized:
        return None
    for rule in PATH_RULES:
        if rule.matches(normalized):
            return rule
    return None


def classify(text: str) -> IntentPath:
    """
    Classify free text into a path (first matching rule wins).

    Execution-class text yields PLANNING; unmatched text yields RESEARCH.
    """
    rule = _match_rule(text)
    return rule.path if rule else IntentPath.RESEARCH


def classify_with_validation(text: str, correlation_id: Optional[str] = None) -> ClassifyResult:
    """
    Classify text and run the negative predicates for the detected path.

    On conflict the result path is RESEARCH and `mismatch` explains which
    keywords conflicted and which path was probably meant.
    """
    rule = _match_rule(text)
    detected = rule.path if rule else IntentPath.RESEARCH
    matched_rule = rule.name if rule else None

    blacklist = PATH_BLACKLISTS.get(detected)
    if blacklist is None:
        return ClassifyResult(path=detected, matched_rule=matched_rule)

    conflicts = blacklist.conflicts((text or "").lower())
    if not conflicts:
        return ClassifyResult(path=detected, matched_rule=matched_rule)

    mismatch = PathMismatch(
        detected_path=detected,
        conflicting_keywords=conflicts,
        suggested_path=blacklist.suggested_path,
        message=(
            f'Intent contains conflicting keywords: "{", ".join(conflicts)}". '
            f"Did you mean to {blacklist.hint}?"
        ),
    )
    logger.info(
        f"[PATH-CLASSIFIER] Mismatch | detected={detected.value} | "
        f"suggested={blacklist.suggested_path.value} | keywords={conflicts} | "
        f"correlation_id={correlation_id}"
    )
    return ClassifyResult(path=IntentPath.RESEARCH, mismatch=mismatch, matched_rule=matched_rule)


# Parsed intent kinds produced by the upstream parser
_PARSED_KIND_PATHS: Dict[str, IntentPath] = {
    "perp_create": IntentPath.CREATION,
    "event": IntentPath.EVENT_BETTING,
    "swap": IntentPath.PLANNING,
    "deposit": IntentPath.PLANNING,
    "perp": IntentPath.PLANNING,
    "bridge": IntentPath.PLANNING,
}


def classify_parsed_intent(kind: str, intent_type: Optional[str] = None) -> IntentPath:
    """
    Map an already parsed intent onto a path.

    Unknown kinds fall back on the parser's intent_type hint: event and
    prediction hints are betting, everything else is research.
    """
    path = _PARSED_KIND_PATHS.get((kind or "").lower())
    if path is not None:
        return path
    if intent_type in ("event", "prediction"):
        return IntentPath.EVENT_BETTING
    return IntentPath.RESEARCH


__all__ = [
    "PathRule",
    "PathBlacklist",
    "PathMismatch",
    "ClassifyResult",
    "PATH_RULES",
    "PATH_BLACKLISTS",
    "CREATION_RULE",
    "EVENT_RULE",
    "EXECUTION_RULE",
    "RESEARCH_RULE",
    "classify",
    "classify_with_validation",
    "classify_parsed_intent",
]
