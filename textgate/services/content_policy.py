"""
Content policy filter - scans message bodies against a data-driven rule table.

Two kinds of rules:
1. Prohibited categories (SHAFT: sexual, hate, alcohol, firearms, tobacco).
   Any pattern match is a violation named after the category.
2. Use-case rules for the sending campaign:
   - forbidden: named pattern groups that must NOT appear
     (authentication campaigns may not carry promotional language)
   - required: named pattern groups of which at least one pattern MUST appear
     (promotional/marketing campaigns must tell the recipient how to opt out)

Every violated rule is reported, never just the first. The table is JSON,
validated with pydantic, and can be swapped at runtime with reload().
"""
import json
import logging
import re
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, Field, field_validator

logger = logging.getLogger(__name__)

_OPT_OUT_INSTRUCTION = [
    r"\b(reply|text|txt|send)\s+\W?stop\b",
    r"\bstop\s+to\s+(opt[\s-]?out|unsubscribe|end|cancel|quit)\b",
    r"\bopt[\s-]?out\b",
    r"\bunsubscribe\b",
]

DEFAULT_RULES: dict = {
    "prohibited": {
        "sexual": [
            r"\bsex(ual|y)?\b", r"\bnudes?\b", r"\bnaked\b", r"\bporn\w*",
            r"\bxxx\b", r"\berotic\w*", r"\bescorts?\b", r"\bonlyfans\b",
        ],
        "hate": [
            r"\bwhite\s+power\b", r"\bethnic\s+cleansing\b", r"\bsubhumans?\b",
            r"\bracial\s+purity\b", r"\bgo\s+back\s+to\s+your\s+country\b",
        ],
        "alcohol": [
            r"\bbeers?\b", r"\bwines?\b", r"\bvodka\b", r"\bwhiske?y\b",
            r"\btequila\b", r"\bliquor\b", r"\bcocktails?\b", r"\bhappy\s+hour\b",
            r"\bbooze\b",
        ],
        "firearms": [
            r"\bguns?\b", r"\bfirearms?\b", r"\bhandguns?\b", r"\brifles?\b",
            r"\bpistols?\b", r"\bammo\b", r"\bammunition\b", r"\bshotguns?\b",
        ],
        "tobacco": [
            r"\bcigarettes?\b", r"\bcigars?\b", r"\btobacco\b", r"\bnicotine\b",
            r"\bvap(e|es|ing|or)\b", r"\be-?cigs?\b", r"\bhookah\b",
            r"\bcannabis\b", r"\bmarijuana\b", r"\bweed\b", r"\bthc\b", r"\bcbd\b",
        ],
    },
    "use_cases": {
        "authentication": {
            "forbidden": {
                "promotional_language": [
                    r"\bsale\b", r"\bdiscounts?\b", r"\d+\s?%\s?off\b", r"\bcoupons?\b",
                    r"\bpromo(tion)?s?\b", r"\bdeals?\b", r"\blimited\s+time\b",
                    r"\bbuy\s+now\b", r"\bshop\s+now\b",
                ],
            },
        },
        "promotional": {
            "required": {"missing_opt_out_instruction": _OPT_OUT_INSTRUCTION},
        },
        "marketing": {
            "required": {"missing_opt_out_instruction": _OPT_OUT_INSTRUCTION},
        },
    },
}


def _check_patterns(patterns: dict[str, list[str]]) -> dict[str, list[str]]:
    for name, group in patterns.items():
        for pattern in group:
            try:
                re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid pattern in rule '{name}': {pattern!r} ({e})")
    return patterns


class UseCaseRules(BaseModel):
    forbidden: dict[str, list[str]] = Field(default_factory=dict)
    required: dict[str, list[str]] = Field(default_factory=dict)

    @field_validator("forbidden", "required")
    @classmethod
    def patterns_compile(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _check_patterns(v)


class ContentRuleTable(BaseModel):
    prohibited: dict[str, list[str]] = Field(default_factory=dict)
    use_cases: dict[str, UseCaseRules] = Field(default_factory=dict)

    @field_validator("prohibited")
    @classmethod
    def patterns_compile(cls, v: dict[str, list[str]]) -> dict[str, list[str]]:
        return _check_patterns(v)


class ContentCheck:
    """Result of a content scan."""

    def __init__(self, violations: list[str]):
        self.violations = violations

    @property
    def passed(self) -> bool:
        return not self.violations

    def __bool__(self) -> bool:
        return self.passed

    def __repr__(self) -> str:
        status = "PASSED" if self.passed else "VIOLATIONS"
        return f"<ContentCheck {status}: {self.violations}>"


class _CompiledTable:
    def __init__(self, table: ContentRuleTable):
        self.prohibited = {
            category: [re.compile(p, re.IGNORECASE) for p in patterns]
            for category, patterns in table.prohibited.items()
        }
        self.forbidden: dict[str, dict[str, list[re.Pattern]]] = {}
        self.required: dict[str, dict[str, list[re.Pattern]]] = {}
        for use_case, rules in table.use_cases.items():
            key = use_case.lower()
            self.forbidden[key] = {
                name: [re.compile(p, re.IGNORECASE) for p in patterns]
                for name, patterns in rules.forbidden.items()
            }
            self.required[key] = {
                name: [re.compile(p, re.IGNORECASE) for p in patterns]
                for name, patterns in rules.required.items()
            }


class ContentPolicy:
    """
    Usage:
        policy = ContentPolicy()                    # built-in table
        policy = ContentPolicy.from_file(path)      # JSON table
        check = policy.evaluate(body, use_case="promotional")
    """

    def __init__(self, table: Optional[ContentRuleTable] = None) -> None:
        self._table = table or ContentRuleTable.model_validate(DEFAULT_RULES)
        self._compiled = _CompiledTable(self._table)

    @classmethod
    def from_file(cls, path: str) -> "ContentPolicy":
        return cls(load_rule_table(path))

    @classmethod
    def from_settings(cls) -> "ContentPolicy":
        from textgate.config import get_settings
        path = get_settings().content_rules_path
        if path:
            return cls.from_file(path)
        return cls()

    @property
    def table(self) -> ContentRuleTable:
        return self._table

    def reload(self, table: Optional[ContentRuleTable] = None, path: Optional[str] = None) -> None:
        """
        Swap in a new rule table. The new table is fully validated and compiled
        before it replaces the old one, so a bad table leaves the old one active.
        """
        if table is None:
            table = load_rule_table(path) if path else ContentRuleTable.model_validate(DEFAULT_RULES)
        compiled = _CompiledTable(table)
        self._table, self._compiled = table, compiled
        logger.info(
            "Content rules reloaded: %d prohibited categories, %d use cases",
            len(table.prohibited), len(table.use_cases),
        )

    def evaluate(self, body: str, use_case: Optional[str] = None) -> ContentCheck:
        compiled = self._compiled
        text = body or ""
        violations: list[str] = []

        for category, patterns in compiled.prohibited.items():
            if any(p.search(text) for p in patterns):
                violations.append(category)

        if use_case:
            key = use_case.lower()
            for name, patterns in compiled.forbidden.get(key, {}).items():
                if any(p.search(text) for p in patterns):
                    violations.append(name)
            for name, patterns in compiled.required.get(key, {}).items():
                if not any(p.search(text) for p in patterns):
                    violations.append(name)

        return ContentCheck(violations)


def load_rule_table(path: str) -> ContentRuleTable:
    """Load and validate a JSON rule table. Raises on a missing or invalid file."""
    raw = json.loads(Path(path).read_text(encoding="utf-8"))
    return ContentRuleTable.model_validate(raw)
