"""Output sanitizer: keeps restricted financial data away from non-admin callers.

Text replies are scanned and redacted in place; report sections that mention a
restricted field are dropped whole.
"""
from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import FrozenSet, Iterable, List, Optional, Pattern, Tuple

from report_agent.core.logging import logger
from report_agent.models.report import ReportDraft


DEFAULT_RESTRICTED_FIELDS: FrozenSet[str] = frozenset(
    {"cost", "margin", "margin_percent", "carrier_cost", "cost_per_mile", "carrier_pay"}
)

SAFE_CONTEXT_CHARS = 150
REDACTED = "[REDACTED]"
INTERNAL_REDACTED = "[internal data redacted]"


def _compile(patterns: Iterable[str]) -> Tuple[Pattern[str], ...]:
    return tuple(re.compile(pattern, re.IGNORECASE) for pattern in patterns)


FINANCIAL_PATTERNS = _compile(
    [
        r"\$[\d,]+\.?\d*\s*(cost|margin|profit|markup|net|wholesale|commission)",
        r"cost\s*(is|was|of|:)\s*\$[\d,]+\.?\d*",
        r"margin\s*(is|was|of|:)\s*\$?[\d,]+\.?\d*%?",
        r"profit\s*(is|was|of|:)\s*\$[\d,]+\.?\d*",
        r"markup\s*(is|was|of|:)\s*[\d,]+\.?\d*%?",
        r"wholesale\s*(price|rate|cost)\s*(is|was|of|:)?\s*\$[\d,]+\.?\d*",
        r"buy\s*rate\s*(is|was|of|:)?\s*\$[\d,]+\.?\d*",
        r"carrier\s*cost\s*(is|was|of|:)?\s*\$[\d,]+\.?\d*",
        r"commission\s*(is|was|of|:)?\s*\$?[\d,]+\.?\d*%?",
        r"net\s*revenue\s*(is|was|of|:)?\s*\$[\d,]+\.?\d*",
        r"\d+\.?\d*%?\s*margin",
        r"\d+\.?\d*%?\s*profit",
        r"\d+\.?\d*%?\s*markup",
        r"margin\s*of\s*\d+\.?\d*%",
        r"cost.*\$[\d,]+.*vs.*retail",
        r"margin.*between.*\d+.*and.*\d+",
        r"we\s*(paid|pay|charge)\s*\$[\d,]+.*carrier",
        r"carrier\s*(charges?|costs?|paid)\s*\$[\d,]+",
    ]
)

# Refusals to disclose; matches near one of these are not violations.
SAFE_PHRASE_PATTERNS = _compile(
    [
        r"cost\s*(data|information|details?)\s*(is\s*)?(not\s+)?(available|accessible|shown|visible)",
        r"margin\s*(data|information|details?)\s*(is\s*)?(not\s+)?(available|accessible|shown|visible)",
        r"profit\s*(data|information|details?)\s*(is\s*)?(not\s+)?(available|accessible|shown|visible)",
        r"(cannot|can't|don't|do not|unable to)\s*(show|display|provide|reveal|share|access)\s*(the\s*)?(cost|margin|profit|markup|wholesale)",
        r"restricted\s*(field|data|information|access)",
        r"(no|not|don't have)\s*access\s*to\s*(cost|margin|profit|internal)",
        r"customer\s*(users?|accounts?)\s*(cannot|can't|don't)\s*(see|access|view)",
        r"this\s*(information|data)\s*is\s*(restricted|confidential|internal)",
        r"only\s*(admin|internal)\s*(users?)?\s*(can|have)\s*access",
        r"not\s*included\s*in\s*(your|customer)\s*(reports?|data|view)",
    ]
)

ALWAYS_FLAG_PATTERNS = _compile(
    [
        r"our\s*margin\s*(is|was)",
        r"we\s*make\s*\$[\d,]+",
        r"profit\s*per\s*(shipment|load|mile)",
        r"internal\s*(cost|rate|price)",
        r"buy\s*side",
        r"carrier\s*invoice",
    ]
)

_FIGURE = re.compile(r"\$\s?[\d,]*\d(?:\.\d+)?%?|\d[\d,]*(?:\.\d+)?\s*%")
_BARE_NUMBER = re.compile(r"\d[\d,]*(?:\.\d+)?")


class Severity(str, Enum):
    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


@dataclass
class SanitizationResult:
    is_valid: bool
    severity: Severity
    sanitized_message: str
    restricted_fields_found: List[str] = field(default_factory=list)
    financial_patterns_found: List[str] = field(default_factory=list)
    always_flag_patterns_found: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def findings(self) -> List[str]:
        return [*self.always_flag_patterns_found, *self.financial_patterns_found, *self.restricted_fields_found]


def field_pattern(field_name: str) -> Pattern[str]:
    """Match a field keyword as a whole identifier (``cost`` but not ``costly``)."""
    return re.compile(rf"(?<![a-z0-9_]){re.escape(field_name.lower())}(?![a-z0-9_])", re.IGNORECASE)


def find_restricted_fields(text: str, restricted_fields: Iterable[str]) -> List[str]:
    """All restricted field names that occur in ``text`` as whole identifiers, sorted."""
    return sorted(name for name in set(restricted_fields) if field_pattern(name).search(text or ""))


def _within_safe_context(text: str, start: int, end: int) -> bool:
    context = text[max(0, start - SAFE_CONTEXT_CHARS): min(len(text), end + SAFE_CONTEXT_CHARS)]
    return any(pattern.search(context) for pattern in SAFE_PHRASE_PATTERNS)


def _redact_figures(fragment: str) -> str:
    redacted = _FIGURE.sub(REDACTED, fragment)
    if redacted == fragment:
        redacted = _BARE_NUMBER.sub(REDACTED, fragment)
    return redacted


class OutputSanitizer:
    """Scans assistant text and reports for data a non-admin must not see."""

    def __init__(self, restricted_fields: Optional[Iterable[str]] = None) -> None:
        fields = restricted_fields if restricted_fields is not None else DEFAULT_RESTRICTED_FIELDS
        self.restricted_fields: FrozenSet[str] = frozenset(item.strip().lower() for item in fields if item.strip())
        # Longest first so ``carrier_cost`` is reported before ``cost``.
        self._field_patterns = [
            (name, field_pattern(name)) for name in sorted(self.restricted_fields, key=len, reverse=True)
        ]

    def validate(self, message: str, is_admin: bool) -> SanitizationResult:
        text = message or ""
        if is_admin:
            return SanitizationResult(is_valid=True, severity=Severity.NONE, sanitized_message=message)

        restricted_found: List[str] = []
        for name, pattern in self._field_patterns:
            for match in pattern.finditer(text):
                if not _within_safe_context(text, match.start(), match.end()):
                    restricted_found.append(name)
                    break

        financial_found: List[str] = []
        for pattern in FINANCIAL_PATTERNS:
            for match in pattern.finditer(text):
                if not _within_safe_context(text, match.start(), match.end()):
                    financial_found.append(match.group(0).strip())

        always_found: List[str] = []
        for pattern in ALWAYS_FLAG_PATTERNS:
            always_found.extend(match.group(0).strip() for match in pattern.finditer(text))

        if always_found:
            severity = Severity.CRITICAL
        elif financial_found:
            severity = Severity.HIGH
        elif len(restricted_found) > 3:
            severity = Severity.MEDIUM
        elif restricted_found:
            severity = Severity.LOW
        else:
            severity = Severity.NONE

        warnings: List[str] = []
        if always_found:
            warnings.append(f"CRITICAL: Internal financial terms detected: {', '.join(always_found[:3])}")
        if financial_found:
            warnings.append(f"HIGH: Financial values with restricted terms: {len(financial_found)} occurrence(s)")
        if restricted_found:
            warnings.append(f"Restricted field keywords found: {', '.join(restricted_found)}")

        sanitized = text
        if severity in (Severity.HIGH, Severity.CRITICAL):
            sanitized = self._redact(text)

        if severity not in (Severity.NONE, Severity.LOW):
            logger.warning(
                "Restricted data detected in assistant output",
                severity=severity.value,
                restricted_fields=restricted_found,
                financial_matches=len(financial_found),
                always_flag=list(dict.fromkeys(always_found)),
            )

        return SanitizationResult(
            is_valid=severity in (Severity.NONE, Severity.LOW),
            severity=severity,
            sanitized_message=sanitized,
            restricted_fields_found=restricted_found,
            financial_patterns_found=list(dict.fromkeys(financial_found)),
            always_flag_patterns_found=list(dict.fromkeys(always_found)),
            warnings=warnings,
        )

    def _redact(self, text: str) -> str:
        sanitized = text
        # Figures first: the always-flag phrases can carry the keyword a figure pattern needs.
        for pattern in FINANCIAL_PATTERNS:
            sanitized = pattern.sub(lambda match: _redact_figures(match.group(0)), sanitized)
        for pattern in ALWAYS_FLAG_PATTERNS:
            sanitized = pattern.sub(INTERNAL_REDACTED, sanitized)
        for name in self.restricted_fields:
            keyword = re.escape(name)
            sanitized = re.sub(
                rf"({keyword}[\s:]*(?:is|was|of|=)?\s*)(\$[\d,]+\.?\d*)",
                rf"\1{REDACTED}",
                sanitized,
                flags=re.IGNORECASE,
            )
            sanitized = re.sub(
                rf"({keyword}[\s:]*(?:is|was|of|=)?\s*)(\d+\.?\d*\s*%)",
                rf"\1{REDACTED}",
                sanitized,
                flags=re.IGNORECASE,
            )
        return sanitized

    def mentions_restricted_field(self, text: str) -> Optional[str]:
        """Return the first (longest) restricted field named in ``text``, if any."""
        for name, pattern in self._field_patterns:
            if pattern.search(text or ""):
                return name
        return None

    def filter_sections(self, report: Optional[ReportDraft], is_admin: bool) -> Tuple[Optional[ReportDraft], List[str]]:
        """Drop every section that references a restricted field.

        Returns the filtered copy and the titles (or types) of dropped sections.
        Admins get the report back unchanged.
        """
        if report is None or is_admin:
            return report, []

        kept = []
        dropped: List[str] = []
        for section in report.sections:
            serialized = section.model_dump_json(by_alias=True)
            hit = self.mentions_restricted_field(serialized)
            if hit is None:
                kept.append(section)
                continue
            dropped.append(section.title or section.type)
            logger.info(
                "Dropped report section referencing restricted field",
                report_id=report.id,
                section=section.title or section.type,
                field=hit,
            )

        if not dropped:
            return report, []
        return report.model_copy(update={"sections": kept}), dropped
