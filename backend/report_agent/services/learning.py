"""Customer memory: learning terminology, products and preferences from conversations."""
from __future__ import annotations

import re
import uuid
from typing import Any, Dict, Iterable, List, Optional, Protocol, Sequence

from report_agent.core.logging import logger
from report_agent.models.report import ConversationMessage, LearningExtraction


CONFIDENCE_SCORES = {"high": 0.9, "medium": 0.7, "low": 0.5}
AUTO_ACTIVATE_CONFIDENCE = 0.8

KNOWLEDGE_TYPES = {
    "terminology": "term",
    "product": "product",
    "preference": "preference",
    "correction": "correction",
}

TERM_PATTERNS = [
    re.compile(r"when I say ['\"]?([^'\"\n,]+?)['\"]?,?\s*I mean ([^\n.]+)", re.IGNORECASE),
    re.compile(r"\bby ['\"]([^'\"\n]+)['\"],?\s*I mean ([^\n.]+)", re.IGNORECASE),
    re.compile(r"['\"]([^'\"\n]+)['\"]\s*(?:means|refers to)\s+([^\n.]+)", re.IGNORECASE),
]
PRODUCT_PATTERNS = [
    re.compile(r"(?:we (?:sell|ship|make)|our products? (?:are|include))\s+([^\n.]+)", re.IGNORECASE),
    re.compile(r"product (?:types?|lines?|categories?):\s*([^\n.]+)", re.IGNORECASE),
]
CHART_PREFERENCE_PATTERNS = [
    (re.compile(r"make it a (\w+) chart", re.IGNORECASE), 0.8),
    (re.compile(r"change (?:it )?to (?:a )?(\w+) chart", re.IGNORECASE), 0.8),
    (re.compile(r"(?:prefer|like|want) (?:a )?(\w+) chart", re.IGNORECASE), 0.7),
    (re.compile(r"(\w+) chart (?:would be|is) better", re.IGNORECASE), 0.6),
]
CORRECTION_PATTERNS = [
    re.compile(r"no,?\s*(?:that's not right|that's wrong|I meant)", re.IGNORECASE),
    re.compile(r"actually,?\s*I (?:want|meant|need)", re.IGNORECASE),
    re.compile(r"that's incorrect", re.IGNORECASE),
    re.compile(r"wrong (?:data|numbers|results|field)", re.IGNORECASE),
    re.compile(r"not what I (?:asked|wanted|meant)", re.IGNORECASE),
]
LEARNING_FLAG = re.compile(r"<learning_flag>([\s\S]*?)</learning_flag>", re.IGNORECASE)


class KnowledgeStore(Protocol):
    def upsert_knowledge(
        self,
        customer_id: str,
        knowledge_type: str,
        key: str,
        label: str,
        definition: str,
        source: str,
        confidence: float,
        needs_review: bool,
        is_active: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int: ...

    def insert_knowledge_if_absent(
        self,
        customer_id: str,
        knowledge_type: str,
        key: str,
        label: str,
        definition: str,
        source: str,
        confidence: float,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[int]: ...

    def list_knowledge(
        self,
        customer_id: str,
        knowledge_types: Optional[Iterable[str]] = None,
        active_only: bool = False,
    ) -> List[Dict[str, Any]]: ...


def normalize_key(text: str, keep: str = "") -> str:
    """Lowercase ``text`` and collapse anything outside ``[a-z0-9]`` (plus ``keep``) to ``_``."""
    allowed = re.escape(keep)
    return re.sub(rf"[^a-z0-9{allowed}]+", "_", (text or "").strip().lower()).strip("_")


def confidence_score(level: str) -> float:
    return CONFIDENCE_SCORES.get((level or "").strip().lower(), CONFIDENCE_SCORES["medium"])


def correction_key() -> str:
    return f"correction_{uuid.uuid4().hex}"


def _split_products(raw: str) -> List[str]:
    parts = re.split(r",\s*|\s+and\s+", raw)
    return [part.strip() for part in parts if 1 < len(part.strip()) < 50]


def extract_learnings(
    history: Sequence[ConversationMessage],
    prompt: str,
    ai_response: str = "",
) -> List[LearningExtraction]:
    """Pull explicit terminology, product lists, chart preferences and corrections from user text."""
    user_text = "\n".join([*(message.content for message in history if message.role == "user"), prompt])
    learnings: List[LearningExtraction] = []

    for pattern in TERM_PATTERNS:
        for match in pattern.finditer(user_text):
            term = match.group(1).strip()
            meaning = (match.group(2) or "").strip() or term
            if 1 < len(term) < 50:
                learnings.append(
                    LearningExtraction(
                        type="terminology",
                        key=normalize_key(term),
                        value=meaning,
                        confidence=1.0,
                        source="explicit",
                    )
                )

    for pattern in PRODUCT_PATTERNS:
        for match in pattern.finditer(user_text):
            for product in _split_products(match.group(1)):
                learnings.append(
                    LearningExtraction(
                        type="product",
                        key=normalize_key(product),
                        value=product,
                        confidence=0.9,
                        source="explicit",
                    )
                )

    for pattern, confidence in CHART_PREFERENCE_PATTERNS:
        match = pattern.search(user_text)
        if match:
            learnings.append(
                LearningExtraction(
                    type="preference",
                    key="chart_type",
                    value=match.group(1).lower(),
                    confidence=confidence,
                    source="inferred",
                )
            )

    # Corrections come from the current prompt only.
    if any(pattern.search(prompt) for pattern in CORRECTION_PATTERNS):
        learnings.append(
            LearningExtraction(
                type="correction",
                key="needs_review",
                value=prompt,
                confidence=0.5,
                source="inferred",
            )
        )

    flag = LEARNING_FLAG.search(ai_response or "")
    if flag:
        fields: Dict[str, str] = {}
        for line in flag.group(1).strip().splitlines():
            name, sep, value = line.partition(":")
            if sep and name.strip() and value.strip():
                fields[name.strip()] = value.strip()
        if fields.get("term"):
            learnings.append(
                LearningExtraction(
                    type="terminology",
                    key=normalize_key(fields["term"]),
                    value=fields.get("user_said") or fields.get("ai_understood") or fields["term"],
                    confidence=confidence_score(fields.get("confidence", "medium")),
                    source="inferred",
                )
            )

    seen = set()
    unique: List[LearningExtraction] = []
    for learning in learnings:
        marker = (learning.type, learning.key)
        if learning.key and marker not in seen:
            seen.add(marker)
            unique.append(learning)
    return unique


def strip_learning_flags(text: str) -> str:
    return LEARNING_FLAG.sub("", text or "").strip()


def persist_learnings(store: KnowledgeStore, customer_id: str, learnings: Iterable[LearningExtraction]) -> int:
    """Store extracted learnings as inactive items awaiting human review.

    Keys the customer already has (tool-learned, approved or still pending)
    are skipped. Returns the number of new rows.
    """
    saved = 0
    for learning in learnings:
        key = learning.key if learning.type != "correction" else correction_key()
        try:
            inserted = store.insert_knowledge_if_absent(
                customer_id=customer_id,
                knowledge_type=KNOWLEDGE_TYPES[learning.type],
                key=key,
                label=learning.value[:120],
                definition=learning.value,
                source="conversation" if learning.source == "explicit" else "inferred",
                confidence=learning.confidence,
                metadata={"extracted_key": learning.key, "maps_to_field": learning.maps_to_field},
            )
            if inserted is not None:
                saved += 1
        except Exception as exc:
            logger.error(
                "Failed to save learning",
                customer_id=customer_id,
                learning_type=learning.type,
                key=learning.key,
                error=str(exc),
            )
    return saved
