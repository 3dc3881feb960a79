"""
Response Parser

Turns free-form backend text into a StructuredResult. Backends are asked
for JSON but routinely wrap it in markdown fences, prepend prose, or answer
in plain sentences, so parsing degrades through four tiers:

  1. strict JSON of the whole text          confidence as reported
  2. fenced block / first embedded object   confidence capped at 0.75
  3. category-specific regex extraction     confidence capped at 0.65, is_fallback
  4. nothing usable                         zeroed fields, confidence 0, needs_review

parse() never raises: malformed output is a data-quality problem.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from aidispatch.core.logging import get_logger
from aidispatch.models.result import StructuredResult

logger = get_logger(__name__)

EMBEDDED_CONFIDENCE_CEILING = 0.75
REGEX_CONFIDENCE_CEILING = 0.65
REGEX_DEFAULT_CONFIDENCE = 0.5

FENCE_RE = re.compile(r"```(?:json|JSON)?\s*([\s\S]*?)\s*```")
CONFIDENCE_RE = re.compile(r"(?:置信度|confidence)\s*[:：]?\s*(\d+(?:\.\d+)?)\s*%?", re.IGNORECASE)

SEVERITY_WORDS: Dict[str, List[str]] = {
    "severe": ["severe", "critical", "严重", "重度"],
    "moderate": ["moderate", "中度"],
    "mild": ["mild", "slight", "轻度", "轻微"],
}

DIAGNOSIS_VOCABULARY = [
    "禽流感", "新城疫", "小鹅瘟", "鹅副黏病毒病", "细菌性肝炎", "大肠杆菌病",
    "沙门氏菌病", "雏鹅白痢", "球虫病", "呼吸道感染", "消化道感染", "肠炎",
    "营养缺乏", "维生素缺乏", "应激综合征",
    "avian influenza", "newcastle disease", "gosling plague", "colibacillosis",
    "salmonellosis", "coccidiosis", "enteritis", "respiratory infection",
    "vitamin deficiency",
]

_FINDING_KEYS = ("finding", "diagnosis", "disease", "result", "summary")
_COUNT_KEYS = ("count", "total", "affected_count", "affectedCount", "death_count", "deathCount")
_REASONING_KEYS = ("reasoning", "explanation", "rationale", "analysis")


@dataclass(frozen=True)
class ExtractionRules:
    count_keywords: List[str] = field(default_factory=lambda: [
        "total", "count", "number", "affected", "dead", "deaths", "共", "总数", "数量", "死亡",
    ])
    vocabulary: List[str] = field(default_factory=list)

    def count_pattern(self) -> "re.Pattern[str]":
        keywords = "|".join(re.escape(k) for k in self.count_keywords)
        return re.compile(rf"(?:{keywords})\D{{0,12}}?(\d+)", re.IGNORECASE)


DEFAULT_RULES = ExtractionRules()
DIAGNOSIS_RULES = ExtractionRules(vocabulary=DIAGNOSIS_VOCABULARY)

CATEGORY_RULES: Dict[str, ExtractionRules] = {
    "health_diagnosis": DIAGNOSIS_RULES,
    "health_diagnosis_vision": DIAGNOSIS_RULES,
    "complex_diagnosis": DIAGNOSIS_RULES,
    "urgent_diagnosis": DIAGNOSIS_RULES,
}


# ── Pure parse tiers ──────────────────────────────────────────────────────────

def parse_strict_json(text: str) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(text.strip())
    except ValueError:
        return None
    return data if isinstance(data, dict) else None


def parse_fenced_block(text: str) -> Optional[Dict[str, Any]]:
    for match in FENCE_RE.finditer(text):
        data = parse_strict_json(match.group(1))
        if data is not None:
            return data
    return None


def parse_embedded_object(text: str, max_candidates: int = 20) -> Optional[Dict[str, Any]]:
    """First decodable JSON object that starts at any '{' in the text."""
    decoder = json.JSONDecoder()
    for i, match in enumerate(re.finditer(r"\{", text)):
        if i >= max_candidates:
            break
        try:
            data, _ = decoder.raw_decode(text, match.start())
        except ValueError:
            continue
        if isinstance(data, dict):
            return data
    return None


def extract_by_regex(text: str, rules: ExtractionRules = DEFAULT_RULES) -> Optional[Dict[str, Any]]:
    """Pull the minimum fields out of prose. Returns None when nothing matched."""
    found: Dict[str, Any] = {}

    count_match = rules.count_pattern().search(text)
    if count_match:
        found["count"] = int(count_match.group(1))

    confidence_match = CONFIDENCE_RE.search(text)
    if confidence_match:
        found["confidence"] = float(confidence_match.group(1))

    lowered = text.lower()
    for term in rules.vocabulary:
        if term.lower() in lowered:
            found["finding"] = term
            break

    for severity, words in SEVERITY_WORDS.items():
        if any(w in lowered for w in words):
            found["severity"] = severity
            break

    return found or None


# ── Field normalisation ───────────────────────────────────────────────────────

def normalize_confidence(value: Any) -> Optional[float]:
    """Accept 0–1 fractions or 0–100 percentages; anything else is unknown."""
    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        value = value.strip().rstrip("%")
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if number > 1.0:
        number /= 100.0
    return min(max(number, 0.0), 1.0)


def _first(data: Mapping[str, Any], keys) -> Any:
    for key in keys:
        if data.get(key) not in (None, ""):
            return data[key]
    return None


def _as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return 0


def _primary_section(data: Mapping[str, Any]) -> Mapping[str, Any]:
    # Diagnosis prompts ask for {"primaryDiagnosis": {"disease", "confidence", "reasoning"}}
    section = data.get("primaryDiagnosis") or data.get("primary_diagnosis")
    return section if isinstance(section, Mapping) else {}


class ResponseParser:
    def __init__(self, category_rules: Optional[Dict[str, ExtractionRules]] = None):
        self._rules = dict(CATEGORY_RULES if category_rules is None else category_rules)

    def rules_for(self, task_category: Optional[str]) -> ExtractionRules:
        return self._rules.get(task_category or "", DEFAULT_RULES)

    def parse(self, raw_text: Any, task_category: Optional[str] = None) -> StructuredResult:
        text = raw_text if isinstance(raw_text, str) else ("" if raw_text is None else str(raw_text))
        try:
            return self._parse(text, task_category)
        except Exception as e:
            logger.warning("response_parse_error", error=str(e), task_category=task_category)
            return self._fallback(text)

    def _parse(self, text: str, task_category: Optional[str]) -> StructuredResult:
        data = parse_strict_json(text)
        if data is not None:
            return self._from_mapping(data, "json", text, ceiling=None)

        data = parse_fenced_block(text) or parse_embedded_object(text)
        if data is not None:
            return self._from_mapping(data, "fenced", text, ceiling=EMBEDDED_CONFIDENCE_CEILING)

        extracted = extract_by_regex(text, self.rules_for(task_category))
        if extracted is not None:
            confidence = normalize_confidence(extracted.get("confidence"))
            if confidence is None:
                confidence = REGEX_DEFAULT_CONFIDENCE
            logger.info("response_parsed_by_regex", task_category=task_category, fields=sorted(extracted))
            return StructuredResult(
                strategy="regex",
                is_fallback=True,
                confidence=min(confidence, REGEX_CONFIDENCE_CEILING),
                finding=extracted.get("finding", ""),
                count=extracted.get("count", 0),
                severity=extracted.get("severity", ""),
                reasoning=text,
                data=extracted,
                raw_text=text,
            )

        logger.warning("response_unparseable", task_category=task_category, length=len(text))
        return self._fallback(text)

    def _from_mapping(
        self, data: Dict[str, Any], strategy: str, text: str, ceiling: Optional[float]
    ) -> StructuredResult:
        primary = _primary_section(data)

        confidence = normalize_confidence(_first(data, ("confidence",)))
        if confidence is None:
            confidence = normalize_confidence(primary.get("confidence"))
        if confidence is None:
            confidence = 0.0
        if ceiling is not None:
            confidence = min(confidence, ceiling)

        finding = _first(data, _FINDING_KEYS) or primary.get("disease") or ""
        reasoning = _first(data, _REASONING_KEYS) or primary.get("reasoning") or ""

        return StructuredResult(
            strategy=strategy,
            is_fallback=False,
            confidence=confidence,
            finding=finding if isinstance(finding, str) else json.dumps(finding, ensure_ascii=False),
            count=_as_int(_first(data, _COUNT_KEYS)),
            severity=str(data.get("severity") or ""),
            reasoning=reasoning if isinstance(reasoning, str) else json.dumps(reasoning, ensure_ascii=False),
            data=data,
            raw_text=text if strategy != "json" else None,
        )

    @staticmethod
    def _fallback(text: str) -> StructuredResult:
        return StructuredResult(
            strategy="fallback",
            is_fallback=True,
            confidence=0.0,
            needs_review=True,
            reasoning=text,
            raw_text=text,
        )
