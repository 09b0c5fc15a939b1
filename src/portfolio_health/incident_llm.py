from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, replace
from typing import Dict, List, Optional, Sequence, Tuple

import requests

from .config import read_env_float
from .errors import PortfolioHealthError
from .models import IncidentRecommendation, RecommendationType

logger = logging.getLogger(__name__)

NARRATIVE_PROVIDERS = ("stub", "ollama")
STUB_MODEL = "deterministic-template"

STUB_HYPOTHESES: Dict[RecommendationType, str] = {
    RecommendationType.REPEAT_PATTERN: "the same underlying fault is being closed without a permanent fix",
    RecommendationType.CLOSURE_ANALYSIS: "a fault is starting to recur and the closure notes should be compared",
    RecommendationType.HIGH_VOLUME: "the application has a systemic stability problem rather than isolated faults",
    RecommendationType.PROCESS_IMPROVEMENT: "shared infrastructure or configuration is failing across applications",
    RecommendationType.TECHNICAL_DEBT: "temporary fixes are accumulating and masking the underlying defects",
}


class NarrativeUnavailable(PortfolioHealthError):
    """The narrative provider gave no usable answer."""


@dataclass(frozen=True)
class NarrativeSettings:
    provider: str = "stub"
    base_url: str = "http://127.0.0.1:11434"
    model: str = "llama3.1:8b"
    timeout_sec: float = 8.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "provider": self.provider,
            "ollama_base_url": self.base_url,
            "ollama_model": self.model,
            "ollama_timeout_sec": self.timeout_sec,
        }


def resolve_llm_settings(
    *,
    llm_provider: Optional[str] = None,
    ollama_base_url: Optional[str] = None,
    ollama_model: Optional[str] = None,
    ollama_timeout_sec: Optional[float] = None,
) -> NarrativeSettings:
    """Explicit arguments win over ``PH_*`` environment variables."""
    defaults = NarrativeSettings()
    provider = str(llm_provider or os.getenv("PH_LLM_PROVIDER") or defaults.provider).strip().lower()
    if provider not in NARRATIVE_PROVIDERS:
        logger.warning("unknown narrative provider %r, using stub", provider)
        provider = defaults.provider
    if ollama_timeout_sec is not None and float(ollama_timeout_sec) > 0:
        timeout = float(ollama_timeout_sec)
    else:
        timeout = read_env_float("PH_OLLAMA_TIMEOUT_SEC", default=defaults.timeout_sec, minimum=0.0)
        if timeout <= 0:
            timeout = defaults.timeout_sec
    return NarrativeSettings(
        provider=provider,
        base_url=str(ollama_base_url or os.getenv("PH_OLLAMA_BASE_URL") or defaults.base_url).strip(),
        model=str(ollama_model or os.getenv("PH_OLLAMA_MODEL") or defaults.model).strip(),
        timeout_sec=timeout,
    )


def build_stub_narrative(recommendation: IncidentRecommendation) -> str:
    hypothesis = STUB_HYPOTHESES.get(recommendation.type, "the incident pattern needs a closer review")
    codes = ", ".join(recommendation.related_close_codes) or "mixed close codes"
    target = recommendation.application_name or recommendation.application_id or "the portfolio"
    return (
        f"{recommendation.incident_count} incidents on {target} ({codes}) suggest {hypothesis}. "
        f"Next step: {recommendation.recommended_action}"
    )


def _pattern_prompt(recommendation: IncidentRecommendation) -> str:
    facts = {
        "pattern": recommendation.type.value,
        "application": recommendation.application_name or recommendation.application_id or "portfolio-wide",
        "title": recommendation.title,
        "evidence": recommendation.description,
        "close_codes": list(recommendation.related_close_codes),
        "sample_incidents": list(recommendation.related_incident_numbers),
        "incident_count": recommendation.incident_count,
    }
    return (
        "Given this recurring incident pattern, state the most likely root cause, the evidence an "
        "engineer should check first, and the permanent fix. Plain text, at most three sentences.\n\n"
        f"{json.dumps(facts, ensure_ascii=True, sort_keys=True)}"
    )


def _chat_reply_text(body: object) -> str:
    # /api/chat puts the answer under message.content, /api/generate under response
    if not isinstance(body, dict):
        return ""
    message = body.get("message") if isinstance(body.get("message"), dict) else {}
    for candidate in (message.get("content"), body.get("response")):
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    return ""


def _ollama_narrative(recommendation: IncidentRecommendation, settings: NarrativeSettings) -> str:
    url = settings.base_url.rstrip("/") + "/api/chat"
    request_body = {
        "model": settings.model,
        "stream": False,
        "options": {"temperature": 0.2, "num_predict": 200},
        "messages": [
            {"role": "system", "content": "You review IT incident trends for an application portfolio team."},
            {"role": "user", "content": _pattern_prompt(recommendation)},
        ],
    }
    try:
        response = requests.post(url, json=request_body, timeout=max(1.0, settings.timeout_sec))
        response.raise_for_status()
        body = response.json()
    except requests.RequestException as exc:
        raise NarrativeUnavailable("ollama request failed", details={"url": url, "error": exc}) from exc
    except ValueError as exc:
        raise NarrativeUnavailable("ollama returned invalid JSON", details={"url": url}) from exc

    text = _chat_reply_text(body)
    if not text:
        raise NarrativeUnavailable("ollama returned an empty reply", details={"model": settings.model})
    return text


def enrich_recommendations(
    recommendations: Sequence[IncidentRecommendation],
    *,
    llm_provider: Optional[str] = None,
    ollama_base_url: Optional[str] = None,
    ollama_model: Optional[str] = None,
    ollama_timeout_sec: Optional[float] = None,
    fail_on_llm_error: bool = False,
) -> Tuple[List[IncidentRecommendation], List[Dict[str, object]]]:
    """Attach a root-cause narrative to each recommendation.

    Only ``root_cause_analysis`` changes; priority, confidence and status are
    left as the analyzer produced them. Returns the recommendations and one
    provenance entry per item.
    """
    settings = resolve_llm_settings(
        llm_provider=llm_provider,
        ollama_base_url=ollama_base_url,
        ollama_model=ollama_model,
        ollama_timeout_sec=ollama_timeout_sec,
    )

    out: List[IncidentRecommendation] = []
    provenance: List[Dict[str, object]] = []
    for rec in recommendations:
        source = {"recommendation_id": rec.recommendation_id, "llm_provider": "stub", "llm_model": STUB_MODEL}
        if settings.provider == "ollama":
            try:
                narrative = _ollama_narrative(rec, settings)
                source.update(llm_provider="ollama", llm_model=settings.model, llm_enriched=True)
            except NarrativeUnavailable as exc:
                if fail_on_llm_error:
                    raise
                logger.warning("narrative for %s fell back to stub: %s", rec.recommendation_id, exc)
                narrative = build_stub_narrative(rec)
                source.update(llm_provider="stub_fallback", llm_enriched=False, llm_error=str(exc))
        else:
            narrative = build_stub_narrative(rec)
            source["llm_enriched"] = True
        out.append(replace(rec, root_cause_analysis=narrative))
        provenance.append(source)
    return out, provenance
