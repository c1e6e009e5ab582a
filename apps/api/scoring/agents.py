"""Hook, structure, emotional and CTA analyzers plus the synthesizer.

Each analyzer runs against OpenAI when a real key is configured and falls back
to deterministic local heuristics otherwise. Both backends return the same
shape so the rest of the pipeline cannot tell them apart.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from openai import OpenAI

from config import settings
from scoring.llm import complete_json, get_openai_client
from scoring.models import (
    AgentScore,
    MatchedPattern,
    MissingPattern,
    PredictedMetrics,
    Recommendation,
    SceneScore,
    ViralPatterns,
    verdict_for,
)

logger = logging.getLogger(__name__)

Analyzer = Callable[[str, Dict[str, Any]], Awaitable[AgentScore]]

SPEAKING_WPM = 150
AREA_WEIGHTS = {"hook": 0.35, "structure": 0.25, "emotional": 0.20, "cta": 0.20}
TARGET_SCORE = 75

HOOK_CURIOSITY_TOKENS = ("how", "why", "secret", "mistake", "stop", "boost", "grow")
HOOK_PROOF_TOKENS = ("i tested", "i grew", "we tried", "proof", "results")
CTA_STRONG_TOKENS = ("comment", "save", "share", "follow", "subscribe")
CTA_SOFT_TOKENS = ("link", "bio", "description")
EMOTION_LEXICON = {
    "fear": ("afraid", "scary", "risk", "lose", "danger", "worst"),
    "curiosity": ("secret", "nobody", "hidden", "surprising", "why", "what if"),
    "joy": ("love", "amazing", "happy", "win", "finally", "best"),
    "anger": ("unfair", "hate", "scam", "lie", "wrong"),
}


def _clip(value: float, low: float = 0.0, high: float = 100.0) -> float:
    return max(low, min(high, value))


def _safe_text(value: Any) -> str:
    return str(value or "").strip()


def _word_count(text: str) -> int:
    return len(re.findall(r"\w+", text))


def _sentences(text: str) -> List[str]:
    return [part.strip() for part in re.split(r"(?<=[.!?])\s+", text) if part.strip()]


def _scene_texts(context: Dict[str, Any]) -> List[Tuple[int, str]]:
    rows = []
    for scene in context.get("scenes") or []:
        rows.append((int(scene.get("sceneNumber") or 0), _safe_text(scene.get("text"))))
    return rows


def score_hook_quality(first_line: str) -> float:
    line = first_line.lower()
    score = 58.0
    if any(token in line for token in HOOK_CURIOSITY_TOKENS):
        score += 12.0
    if any(token in line for token in HOOK_PROOF_TOKENS):
        score += 14.0
    if re.search(r"\d+", line):
        score += 6.0
    if "?" in line:
        score += 4.0
    return _clip(score)


def score_body_quality(lines: List[str], duration_s: float) -> float:
    info_density = sum(_word_count(line) for line in lines) / max(len(lines), 1)
    cadence = len(lines) / max(duration_s / 15.0, 1.0)
    score = 50.0 + min(info_density / 2.5, 22.0) + min(cadence * 8.0, 18.0)
    return _clip(score)


def score_cta_quality(text: str) -> float:
    lower = text.lower()
    if any(token in lower for token in CTA_STRONG_TOKENS):
        return 82.0
    if any(token in lower for token in CTA_SOFT_TOKENS):
        return 74.0
    return 42.0


def _emotion_hits(text: str) -> Dict[str, int]:
    lower = text.lower()
    return {emotion: sum(lower.count(token) for token in tokens) for emotion, tokens in EMOTION_LEXICON.items()}


def score_emotional_quality(text: str) -> float:
    lower = text.lower()
    hits = sum(_emotion_hits(text).values())
    direct_address = len(re.findall(r"\byou(r)?\b", lower))
    score = 44.0 + min(hits * 7.0, 28.0) + min(direct_address * 3.0, 15.0)
    if "!" in text:
        score += 5.0
    return _clip(score)


def _hook_type(line: str) -> str:
    lower = line.lower()
    if "?" in line:
        return "question"
    if re.search(r"\d+", line):
        return "stat"
    if any(token in lower for token in ("mistake", "stop", "problem", "wrong")):
        return "problem"
    if lower.startswith("i ") or " i " in lower:
        return "story"
    if any(token in lower for token in ("secret", "nobody", "hidden")):
        return "curiosity"
    return "statement"


# Heuristic backends.

def _heuristic_hook(text: str, context: Dict[str, Any]) -> AgentScore:
    scenes = _scene_texts(context)
    opening = scenes[0][1] if scenes else (_sentences(text) or [text])[0]
    score = int(round(score_hook_quality(opening)))
    return AgentScore(
        area="hook",
        score=score,
        breakdown={
            "score": score,
            "type": _hook_type(opening),
            "currentHook": opening[:300],
            "criteria": {
                "specificity": {"score": 80 if re.search(r"\d+", opening) else 45},
                "curiosity": {"score": 80 if any(t in opening.lower() for t in HOOK_CURIOSITY_TOKENS) else 50},
                "proof": {"score": 85 if any(t in opening.lower() for t in HOOK_PROOF_TOKENS) else 40},
            },
        },
    )


def _scene_duration(scene: Dict[str, Any]) -> Optional[float]:
    value = scene.get("duration")
    if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
        return None
    return float(value)


def _estimated_seconds(text: str) -> float:
    return _word_count(text) / SPEAKING_WPM * 60.0


def script_duration(text: str, context: Dict[str, Any]) -> Tuple[float, str]:
    """Seconds of runtime and where the figure came from.

    Scene ``duration`` values win when any scene carries one; scenes without
    one are estimated from their word count.
    """
    scenes = context.get("scenes") or []
    timed = [_scene_duration(scene) for scene in scenes]
    if not any(value is not None for value in timed):
        return _estimated_seconds(text), "estimated"
    total = 0.0
    for scene, value in zip(scenes, timed):
        total += value if value is not None else _estimated_seconds(_safe_text(scene.get("text")))
    return total, "scenes"


def _heuristic_structure(text: str, context: Dict[str, Any]) -> AgentScore:
    scenes = _scene_texts(context)
    lines = [scene_text for _, scene_text in scenes if scene_text] or _sentences(text)
    words = _word_count(text)
    duration_s, duration_source = script_duration(text, context)
    score = int(round(score_body_quality(lines, duration_s)))
    if duration_s > 90:
        score = int(_clip(score - 10))
    longest = max(scenes, key=lambda row: _word_count(row[1])) if scenes else (0, "")
    return AgentScore(
        area="structure",
        score=score,
        breakdown={
            "score": score,
            "pacing": {"wpm": SPEAKING_WPM, "wordCount": words},
            "optimalLength": {"current": round(duration_s), "optimal": "30-60", "source": duration_source},
            "sceneCount": len(scenes),
            "longestScene": longest[0],
        },
    )


def _heuristic_emotional(text: str, context: Dict[str, Any]) -> AgentScore:
    hits = _emotion_hits(text)
    primary, intensity = max(hits.items(), key=lambda item: item[1])
    score = int(round(score_emotional_quality(text)))
    return AgentScore(
        area="emotional",
        score=score,
        breakdown={
            "score": score,
            "primaryEmotion": {"type": primary if intensity else "neutral", "intensity": int(_clip(intensity * 20))},
            "relatability": int(_clip(40 + len(re.findall(r"\byou(r)?\b", text.lower())) * 10)),
        },
    )


def _heuristic_cta(text: str, context: Dict[str, Any]) -> AgentScore:
    scenes = _scene_texts(context)
    closing = scenes[-1][1] if scenes else text
    score = int(round(score_cta_quality(closing)))
    lower = closing.lower()
    cta_type = next((token for token in CTA_STRONG_TOKENS + CTA_SOFT_TOKENS if token in lower), None)
    return AgentScore(
        area="cta",
        score=score,
        breakdown={
            "score": score,
            "presence": {"hasCTA": cta_type is not None, "type": cta_type},
            "placement": "closing" if cta_type else "missing",
        },
    )


HEURISTIC_BACKENDS = {
    "hook": _heuristic_hook,
    "structure": _heuristic_structure,
    "emotional": _heuristic_emotional,
    "cta": _heuristic_cta,
}

ANALYZER_PROMPTS = {
    "hook": (
        "You are a hook expert for short-form video. Score the opening 3-5 seconds for attention grab, "
        "clarity, specificity, emotional trigger and match with proven hook patterns."
    ),
    "structure": (
        "You are a structure analyst for short-form video. Score pacing, information density, "
        "scene flow and whether the length fits a 30-60 second reel."
    ),
    "emotional": (
        "You are an emotional resonance analyst. Score the primary emotion, its intensity and how "
        "relatable the script is to the viewer."
    ),
    "cta": (
        "You are a call-to-action analyst. Score whether the script closes with a clear, specific "
        "action the viewer should take and where it is placed."
    ),
}


def _scene_prompt_lines(context: Dict[str, Any]) -> str:
    lines = []
    for idx, scene in enumerate(context.get("scenes") or []):
        number = scene.get("sceneNumber")
        if number is None:
            number = idx + 1
        duration = _scene_duration(scene)
        label = f"Scene {number} ({duration:g}s)" if duration is not None else f"Scene {number}"
        lines.append(f'{label}: "{_safe_text(scene.get("text"))}"')
    return "\n".join(lines)


def _llm_analyzer(area: str) -> Callable[[OpenAI, str, Dict[str, Any]], Dict[str, Any]]:
    def run(client: OpenAI, text: str, context: Dict[str, Any]) -> Dict[str, Any]:
        system_prompt = (
            ANALYZER_PROMPTS[area]
            + ' Respond ONLY with a JSON object: {"score": <0-100>, "breakdown": {...}}.'
        )
        user_prompt = f"Content type: {context.get('content_type', 'custom')}\n\nScript:\n{text[:8000]}"
        if area == "structure":
            duration_s, _ = script_duration(text, context)
            user_prompt += f"\n\nTotal duration: {duration_s:.0f}s\nScenes:\n{_scene_prompt_lines(context)[:8000]}"
        return complete_json(
            client,
            system_prompt=system_prompt,
            user_prompt=user_prompt,
            model=settings.SCORING_MODEL,
        )

    return run


def _coerce_agent_payload(area: str, data: Dict[str, Any]) -> AgentScore:
    raw_score = data.get("score")
    if not isinstance(raw_score, (int, float)):
        raise ValueError(f"{area} analyzer returned no numeric score")
    breakdown = data.get("breakdown") if isinstance(data.get("breakdown"), dict) else {}
    score = int(round(_clip(float(raw_score))))
    return AgentScore(area=area, score=score, breakdown={**breakdown, "score": score})


def build_analyzer(area: str) -> Analyzer:
    heuristic = HEURISTIC_BACKENDS[area]
    remote = _llm_analyzer(area)

    async def analyze(text: str, context: Dict[str, Any]) -> AgentScore:
        client = get_openai_client(settings.OPENAI_API_KEY)
        if client is None:
            return heuristic(text, context)
        data = await asyncio.to_thread(remote, client, text, context)
        return _coerce_agent_payload(area, data)

    analyze.__name__ = f"analyze_{area}"
    return analyze


ANALYZERS: Dict[str, Analyzer] = {area: build_analyzer(area) for area in ("hook", "structure", "emotional", "cta")}


# Synthesis.

def _priority_for(score: int) -> str:
    if score < 40:
        return "critical"
    if score < 55:
        return "high"
    if score < 70:
        return "medium"
    return "low"


def _impact_range(area: str, score: int) -> Tuple[int, str]:
    delta = max(2, int(round((TARGET_SCORE - score) * AREA_WEIGHTS[area] * 1.6)))
    return delta, f"+{delta}-{delta + 5} points"


def _rewrite_for(area: str, text: str) -> str:
    if area == "hook":
        return f"Stop scrolling: 3 mistakes hide in this. {text}".strip()
    if area == "cta":
        return f"{text} Save this and follow for part 2.".strip()
    if area == "emotional":
        return f"{text} Imagine how that feels for you.".strip()
    sentences = _sentences(text)
    if len(sentences) > 2:
        return " ".join(sentences[:2])
    words = text.split()
    if len(words) > 25:
        return " ".join(words[:25]).rstrip(",;:") + "."
    return f"{text} Here is the one thing that matters.".strip()


def _target_scene(area: str, agent: AgentScore, scenes: List[Tuple[int, str]]) -> Optional[Tuple[int, str]]:
    if not scenes:
        return None
    if area == "hook":
        return scenes[0]
    if area == "cta":
        return scenes[-1]
    if area == "structure":
        longest = agent.breakdown.get("longestScene")
        match = next((row for row in scenes if row[0] == longest), None)
        return match or max(scenes, key=lambda row: _word_count(row[1]))
    # Emotional: the flattest scene in the middle of the script.
    middle = scenes[1:-1] or scenes
    return min(middle, key=lambda row: score_emotional_quality(row[1]))


def _viral_patterns(scenes: List[Tuple[int, str]], full_text: str) -> ViralPatterns:
    opening = scenes[0][1] if scenes else full_text
    closing = scenes[-1][1] if scenes else full_text
    checks = [
        ("question-hook", "?" in opening),
        ("specific-number", bool(re.search(r"\d+", opening))),
        ("personal-story", _hook_type(opening) == "story"),
        ("direct-cta", score_cta_quality(closing) >= 80),
        ("direct-address", bool(re.search(r"\byou\b", full_text.lower()))),
    ]
    matched = [MatchedPattern(pattern=name, confidence=70) for name, ok in checks if ok]
    missing = [MissingPattern(pattern=name, potential_boost="+5-10 points") for name, ok in checks if not ok]
    return ViralPatterns(matched=matched, missing=missing)


def _predicted_metrics(overall: int) -> PredictedMetrics:
    retention_low = int(round(25 + overall * 0.4))
    saves_low = max(1, overall // 25)
    shares_low = max(1, overall // 40)
    probability = {
        "viral": "high",
        "strong": "medium-high",
        "moderate": "medium",
        "weak": "low",
    }[verdict_for(overall)]
    return PredictedMetrics(
        estimated_retention=f"{retention_low}-{retention_low + 10}%",
        estimated_saves=f"{saves_low}-{saves_low + 2}% of viewers",
        estimated_shares=f"{shares_low}-{shares_low + 1}% of viewers",
        viral_probability=probability,
    )


def score_scene(text: str) -> int:
    """Standalone score for one scene, used for per-scene comparison deltas."""
    value = score_hook_quality(text) * 0.4 + score_emotional_quality(text) * 0.3 + score_cta_quality(text) * 0.3
    return int(round(_clip(value)))


def per_scene_scores(context: Dict[str, Any]) -> List[SceneScore]:
    return [SceneScore(scene_number=number, score=score_scene(text)) for number, text in _scene_texts(context)]


def heuristic_synthesis(agents: Dict[str, AgentScore], context: Dict[str, Any]) -> Dict[str, Any]:
    scenes = _scene_texts(context)
    full_text = _safe_text(context.get("full_script"))
    overall = int(round(sum(agents[area].score * weight for area, weight in AREA_WEIGHTS.items())))

    ranked = sorted(agents.values(), key=lambda agent: agent.score, reverse=True)
    strengths = [f"{agent.area} scores {agent.score}/100" for agent in ranked if agent.score >= 70][:3]
    weaknesses = [f"{agent.area} scores {agent.score}/100" for agent in reversed(ranked) if agent.score < 70][:3]

    recommendations: List[Recommendation] = []
    for agent in sorted(agents.values(), key=lambda a: a.score):
        if agent.score >= TARGET_SCORE:
            continue
        target = _target_scene(agent.area, agent, scenes)
        if target is None:
            continue
        scene_number, current = target
        suggested = _rewrite_for(agent.area, current)
        if suggested == current:
            continue
        _, impact = _impact_range(agent.area, agent.score)
        recommendations.append(
            Recommendation(
                priority=_priority_for(agent.score),
                area=agent.area,
                current=current,
                suggested=suggested,
                expected_impact=impact,
                reasoning=f"{agent.area} scored {agent.score}/100, below the {TARGET_SCORE} target.",
                scene_number=scene_number,
            )
        )

    return {
        "overallScore": overall,
        "verdict": verdict_for(overall),
        "confidence": 0.6,
        "strengths": strengths,
        "weaknesses": weaknesses,
        "recommendations": [rec.model_dump(by_alias=True) for rec in recommendations[:5]],
        "viralPatterns": _viral_patterns(scenes, full_text).model_dump(by_alias=True),
        "predictedMetrics": _predicted_metrics(overall).model_dump(by_alias=True),
    }


SYNTHESIS_PROMPT = """
You are the architect synthesizing a multi-agent analysis of a short-form video script.
Combine the four specialist results into one verdict.

Respond ONLY with a JSON object:
{
  "overallScore": <0-100 weighted average>,
  "verdict": "viral|strong|moderate|weak",
  "confidence": <0.0-1.0>,
  "strengths": ["..."],
  "weaknesses": ["..."],
  "recommendations": [
    {
      "priority": "critical|high|medium|low",
      "area": "hook|structure|emotional|cta|pacing|length",
      "sceneNumber": <scene the change applies to>,
      "current": "<current scene text>",
      "suggested": "<full replacement scene text>",
      "expectedImpact": "<e.g. '+15-20 points'>",
      "reasoning": "..."
    }
  ],
  "viralPatterns": {"matched": [{"pattern": "...", "confidence": <0-100>}],
                    "missing": [{"pattern": "...", "potentialBoost": "..."}]},
  "predictedMetrics": {"estimatedRetention": "<range e.g. '55-65%'>",
                       "estimatedSaves": "<range>", "estimatedShares": "<range>",
                       "viralProbability": "low|medium|medium-high|high"}
}
"""


def _llm_synthesis(client: OpenAI, agents: Dict[str, AgentScore], context: Dict[str, Any]) -> Dict[str, Any]:
    scenes = [{"sceneNumber": number, "text": text} for number, text in _scene_texts(context)]
    user_prompt = json.dumps(
        {
            "contentType": context.get("content_type", "custom"),
            "scenes": scenes,
            "agents": {area: agent.model_dump(by_alias=True) for area, agent in agents.items()},
        },
        ensure_ascii=False,
    )
    return complete_json(
        client,
        system_prompt=SYNTHESIS_PROMPT,
        user_prompt=user_prompt,
        model=settings.SCORING_MODEL,
        max_tokens=3000,
    )


async def synthesize(agents: Dict[str, AgentScore], context: Dict[str, Any]) -> Dict[str, Any]:
    """Combine analyzer outputs into the synthesizer superset (camelCase dict)."""
    client = get_openai_client(settings.OPENAI_API_KEY)
    if client is None:
        return {**heuristic_synthesis(agents, context), "backend": "heuristic"}
    result = await asyncio.to_thread(_llm_synthesis, client, agents, context)
    return {**result, "backend": "openai"}
