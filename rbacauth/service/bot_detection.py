from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, List, Mapping, Optional, Sequence

BOT_SCORE_THRESHOLD = 80
# Only the first stretch of a trace is inspected for shape and rhythm
_SAMPLE_WINDOW = 30


@dataclass
class BotAnalysis:
    is_bot: bool
    score: int
    reasons: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {"is_bot": self.is_bot, "score": self.score, "reasons": list(self.reasons)}


def _events(movement_data: Any) -> Sequence[Mapping[str, Any]]:
    if not movement_data:
        return []
    if isinstance(movement_data, Mapping):
        return movement_data.get("movements") or []
    return getattr(movement_data, "movements", None) or []


def _distance(a: Mapping[str, Any], b: Mapping[str, Any]) -> float:
    return math.hypot(
        float(b.get("x", 0)) - float(a.get("x", 0)),
        float(b.get("y", 0)) - float(a.get("y", 0)),
    )


def _mean_std(values: Sequence[float]) -> tuple[float, float]:
    mean = sum(values) / len(values)
    variance = sum((v - mean) ** 2 for v in values) / len(values)
    return mean, math.sqrt(variance)


def movement_events(movement_data: Any) -> List[Mapping[str, Any]]:
    return list(_events(movement_data))


def analyze_movements(movement_data: Optional[Any]) -> BotAnalysis:
    """Score client cursor/keyboard telemetry for signs of automation.

    Only flags traces that look unambiguously scripted; several corroborating
    signals are needed to reach the threshold and any click or keypress
    lowers the score.
    """
    events = _events(movement_data)
    if len(events) < 5:
        return BotAnalysis(False, 0, ["Insufficient movement data"])

    moves = [e for e in events if e.get("type") == "move"]
    clicks = [e for e in events if e.get("type") == "click"]
    keys = [e for e in events if e.get("type") == "keydown"]
    interacted = bool(clicks or keys)

    if len(moves) < 10:
        return BotAnalysis(False, 0, ["Insufficient data for analysis"])

    score = 0
    reasons: List[str] = []

    if not interacted and len(moves) > 30:
        score += 20
        reasons.append("Many movements but no user interactions")

    straight = 0
    for i in range(2, min(len(moves), _SAMPLE_WINDOW)):
        p1, p2, p3 = moves[i - 2], moves[i - 1], moves[i]
        d1 = _distance(p1, p2)
        d2 = _distance(p2, p3)
        d3 = _distance(p1, p3)
        if d1 > 5 and d2 > 5 and abs(d1 + d2 - d3) < 1:
            straight += 1
    if straight > len(moves) * 0.8 and len(moves) >= 20:
        score += 30
        reasons.append("Too many perfectly straight movements")

    speeds: List[float] = []
    for i in range(1, min(len(moves), _SAMPLE_WINDOW)):
        prev, curr = moves[i - 1], moves[i]
        distance = _distance(prev, curr)
        elapsed = float(curr.get("timestamp", 0)) - float(prev.get("timestamp", 0))
        if elapsed > 0 and distance > 0:
            speeds.append(distance / elapsed)
    if len(speeds) >= 10:
        avg_speed, speed_std = _mean_std(speeds)
        if speed_std < 0.05 and avg_speed > 0.5:
            score += 25
            reasons.append("Unnatural movement speed consistency")

    if len(moves) >= 15:
        intervals = [
            float(moves[i].get("timestamp", 0)) - float(moves[i - 1].get("timestamp", 0))
            for i in range(1, min(len(moves), _SAMPLE_WINDOW))
        ]
        if len(intervals) >= 15:
            avg_interval, interval_std = _mean_std(intervals)
            variation = interval_std / avg_interval if avg_interval > 0 else 0
            if variation < 0.1:
                score += 20
                reasons.append("Movement timing too regular")

    if interacted:
        score = max(0, score - 10)

    return BotAnalysis(score >= BOT_SCORE_THRESHOLD, min(score, 100), reasons)
