"""Contention scoring rules: when a debate gets another round and when it goes to synthesis."""

import json
import logging
import re

from config.config_loader import IntensityProfile
from conductor.models import EXTEND, SYNTHESIZE, ContentionScore

logger = logging.getLogger(__name__)

DEFAULT_THRESHOLD = 0.5

_FENCED_JSON = re.compile(r"```(?:json)?\s*(\{.*?\})\s*```", re.DOTALL)
_BARE_JSON = re.compile(r"\{.*\}", re.DOTALL)


def decide_next_step(
    current_round: int,
    score: float | None,
    min_rounds: int,
    max_rounds: int,
    threshold: float = DEFAULT_THRESHOLD,
) -> str:
    """Return EXTEND or SYNTHESIZE for a finished round.

    Rules, first match wins:
      1. current_round < min_rounds  -> extend, whatever the score
      2. current_round >= max_rounds -> synthesize, whatever the score
      3. score >= threshold          -> extend
      4. otherwise                   -> synthesize

    A missing score (evaluation failed or unparseable) never extends past rule 1.
    """
    if current_round < min_rounds:
        return EXTEND
    if current_round >= max_rounds:
        return SYNTHESIZE
    if score is not None and score >= threshold:
        return EXTEND
    return SYNTHESIZE


def narrow_focus(previous: list[str] | None, unresolved: list[str]) -> list[str]:
    """Focus items for the next round: the unresolved subset, never longer than the last focus."""
    items = [u.strip() for u in unresolved if u and u.strip()]
    if previous:
        items = items[: len(previous)]
    return items


def parse_contention(text: str) -> tuple[float | None, list[str]]:
    """Pull (score, unresolved) out of a moderator reply.

    Accepts a fenced ```json block or the outermost {...} in the text. Scores
    are clamped to [0, 1]. Returns (None, []) when nothing usable is found.
    """
    match = _FENCED_JSON.search(text) or _BARE_JSON.search(text)
    if not match:
        logger.debug("No JSON object in contention reply")
        return None, []
    try:
        data = json.loads(match.group(1) if match.re is _FENCED_JSON else match.group(0))
        score = min(1.0, max(0.0, float(data["score"])))
    except (ValueError, KeyError, TypeError) as exc:
        logger.debug("Unparseable contention reply: %s", exc)
        return None, []

    unresolved = data.get("unresolved") or []
    if not isinstance(unresolved, list):
        unresolved = [str(unresolved)]
    return score, [str(u) for u in unresolved]


def score_round(
    current_round: int,
    score: float | None,
    unresolved: list[str],
    profile: IntensityProfile,
    threshold: float = DEFAULT_THRESHOLD,
    previous_focus: list[str] | None = None,
) -> ContentionScore:
    """Combine an evaluation with the round bounds into a ContentionScore.

    When extending, `unresolved` is narrowed into the next round's focus. When
    synthesizing, it is kept whole: those items are the minority opinions the
    synthesis must preserve.
    """
    recommendation = decide_next_step(
        current_round, score, profile.min_rounds, profile.max_rounds, threshold
    )
    if recommendation == EXTEND:
        items = narrow_focus(previous_focus, unresolved)
    else:
        items = narrow_focus(None, unresolved)
    return ContentionScore(score=score, recommendation=recommendation, unresolved=items)
