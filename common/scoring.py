"""Scoring contract consumed by the workers.

A scorer is any callable ``scorer(payload: ImagePayload) -> ScoreResult``. It
may be slow and it may raise; the worker bounds its duration and records any
exception on the job. The model itself lives outside this repository, so the
default scorer is a deterministic stand-in that derives its numbers from the
image bytes.
"""
import hashlib
import importlib
from typing import Any, Callable, Dict

from common.job_schema import ImagePayload, ScoreFeatures, ScoreResult, SimulatedScore, utcnow

Scorer = Callable[[ImagePayload], ScoreResult]

VIBES = ("dreamy", "charming", "radiant", "magnetic", "captivating")


def _unit(digest: bytes, index: int) -> float:
    """Map two bytes of the digest onto [0, 1]."""
    return int.from_bytes(digest[2 * index:2 * index + 2], "big") / 0xFFFF


def simulated_score(payload: ImagePayload) -> SimulatedScore:
    digest = hashlib.sha256(payload.raw_bytes()).digest()
    score = round(_unit(digest, 0), 4)
    return SimulatedScore(
        score=score,
        confidence=round(0.7 + 0.3 * _unit(digest, 1), 4),
        rank=round(score * 100, 2),
        vibe=VIBES[digest[31] % len(VIBES)],
        features=ScoreFeatures(
            symmetry=round(0.6 + 0.3 * _unit(digest, 2), 4),
            clarity=round(0.6 + 0.3 * _unit(digest, 3), 4),
            lighting=round(0.6 + 0.3 * _unit(digest, 4), 4),
            vibe=round(0.6 + 0.3 * _unit(digest, 5), 4),
        ),
    )


def load_scorer(path: str) -> Scorer:
    """Resolve ``package.module:function`` to a scorer callable."""
    module_name, sep, attr = path.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"SCORER must look like 'module:function', got {path!r}")
    module = importlib.import_module(module_name)
    scorer = getattr(module, attr, None)
    if not callable(scorer):
        raise ValueError(f"SCORER {path!r} is not callable")
    return scorer


def scorer_name(scorer: Scorer) -> str:
    module = getattr(scorer, "__module__", None) or type(scorer).__module__
    name = getattr(scorer, "__qualname__", None) or type(scorer).__qualname__
    return f"{module}:{name}"


def scorer_status(scorer: Scorer) -> Dict[str, Any]:
    return {
        "status": "ready",
        "scorer": scorer_name(scorer),
        "simulated": scorer is simulated_score,
        "timestamp": utcnow().isoformat(),
    }
