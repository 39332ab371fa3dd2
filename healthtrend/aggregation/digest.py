"""t-digest state for streaming latency percentiles.

Hourly aggregate rows keep a t-digest of their latency samples so p95 can be
refreshed on every run without retaining the samples. The digest is stored
as a JSON list of centroids: ``[{"m": mean, "c": count}, ...]``.
"""

from __future__ import annotations

from tdigest import TDigest

from ..config import settings


def new_digest() -> TDigest:
    return TDigest(delta=settings.tdigest_delta)


def serialize_digest(digest: TDigest) -> list[dict[str, float]]:
    return [{"m": c["m"], "c": c["c"]} for c in digest.centroids_to_list()]


def deserialize_digest(state: list[dict[str, float]] | None) -> TDigest:
    digest = new_digest()
    centroids = [c for c in state or [] if c.get("c", 0) > 0]
    if centroids:
        digest.update_centroids_from_list(centroids)
    return digest


def digest_count(digest: TDigest) -> int:
    """Number of samples folded into ``digest``."""
    return int(round(digest.n))


def digest_percentile(digest: TDigest, percentile: float) -> float | None:
    if digest.n == 0:
        return None
    return digest.percentile(percentile)
