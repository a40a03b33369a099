"""
AQHI Engine — Batch Runner

One batch, end to end:
  1. Fetch:      fetch tasks run on a thread pool; a source that does not
                 answer is skipped, a task still running at the batch
                 timeout is abandoned, neither aborts the batch
  2. Normalize:  provider payloads → canonical Readings
  3. Reconcile:  one ReconciledReading per (location, bucket)
  4. Window:     rolling per-location averages
  5. Index:      relative-risk AQHI + category + data quality, per location
                 in parallel (locations never read each other's state)
  6. Community:  per-community roll-up
  7. Persist:    optional sink, idempotent upsert, per location

The summary carries a SHA-256 digest of every output so a reprocessing run
can be compared bit-for-bit.

Usage:
    python -m aqhi.main --input batch.json
    python -m aqhi.main --fetch --persist
"""

import argparse
import json
import logging
import sys
from collections import defaultdict
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime, timezone
from functools import partial
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from aqhi.classification.quality import RiskIndexResult, build_result
from aqhi.community.aggregator import (
    CityStatistics, CommunitySummary, summarize_city, summarize_communities,
)
from aqhi.config import EngineConfig, load_config
from aqhi.errors import AQHIError, MalformedPayloadError, SourceUnavailableError
from aqhi.fingerprint import compute_digest, to_plain
from aqhi.index.calculator import RiskIndexCalculator
from aqhi.ingestion.models import RawPayload, Reading, ReconciledReading
from aqhi.ingestion.normalizer import normalize
from aqhi.reconciliation.reconciler import reconcile_batch
from aqhi.streaming.window import WindowedAggregator, WindowedAverage

logger = logging.getLogger("aqhi.main")

LOG_FORMAT = "%(asctime)s [AQHI] %(levelname)s %(name)s — %(message)s"


@dataclass
class BatchSummary:
    """Outcome of one batch; per-item failures are counted here, not raised."""
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: int = 0
    errors: List[Tuple[str, str, str]] = field(default_factory=list)   # (stage, key, message)
    results: List[RiskIndexResult] = field(default_factory=list)
    communities: List[CommunitySummary] = field(default_factory=list)
    city: Optional[CityStatistics] = None
    digest: str = ""

    def record_error(self, stage: str, key: str, message: str, count_as: str = "failed") -> None:
        setattr(self, count_as, getattr(self, count_as) + 1)
        self.errors.append((stage, key, message))

    def to_dict(self) -> dict:
        return {
            "succeeded": self.succeeded,
            "failed": self.failed,
            "skipped": self.skipped,
            "timed_out": self.timed_out,
            "errors": [list(e) for e in self.errors],
            "results": [to_plain(r) for r in self.results],
            "communities": [to_plain(c) for c in self.communities],
            "city": to_plain(self.city) if self.city is not None else None,
            "digest": self.digest,
        }


def _task_label(task: Callable, index: int) -> str:
    if isinstance(task, partial):
        target = task.args[0] if task.args else None
        where = getattr(target, "location_id", target)
        return f"{task.func.__name__}({where})"
    return getattr(task, "__name__", f"task-{index}")


class Engine:
    """
    Wires Normalizer → Reconciler → Aggregator → Calculator → Classifier
    → Community Aggregator for repeated batches.

    The aggregator persists across batches, so consecutive runs build up
    each location's rolling window.
    """

    def __init__(self, config: EngineConfig, sink=None, aggregator: Optional[WindowedAggregator] = None):
        self.config = config
        self.sink = sink
        self.aggregator = aggregator or WindowedAggregator.from_config(config)
        self.calculator = RiskIndexCalculator(config.coefficients)

    # ── 1. Fetch ──────────────────────────────────────────────────────────────

    def _fetch(self, tasks: Sequence[Callable[[], RawPayload]], summary: BatchSummary) -> List[RawPayload]:
        # own pool: a hung fetch must not starve the per-location work
        pool = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="aqhi-fetch")
        futures = {pool.submit(task): (i, _task_label(task, i)) for i, task in enumerate(tasks)}
        done, not_done = wait(futures, timeout=self.config.batch_timeout_seconds)
        pool.shutdown(wait=False, cancel_futures=True)

        for future in not_done:
            future.cancel()
            label = futures[future][1]
            logger.error("Fetch %s did not finish within %.1fs", label, self.config.batch_timeout_seconds)
            summary.record_error("fetch", label, "timed out", count_as="timed_out")

        payloads = []
        # submission order; later duplicates win in reconciliation
        for future in sorted(done, key=lambda f: futures[f][0]):
            label = futures[future][1]
            try:
                payloads.append(future.result())
            except SourceUnavailableError as e:
                logger.warning("Skipping %s: %s", label, e)
                summary.record_error("fetch", label, str(e), count_as="skipped")
            except Exception as e:
                logger.error("Fetch %s failed: %s", label, e)
                summary.record_error("fetch", label, f"{type(e).__name__}: {e}")
        return payloads

    # ── 2. Normalize ──────────────────────────────────────────────────────────

    def _normalize(self, payloads: Iterable[RawPayload], summary: BatchSummary) -> List[Reading]:
        readings = []
        for raw in payloads:
            try:
                readings.append(normalize(
                    raw,
                    bucket=self.config.bucket,
                    locations=self.config.locations,
                    max_distance_km=self.config.nearest_max_km,
                ))
                summary.succeeded += 1
            except MalformedPayloadError as e:
                logger.error("Dropping payload: %s", e)
                summary.record_error("normalize", f"{raw.source}/{raw.location_id or '?'}", e.reason)
            except Exception as e:
                logger.error("Normalizing %s/%s failed: %s", raw.source, raw.location_id or "?", e)
                summary.record_error(
                    "normalize", f"{raw.source}/{raw.location_id or '?'}", f"{type(e).__name__}: {e}",
                )
        return readings

    # ── 4–5. Window + index, per location ─────────────────────────────────────

    def _feed(self, buckets: List[ReconciledReading]) -> None:
        for bucket in sorted(buckets, key=lambda b: b.timestamp):
            self.aggregator.add(bucket)

    def _assess(self, location_id: str) -> Optional[Tuple[WindowedAverage, RiskIndexResult]]:
        average = self.aggregator.current(location_id)
        if average is None:
            return None
        outcome = self.calculator.calculate(average)
        return average, build_result(average, outcome, self.config)

    def _per_location(self, pool: ThreadPoolExecutor, stage: str, fn, location_ids: Sequence[str],
                      summary: BatchSummary) -> Dict[str, object]:
        futures = {loc: pool.submit(fn, loc) for loc in location_ids}
        out = {}
        for loc in location_ids:
            try:
                out[loc] = futures[loc].result()
            except Exception as e:
                logger.error("%s failed for %s: %s", stage, loc, e)
                summary.record_error(stage, loc, f"{type(e).__name__}: {e}")
        return out

    # ── 7. Persist ────────────────────────────────────────────────────────────

    def _persist(self, by_location: Dict[str, List[ReconciledReading]],
                 results: Dict[str, RiskIndexResult], now: Optional[datetime],
                 summary: BatchSummary) -> None:
        for loc in sorted(set(by_location) | set(results)):
            try:
                self.sink.persist(loc, by_location.get(loc, []), results.get(loc), now)
            except Exception as e:
                logger.error("Sink failed for %s: %s", loc, e)
                summary.record_error("persist", loc, str(e))

    # ── Batch ─────────────────────────────────────────────────────────────────

    def run_batch(
        self,
        fetch_tasks: Sequence[Callable[[], RawPayload]] = (),
        payloads: Iterable[RawPayload] = (),
        now: Optional[datetime] = None,
    ) -> BatchSummary:
        """
        Run one batch.

        Args:
            fetch_tasks: Zero-argument callables returning a RawPayload.
            payloads: Already-fetched payloads, processed alongside.
            now: Batch clock; when given, buckets outside the window ending
                at now's bucket are evicted before indexing.

        Returns:
            BatchSummary with counts, errors, results, community summaries
            and the output digest.
        """
        summary = BatchSummary()
        pool = ThreadPoolExecutor(max_workers=self.config.max_workers, thread_name_prefix="aqhi")
        try:
            raws = list(payloads)
            if fetch_tasks:
                raws.extend(self._fetch(fetch_tasks, summary))
            logger.info("── Batch starting — %d payloads ──", len(raws))

            readings = self._normalize(raws, summary)
            reconciled = reconcile_batch(readings, self.config.source_priority)

            by_location: Dict[str, List[ReconciledReading]] = defaultdict(list)
            for rec in reconciled:
                by_location[rec.location_id].append(rec)
            location_ids = sorted(by_location)

            if now is not None:
                self.aggregator.expire(now)
            self._per_location(
                pool, "window", lambda loc: self._feed(by_location[loc]), location_ids, summary,
            )
            if now is not None:
                self.aggregator.expire(now)

            # every location still holding buckets, fed this batch or not
            current_ids = self.aggregator.locations()
            assessed = self._per_location(pool, "index", self._assess, current_ids, summary)
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        averages = [assessed[loc][0] for loc in current_ids if assessed.get(loc)]
        results = {loc: assessed[loc][1] for loc in current_ids if assessed.get(loc)}
        summary.results = [results[loc] for loc in sorted(results)]
        summary.communities = summarize_communities(
            summary.results, self.config.membership, self.config.bands, self.config.community_names,
        )
        summary.city = summarize_city(summary.results, len(self.config.locations), self.config.bands)

        if self.sink is not None:
            self._persist(by_location, results, now, summary)

        summary.digest = compute_digest({
            "reconciled": reconciled,
            "averages": averages,
            "results": summary.results,
            "communities": summary.communities,
            "city": [summary.city],
        })

        computable = sum(1 for r in summary.results if r.is_computable)
        logger.info(
            "── Batch complete — %d ok, %d failed, %d skipped, %d timed out; "
            "%d/%d locations computable ──",
            summary.succeeded, summary.failed, summary.skipped, summary.timed_out,
            computable, len(summary.results),
        )
        return summary


# ── CLI ───────────────────────────────────────────────────────────────────────

def _load_batch(path: str) -> Tuple[List[RawPayload], List[Tuple[str, str]]]:
    """Read a batch file; unreadable items are returned as (key, reason) instead of raising."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    items = data.get("payloads", []) if isinstance(data, dict) else data

    payloads, rejected = [], []
    for i, item in enumerate(items):
        try:
            payloads.append(RawPayload.from_dict(item))
        except MalformedPayloadError as e:
            logger.error("Skipping batch item %d: %s", i, e)
            rejected.append((f"item-{i}", e.reason))
    return payloads, rejected


def _parse_now(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    ts = datetime.fromisoformat(value.replace("Z", "+00:00"))
    return ts if ts.tzinfo else ts.replace(tzinfo=timezone.utc)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Run one AQHI reconciliation batch.")
    parser.add_argument("--input", help="JSON file with a list of raw payloads")
    parser.add_argument("--config", help="Path to aqhi.json (default: config/aqhi.json)")
    parser.add_argument("--fetch", action="store_true", help="Fetch live data for all configured locations")
    parser.add_argument("--persist", action="store_true", help="Upsert outputs into DATABASE_URL")
    parser.add_argument("--now", help="Batch clock (ISO 8601); defaults to no expiry")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )

    try:
        config = load_config(args.config)
    except AQHIError as e:
        logger.critical("%s", e)
        return 2

    sink = None
    if args.persist:
        from store.database import get_engine
        from store.repository import ResultStore
        sink = ResultStore(get_engine(config.database_url))

    tasks = []
    if args.fetch:
        from aqhi.ingestion.connectors import build_fetch_tasks
        tasks = build_fetch_tasks(config)

    payloads, rejected = _load_batch(args.input) if args.input else ([], [])
    if not payloads and not rejected and not tasks:
        parser.error("nothing to do: pass --input and/or --fetch")

    summary = Engine(config, sink=sink).run_batch(
        fetch_tasks=tasks, payloads=payloads, now=_parse_now(args.now),
    )
    for key, reason in rejected:
        summary.record_error("load", key, reason)
    json.dump(summary.to_dict(), sys.stdout, indent=2, default=str, ensure_ascii=False)
    sys.stdout.write("\n")
    return 0 if not summary.failed else 1


if __name__ == "__main__":
    sys.exit(main())
