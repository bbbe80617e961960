"""Output reporting helpers."""
from __future__ import annotations

import csv
import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, Iterator, List, Optional, TextIO, Tuple

from . import config
from .models import ListingObservation, RunProgress, RunResult

RESULT_FIELDNAMES = [
    "keyword",
    "brand_name",
    "branch_name",
    "rank_position",
    "is_local_pack",
    "local_pack_position",
    "brand_match",
    "title",
    "address",
    "rating",
    "category",
    "device_type",
    "source_latitude",
    "source_longitude",
    "latitude",
    "longitude",
    "page",
]


def ensure_dir(path: str) -> None:
    os.makedirs(path, exist_ok=True)


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat()


def _fsync_dir(path: str) -> None:
    try:
        dir_fd = os.open(path, os.O_DIRECTORY)
    except OSError:
        return
    try:
        os.fsync(dir_fd)
    except OSError:
        pass
    finally:
        os.close(dir_fd)


@contextmanager
def atomic_writer(
    path: str,
    mode: str = "w",
    encoding: str = "utf-8",
    newline: Optional[str] = None,
) -> Iterator[TextIO]:
    dir_path = os.path.dirname(path) or "."
    base = os.path.basename(path)
    fd, tmp_path = tempfile.mkstemp(prefix=f".{base}.", suffix=".tmp", dir=dir_path)
    try:
        with os.fdopen(fd, mode, encoding=encoding, newline=newline) as f:
            yield f
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
        _fsync_dir(dir_path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


def atomic_write_text(path: str, text: str) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        f.write(text)


def observation_row(obs: ListingObservation) -> Dict[str, Any]:
    row = obs.to_dict()
    return {name: row.get(name) for name in RESULT_FIELDNAMES}


def write_results_csv(path: str, observations: Iterable[ListingObservation]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=RESULT_FIELDNAMES)
        writer.writeheader()
        for obs in observations:
            writer.writerow(observation_row(obs))


def write_results_json(path: str, observations: Iterable[ListingObservation]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump([o.to_dict() for o in observations], f, ensure_ascii=False, indent=2)


def write_json_object(path: str, payload: Dict[str, Any]) -> None:
    with atomic_writer(path, mode="w", encoding="utf-8") as f:
        json.dump(payload, f, ensure_ascii=False, indent=2)


def write_summary(path: str, summary_lines: List[str]) -> None:
    atomic_write_text(path, "\n".join(summary_lines))


def best_match_rows(observations: Iterable[ListingObservation]) -> List[Dict[str, Any]]:
    """Collapse observations to one row per (keyword, brand, branch).

    Keeps the best (lowest) matched rank across pages and grid points, with
    the number of matched observations; tasks without a match get a
    "Brand not found" row. Input order of first appearance is preserved.
    """
    best: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
    for obs in observations:
        key = (obs.keyword, obs.brand_name, obs.branch_name)
        entry = best.setdefault(
            key,
            {
                "keyword": obs.keyword,
                "brand_name": obs.brand_name,
                "branch_name": obs.branch_name,
                "best_rank_position": None,
                "is_local_pack": False,
                "title": None,
                "address": None,
                "matched_observations": 0,
                "points_matched": set(),
            },
        )
        if not obs.brand_match or obs.rank_position is None:
            continue
        entry["matched_observations"] += 1
        entry["points_matched"].add((obs.source_latitude, obs.source_longitude))
        current = entry["best_rank_position"]
        if current is None or obs.rank_position < current:
            entry["best_rank_position"] = obs.rank_position
            entry["is_local_pack"] = obs.is_local_pack
            entry["title"] = obs.title
            entry["address"] = obs.address

    rows = []
    for entry in best.values():
        entry["points_matched"] = len(entry["points_matched"])
        if entry["best_rank_position"] is None:
            entry["title"] = config.NO_MATCH_TITLE
        rows.append(entry)
    return rows


def write_best_matches_csv(path: str, rows: Iterable[Dict[str, Any]]) -> None:
    fieldnames = [
        "keyword",
        "brand_name",
        "branch_name",
        "best_rank_position",
        "is_local_pack",
        "title",
        "address",
        "matched_observations",
        "points_matched",
    ]
    with atomic_writer(path, mode="w", encoding="utf-8", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=fieldnames)
        writer.writeheader()
        for row in rows:
            writer.writerow(row)


def render_summary(result: RunResult, run_id: Optional[str] = None) -> List[str]:
    lines = []
    lines.append("Rank check summary")
    if run_id:
        lines.append(f"- run_id: {run_id}")
    for key, value in result.summary().items():
        if value is None:
            continue
        lines.append(f"- {key}: {value}")
    lines.append("")
    lines.append("Best matches:")
    for row in best_match_rows(result.observations):
        position = row["best_rank_position"]
        if position is None:
            lines.append(f"- {row['keyword']} | {row['brand_name']} - {row['branch_name']}: not found")
            continue
        pack = " (local pack)" if row["is_local_pack"] else ""
        lines.append(
            f"- {row['keyword']} | {row['brand_name']} - {row['branch_name']}: #{position}{pack} {row['title']}"
        )
    return lines


def write_run_outputs(output_dir: str, result: RunResult, run_id: Optional[str] = None) -> Dict[str, str]:
    ensure_dir(output_dir)
    paths = {
        "results_csv": os.path.join(output_dir, "results.csv"),
        "results_json": os.path.join(output_dir, "results.json"),
        "best_matches_csv": os.path.join(output_dir, "best_matches.csv"),
        "summary": os.path.join(output_dir, "summary.txt"),
    }
    write_results_csv(paths["results_csv"], result.observations)
    write_results_json(paths["results_json"], result.observations)
    write_best_matches_csv(paths["best_matches_csv"], best_match_rows(result.observations))
    write_summary(paths["summary"], render_summary(result, run_id=run_id))
    return paths


class ProgressReporter:
    """Progress sink that logs every ``log_every`` queries and keeps progress.json current."""

    def __init__(
        self,
        output_path: Optional[str],
        log_every: int = 10,
        write_interval_seconds: float = 5.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.output_path = output_path
        self.log_every = max(1, int(log_every)) if log_every else 0
        self.write_interval_seconds = float(write_interval_seconds)
        self.logger = logger or logging.getLogger(__name__)
        self.last: Optional[RunProgress] = None
        self._last_logged_query = 0
        self._last_write: Optional[float] = None

    def __call__(self, progress: RunProgress) -> None:
        self.last = progress
        processed = progress.processed_queries
        if (
            self.log_every
            and processed != self._last_logged_query
            and (processed % self.log_every == 0 or processed == progress.total_queries)
        ):
            self.logger.info(
                "Progress: processed=%s/%s api_calls=%s qps=%s eta=%ss",
                processed,
                progress.total_queries,
                progress.api_calls_made,
                progress.queries_per_second,
                progress.estimated_seconds_remaining,
            )
            self._last_logged_query = processed
        self._write_if_due()

    def flush(self) -> None:
        self._write_if_due(force=True)

    def _write_if_due(self, force: bool = False) -> None:
        if not self.output_path or self.last is None:
            return
        now = time.monotonic()
        if (
            not force
            and self._last_write is not None
            and (now - self._last_write) < self.write_interval_seconds
        ):
            return
        payload = self.last.to_dict()
        payload["timestamp"] = utc_now_iso()
        write_json_object(self.output_path, payload)
        self._last_write = now
