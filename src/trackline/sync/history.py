"""Timestamped JSONL backups taken before each export overwrite.

Backups live in ``<data_dir>/.history`` as ``{stem}.{YYYYmmdd_HHMMSS_ffffff}.jsonl``.
Each stem is its own lineage: rotation and deduplication only ever look at
backups whose stem matches exactly, so churn in one interchange file cannot
evict the backups of another.
"""

from __future__ import annotations

import filecmp
import logging
import os
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path

from trackline.errors import NotFoundError
from trackline.models import now_utc
from trackline.sync.path import require_valid_sync_path

logger = logging.getLogger(__name__)

HISTORY_DIR_NAME = ".history"
TIMESTAMP_FORMAT = "%Y%m%d_%H%M%S_%f"
_TIMESTAMP_LEN = len("20240101_120000_000000")


@dataclass
class HistoryConfig:
    enabled: bool = True
    max_count: int = 100
    max_age_days: int = 30


@dataclass
class BackupEntry:
    path: Path
    stem: str
    timestamp: datetime
    size: int


def history_dir(data_dir: str | os.PathLike) -> Path:
    return Path(data_dir) / HISTORY_DIR_NAME


def backup_stem(target_path: str | os.PathLike) -> str:
    name = Path(target_path).name
    return name[:-len(".jsonl")] if name.endswith(".jsonl") else Path(name).stem


def parse_backup_name(name: str) -> tuple[str, datetime] | None:
    """Split ``stem.timestamp.jsonl`` into (stem, timestamp). None if not a backup."""
    if not name.endswith(".jsonl"):
        return None
    base = name[:-len(".jsonl")]
    stem, sep, ts = base.rpartition(".")
    if not sep or not stem or len(ts) != _TIMESTAMP_LEN:
        return None
    try:
        when = datetime.strptime(ts, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
    return stem, when


def list_backups(hist_dir: str | os.PathLike, stem: str | None = None) -> list[BackupEntry]:
    """List backups newest first, optionally restricted to one exact stem."""
    hist = Path(hist_dir)
    if not hist.is_dir():
        return []
    entries: list[BackupEntry] = []
    for path in hist.iterdir():
        if not path.is_file():
            continue
        parsed = parse_backup_name(path.name)
        if parsed is None:
            continue
        entry_stem, when = parsed
        if stem is not None and entry_stem != stem:
            continue
        entries.append(BackupEntry(path=path, stem=entry_stem, timestamp=when,
                                   size=path.stat().st_size))
    entries.sort(key=lambda e: (e.timestamp, e.path.name), reverse=True)
    return entries


def latest_backup(hist_dir: str | os.PathLike, stem: str) -> BackupEntry | None:
    backups = list_backups(hist_dir, stem)
    return backups[0] if backups else None


def backup_before_export(data_dir: str | os.PathLike, config: HistoryConfig,
                         target_path: str | os.PathLike,
                         now: datetime | None = None) -> Path | None:
    """Copy target_path into the history directory before it is overwritten.

    Returns the backup path, or None when history is disabled, the target
    does not exist yet, or its content matches the latest backup.
    """
    target = Path(target_path)
    if not config.enabled or not target.is_file():
        return None

    hist = history_dir(data_dir)
    hist.mkdir(parents=True, exist_ok=True)
    stem = backup_stem(target)

    latest = latest_backup(hist, stem)
    if latest is not None and filecmp.cmp(target, latest.path, shallow=False):
        logger.debug("skipping backup of %s: identical to %s", target, latest.path.name)
        return None

    when = (now or now_utc()).astimezone(timezone.utc)
    backup_path = hist / f"{stem}.{when.strftime(TIMESTAMP_FORMAT)}.jsonl"
    while backup_path.exists():
        when += timedelta(microseconds=1)
        backup_path = hist / f"{stem}.{when.strftime(TIMESTAMP_FORMAT)}.jsonl"
    require_valid_sync_path(backup_path, data_dir)

    shutil.copy2(target, backup_path)
    logger.info("backed up %s to %s", target.name, backup_path.name)

    rotate_history(hist, config, stem, now=when)
    return backup_path


def rotate_history(hist_dir: str | os.PathLike, config: HistoryConfig, stem: str,
                   now: datetime | None = None) -> int:
    """Apply count and age limits to one stem's backups. Returns the number removed."""
    return prune_backups(hist_dir, keep=config.max_count,
                         older_than_days=config.max_age_days, stem=stem, now=now)


def prune_backups(hist_dir: str | os.PathLike, keep: int,
                  older_than_days: int | None = None, stem: str | None = None,
                  now: datetime | None = None) -> int:
    """Delete backups beyond ``keep`` per stem or older than ``older_than_days``.

    Without ``stem`` every lineage is pruned independently.
    """
    backups = list_backups(hist_dir, stem)
    cutoff = None
    if older_than_days is not None and older_than_days > 0:
        cutoff = (now or now_utc()) - timedelta(days=older_than_days)

    by_stem: dict[str, list[BackupEntry]] = {}
    for entry in backups:
        by_stem.setdefault(entry.stem, []).append(entry)

    removed = 0
    for entries in by_stem.values():
        for idx, entry in enumerate(entries):
            too_old = cutoff is not None and entry.timestamp < cutoff
            if idx >= keep or too_old:
                entry.path.unlink()
                removed += 1
    if removed:
        logger.info("pruned %d backup(s)", removed)
    return removed


def restore_backup(backup_path: str | os.PathLike, target_path: str | os.PathLike,
                   data_dir: str | os.PathLike, allow_external: bool = False) -> Path:
    """Copy a backup over target_path atomically."""
    source = Path(backup_path)
    if not source.is_file():
        raise NotFoundError(source.name, "backup", f"backup not found: {source}")
    target = Path(require_valid_sync_path(target_path, data_dir, allow_external))
    tmp = target.with_name(target.name + ".tmp")
    require_valid_sync_path(tmp, data_dir, allow_external)
    shutil.copyfile(source, tmp)
    os.replace(tmp, target)
    logger.info("restored %s from %s", target, source.name)
    return target
