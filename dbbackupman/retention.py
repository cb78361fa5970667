# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
dbbackupman Retention - Deterministic keep-N / max-age pruning of backup sets.

A backup set is one manifest plus every artifact sharing its retention
token. Victims are chosen from manifest filenames only, so the decision is
a pure function of the listing and the clock:

1. Parse the token of every manifest; unparsable names are ignored
2. Sort ascending by the token's timestamp prefix (stable)
3. max-age: sets whose timestamp is strictly older than now - days
4. keep-N: the oldest (count - N) sets
5. Victims are the union of both rules, oldest first

Deletion is best-effort: one failed delete is logged and the pass goes on.
"""

import re
from dataclasses import dataclass, field
from datetime import datetime, timedelta, UTC
from pathlib import Path
from typing import Iterable, List, Tuple

import structlog

from dbbackupman.exceptions import RetentionError, StorageError
from dbbackupman.manifest import MANIFEST_SUFFIX
from dbbackupman.storage import StorageDestination, join_remote

logger = structlog.get_logger()

_MANIFEST_NAME = re.compile(r"_(\d{8}_\d{6}(?:_[A-Za-z0-9._-]+)?)\.manifest\.json$")

# Length of the Ymd_His part of a token
TIMESTAMP_PREFIX_LENGTH = 15


@dataclass
class RetentionReport:
    """Outcome of one retention pass over one location."""

    location: str
    victims: List[str] = field(default_factory=list)  # tokens, oldest first
    deleted: List[str] = field(default_factory=list)  # file names / keys
    errors: List[str] = field(default_factory=list)


def parse_manifest_name(name: str) -> Tuple[str, str] | None:
    """
    Extract the retention token from a manifest filename.

    Returns:
        (token, timestamp_prefix) or None if the name is not a manifest
    """
    match = _MANIFEST_NAME.search(name)
    if not match:
        return None
    token = match.group(1)
    return token, token[:TIMESTAMP_PREFIX_LENGTH]


def retention_victims(
    manifest_names: Iterable[str],
    keep: int | None,
    max_age_days: int | None,
    now: datetime | None = None,
) -> List[str]:
    """
    Compute which backup sets to prune.

    Args:
        manifest_names: Manifest filenames of one backup family
        keep: Number of most recent sets to keep (None = no count rule)
        max_age_days: Maximum age in days (None = no age rule)
        now: Reference instant (default: current UTC time)

    Returns:
        Victim tokens, oldest first, without duplicates
    """
    parsed = [p for p in (parse_manifest_name(n) for n in manifest_names) if p]
    parsed.sort(key=lambda item: item[1])

    victims: List[str] = []

    if max_age_days is not None:
        moment = (now or datetime.now(UTC)).astimezone(UTC)
        cutoff = (moment - timedelta(days=max_age_days)).strftime("%Y%m%d_%H%M%S")
        victims.extend(token for token, prefix in parsed if prefix < cutoff)

    if keep is not None and keep >= 0 and len(parsed) > keep:
        victims.extend(token for token, _ in parsed[: len(parsed) - keep])

    # Union, keeping sort order
    seen = set()
    ordered: List[str] = []
    for token, _ in parsed:
        if token in victims and token not in seen:
            seen.add(token)
            ordered.append(token)
    return ordered


def _is_family_manifest(name: str, family_prefix: str) -> bool:
    return name.startswith(family_prefix) and name.endswith("." + MANIFEST_SUFFIX)


def _owning_tokens(manifests: Iterable[str]) -> List[str]:
    """Tokens of every parsable manifest, longest first."""
    tokens = {p[0] for p in (parse_manifest_name(n) for n in manifests) if p}
    return sorted(tokens, key=len, reverse=True)


def _owner(name: str, family_prefix: str, tokens: List[str]) -> str | None:
    """
    The set a file belongs to: the longest token ``t`` for which the name
    starts with ``{family_prefix}{t}.``. Longest first, so a set whose tag
    extends another tag past a dot keeps its own files.
    """
    for token in tokens:
        if name.startswith(f"{family_prefix}{token}."):
            return token
    return None


def apply_local_retention(
    workdir: Path,
    family_prefix: str,
    keep: int | None,
    max_age_days: int | None,
    now: datetime | None = None,
) -> RetentionReport:
    """
    Prune backup sets of one family in the local workspace.

    Args:
        workdir: Directory holding the artifacts
        family_prefix: ``{database}_{abbrev}_{mode}_``
        keep: Keep-N rule
        max_age_days: Max-age rule
        now: Reference instant

    Returns:
        RetentionReport for the workspace
    """
    report = RetentionReport(location="local")
    workdir = Path(workdir)
    if not workdir.is_dir():
        return report

    try:
        names = sorted(p.name for p in workdir.iterdir() if p.is_file())
    except OSError as e:
        raise RetentionError(
            f"Failed to list {workdir}: {e}",
            details={"workdir": str(workdir)},
        ) from e

    manifests = [n for n in names if _is_family_manifest(n, family_prefix)]
    report.victims = retention_victims(manifests, keep, max_age_days, now)
    if not report.victims:
        return report

    tokens = _owning_tokens(manifests)
    victims = set(report.victims)
    for name in names:
        if _owner(name, family_prefix, tokens) not in victims:
            continue
        try:
            (workdir / name).unlink(missing_ok=True)
            report.deleted.append(name)
        except OSError as e:
            logger.warning("retention_delete_failed", location="local", name=name, error=str(e))
            report.errors.append(name)

    logger.info(
        "retention_applied",
        location="local",
        family=family_prefix,
        victims=len(report.victims),
        deleted=len(report.deleted),
    )
    return report


async def apply_remote_retention(
    destination: StorageDestination,
    base_path: str,
    family_prefix: str,
    keep: int | None,
    max_age_days: int | None,
    now: datetime | None = None,
) -> RetentionReport:
    """
    Prune backup sets of one family on a storage destination.

    Only objects directly under ``base_path`` are considered.

    Raises:
        RetentionError: If the destination cannot be listed
    """
    report = RetentionReport(location=destination.name)
    base = base_path.strip("/")
    listing_prefix = join_remote(base, family_prefix)

    try:
        keys = await destination.list(listing_prefix)
    except StorageError as e:
        raise RetentionError(
            f"Failed to list {destination.name}:{listing_prefix}: {e}",
            details={"destination": destination.name, "prefix": listing_prefix},
        ) from e

    offset = len(base) + 1 if base else 0
    by_name = {}
    for key in keys:
        name = key[offset:]
        if "/" in name:
            continue
        by_name[name] = key

    manifests = [n for n in by_name if _is_family_manifest(n, family_prefix)]
    report.victims = retention_victims(manifests, keep, max_age_days, now)
    if not report.victims:
        return report

    tokens = _owning_tokens(manifests)
    victims = set(report.victims)
    for name in sorted(by_name):
        if _owner(name, family_prefix, tokens) not in victims:
            continue
        key = by_name[name]
        try:
            await destination.delete(key)
            report.deleted.append(key)
        except StorageError as e:
            logger.warning(
                "retention_delete_failed",
                location=destination.name,
                key=key,
                error=str(e),
            )
            report.errors.append(key)

    logger.info(
        "retention_applied",
        location=destination.name,
        family=family_prefix,
        victims=len(report.victims),
        deleted=len(report.deleted),
    )
    return report
