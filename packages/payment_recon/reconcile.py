"""Card reconciliation: attach a profile to unattributed payments by card.

Given a card bound to a profile, find payments and queue rows that carry the
same card but no profile, and attach the profile to them.

Matching:
- P0: ``payments_v2.payment_token`` equals the supplied provider token;
- P1: ``card_last4`` plus a brand that normalizes to the card's brand;
- last4 alone never matches.

Safety:
- if another profile holds the same ``(last4, brand)`` (card link or active
  saved method) the run stops with ``card_collision_last4_brand`` and writes
  nothing, in either mode, unless an explicit :class:`ForceLinkAuthorization`
  is supplied;
- rows bound to another profile are conflicts and are never overwritten;
  writes carry a ``profile IS NULL`` guard;
- more candidates than ``limit`` stops the run (``too_many_candidates``)
  unless ``allow_large`` is set; the stop still reports the candidate counts
  but updates nothing;
- on a successful run, dry-run performs the same reads and reports as
  candidates exactly what an apply run would update.

Every run, including dry-runs and stops, leaves one ``audit_logs`` row.
"""

from __future__ import annotations

import threading
import time
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

from db.client import session_scope
from sqlalchemy.orm import Session

from .config import EngineSettings
from .logging_setup import get_logger
from .models import (
    BatchReconciliationResult,
    CardFingerprint,
    ForceLinkAuthorization,
    ReconcileMode,
    ReconciliationResult,
)
from .pmap import p_map
from .store import (
    ScannedRow,
    attach_profile_to_payments,
    attach_profile_to_queue,
    collision_profiles,
    load_card_links,
    scan_payments_by_card,
    scan_payments_by_token,
    scan_queue_by_card,
    write_audit_log,
)

_log = get_logger("payment_recon.reconcile")

AUDIT_ACTION = "payments_autolink_by_card"
STOP_COLLISION = "card_collision_last4_brand"
STOP_TOO_MANY = "too_many_candidates"

# Extra rows read past ``limit`` so the too-many check sees the overflow.
SCAN_BUFFER = 100
SAMPLE_LIMIT = 10


# ---------------------------------------------------------------------------
# Per-fingerprint serialization
# ---------------------------------------------------------------------------

_LOCKS: dict[tuple[str, str], threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


@contextmanager
def fingerprint_lock(fingerprint: CardFingerprint) -> Iterator[None]:
    """Serialize runs on the same ``(last4, brand)`` within this process.

    Reentrant, so callers can hold it across the session commit while
    :func:`reconcile_card` acquires it again.
    """

    with _LOCKS_GUARD:
        lock = _LOCKS.setdefault(fingerprint.key, threading.RLock())
    with lock:
        yield


# ---------------------------------------------------------------------------
# Single card
# ---------------------------------------------------------------------------


class _Scan:
    """Candidates and bookkeeping collected while scanning one card."""

    def __init__(self, profile_id: str) -> None:
        self.profile_id = profile_id
        self.payments: list[ScannedRow] = []
        self.queue: list[ScannedRow] = []
        self.skipped = 0
        self.conflicts = 0
        self.conflict_samples: list[dict[str, Any]] = []

    def sort(self, row: ScannedRow, bucket: list[ScannedRow], mismatch: str) -> None:
        if row.profile_id is None:
            bucket.append(row)
        elif row.profile_id == self.profile_id:
            self.skipped += 1
        else:
            self.conflicts += 1
            if len(self.conflict_samples) < SAMPLE_LIMIT:
                self.conflict_samples.append({"id": row.id, "reason": mismatch})

    @property
    def found(self) -> int:
        return len(self.payments) + len(self.queue)


def _scan(
    session: Session,
    fingerprint: CardFingerprint,
    *,
    limit: int,
    provider_token: str | None,
) -> _Scan:
    scan = _Scan(fingerprint.profile_id)
    seen: set[int] = set()
    if provider_token:
        for row in scan_payments_by_token(session, provider_token, limit=limit):
            seen.add(row.id)
            scan.sort(row, scan.payments, "profile_id_mismatch_token")
    for row in scan_payments_by_card(session, fingerprint, limit=limit + SCAN_BUFFER):
        if row.id in seen:
            continue
        scan.sort(row, scan.payments, "profile_id_mismatch")
    for row in scan_queue_by_card(session, fingerprint, limit=limit + SCAN_BUFFER):
        scan.sort(row, scan.queue, "matched_profile_id_mismatch")
    return scan


def _audit(
    session: Session,
    result: ReconciliationResult,
    *,
    limit: int,
    allow_large: bool,
    started: float,
    force_link: ForceLinkAuthorization | None,
    other_profiles: set[str],
) -> None:
    meta: dict[str, Any] = {
        "profile_id": result.profile_id,
        "last4": result.card_last4,
        "brand": result.card_brand,
        "dry_run": result.dry_run,
        "status": result.status,
        "stop_reason": result.stop_reason,
        "candidates_payments": result.candidates_payments,
        "candidates_queue": result.candidates_queue,
        "found_candidates": result.found_candidates,
        "updated_payments_profile": result.updated_payments_profile,
        "updated_queue_profile": result.updated_queue_profile,
        "skipped_already_linked": result.skipped_already_linked,
        "conflicts": result.conflicts,
        "limit": limit,
        "allow_large": allow_large,
        "duration_ms": int((time.perf_counter() - started) * 1000),
    }
    if other_profiles:
        meta["other_profiles"] = sorted(other_profiles)[:5]
    if result.force_linked:
        assert force_link is not None
        meta["force_link"] = {"actor": force_link.actor, "reason": force_link.reason}
        write_audit_log(
            session, action=AUDIT_ACTION, meta=meta, actor_type="user", actor_label=force_link.actor
        )
        return
    write_audit_log(session, action=AUDIT_ACTION, meta=meta)


def reconcile_card(
    session: Session,
    fingerprint: CardFingerprint,
    *,
    mode: ReconcileMode | str = ReconcileMode.DRY_RUN,
    limit: int = 200,
    provider_token: str | None = None,
    force_link: ForceLinkAuthorization | None = None,
    allow_large: bool = False,
) -> ReconciliationResult:
    """Reconcile one card within the caller's transaction.

    Store errors propagate; the caller's ``session_scope`` rolls back every
    write made for this card. Concurrent callers should hold
    :func:`fingerprint_lock` until their transaction commits.
    """

    if isinstance(limit, bool) or not isinstance(limit, int) or limit < 1:
        raise ValueError("limit must be a positive integer")
    mode = ReconcileMode(mode)
    dry_run = mode is ReconcileMode.DRY_RUN
    started = time.perf_counter()

    base = {
        "profile_id": fingerprint.profile_id,
        "card_last4": fingerprint.card_last4,
        "card_brand": fingerprint.card_brand,
        "dry_run": dry_run,
    }
    audit = {
        "limit": limit,
        "allow_large": allow_large,
        "started": started,
        "force_link": force_link,
    }

    with fingerprint_lock(fingerprint):
        _log.info(
            "reconcile start profile=%s last4=%s brand=%s mode=%s limit=%d",
            fingerprint.profile_id,
            fingerprint.card_last4,
            fingerprint.card_brand,
            mode.value,
            limit,
        )

        others = collision_profiles(session, fingerprint)
        forced = bool(others) and force_link is not None
        if others and not forced:
            _log.warning(
                "collision: last4=%s brand=%s also bound to %d other profile(s); stopping",
                fingerprint.card_last4,
                fingerprint.card_brand,
                len(others),
            )
            result = ReconciliationResult(
                **base, status="stop", collision=True, stop_reason=STOP_COLLISION
            )
            _audit(session, result, other_profiles=others, **audit)
            return result
        if forced:
            assert force_link is not None
            _log.warning(
                "force-linking colliding card last4=%s brand=%s to profile=%s "
                "actor=%s reason=%r other_profiles=%s",
                fingerprint.card_last4,
                fingerprint.card_brand,
                fingerprint.profile_id,
                force_link.actor,
                force_link.reason,
                sorted(others),
            )

        scan = _scan(session, fingerprint, limit=limit, provider_token=provider_token)
        flags = {
            "collision": forced,
            "force_linked": True if forced else None,
            "skipped_already_linked": scan.skipped,
            "conflicts": scan.conflicts,
            "found_candidates": scan.found,
        }

        if scan.found > limit and not allow_large:
            _log.warning(
                "too many candidates for profile=%s last4=%s: %d > %d; stopping",
                fingerprint.profile_id,
                fingerprint.card_last4,
                scan.found,
                limit,
            )
            result = ReconciliationResult(
                **base,
                **flags,
                status="stop",
                stop_reason=STOP_TOO_MANY,
                candidates_payments=len(scan.payments),
                candidates_queue=len(scan.queue),
                samples={
                    "payments": tuple(r.sample() for r in scan.payments[:SAMPLE_LIMIT]),
                    "conflicts": tuple(scan.conflict_samples),
                },
            )
            _audit(session, result, other_profiles=others, **audit)
            return result

        updated_payments = updated_queue = 0
        if not dry_run:
            updated_payments = attach_profile_to_payments(
                session, [r.id for r in scan.payments], fingerprint.profile_id
            )
            updated_queue = attach_profile_to_queue(
                session, [r.id for r in scan.queue], fingerprint.profile_id
            )

        result = ReconciliationResult(
            **base,
            **flags,
            status="success",
            candidates_payments=len(scan.payments),
            candidates_queue=len(scan.queue),
            updated_payments_profile=updated_payments,
            updated_queue_profile=updated_queue,
            samples={
                "payments": tuple(r.sample() for r in scan.payments[:SAMPLE_LIMIT]),
                "conflicts": tuple(scan.conflict_samples),
            },
        )
        _audit(session, result, other_profiles=others, **audit)
        _log.info(
            "reconcile done profile=%s mode=%s candidates=%d/%d updated=%d/%d "
            "skipped=%d conflicts=%d",
            fingerprint.profile_id,
            mode.value,
            result.candidates_payments,
            result.candidates_queue,
            updated_payments,
            updated_queue,
            scan.skipped,
            scan.conflicts,
        )
        return result


# ---------------------------------------------------------------------------
# Batch
# ---------------------------------------------------------------------------


def _placeholder(
    fingerprint: CardFingerprint, *, dry_run: bool, status: str, error: str | None = None
) -> ReconciliationResult:
    return ReconciliationResult(
        profile_id=fingerprint.profile_id,
        card_last4=fingerprint.card_last4,
        card_brand=fingerprint.card_brand,
        dry_run=dry_run,
        status=status,
        error=error,
    )


def reconcile_all_cards(
    *,
    database_url: str | None = None,
    mode: ReconcileMode | str = ReconcileMode.DRY_RUN,
    limit: int | None = None,
    concurrency: int | None = None,
    cancel_event: threading.Event | None = None,
    settings: EngineSettings | None = None,
) -> BatchReconciliationResult:
    """Reconcile every linked card, each in its own transaction.

    One card's collision, stop or error never aborts the others: store
    errors are captured on that card's result (``status="error"``). The
    ``cancel_event`` is checked before each card starts; cards not started
    are reported with ``status="cancelled"``. Batch runs never force-link.
    """

    settings = settings or EngineSettings()
    mode = ReconcileMode(mode)
    dry_run = mode is ReconcileMode.DRY_RUN
    limit = limit if limit is not None else settings.reconcile_limit
    concurrency = concurrency if concurrency is not None else settings.max_workers

    with session_scope(database_url=database_url) as session:
        fingerprints = load_card_links(session)
    _log.info(
        "batch reconcile: %d card(s) mode=%s concurrency=%d",
        len(fingerprints),
        mode.value,
        concurrency,
    )

    def _one(item: tuple[int, CardFingerprint]) -> tuple[int, ReconciliationResult]:
        idx, fp = item
        if cancel_event is not None and cancel_event.is_set():
            return idx, _placeholder(fp, dry_run=dry_run, status="cancelled")
        try:
            with fingerprint_lock(fp), session_scope(database_url=database_url) as s:
                return idx, reconcile_card(s, fp, mode=mode, limit=limit)
        except Exception as exc:  # noqa: BLE001 - captured per card
            _log.error(
                "reconcile failed profile=%s last4=%s brand=%s: %s",
                fp.profile_id,
                fp.card_last4,
                fp.card_brand,
                exc,
            )
            return idx, _placeholder(fp, dry_run=dry_run, status="error", error=str(exc))

    done = dict(
        p_map(
            list(enumerate(fingerprints)),
            _one,
            concurrency=concurrency,
            cancel_event=cancel_event,
        )
    )
    results = tuple(
        done.get(i) or _placeholder(fp, dry_run=dry_run, status="cancelled")
        for i, fp in enumerate(fingerprints)
    )
    batch = BatchReconciliationResult(
        dry_run=dry_run,
        results=results,
        cancelled=any(r.status == "cancelled" for r in results),
    )
    _log.info(
        "batch reconcile done: processed=%d stopped=%d errors=%d updated=%d cancelled=%s",
        batch.processed,
        batch.stopped,
        batch.errors,
        batch.total_updated,
        batch.cancelled,
    )
    return batch


__all__ = [
    "AUDIT_ACTION",
    "SAMPLE_LIMIT",
    "SCAN_BUFFER",
    "STOP_COLLISION",
    "STOP_TOO_MANY",
    "fingerprint_lock",
    "reconcile_all_cards",
    "reconcile_card",
]
