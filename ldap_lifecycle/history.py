"""
User history reconciliation.

The ledger keeps one row per observed change of an identity. A sync run
compares a fresh directory snapshot with the latest row of every identity:
new identities are inserted, changed ones get a new row appended, and
identities that disappeared from the directory have their latest row
flipped to "inActive". Flipping is the only in-place write.

Identity keys are common names, compared case-insensitively.
"""

import logging
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set

from sqlalchemy import select
from sqlalchemy.orm import Session

from ldap_lifecycle.database import LdapUserHistory, session_scope
from ldap_lifecycle.errors import PartialItemError
from ldap_lifecycle.logging_setup import get_history_logger
from ldap_lifecycle.models import (
    ACTIVE, DEPARTED, HistoryEntry, NormalizedUser, ReconcileResult, SyncResult, format_timestamp
)

logger = logging.getLogger(__name__)
history_logger = get_history_logger()


def _identity(key: str) -> str:
    return key.strip().lower()


def _entry_for(user: NormalizedUser, timestamp: str) -> HistoryEntry:
    if not user.common_name.strip():
        raise PartialItemError(user.distinguished_name or user.sam_account_name or "<unknown>",
                               "entry has no common name")
    return HistoryEntry.from_user(user, timestamp)


def reconcile(snapshot: Iterable[NormalizedUser], latest: Iterable[HistoryEntry],
              timestamp: str) -> ReconcileResult:
    """
    Decide which history rows a sync run writes.

    Args:
        snapshot: Fresh directory snapshot
        latest: The latest ledger row of every identity
        timestamp: Update time stamped on every written row

    Returns:
        ReconcileResult with inserts, appends and the latest rows to deactivate
    """
    current: Dict[str, HistoryEntry] = {}
    for entry in latest:
        current[_identity(entry.identity_key)] = entry

    result = ReconcileResult()
    staged: Dict[str, HistoryEntry] = {}
    seen: Set[str] = set()

    for user in snapshot:
        result.total_processed += 1
        try:
            fresh = _entry_for(user, timestamp)
        except PartialItemError as e:
            logger.warning(str(e))
            result.skipped += 1
            continue

        key = _identity(fresh.identity_key)
        seen.add(key)
        # A duplicate within the run compares against what this run already staged
        baseline = staged.get(key) or current.get(key)

        if baseline is None:
            result.inserts.append(fresh)
        elif fresh.differs_from(baseline):
            result.appends.append(fresh)
        else:
            continue
        staged[key] = fresh

    # Leavers are evaluated only after the whole snapshot has been staged
    for key, entry in current.items():
        if key not in seen and entry.is_active == ACTIVE:
            result.deactivations.append(entry)

    return result


class HistoryStore:
    """
    The history ledger inside one open session.

    Writes are limited to append() and mark_inactive(). Identities are
    grouped with the same key as reconcile().
    """

    def __init__(self, session: Session):
        self.session = session

    def latest_per_identity(self) -> List[HistoryEntry]:
        """Latest row per identity: greatest update_time, then greatest sn."""
        rows = self.session.execute(
            select(LdapUserHistory)
            .order_by(LdapUserHistory.update_time.desc(), LdapUserHistory.sn.desc())
        ).scalars()

        latest: Dict[str, HistoryEntry] = {}
        for row in rows:
            latest.setdefault(_identity(row.common_name), row.to_entry())
        return list(latest.values())

    def append(self, entry: HistoryEntry) -> None:
        self.session.add(LdapUserHistory.from_entry(entry))

    def mark_inactive(self, latest: HistoryEntry, timestamp: str) -> bool:
        """
        Flip an identity's latest row, as returned by latest_per_identity(), to inActive.

        Returns:
            True if the row was flipped, False if it is gone or not Active
        """
        row = self.session.get(LdapUserHistory, latest.id) if latest.id is not None else None
        if row is None or row.is_active != ACTIVE:
            return False

        row.is_active = DEPARTED
        row.update_time = timestamp
        return True


class HistorySyncService:
    """Applies a reconciliation run to the ledger in a single transaction."""

    def __init__(self, session_factory: Callable[[], Session]):
        self.session_factory = session_factory

    def sync(self, snapshot: Iterable[NormalizedUser], now: Optional[datetime] = None) -> SyncResult:
        """
        Reconcile a directory snapshot against the ledger.

        The snapshot must already be fetched; no directory call happens
        while the transaction is open.

        Raises:
            PersistenceError: If the transaction fails; nothing is committed
        """
        timestamp = format_timestamp(now or datetime.now())
        users = list(snapshot)
        history_logger.info("History sync started")

        try:
            with session_scope(self.session_factory) as session:
                store = HistoryStore(session)
                decisions = reconcile(users, store.latest_per_identity(), timestamp)

                for entry in decisions.inserts + decisions.appends:
                    store.append(entry)
                session.flush()

                inactivated = 0
                for latest in decisions.deactivations:
                    if store.mark_inactive(latest, timestamp):
                        inactivated += 1
        except Exception as e:
            history_logger.error(f"History sync failed: {e}")
            raise
        finally:
            history_logger.info("History sync finished")

        result = SyncResult(
            total_processed=decisions.total_processed,
            inserted=len(decisions.inserts),
            updated=len(decisions.appends),
            inactivated=inactivated,
            skipped=decisions.skipped,
        )
        result.message = (
            f"History sync completed: processed {result.total_processed} directory users, "
            f"inserted {result.inserted}, changed {result.updated}, marked inactive {result.inactivated}"
        )
        if result.skipped:
            result.message += f", {result.skipped} skipped"
        history_logger.info(result.message)
        return result
