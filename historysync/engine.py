import logging
from typing import Iterable, List, Optional
from .models import HistoryRecord, MergeDecision, RecordSet

logger = logging.getLogger(__name__)


def index_records(records: Iterable[Optional[HistoryRecord]]) -> RecordSet:
    """Build a key -> record map, dropping entries without a usable key."""
    result: RecordSet = {}
    for record in records:
        if record is None or not record.key:
            logger.warning("Skipping history record with empty key")
            continue
        result[record.key] = record
    return result


def remote_supersedes(local: HistoryRecord, remote: HistoryRecord) -> bool:
    """
    Last-write-wins on create_time (the last-touched marker).
    On a tie, the further playback position wins, and a known position always beats an unknown one.
    """
    if remote.create_time > local.create_time:
        return True
    if remote.create_time < local.create_time:
        return False

    if remote.has_position and local.has_position:
        return remote.position > local.position
    return remote.has_position and not local.has_position


def merge_history(local: RecordSet, remote: RecordSet) -> MergeDecision:
    """
    Reconcile a remote snapshot against the local set.
    Insert/update only: records that exist only locally are never touched.
    """
    to_insert: List[HistoryRecord] = []
    to_update: List[HistoryRecord] = []

    for key, remote_record in remote.items():
        local_record = local.get(key)
        if local_record is None:
            to_insert.append(remote_record)
        elif remote_supersedes(local_record, remote_record):
            to_update.append(remote_record)

    logger.debug(f"Merge: {len(remote)} remote vs {len(local)} local -> "
                 f"{len(to_insert)} insert, {len(to_update)} update")
    return MergeDecision(to_insert=to_insert, to_update=to_update)


def apply_decision(local: RecordSet, decision: MergeDecision) -> RecordSet:
    """Return a new record set with the decision applied (whole-record overwrite)."""
    result = dict(local)
    for record in decision.to_insert:
        result[record.key] = record
    for record in decision.to_update:
        result[record.key] = record
    return result
