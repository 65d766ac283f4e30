# transaction.py
"""Transaction boundary for slot writes.

``run_in_transaction`` runs a unit of work, commits it, and rolls it back on
any failure so a partial write is never visible. The unit of work receives a
``locking`` flag: when transactions are enabled it takes a row lock on the
owning provider before its authoritative overlap check, and on the slot row
before touching capacity or booked counts. Without row locks the version
counters on slots and windows still turn a write based on a stale read into
a retry, and the partial unique index on legacy windows backstops creates.
Races between multi-window creators are not caught in that mode.
"""
import logging
import os

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session, selectinload
from sqlalchemy.orm.exc import StaleDataError

from .dependencies import get_transaction_max_retries
from .errors import OverlapConflictError, TransactionConflictError
from .models import Slot, TimeWindow, User

# serialization_failure, deadlock_detected, lock_not_available
RETRYABLE_SQLSTATES = {'40001', '40P01', '55P03'}

# Unique constraints whose violation means a duplicate window, not a broken request
OVERLAP_CONSTRAINTS = ('uq_slots_legacy_window', '_slot_window_uc')
# SQLite names the columns rather than the constraint for plain unique constraints
SQLITE_WINDOW_UNIQUE = 'UNIQUE constraint failed: slot_windows.slot_id, slot_windows.start_time'


def is_write_conflict(error: OperationalError) -> bool:
    if getattr(error.orig, 'pgcode', None) in RETRYABLE_SQLSTATES:
        return True
    return 'database is locked' in str(error.orig)


def is_overlap_violation(error: IntegrityError) -> bool:
    diag = getattr(error.orig, 'diag', None)
    constraint = getattr(diag, 'constraint_name', None)
    if constraint:
        return constraint in OVERLAP_CONSTRAINTS
    message = str(error.orig)
    return any(name in message for name in OVERLAP_CONSTRAINTS) or SQLITE_WINDOW_UNIQUE in message


def transactions_enabled(db: Session) -> bool:
    """ENABLE_TRANSACTIONS=true/false wins; otherwise only non-SQLite databases lock rows."""
    value = os.getenv('ENABLE_TRANSACTIONS')
    if value is not None:
        value = value.strip().lower()
        if value == 'true':
            return True
        if value == 'false':
            return False
    return db.get_bind().dialect.name != 'sqlite'


def lock_provider(db: Session, provider_id):
    return db.query(User).filter(User.id == provider_id).with_for_update().one()


def lock_slot(db: Session, slot_id):
    """Lock a slot row and its windows, reloading both from the locked rows."""
    slot = (db.query(Slot).options(selectinload(Slot.time_slots)).filter(Slot.id == slot_id)
            .with_for_update().populate_existing().first())
    if slot is not None and slot.is_multi_window:
        db.query(TimeWindow).filter(TimeWindow.slot_id == slot.id).with_for_update().populate_existing().all()
    return slot


def run_in_transaction(db: Session, work, description="slot write"):
    locking = transactions_enabled(db)
    if not locking:
        logging.warning(f"Transactions not supported - running {description} without row locking")

    max_attempts = get_transaction_max_retries()
    for attempt in range(1, max_attempts + 1):
        try:
            result = work(db, locking)
            db.commit()
            return result
        except IntegrityError as e:
            db.rollback()
            if not is_overlap_violation(e):
                raise
            logging.warning(f"Unique index rejected {description}: {e.orig}")
            raise OverlapConflictError(
                "Duplicate active slot exists for the same provider/date/time/entityType") from e
        except (OperationalError, StaleDataError) as e:
            db.rollback()
            if isinstance(e, OperationalError) and not is_write_conflict(e):
                raise
            if attempt == max_attempts:
                logging.error(f"Giving up on {description} after {attempt} attempts: {e}")
                raise TransactionConflictError(
                    "The slot could not be saved because of a concurrent change; please retry") from e
            logging.warning(f"Write conflict during {description} (attempt {attempt}), retrying")
        except Exception:
            db.rollback()
            raise
