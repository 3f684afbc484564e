from contextlib import contextmanager

from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from rental_management.errors import ConcurrencyConflict


@contextmanager
def unit_of_work(db: Session, commit: bool = True):
    """Commit the work done inside the block, or roll all of it back.

    With ``commit=False`` the caller owns the outer transaction; changes are
    only flushed so that version counters and constraints are checked.
    """
    try:
        yield db
        if commit:
            db.commit()
        else:
            db.flush()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrencyConflict("Record was modified concurrently; reload and retry.") from exc
    except Exception:
        db.rollback()
        raise
