from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session


class SqlalchemyRepository:
    """
    Shared write path of the SQLAlchemy repositories.

    `db_session` is usually a scoped_session, so every thread works in its
    own session. Lookups use populate_existing() so a row committed by
    another thread is never served stale from this session's identity map.
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def _persist(self, model):
        try:
            self.db.add(model)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        self.db.refresh(model)
        return model

    def _remove(self, model) -> bool:
        if not model:
            return False
        try:
            self.db.delete(model)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            raise
        return True
