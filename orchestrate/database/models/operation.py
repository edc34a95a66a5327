from sqlalchemy import Column, DateTime, Integer, String, Text, func

from ..database import Base


class Operation(Base):
    """
    The durable record of one accepted request, addressed by `request_id`.
    """
    __tablename__ = "operations"

    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    TERMINAL_STATUSES = (SUCCEEDED, FAILED)

    id = Column(Integer, primary_key=True, index=True)
    request_id = Column(String, unique=True, nullable=False, index=True)
    kind = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PENDING)
    error_kind = Column(String)
    detail = Column(Text, nullable=False, default="")
    created_at = Column(DateTime, server_default=func.now())
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now())
    finished_at = Column(DateTime)

    @property
    def is_terminal(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def to_dict(self):
        return {
            "request_id": self.request_id,
            "kind": self.kind,
            "status": self.status,
            "error_kind": self.error_kind,
            "detail": self.detail,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
