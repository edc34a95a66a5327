from sqlalchemy import Boolean, Column, DateTime, Integer, String, func

from ..database import Base


class Project(Base):
    """
    A cloud project this service may act on.

    A project is orchestrated only while `registered` is true. Templates and
    images are keyed by the project name rather than a foreign key, so a
    deregistered project keeps its row and its history.
    """
    __tablename__ = "projects"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, unique=True, nullable=False, index=True)
    registered = Column(Boolean, nullable=False, default=False)
    registered_at = Column(DateTime)
    deregistered_at = Column(DateTime)
    created_at = Column(DateTime, server_default=func.now())
