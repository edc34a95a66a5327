from sqlalchemy import JSON, Column, DateTime, Integer, String, UniqueConstraint, func

from ..database import Base


class Image(Base):
    """
    An image produced by the provisioning pipeline.

    The row is written when the request is accepted (status CREATING) and
    settles on READY or FAILED. After that the image belongs to the provider's
    own tooling; this service never mutates it again.
    """
    __tablename__ = "images"
    __table_args__ = (UniqueConstraint("project", "name", name="uq_images_project_name"),)

    STATUS_CREATING = "CREATING"
    STATUS_READY = "READY"
    STATUS_FAILED = "FAILED"

    id = Column(Integer, primary_key=True, index=True)
    project = Column(String, nullable=False, index=True)
    zone = Column(String, nullable=False)
    name = Column(String, nullable=False)
    image_family = Column(String, nullable=False)
    image_project = Column(String, nullable=False)
    steps = Column(JSON, nullable=False, default=list)
    image_metadata = Column("metadata", JSON, nullable=False, default=dict)
    disk_size = Column(Integer)
    network = Column(String)
    os_type = Column(String, nullable=False)
    api_project = Column(String)
    status = Column(String, nullable=False, default=STATUS_CREATING)
    created_at = Column(DateTime, server_default=func.now())
