from sqlalchemy import JSON, Boolean, Column, DateTime, ForeignKey, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import relationship

from ..database import Base


class Template(Base):
    """
    A named family of instance configurations, parameterized by Size.

    Each Size of a Template is backed by exactly one provider
    instance-template; the Template row itself has no provider counterpart.
    """
    __tablename__ = "templates"
    __table_args__ = (UniqueConstraint("project", "zone", "name", name="uq_templates_project_zone_name"),)

    id = Column(Integer, primary_key=True, index=True)
    project = Column(String, nullable=False, index=True)
    zone = Column(String, nullable=False)
    name = Column(String, nullable=False, index=True)
    image_family = Column(String, nullable=False)
    image_project = Column(String, nullable=False)
    network = Column(String)
    subnetwork = Column(String)
    static_ip = Column(Boolean, nullable=False, default=False)
    scopes = Column(JSON, nullable=False, default=list)
    instance_name_pattern = Column(String)
    default_size_name = Column(String)
    template_metadata = Column("metadata", JSON, nullable=False, default=dict)
    created_at = Column(DateTime, server_default=func.now())

    sizes = relationship(
        "Size",
        back_populates="template",
        cascade="all, delete-orphan",
        order_by="Size.position",
    )

    def find_size(self, size_name: str):
        return next((size for size in self.sizes if size.name == size_name), None)


class Size(Base):
    """
    One resource shape of a Template.

    `instance_template` is the name of the provider instance-template that
    materializes this size.
    """
    __tablename__ = "template_sizes"
    __table_args__ = (UniqueConstraint("template_id", "name", name="uq_template_sizes_template_name"),)

    id = Column(Integer, primary_key=True, index=True)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False)
    position = Column(Integer, nullable=False, default=0)
    name = Column(String, nullable=False)
    memory = Column(Integer, nullable=False)
    cpus = Column(Integer, nullable=False)
    gpu_type = Column(String)
    gpu_count = Column(Integer, nullable=False, default=0)
    disk_size = Column(Integer)
    disk_type = Column(String)
    size_metadata = Column("metadata", JSON, nullable=False, default=dict)
    instance_template = Column(String, nullable=False)

    template = relationship("Template", back_populates="sizes")
