# orchestrate/database/db_init.py
import logging

from .database import Base
from . import models  # noqa: F401  registers the mapped tables on Base.metadata

logger = logging.getLogger(__name__)


def initialize_db(engine):
    """
    Creates every table of the metadata store if it does not exist yet.
    """
    logger.info("Initializing metadata store at %s", engine.url)
    Base.metadata.create_all(bind=engine)
