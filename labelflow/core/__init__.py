from labelflow.core.config import settings
from labelflow.core.database import Base, get_db_session
