from aso_bible.db.base import Base
from aso_bible.db.config import DBSettings, get_db_settings
from aso_bible.db.engine import make_engine
from aso_bible.db.session import make_session_factory

__all__ = [
    "Base",
    "DBSettings",
    "get_db_settings",
    "make_engine",
    "make_session_factory",
]
