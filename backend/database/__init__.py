from .connection import get_db, get_engine, get_session_factory, init_db, Base

__all__ = ['get_db', 'get_engine', 'get_session_factory', 'init_db', 'Base']
