"""Declarative base, engine/session factories and schema bootstrap."""
from .base import Base
from .session import SessionLocal, get_engine, get_sessionmaker, init_db, session_scope

__all__ = ["Base", "SessionLocal", "get_engine", "get_sessionmaker", "init_db", "session_scope"]
