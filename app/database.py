from sqlalchemy import create_engine, event
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase

from app.config import DATABASE_URL


def configure_sqlite(engine: Engine, *, busy_timeout_ms: int = 30000) -> Engine:
	"""WAL + busy timeout so concurrent claimers queue on the write lock instead of erroring."""
	if engine.dialect.name != "sqlite":
		return engine

	@event.listens_for(engine, "connect")
	def _set_sqlite_pragmas(dbapi_connection, connection_record):  # noqa: ARG001
		cursor = dbapi_connection.cursor()
		cursor.execute("PRAGMA journal_mode=WAL")
		cursor.execute(f"PRAGMA busy_timeout={int(busy_timeout_ms)}")
		cursor.close()

	return engine


# SQLite needs cross-thread access: the dispatch timer runs on its own thread.
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}

engine = configure_sqlite(create_engine(DATABASE_URL, connect_args=_connect_args))
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

class Base(DeclarativeBase):
	pass
