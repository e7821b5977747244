"""
Async database engine & session factory.

One engine per process.  Long-lived services (session store, audit
writer, directory) receive `async_session_factory` and open their own
short-lived sessions from it.
"""

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from tenant_admin.core.config import settings

engine = create_async_engine(settings.DATABASE_URL, echo=settings.DEBUG, pool_pre_ping=True)

async_session_factory = async_sessionmaker(engine, expire_on_commit=False)
