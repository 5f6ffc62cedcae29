from src.core.database.session import async_session, engine, get_db
from src.core.database.base import ActorStamped, Base, BaseModel, BigIntPK, TenantScoped

__all__ = [
    "async_session",
    "engine",
    "get_db",
    "ActorStamped",
    "Base",
    "BaseModel",
    "BigIntPK",
    "TenantScoped",
]
