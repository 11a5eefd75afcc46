from sqlalchemy import create_engine, select
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from titikrasa.config import settings


class Base(DeclarativeBase):
    pass


engine = create_engine(settings.database_url, pool_pre_ping=True)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

ROLE_NAMES = ("admin", "manager", "staff")


def get_db() -> Session:
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db(bind=None) -> None:
    """Create every table and make sure the three built-in roles exist."""
    from titikrasa import models

    bind = bind or engine
    Base.metadata.create_all(bind=bind)
    with Session(bind) as db:
        existing = set(db.scalars(select(models.Role.name)).all())
        for name in ROLE_NAMES:
            if name not in existing:
                db.add(models.Role(name=name))
        db.commit()
