from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from titikrasa.config import settings


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            has_checkout = conn.execute(
                text("SELECT 1 FROM pg_proc WHERE proname = 'pos_checkout'")
            ).first() if engine.dialect.name == "postgresql" else None
        print("DB connection OK")
        if engine.dialect.name == "postgresql":
            print("pos_checkout procedure:", "present" if has_checkout else "missing (manual checkout)")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
