from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from titikrasa.auth import hash_password
from titikrasa.common import _now
from titikrasa.config import settings
from titikrasa.db import engine, init_db
from titikrasa.models import Profile, Role, UserRole


def create_admin(db: Session, email: str, password: str, name: str) -> bool:
    """Create an admin account unless the email is already registered."""
    email = email.strip().lower()
    if db.scalar(select(Profile.user_id).where(func.lower(Profile.email) == email)):
        return False
    now = _now()
    profile = Profile(
        name=name,
        email=email,
        password_hash=hash_password(password),
        is_active=True,
        created_at=now,
        updated_at=now,
    )
    db.add(profile)
    db.flush()
    role_id = db.scalar(select(Role.id).where(Role.name == "admin"))
    db.add(UserRole(user_id=profile.user_id, role_id=role_id))
    db.commit()
    return True


def main() -> None:
    try:
        init_db(engine)
    except SQLAlchemyError as exc:
        print("Schema setup FAILED")
        print(exc)
        return
    print("Schema ready")
    if not (settings.admin_email and settings.admin_password):
        print("ADMIN_EMAIL / ADMIN_PASSWORD not set, skipping admin account")
        return
    with Session(engine) as db:
        created = create_admin(db, settings.admin_email, settings.admin_password, settings.admin_name)
    print("Admin account created" if created else "Admin account already exists")


if __name__ == "__main__":
    main()
