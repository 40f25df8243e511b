import os

from sqlalchemy import select
from sqlalchemy.orm import Session

from dealcross.db.session import SessionLocal
from dealcross.models.enums import AdminPermission, AdminRole, Tier, UserRole
from dealcross.models.user import User
from dealcross.services.auth_service import create_user
from dealcross.services.fee_schedule_service import FeeScheduleService


def seed_master_admin(db: Session, email: str, password: str) -> User:
    existing = db.execute(select(User).where(User.email == email.lower())).scalar_one_or_none()
    if existing:
        return existing
    return create_user(
        db,
        name="Master Admin",
        email=email,
        password=password,
        tier=Tier.enterprise.value,
        role=UserRole.admin,
        admin_role=AdminRole.master,
        permissions=[p.value for p in AdminPermission],
    )


def seed():
    db: Session = SessionLocal()
    try:
        created = FeeScheduleService().seed_defaults(db)
        print(f"fee schedules created: {created}")

        email = os.getenv("SEED_ADMIN_EMAIL", "admin@dealcross.local")
        password = os.getenv("SEED_ADMIN_PASSWORD", "change-me")
        admin = seed_master_admin(db, email, password)
        print(f"master admin: {admin.email}")
    finally:
        db.close()


if __name__ == "__main__":
    seed()
