"""Seed the database with a demo dojo, its users, and an opening credit balance."""

from dojoflow.core.config import settings
from dojoflow.core.database import SessionLocal
from dojoflow.models import CreditBalance, Organization, User
from dojoflow.services.auth import hash_password
from dojoflow.services.credits import initialize_credit_balance

SEED_ORGANIZATION = "Demo Dojo (Seed)"

SEED_USERS = [
    {
        "email": "admin@dojoflow.dev",
        "full_name": "DojoFlow Admin",
        "password": "admin-password",
        "is_admin": True,
    },
    {
        "email": "owner@dojoflow.dev",
        "full_name": "Demo Dojo Owner",
        "password": "owner-password",
        "is_admin": False,
    },
]


def seed_demo_dojo() -> tuple[Organization, CreditBalance]:
    """Create the demo organization, its users, and its credit balance.

    Safe to re-run: existing rows are reused.
    """
    db = SessionLocal()
    try:
        org = db.query(Organization).filter(Organization.name == SEED_ORGANIZATION).first()
        if org is None:
            org = Organization(name=SEED_ORGANIZATION)
            db.add(org)
            db.flush()

        for data in SEED_USERS:
            if db.query(User).filter(User.email == data["email"]).first() is not None:
                continue
            db.add(
                User(
                    email=data["email"],
                    full_name=data["full_name"],
                    password_hash=hash_password(data["password"]),
                    organization_id=org.id,
                    is_admin=data["is_admin"],
                )
            )
        db.commit()

        credit = (
            db.query(CreditBalance).filter(CreditBalance.organization_id == org.id).first()
        )
        if credit is None:
            credit = initialize_credit_balance(db, org.id, settings.DEFAULT_PERIOD_CREDITS)

        db.refresh(org)
        return org, credit
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    org, credit = seed_demo_dojo()
    print(f"Organization: {org.name} (id={org.id})")
    for data in SEED_USERS:
        print(f"User: {data['email']} / {data['password']}")
    print(f"\nCredit balance: {credit.balance} (renews {credit.next_reset_at})")
