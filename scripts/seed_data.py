#!/usr/bin/env python
"""
Seed script to populate the database with sample units and collections staff for local development.

Usage:
    python scripts/seed_data.py --units 24
"""

import argparse
import sys
from decimal import Decimal
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from condo_collections.config import Base, SessionLocal, engine, settings  # noqa: E402
from condo_collections.main import ensure_default_roles  # noqa: E402
from condo_collections.models.models import Role, Unit, User  # noqa: E402

# Months of arrears cycled across the sample units.
ARREARS_PATTERN = [0, 0, 0, Decimal("0.5"), 1, 2, 3, 0, -1, 4]


def get_role(session, name: str) -> Role:
    role = session.query(Role).filter(Role.name == name).first()
    if not role:
        raise RuntimeError(f"Role '{name}' is not defined. Run ensure_default_roles first.")
    return role


def create_staff_user(session, email: str, full_name: str, role_name: str) -> User:
    user = session.query(User).filter(User.email == email).first()
    if user:
        return user
    user = User(email=email, full_name=full_name, is_active=True)
    user.roles.append(get_role(session, role_name))
    session.add(user)
    session.flush()
    return user


def create_unit(session, index: int) -> Unit:
    unit_number = f"{100 * (1 + index // 8) + index % 8 + 1}"
    unit = session.query(Unit).filter(Unit.unit_number == unit_number).first()
    if unit:
        return unit
    monthly_charge = settings.default_monthly_charge
    months = Decimal(str(ARREARS_PATTERN[index % len(ARREARS_PATTERN)]))
    total_owed = (monthly_charge * months).quantize(Decimal("0.01"))
    late_fees = Decimal("25.00") if months >= 2 else Decimal("0")
    unit = Unit(
        unit_number=unit_number,
        owner_name=f"Sample Owner {index + 1}",
        contact_email=f"owner{unit_number}@example.com" if index % 5 else None,
        contact_phone=f"(305) 555-{1000 + index:04d}",
        monthly_charge=monthly_charge,
        maintenance_balance=max(total_owed - late_fees, Decimal("0")) if total_owed > 0 else total_owed,
        late_fee_balance=late_fees if total_owed > 0 else Decimal("0"),
        total_owed=total_owed,
    )
    session.add(unit)
    return unit


def main() -> None:
    parser = argparse.ArgumentParser(description="Seed sample collections data.")
    parser.add_argument("--units", type=int, default=24, help="Number of sample units to create.")
    args = parser.parse_args()

    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        ensure_default_roles(session)
        create_staff_user(session, "board@example.com", "Board Secretary", "BOARD")
        create_staff_user(session, "treasurer@example.com", "Board Treasurer", "TREASURER")
        create_staff_user(session, "counsel@example.com", "Association Counsel", "ATTORNEY")
        for index in range(args.units):
            create_unit(session, index)
        session.commit()
    print(f"Seeded {args.units} units and collections staff.")


if __name__ == "__main__":
    main()
