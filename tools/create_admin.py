from __future__ import annotations

import argparse
import getpass
from datetime import datetime

from sqlalchemy import func

from aurelia.auth import hash_password
from aurelia.db import Base, SessionLocal, engine
from aurelia.models import Profile, User


def main() -> None:
    parser = argparse.ArgumentParser(description="Create or promote an Aurelia administrator.")
    parser.add_argument("email")
    parser.add_argument("--name", default="")
    parser.add_argument("--password", help="prompted for when omitted")
    args = parser.parse_args()

    password = args.password or getpass.getpass("Password: ")
    if len(password) < 8:
        raise SystemExit("Password must be at least 8 characters")

    Base.metadata.create_all(bind=engine)
    db = SessionLocal()
    try:
        email = args.email.strip().lower()
        u = db.query(User).filter(func.lower(User.email) == email).first()
        if u is None:
            u = User(email=email, full_name=args.name or None, email_confirmed_at=datetime.utcnow())
            db.add(u)
            db.flush()
            db.add(Profile(user_id=u.id, full_name=args.name or None, email=email))
            action = "Created"
        else:
            action = "Promoted"

        u.role = "admin"
        u.password_hash = hash_password(password)
        db.commit()
        print(f"{action} admin {email} ({u.id})")
    finally:
        db.close()


if __name__ == "__main__":
    main()
