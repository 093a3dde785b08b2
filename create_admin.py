"""Create a tenant account from the command line: python create_admin.py EMAIL NAME [--admin]"""
import argparse
import getpass

from app.auth.security import hash_password
from app.database import SessionLocal
from app.models.user import User, UserRole


def main():
    parser = argparse.ArgumentParser(description="Create a MemberBridge account")
    parser.add_argument("email")
    parser.add_argument("name")
    parser.add_argument("--admin", action="store_true", help="Grant the admin role")
    args = parser.parse_args()

    password = getpass.getpass("Password: ")
    if len(password) < 8:
        parser.error("password must be at least 8 characters")

    db = SessionLocal()
    try:
        email = args.email.strip().lower()
        if db.query(User).filter(User.email == email).first():
            parser.error(f"{email} is already registered")
        user = User(
            name=args.name,
            email=email,
            password_hash=hash_password(password),
            role=UserRole.ADMIN if args.admin else UserRole.USER,
        )
        db.add(user)
        db.commit()
        print(f'Account created: id={user.id} role={user.role.value}')
    finally:
        db.close()


if __name__ == "__main__":
    main()
