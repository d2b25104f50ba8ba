"""Maintenance commands for the gemstone shop backend."""
import argparse
import logging
import sys

import uvicorn

from gemstone_shop.config import get_settings, setup_logging
from gemstone_shop.database import Base, SessionLocal, engine, unit_of_work
from gemstone_shop.models import Role, User
from gemstone_shop.security import get_password_hash

logger = logging.getLogger(__name__)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="gemstone-shop", description="Gemstone shop backend")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("init-db", help="Create database tables")

    user_p = sub.add_parser("create-user", help="Create a user account")
    user_p.add_argument("email")
    user_p.add_argument("password")
    user_p.add_argument("full_name")
    user_p.add_argument("--phone")
    user_p.add_argument("--role", choices=[r.value for r in Role], default=Role.CUSTOMER.value)

    role_p = sub.add_parser("set-role", help="Change the role of an existing user")
    role_p.add_argument("email")
    role_p.add_argument("role", choices=[r.value for r in Role])

    serve_p = sub.add_parser("serve", help="Run the API server")
    serve_p.add_argument("--host", default="0.0.0.0")
    serve_p.add_argument("--port", type=int, default=3000)
    serve_p.add_argument("--reload", action="store_true")

    return parser


def create_user(email: str, password: str, full_name: str, role: str = Role.CUSTOMER.value, phone=None) -> User:
    db = SessionLocal()
    try:
        if db.query(User).filter(User.email == email).first():
            raise ValueError(f"User already exists: {email}")
        user = User(
            email=email,
            password_hash=get_password_hash(password),
            full_name=full_name,
            phone=phone,
            role=role,
        )
        with unit_of_work(db):
            db.add(user)
        db.refresh(user)
        logger.info("Created user #%s with role %s", user.id, user.role)
        return user
    finally:
        db.close()


def set_role(email: str, role: str) -> User:
    db = SessionLocal()
    try:
        with unit_of_work(db):
            user = db.query(User).filter(User.email == email).first()
            if user is None:
                raise KeyError(f"User not found: {email}")
            user.role = role
        db.refresh(user)
        logger.info("User #%s role set to %s", user.id, role)
        return user
    finally:
        db.close()


def main(argv=None):
    parser = create_parser()
    args = parser.parse_args(argv)
    setup_logging(get_settings().log_level)

    if args.command == "init-db":
        Base.metadata.create_all(bind=engine)
        print("Database tables created.")

    elif args.command == "create-user":
        Base.metadata.create_all(bind=engine)
        try:
            user = create_user(args.email, args.password, args.full_name, args.role, args.phone)
        except ValueError as e:
            print(e, file=sys.stderr)
            sys.exit(1)
        print(f"Created user #{user.id}: {user.email} ({user.role})")

    elif args.command == "set-role":
        try:
            user = set_role(args.email, args.role)
        except KeyError as e:
            print(e.args[0], file=sys.stderr)
            sys.exit(1)
        print(f"Role updated: {user.email} is now {user.role}")

    elif args.command == "serve":
        uvicorn.run("gemstone_shop.main:app", host=args.host, port=args.port, reload=args.reload)

    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
