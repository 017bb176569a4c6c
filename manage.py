"""
Maintenance commands.

    python manage.py create-admin --username admin --email admin@example.com --password secret
    python manage.py ensure-indexes
"""
import argparse
import logging
import sys

import database
from config import LOG_LEVEL, MIN_PASSWORD_LENGTH
from database import ensure_indexes, utcnow
from schemas import ADMIN_ROLES, User
from security import get_password_hash

logger = logging.getLogger("manage")


def create_admin(db, username, email, password, role="admin", name=None):
    """Create a verified admin account, or promote the existing one with that email/username."""
    if role not in ADMIN_ROLES:
        raise ValueError(f"role must be one of {', '.join(ADMIN_ROLES)}")
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValueError(f"Password must be at least {MIN_PASSWORD_LENGTH} characters long")
    email = email.strip().lower()
    now = utcnow()

    existing = db["user"].find_one({"$or": [{"username": username}, {"email": email}]})
    if existing:
        db["user"].update_one(
            {"_id": existing["_id"]},
            {"$set": {
                "role": role,
                "name": existing.get("name") or name or username,
                "password_hash": get_password_hash(password),
                "is_active": True,
                "is_email_verified": True,
                "updated_at": now,
            }},
        )
        logger.info("Promoted %s to %s", existing.get("username"), role)
        return str(existing["_id"])

    user = User(
        username=username,
        name=name or username,
        email=email,
        password_hash=get_password_hash(password),
        role=role,
        is_email_verified=True,
    )
    data = user.model_dump()
    data["created_at"] = now
    data["updated_at"] = now
    user_id = db["user"].insert_one(data).inserted_id
    logger.info("Created %s %s <%s>", role, username, email)
    return str(user_id)


def build_parser():
    parser = argparse.ArgumentParser(description="Storefront maintenance commands")
    commands = parser.add_subparsers(dest="command", required=True)

    admin = commands.add_parser("create-admin", help="create or promote an admin account")
    admin.add_argument("--username", required=True)
    admin.add_argument("--email", required=True)
    admin.add_argument("--password", required=True)
    admin.add_argument("--name")
    admin.add_argument("--role", choices=ADMIN_ROLES, default="admin")

    commands.add_parser("ensure-indexes", help="create the MongoDB indexes")
    return parser


def main(argv=None):
    logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")
    args = build_parser().parse_args(argv)
    if database.db is None:
        logger.error("Database not configured. Set DATABASE_URL and DATABASE_NAME.")
        return 1

    if args.command == "create-admin":
        try:
            create_admin(database.db, args.username, args.email, args.password, role=args.role, name=args.name)
        except ValueError as e:
            logger.error("%s", e)
            return 1
    elif args.command == "ensure-indexes":
        ensure_indexes(database.db)
    return 0


if __name__ == "__main__":
    sys.exit(main())
