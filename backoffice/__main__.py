from __future__ import annotations

import argparse
import getpass
import logging
import os
from pathlib import Path

from backoffice.auth import MIN_PASSWORD_LENGTH
from backoffice.config import Settings, load_settings, resolve_data_dir
from backoffice.errors import BackofficeError


def _settings(data_dir: Path | None) -> Settings:
    settings = load_settings()
    if data_dir is not None:
        settings = settings.with_data_dir(data_dir)
    logging.basicConfig(level=settings.log_level, format="%(asctime)s %(levelname)s %(message)s")
    return settings


def _migrate(settings: Settings) -> int:
    from backoffice.storage import StorageEngine

    engine = StorageEngine(settings.db_path)
    try:
        engine.open()
        print(f"{engine.db_path}: schema_version={engine.schema_version()}")
    except BackofficeError as exc:
        print(f"Migration failed: {exc}")
        return 1
    finally:
        engine.close()
    return 0


def _set_password(settings: Settings, *, email: str) -> int:
    from backoffice.storage import StorageEngine
    from backoffice.users import UserRepository

    first = getpass.getpass("New password: ")
    second = getpass.getpass("Confirm password: ")
    if first != second:
        print("Passwords do not match.")
        return 1
    if len(first) < MIN_PASSWORD_LENGTH:
        print(f"Password must be at least {MIN_PASSWORD_LENGTH} characters.")
        return 1

    engine = StorageEngine(settings.db_path)
    try:
        users = UserRepository(engine)
        if users.get_user_by_email(email) is None:
            print(f"User not found: {email}")
            return 1
        if not users.set_password(email=email, new_password=first):
            print("Password update failed.")
            return 1
    except BackofficeError as exc:
        print(f"Password update failed: {exc}")
        return 1
    finally:
        engine.close()

    print(f"Password updated for '{email}'.")
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(prog="backoffice")
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument("--data-dir", type=Path, default=None)
    sub = parser.add_subparsers(dest="cmd", required=True)

    p_serve = sub.add_parser("serve", parents=[common], help="Run the JSON API")
    p_serve.add_argument("--host", default="127.0.0.1")
    p_serve.add_argument("--port", type=int, default=8010)
    p_serve.add_argument("--reload", action="store_true")

    sub.add_parser("migrate", parents=[common], help="Open the database, migrate it and print the schema version")

    p_pw = sub.add_parser("set-password", parents=[common], help="Update the password of an existing user")
    p_pw.add_argument("--email", required=True)

    args = parser.parse_args(argv)

    if args.cmd == "serve":
        if args.data_dir is not None:
            # the app factory reads its settings from the environment
            os.environ["BACKOFFICE_DATA_DIR"] = str(resolve_data_dir(args.data_dir))
        import uvicorn

        uvicorn.run("backoffice.app:create_app", factory=True, host=args.host, port=args.port, reload=bool(args.reload))
        return 0

    settings = _settings(args.data_dir)
    if args.cmd == "migrate":
        return _migrate(settings)
    if args.cmd == "set-password":
        return _set_password(settings, email=args.email)

    parser.error(f"unknown command: {args.cmd}")
    return 2


if __name__ == "__main__":
    raise SystemExit(main())
