import argparse
from typing import Optional

from sqlalchemy import create_engine, text
from sqlalchemy.exc import SQLAlchemyError

from depot import models  # noqa: F401  registers the tables on Base.metadata
from depot.config import settings
from depot.db import Base


def check(database_url: str, create_tables: bool = False) -> bool:
    print(f"DATABASE_URL={database_url}")
    engine = create_engine(database_url, pool_pre_ping=True)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if create_tables:
            Base.metadata.create_all(bind=engine)
            print(f"Tables ready: {', '.join(sorted(Base.metadata.tables))}")
        return True
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)
        return False
    finally:
        engine.dispose()


def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Check the depot database connection.")
    parser.add_argument("--database-url", default=settings.database_url)
    parser.add_argument("--create-tables", action="store_true", help="create any missing tables")
    args = parser.parse_args(argv)
    return 0 if check(args.database_url, create_tables=args.create_tables) else 1


if __name__ == "__main__":
    raise SystemExit(main())
