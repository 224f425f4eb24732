import sys

from sqlalchemy import inspect, text
from sqlalchemy.exc import SQLAlchemyError

from orderflow.config import settings
from orderflow.db import init_db, make_engine


def main() -> None:
    database_url = settings.database_url
    print(f"DATABASE_URL={database_url}")
    engine = make_engine(database_url)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
        print("DB connection OK")
        if "--init" in sys.argv[1:]:
            init_db(engine)
            print(f"Schema OK: {', '.join(sorted(inspect(engine).get_table_names()))}")
    except SQLAlchemyError as exc:
        print("DB connection FAILED")
        print(exc)


if __name__ == "__main__":
    main()
