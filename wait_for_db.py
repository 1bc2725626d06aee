"""Block until Postgres accepts connections; imported by start_api.py."""
import os
import time
from urllib.parse import urlparse

import psycopg2

DATABASE_URL = os.getenv("DATABASE_URL")
if not DATABASE_URL:
    raise SystemExit("DATABASE_URL is not set")

# SQLAlchemy URL may carry a driver suffix
url = DATABASE_URL.replace("postgresql+psycopg2://", "postgresql://")
p = urlparse(url)

if p.scheme.startswith("postgresql"):
    timeout_s = int(os.getenv("DB_WAIT_TIMEOUT", "60"))
    dbname = (p.path or "/wayfare").lstrip("/") or "wayfare"
    deadline = time.time() + timeout_s
    print(f"[wait_for_db] Waiting for Postgres at {p.hostname}:{p.port or 5432} db={dbname} (timeout={timeout_s}s)")
    while True:
        try:
            psycopg2.connect(
                host=p.hostname or "db",
                port=p.port or 5432,
                user=p.username or "wayfare",
                password=p.password or "wayfare",
                dbname=dbname,
            ).close()
            print("[wait_for_db] Postgres is ready.")
            break
        except psycopg2.OperationalError as e:
            if time.time() > deadline:
                print(f"[wait_for_db] Timed out waiting for DB. Last error: {e}")
                raise
            time.sleep(1)
