from contextlib import contextmanager
from typing import Iterator

from psycopg2 import pool as pg_pool
from psycopg2.extras import RealDictCursor


class ConnectionPool:
    def __init__(self, dsn: str, min_conn: int = 1, max_conn: int = 10) -> None:
        if not dsn:
            raise RuntimeError("DATABASE_URL environment variable is not set")
        self._pool = pg_pool.ThreadedConnectionPool(
            min_conn,
            max_conn,
            dsn=dsn,
            connect_timeout=10,
            options="-c timezone=UTC",
        )

    def get_connection(self):
        return self._pool.getconn()

    def release_connection(self, conn) -> None:
        if conn:
            self._pool.putconn(conn)

    @contextmanager
    def cursor(self) -> Iterator[RealDictCursor]:
        conn = self.get_connection()
        cur = conn.cursor(cursor_factory=RealDictCursor)
        try:
            yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            cur.close()
            self.release_connection(conn)

    def close(self) -> None:
        self._pool.closeall()
