# Print (or check) the server-side columns the sync core relies on
from __future__ import annotations
import argparse
import sys
from pathlib import Path

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from reva_core.config import load_settings

SQL_TEMPLATE = """
-- {table}: revision + idempotency columns for offline sync
ALTER TABLE {schema}.{table}
    ADD COLUMN IF NOT EXISTS {revision} TIMESTAMPTZ NOT NULL DEFAULT now(),
    ADD COLUMN IF NOT EXISTS {idempotency} TEXT;

CREATE OR REPLACE FUNCTION {schema}.touch_{revision}()
RETURNS TRIGGER AS $$
BEGIN
    NEW.{revision} = clock_timestamp();
    RETURN NEW;
END;
$$ LANGUAGE plpgsql;

DROP TRIGGER IF EXISTS {table}_touch_{revision} ON {schema}.{table};
CREATE TRIGGER {table}_touch_{revision}
    BEFORE INSERT OR UPDATE ON {schema}.{table}
    FOR EACH ROW EXECUTE FUNCTION {schema}.touch_{revision}();

ALTER TABLE {schema}.{table} REPLICA IDENTITY FULL;
ALTER PUBLICATION supabase_realtime ADD TABLE {schema}.{table};
"""


def render_sql(settings) -> str:
    return "\n".join(
        SQL_TEMPLATE.format(
            table=table,
            schema=settings.schema,
            revision=settings.revision_field,
            idempotency=settings.idempotency_field,
        )
        for table in settings.tables
    )


def check_columns(settings) -> bool:
    from supabase import create_client

    client = create_client(settings.supabase_url, settings.supabase_key)
    ok = True
    for table in settings.tables:
        columns = f"id,{settings.revision_field},{settings.idempotency_field}"
        try:
            client.table(table).select(columns).limit(1).execute()
            print(f"✅ {table}: {columns}")
        except Exception as e:
            ok = False
            print(f"❌ {table}: {e}")
    return ok


def main() -> int:
    parser = argparse.ArgumentParser(description="Sync columns for the Reva tables in Supabase")
    parser.add_argument("--config", help="Path to secrets.toml")
    parser.add_argument("--check", action="store_true", help="Query each table for the sync columns")
    args = parser.parse_args()

    settings = load_settings(args.config)
    if not args.check:
        print(render_sql(settings))
        return 0
    return 0 if check_columns(settings) else 1


if __name__ == "__main__":
    sys.exit(main())
