import logging

import duckdb


def setup_database(con: duckdb.DuckDBPyConnection) -> None:
    """
    Create the analytics store tables if they don't exist.

    Primary keys double as the upsert conflict keys used by load_events, so a
    re-run of any sync day can never duplicate rows.
    """
    # Sessions - one row per (visitor, ga_session_id); overwritten by later syncs
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS sessions (
    session_id VARCHAR PRIMARY KEY,
    visitor_id VARCHAR NOT NULL,
    ga_session_id BIGINT,

    -- Timing
    first_seen_at TIMESTAMP NOT NULL,
    last_seen_at TIMESTAMP NOT NULL,
    duration_seconds INTEGER,

    -- Canonical attributes (first value in chronological order)
    country VARCHAR,
    city VARCHAR,
    country_iso2 VARCHAR,
    country_iso3 VARCHAR,
    language VARCHAR,
    device_category VARCHAR,
    os VARCHAR,
    browser VARCHAR,
    referrer VARCHAR,

    -- Totals
    is_returning BOOLEAN NOT NULL,
    total_events INTEGER,
    total_pageviews INTEGER,

    -- Audit
    sync_date DATE
    );
    """
    )

    # Immutable fact tables - first write wins on conflict
    con.execute(
        """
    CREATE TABLE IF NOT EXISTS pageviews (
    event_timestamp TIMESTAMP NOT NULL,
    visitor_id VARCHAR NOT NULL,
    page_path VARCHAR NOT NULL,
    session_id VARCHAR,
    page_title VARCHAR,
    referrer VARCHAR,
    locale VARCHAR,
    sync_date DATE,
    PRIMARY KEY (event_timestamp, visitor_id, page_path)
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS video_events (
    event_timestamp TIMESTAMP NOT NULL,
    visitor_id VARCHAR NOT NULL,
    event_name VARCHAR NOT NULL,
    video_id VARCHAR NOT NULL,
    session_id VARCHAR,
    video_title VARCHAR,
    gallery VARCHAR,
    player VARCHAR,
    locale VARCHAR,
    current_time_seconds DOUBLE,
    progress_percent INTEGER,
    watch_time_seconds DOUBLE,
    sync_date DATE,
    PRIMARY KEY (event_timestamp, visitor_id, event_name, video_id)
    );
    """
    )

    con.execute(
        """
    CREATE TABLE IF NOT EXISTS cta_clicks (
    event_timestamp TIMESTAMP NOT NULL,
    visitor_id VARCHAR NOT NULL,
    cta_id VARCHAR NOT NULL,
    session_id VARCHAR,
    page_path VARCHAR,
    locale VARCHAR,
    sync_date DATE,
    PRIMARY KEY (event_timestamp, visitor_id, cta_id)
    );
    """
    )

    # Non-unique indexes for report joins (fact tables are insert-only)
    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_pageviews_session ON pageviews(session_id);"
    )
    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_video_events_session ON video_events(session_id);"
    )
    con.execute(
        "CREATE INDEX IF NOT EXISTS idx_cta_clicks_session ON cta_clicks(session_id);"
    )

    # Sync run bookkeeping - one row per pipeline execution, never deleted
    con.execute(
        """
    CREATE SEQUENCE IF NOT EXISTS sync_runs_id_seq START 1;

    CREATE TABLE IF NOT EXISTS sync_runs (
    id BIGINT PRIMARY KEY DEFAULT nextval('sync_runs_id_seq'),
    sync_date DATE NOT NULL,
    start_time TIMESTAMP NOT NULL,
    end_time TIMESTAMP,
    status VARCHAR NOT NULL CHECK (
        status IN ('running', 'completed', 'completed_with_errors', 'failed')
    ),
    records_processed JSON,
    errors_count INTEGER NOT NULL DEFAULT 0,
    error_details VARCHAR
    );
    """
    )

    logging.info("Analytics store schema is up to date.")


if __name__ == "__main__":
    import sys

    from dotenv import load_dotenv

    from config_loader import load_config

    load_dotenv()
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s %(levelname)s [%(name)s] %(message)s"
    )
    logging.info("--- Starting Analytics Store Setup ---")
    try:
        store_path = load_config().get_env_value("store.path_env")
    except (FileNotFoundError, ValueError) as e:
        logging.error(f"Configuration error: {e}")
        sys.exit(1)

    store = duckdb.connect(store_path)
    try:
        setup_database(store)
    finally:
        store.close()
    logging.info("--- Analytics Store Setup Finished ---")
