"""
Daily sync: one closed warehouse partition -> analytics store.

Usage:
  # Sync yesterday (business timezone)
  python etl.py

  # Re-sync an explicit day; always safe, every write is an idempotent upsert
  python etl.py --date 2025-01-15

Exit codes: 0 completed, 2 completed_with_errors, 1 failed or misconfigured.
"""
import argparse
import logging
import sys
from datetime import date, datetime, timedelta

import duckdb
import pytz
from dotenv import load_dotenv

from config_loader import load_config
from extract_events import extract_day
from geo import enrich_sessions_geo
from load_events import DATASET_SPECS, load_all
from logging_utils import configure_logging
from setup_database import setup_database
from sync_runs import SyncRun, SyncRunTracker, SyncStatus, decide_status
from warehouse import ExtractionError, connect_warehouse

EXIT_CODES = {
    SyncStatus.COMPLETED: 0,
    SyncStatus.COMPLETED_WITH_ERRORS: 2,
    SyncStatus.FAILED: 1,
}


def yesterday_in(tz_name: str, now: datetime = None) -> date:
    """The last closed calendar day in the business timezone."""
    now = now or datetime.now(pytz.utc)
    return (now.astimezone(pytz.timezone(tz_name)) - timedelta(days=1)).date()


def run_sync(
    sync_date: date,
    warehouse_con: duckdb.DuckDBPyConnection,
    store_con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    table_prefix: str = "events_",
    batch_size: int = 1000,
    stale_run_minutes: float = 180,
) -> SyncRun:
    """
    Extractor -> Geo Resolver -> Loader, recorded by the Sync Run Tracker.

    Extraction errors fail the run for this date only. Load errors stop the
    affected dataset; the rest still load. Anything unexpected marks the run
    failed and is re-raised.
    """
    tracker = SyncRunTracker(store_con, logger, stale_after_minutes=stale_run_minutes)
    run = tracker.start(sync_date)
    records = {}

    try:
        extraction = extract_day(warehouse_con, sync_date, table_prefix, logger)
    except ExtractionError as e:
        logger.error(f"Extraction failed for {sync_date}: {e}")
        return tracker.finish(
            run,
            decide_status(True, {}, len(DATASET_SPECS)),
            records,
            {"extraction": str(e)},
        )
    except Exception as e:
        tracker.finish(run, SyncStatus.FAILED, records, {"unexpected": repr(e)})
        raise

    try:
        geo_unresolved = enrich_sessions_geo(extraction.sessions, logger)
        logger.info(f"Geo resolution: unresolved_sessions={geo_unresolved}")

        counts, errors = load_all(store_con, extraction, logger, batch_size)
    except Exception as e:
        tracker.finish(run, SyncStatus.FAILED, records, {"unexpected": repr(e)})
        raise

    records.update(counts)
    records["dropped_video_events"] = extraction.dropped.get("video_events", 0)
    records["dropped_cta_clicks"] = extraction.dropped.get("cta_clicks", 0)
    records["geo_unresolved"] = geo_unresolved

    status = decide_status(False, errors, len(DATASET_SPECS))
    return tracker.finish(run, status, records, errors)


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(
        description="Sync one day of raw warehouse events into the analytics store"
    )
    parser.add_argument(
        "--date",
        help="Partition date to sync (YYYY-MM-DD). Defaults to yesterday in the business timezone.",
    )
    args = parser.parse_args(argv)

    load_dotenv()
    try:
        cfg = load_config()
        warehouse_path = cfg.get_env_value("warehouse.path_env", required=True)
        store_path = cfg.get_env_value("store.path_env", required=True)
    except (FileNotFoundError, ValueError) as e:
        logging.basicConfig(level=logging.INFO)
        logging.error(f"Configuration error: {e}")
        return 1

    run_ts = datetime.now().strftime(cfg.get("run_ts_format", "%Y%m%d_%H%M%S"))
    logger, _fmt = configure_logging(
        f"{cfg.get('paths.logs_dir', 'logs')}/sync_{run_ts}.log", logger_name="sync"
    )

    tz_name = cfg.get("filters.business_timezone", "Europe/Paris")
    if args.date:
        try:
            sync_date = datetime.strptime(args.date, "%Y-%m-%d").date()
        except ValueError:
            logger.error(f"Invalid --date {args.date!r}; expected YYYY-MM-DD")
            return 1
    else:
        sync_date = yesterday_in(tz_name)

    logger.info(f"--- Starting sync for {sync_date} ---")
    warehouse_con = None
    store_con = None
    try:
        warehouse_con = connect_warehouse(warehouse_path)
        store_con = duckdb.connect(database=store_path, read_only=False)
        setup_database(store_con)

        run = run_sync(
            sync_date,
            warehouse_con,
            store_con,
            logger,
            table_prefix=cfg.get("warehouse.table_prefix", "events_"),
            batch_size=cfg.get("store.batch_size", 1000),
            stale_run_minutes=cfg.get("sync.stale_run_minutes", 180),
        )
    except Exception as e:
        logger.error(f"Sync for {sync_date} aborted: {e}", exc_info=True)
        return 1
    finally:
        if warehouse_con:
            warehouse_con.close()
        if store_con:
            store_con.close()

    logger.info(
        f"--- Sync for {sync_date} finished: {run.status.value} {run.records_processed} ---"
    )
    return EXIT_CODES[run.status]


if __name__ == "__main__":
    sys.exit(main())
