"""
Backfill ISO country codes on stored sessions.

Sessions synced before a country alias existed keep country_iso2/iso3 NULL
even though their country name is now resolvable. This script re-runs the
geo resolver over those rows.

USAGE:
------
# Dry run (reports what would change, opens the store read-only):
python backfill_geo_codes.py

# Live mode (writes the codes):
python backfill_geo_codes.py --live

# Smaller transactions:
python backfill_geo_codes.py --live --batch-size 200

NOTES:
------
- Only rows with a country name and a NULL country_iso2 are touched
- Rows that still don't resolve are left NULL and counted
- Re-running is safe: resolved rows drop out of the candidate set
"""

import logging
from typing import Dict

import duckdb

from geo import Unresolved, resolve_country


def backfill_geo_codes(
    con: duckdb.DuckDBPyConnection,
    logger: logging.Logger,
    dry_run: bool = True,
    batch_size: int = 1000,
) -> Dict[str, int]:
    """
    Resolve codes for sessions with a country but no ISO2 code.

    Walks candidates in session_id order (keyset pagination), so rows updated
    in live mode never shift the remaining batches.
    """
    stats = {"candidates": 0, "resolved": 0, "unresolved": 0, "updated": 0}
    unresolved_names: Dict[str, int] = {}

    total = con.execute(
        "SELECT COUNT(*) FROM sessions WHERE country IS NOT NULL AND country_iso2 IS NULL"
    ).fetchone()[0]
    logger.info(f"Mode: {'DRY RUN' if dry_run else 'LIVE UPDATE'}")
    logger.info(f"Sessions needing geo codes: {total}")
    if total == 0:
        return stats

    last_key = ""
    batch_no = 0
    while True:
        rows = con.execute(
            """
            SELECT session_id, country
            FROM sessions
            WHERE country IS NOT NULL AND country_iso2 IS NULL AND session_id > ?
            ORDER BY session_id
            LIMIT ?
            """,
            [last_key, batch_size],
        ).fetchall()
        if not rows:
            break
        batch_no += 1
        last_key = rows[-1][0]
        stats["candidates"] += len(rows)

        updates = []
        for session_id, country in rows:
            result = resolve_country(country)
            if isinstance(result, Unresolved):
                stats["unresolved"] += 1
                unresolved_names[country] = unresolved_names.get(country, 0) + 1
                continue
            stats["resolved"] += 1
            updates.append((result.iso2, result.iso3, session_id))

        if updates and not dry_run:
            con.begin()
            try:
                con.executemany(
                    "UPDATE sessions SET country_iso2 = ?, country_iso3 = ? WHERE session_id = ?",
                    updates,
                )
                con.commit()
            except Exception:
                con.rollback()
                raise
            stats["updated"] += len(updates)
            logger.info(f"Batch {batch_no}: updated {len(updates)} sessions")
        elif updates:
            logger.info(f"Batch {batch_no}: [DRY RUN] would update {len(updates)} sessions")
        else:
            logger.info(f"Batch {batch_no}: nothing resolvable")

    for name, count in sorted(unresolved_names.items()):
        logger.warning(f"Still unresolved: {name!r} ({count} sessions)")

    logger.info(f"Backfill summary: {stats}")
    return stats


if __name__ == "__main__":
    import argparse
    import sys

    from dotenv import load_dotenv

    from config_loader import load_config
    from logging_utils import configure_logging

    parser = argparse.ArgumentParser(
        description="Backfill ISO country codes on stored sessions",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Dry run (default)
  python backfill_geo_codes.py

  # Write the codes
  python backfill_geo_codes.py --live
        """,
    )
    parser.add_argument(
        "--live", action="store_true", help="Execute live updates (default is dry run)"
    )
    parser.add_argument(
        "--batch-size",
        type=int,
        default=1000,
        help="Number of sessions to process per batch (default: 1000)",
    )
    args = parser.parse_args()

    load_dotenv()
    logger, _fmt = configure_logging("backfill_geo.log", logger_name="backfill_geo")
    try:
        store_path = load_config().get_env_value("store.path_env")
    except (FileNotFoundError, ValueError) as e:
        logger.error(f"Configuration error: {e}")
        sys.exit(1)

    if not args.live:
        logger.info("Running in DRY RUN mode. Use --live to commit changes.")
    else:
        logger.warning("LIVE MODE: changes will be committed to the analytics store")

    con = duckdb.connect(database=store_path, read_only=not args.live)
    try:
        backfill_geo_codes(con, logger, dry_run=not args.live, batch_size=args.batch_size)
    except Exception as e:
        logger.error(f"Fatal error during backfill: {e}", exc_info=True)
        sys.exit(1)
    finally:
        con.close()
