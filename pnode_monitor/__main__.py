import argparse
import asyncio
import logging
import os
import sys

# Allows `python pnode_monitor` as well as `python -m pnode_monitor` by putting
# the project root on the path before the absolute imports below.
if __package__ is None or __package__ == '':
    script_dir = os.path.dirname(os.path.abspath(__file__))
    project_root = os.path.dirname(script_dir)
    sys.path.insert(0, project_root)

from pnode_monitor import server, config, tasks

# --- Centralized Logging Configuration ---
log = logging.getLogger("PNodeMonitor")


async def run_once(db_path: str) -> int:
    """Run a single refresh cycle against db_path and report the outcome."""
    app = {"db_path": db_path}
    await tasks.init_resources(app)
    try:
        result = await app["refresher"].run_cycle()
    finally:
        await tasks.release_resources(app)

    if result is None:
        log.error("Refresh cycle skipped: no seed node returned a pod list.")
        return 1
    log.info(f"Cycle summary: total={result.total_nodes} online={result.online_nodes} "
             f"storage={result.total_storage} written={result.written} failed={result.failed} "
             f"skipped={result.skipped}")
    return 0


def main():
    parser = argparse.ArgumentParser(
        description="Xandeum pNode Monitor - polls the pNode fleet and serves it as a JSON API",
        epilog="""
Examples:
  # Serve the API on the default port with the default database
  %(prog)s

  # Custom port and database file
  %(prog)s --port 8080 --db /var/lib/pnode_monitor/xandeum.db

  # Run one refresh cycle and exit
  %(prog)s --once
        """,
        formatter_class=argparse.RawDescriptionHelpFormatter
    )
    parser.add_argument('--port', type=int, default=config.SERVER_PORT,
                        help=f"HTTP port to listen on (default: {config.SERVER_PORT}, or $PORT).")
    parser.add_argument('--db', metavar='URL_OR_PATH', default=None,
                        help="SQLite connection string or file path (default: $DATABASE_URL or sqlite:xandeum.db).")
    parser.add_argument('--once', action='store_true',
                        help="Run a single refresh cycle, write it to the database and exit.")
    parser.add_argument('--debug', action='store_true', help="Enable debug logging.")
    args = parser.parse_args()

    log_level = logging.DEBUG if args.debug else logging.INFO
    logging.basicConfig(level=log_level, format='%(asctime)s [%(levelname)s] [%(name)s] %(message)s',
                        datefmt='%Y-%m-%d %H:%M:%S')

    db_path = config.database_path_from_url(args.db) if args.db else config.DATABASE_FILE

    if args.once:
        sys.exit(asyncio.run(run_once(db_path)))

    server.run_server(port=args.port, db_path=db_path)


if __name__ == "__main__":
    main()
