import sys
import argparse
import time

import uvicorn
from fastapi import Request
from prometheus_client import Counter, Histogram
from alembic import command
from alembic.config import Config
import os
import logging
from prometheus_fastapi_instrumentator import Instrumentator
from .app import create_app
from .app.cache_checker import check_and_sync_cache, clear_availability_cache
from .app.models import Base
from .app.dependencies import DATABASE_URL, engine, get_redis_client

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout)]
)

app = create_app()

# Custom Prometheus metrics for specific routes
ROUTE_REQUEST_COUNT = Counter("route_request_count", "Total number of requests per route", ["method", "endpoint"])
ROUTE_REQUEST_LATENCY = Histogram("route_request_latency_seconds", "Request latency in seconds per route", ["method", "endpoint"])


# Middleware to track custom metrics
@app.middleware("http")
async def add_metrics(request: Request, call_next):
    start_time = time.time()

    response = await call_next(request)

    # Label by route template so slot ids do not explode the label set
    route = request.scope.get("route")
    endpoint = route.path if route is not None else request.url.path
    ROUTE_REQUEST_COUNT.labels(method=request.method, endpoint=endpoint).inc()
    ROUTE_REQUEST_LATENCY.labels(method=request.method, endpoint=endpoint).observe(time.time() - start_time)

    return response


# Instrument the app with Prometheus metrics
Instrumentator().instrument(app).expose(app, include_in_schema=False, endpoint="/metrics")

ALEMBIC_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'alembic')


def start_server():
    uvicorn.run(app, host=os.getenv('HOST', '0.0.0.0'), port=int(os.getenv('PORT', 8000)))


def create_tables():
    print(f"Using database URL: {engine.url.render_as_string(hide_password=True)}")
    Base.metadata.create_all(engine)
    print("Database tables created successfully.")


def alembic_config():
    config = Config()
    config.set_main_option('sqlalchemy.url', DATABASE_URL)
    config.set_main_option('script_location', ALEMBIC_DIR)
    return config


def run_migrations(action, revision=None, message=None):
    config = alembic_config()
    if action == "upgrade":
        command.upgrade(config, revision or "head")
    elif action == "downgrade":
        if not revision:
            print("Please specify a revision to downgrade to.")
            return
        command.downgrade(config, revision)
    elif action == "revision":
        if not message:
            print("Please provide a message for the migration.")
            return
        command.revision(config, autogenerate=True, message=message)
    elif action == "current":
        command.current(config)
    else:
        print(f"Unknown migration action: {action}")


def sync_cache():
    updated = check_and_sync_cache(get_redis_client())
    print(f"Availability cache checked, {len(updated)} entries rewritten.")


def clear_redis_cache():
    deleted = clear_availability_cache(get_redis_client())
    print(f"Availability cache cleared successfully ({deleted} entries).")


MODES = {
    'server': "start the FastAPI server",
    'create-tables': "create the database tables from the models",
    'migrate': "run an Alembic migration action (see --action)",
    'cache-sync': "re-check cached availability against the database",
    'clear-cache': "drop every cached availability entry",
}


def build_parser():
    parser = argparse.ArgumentParser(description="Slot Service")
    parser.add_argument(
        '--mode',
        choices=list(MODES),
        required=True,
        help="; ".join(f"'{mode}' to {text}" for mode, text in MODES.items()),
    )
    parser.add_argument('--action', choices=['upgrade', 'downgrade', 'revision', 'current'],
                        help="Alembic action, required with --mode migrate.")
    parser.add_argument('--revision', help="Target revision for upgrade or downgrade.")
    parser.add_argument('--message', help="Message for a new autogenerated revision.")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)

    if args.mode == 'migrate':
        if not args.action:
            print("Please specify an action for the 'migrate' mode.")
            return
        run_migrations(args.action, args.revision, args.message)
        return

    handlers = {
        'server': start_server,
        'create-tables': create_tables,
        'cache-sync': sync_cache,
        'clear-cache': clear_redis_cache,
    }
    handlers[args.mode]()


if __name__ == "__main__":
    main()
