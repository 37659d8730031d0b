#!/usr/bin/env python3
"""
ordersync API startup script

Starts the order sync FastAPI server (imports, webhooks, admin back-office).

USAGE:
    python -m ordersync.start_api
    python -m ordersync.start_api --port 8080 --no-reload
"""

import argparse
import sys

import uvicorn

from ordersync.utils.env import BACKEND_ENV_FILE


def main(argv=None) -> None:
    """Start the ordersync API server."""
    parser = argparse.ArgumentParser(description="ordersync API server")
    parser.add_argument("--host", default="0.0.0.0")
    parser.add_argument("--port", type=int, default=8000)
    parser.add_argument("--no-reload", action="store_true", help="Disable auto-reload (production)")
    args = parser.parse_args(argv)

    print("Starting ordersync API server...")
    print(f"   Swagger UI:  http://localhost:{args.port}/docs")
    print(f"   Admin Panel: http://localhost:{args.port}/admin")
    print("")

    if not BACKEND_ENV_FILE.exists():
        print("WARNING: No backend/.env file found!")
        print("   Export at least: DATABASE_URL, API_KEY, SENDCLOUD_WEBHOOK_SECRET, ADMIN_PASSWORD")
        print("")

    try:
        uvicorn.run(
            "ordersync.main:app",
            host=args.host,
            port=args.port,
            reload=not args.no_reload,
            reload_dirs=[str(BACKEND_ENV_FILE.parent / "ordersync")],
            log_level="info",
            proxy_headers=True,
        )
    except KeyboardInterrupt:
        print("\nShutting down ordersync API server...")
    except Exception as e:
        print(f"Error starting server: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
