#!/usr/bin/env python3
"""Launcher script for the Workstreams HTTP server.

Settings come from config/settings.yaml and WORKSTREAMS_* environment
variables; see workstreams.settings.
"""

import asyncio
import sys
from pathlib import Path

# Add src to Python path
sys.path.insert(0, str(Path(__file__).parent / "src"))


async def start_http_server():
    """Build the runtime and serve it until interrupted."""
    from workstreams.logging_manager import LoggingManager
    from workstreams.runtime import WorkstreamRuntime
    from workstreams.server import WorkstreamServer
    from workstreams.settings import load_settings
    from workstreams.store import WorkstreamStore

    settings = load_settings()
    logging_manager = LoggingManager(log_dir=settings.log_dir, log_level=settings.log_level)
    store = WorkstreamStore(
        settings.resolved_database_path,
        default_limit=settings.conversation_default_limit,
        max_limit=settings.conversation_max_limit,
    )

    print(f"Starting Workstreams on {settings.server_host}:{settings.server_port}")
    print(f"Database: {store.db_path}")
    print(f"Logs: {settings.log_dir}")

    runtime = WorkstreamRuntime(store, settings=settings, logging_manager=logging_manager)
    server = WorkstreamServer(runtime)
    try:
        await server.start_server()
    finally:
        store.close()


def main():
    """Main entry point."""
    try:
        asyncio.run(start_http_server())
    except ImportError as e:
        print(f"Import error: {e}", file=sys.stderr)
        print("Please ensure dependencies are installed:", file=sys.stderr)
        print("pip install -e .", file=sys.stderr)
        sys.exit(1)
    except KeyboardInterrupt:
        pass
    except Exception as e:
        print(f"Error starting server: {e}", file=sys.stderr)
        import traceback

        traceback.print_exc(file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
