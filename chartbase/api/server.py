import argparse
import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent.parent))


def main():
    parser = argparse.ArgumentParser(description='Chartbase API Server')
    parser.add_argument('--host', default='127.0.0.1', help='Host to bind to')
    parser.add_argument('--port', type=int, default=8000, help='Port to bind to')
    parser.add_argument('--reload', action='store_true', help='Enable auto-reload')
    parser.add_argument('--log-level', default='info', help='Uvicorn log level')
    parser.add_argument('--migrate', action='store_true', help='Apply database migrations first')
    args = parser.parse_args()

    if args.migrate:
        from chartbase.db import migrate

        status = migrate.main()
        if status:
            return status

    import uvicorn

    uvicorn.run(
        "chartbase.api.app:app",
        host=args.host,
        port=args.port,
        log_level=args.log_level,
        reload=args.reload,
    )
    return 0

if __name__ == "__main__":
    raise SystemExit(main())
