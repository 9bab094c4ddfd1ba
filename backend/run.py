import argparse
import os

import uvicorn


def main():
    parser = argparse.ArgumentParser(description="NoteVault API Runner")
    parser.add_argument("--host", type=str, default="127.0.0.1", help="Host interface to bind")
    parser.add_argument("--port", type=int, default=8333, help="Port to run the backend on")
    parser.add_argument("--dir", type=str, default="./vault-data", help="Data directory for records and objects")
    parser.add_argument("--oracle-url", type=str, default="", help="Remote vault code service (default: local registry)")
    parser.add_argument("--log-level", type=str, default="INFO", help="Logging level")

    args = parser.parse_args()

    # Settings are read from the environment when the app module is imported
    os.environ["NOTEVAULT_DATA_DIR"] = args.dir
    os.environ["NOTEVAULT_LOG_LEVEL"] = args.log_level
    if args.oracle_url:
        os.environ["NOTEVAULT_ORACLE_URL"] = args.oracle_url

    from notevault.main import app

    print(f"Starting NoteVault on http://{args.host}:{args.port}")
    print(f"Data directory: {os.path.abspath(args.dir)}")

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        reload=False,
        log_level=args.log_level.lower(),
    )


if __name__ == "__main__":
    main()
